# End-to-end frame rendering and the registered generator.
import numpy as np
import pytest
from PIL import Image

from displace import DisplacementField
from halftone import HalftoneGenerator, iter_marks, render
from sampling import PixelBuffer, SampleGrid, as_buffer
from settings import CONFIG_KEYS, HalftoneConfig


def _marks(img, config):
    buf = as_buffer(img)
    field = DisplacementField(config.displacement, buf.width, buf.height, seed=0)
    return list(iter_marks(buf, config, field))


def test_nothing_to_render():
    assert render(None) is None
    assert render(PixelBuffer.from_bytes(b"", 0, 0)) is None
    assert render(np.zeros((0, 8, 4), np.uint8)) is None


def test_output_matches_frame_size(solid):
    out = render(solid(37, 21, (90, 90, 90, 255)))
    assert out.mode == "RGBA"
    assert out.size == (37, 21)


def test_uniform_black_quad_is_band_zero_everywhere(solid):
    img = solid(48, 36)
    config = HalftoneConfig().merged({"colorMode": "quad"})
    marks = _marks(img, config)
    assert len(marks) == len(SampleGrid(48, 36, 12))
    assert {(m.radius, m.color) for m in marks} == {(6.0, (0, 0, 0))}


def test_uniform_black_quad_inverted_is_band_three(solid):
    config = HalftoneConfig().merged({"colorMode": "quad", "invert": True})
    marks = _marks(solid(48, 36), config)
    assert {(m.radius, m.color) for m in marks} == {(1.0, (212, 212, 212))}


def test_transparent_samples_produce_no_marks(solid):
    img = solid(30, 30, (0, 0, 0, 49))
    assert _marks(img, HalftoneConfig()) == []
    out = render(img)
    assert (np.asarray(out) == 255).all()


def test_tiny_marks_leave_paper_untouched(solid):
    config = HalftoneConfig().merged({"dotSizeMin": 0, "dotSizeMax": 1})
    out = render(solid(24, 24), config)
    assert (np.asarray(out) == 255).all()


def test_background_color(solid):
    config = HalftoneConfig().merged({"backgroundColor": "#102030", "dotSizeMin": 0, "dotSizeMax": 0})
    assert render(solid(10, 10), config).getpixel((5, 5)) == (16, 32, 48, 255)


def test_transparent_background_in_graphic_mode(solid):
    config = HalftoneConfig().merged({"transparentBackground": True})
    out = render(solid(24, 24), config)
    assert out.getpixel((6, 6))[3] == 0
    assert out.getpixel((0, 0)) == (0, 0, 0, 255)


def test_text_mode_uses_dark_sheet(solid):
    config = HalftoneConfig().merged({"colorMode": "text", "backgroundColor": "#ffffff", "transparentBackground": True})
    # white samples map to the first (blank) glyph
    out = render(solid(40, 40, (255, 255, 255, 255)), config)
    assert (np.asarray(out) == np.array([0, 0, 0, 255], np.uint8)).all()


def test_text_mode_draws_light_glyphs(solid):
    config = HalftoneConfig().merged({"colorMode": "text", "dotSpacing": 20, "textFont": "missing.ttf"})
    out = render(solid(60, 60), config)
    assert np.asarray(out)[..., :3].max() > 0


def test_jitter_replays_with_a_seed(noise_rgba):
    img = Image.fromarray(noise_rgba(40, 50, seed=2), "RGBA")
    config = HalftoneConfig().merged({"noiseVariation": 5, "explodeStrength": 12})
    a = render(img, config, seed=42)
    b = render(img, config, seed=42)
    assert a.tobytes() == b.tobytes()


def test_injected_rng_is_used(solid):
    class CountingRng:
        calls = 0

        def random(self):
            CountingRng.calls += 1
            return 0.5

    config = HalftoneConfig().merged({"noiseVariation": 2})
    render(solid(24, 24), config, rng=CountingRng())
    # two draws (x then y) per mark, 4 marks
    assert CountingRng.calls == 8


def test_displaced_marks_move(solid):
    config = HalftoneConfig().merged({"explodeDirection": "horizontal", "explodeStrength": 2})
    marks = _marks(solid(24, 12), config)
    # black -> push = 2 * 5 * (1 - 0)
    assert [(m.x, m.y) for m in marks] == [(10.0, 0.0), (22.0, 0.0)]


def test_generator_params_cover_every_setting():
    names = [p["name"] for p in HalftoneGenerator.get_params()]
    assert set(names) == CONFIG_KEYS
    assert len(names) == len(set(names))


def test_generator_applies_extras(solid):
    gen = HalftoneGenerator(seed=1)
    img = solid(30, 20).convert("RGB")
    out = gen.generate(img, preset="quad_grey", dotSpacing=10)
    assert out.size == (30, 20)
    assert out.getpixel((0, 0)) == (0, 0, 0, 255)


@pytest.mark.parametrize("preset", ["classic", "pills", "ascii", "checker_text", "burst", "zoom"])
def test_presets_render(preset, noise_rgba):
    img = Image.fromarray(noise_rgba(32, 32, seed=5), "RGBA")
    out = HalftoneGenerator(seed=0).generate(img, preset=preset)
    assert out.size == (32, 32)
