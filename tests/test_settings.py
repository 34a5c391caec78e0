# Config merging/validation, share tokens and presets.
import base64
import json
import logging

import pytest

from palettes import QuadPalette, SinglePalette, TextPalette
from settings import (
    CONFIG_KEYS,
    MAX_THRESHOLD,
    ConfigTokenError,
    HalftoneConfig,
    config_from_extras,
    describe_preset,
    export_token,
    import_token,
    list_presets,
    preset_config,
)


def _token(obj) -> str:
    return base64.b64encode(json.dumps(obj).encode("utf-8")).decode("ascii")


def test_defaults():
    d = HalftoneConfig().to_dict()
    assert d["contrastBoost"] == 1.2
    assert d["thresholdClamp"] == 0.1
    assert d["dotSpacing"] == 12
    assert d["colorMode"] == "single"
    assert d["explodeDirection"] == "radial"
    assert set(d) <= CONFIG_KEYS


@pytest.mark.parametrize("name", list_presets())
def test_token_round_trip(name):
    config = preset_config(name)
    assert import_token(HalftoneConfig(), export_token(config)) == config


def test_token_round_trip_with_custom_values():
    config = HalftoneConfig().merged({
        "colorMode": "quad",
        "quadColors": "#111111,#222222,#333333,#444444",
        "quadSizes": "15,9.5,3,1",
        "quadShapes": "1,0.5,0.25,0",
        "lineDirection": "vertical",
        "noiseVariation": 2.5,
        "transparentBackground": True,
    })
    token = export_token(config)
    assert import_token(preset_config("ascii"), token) == config


def test_token_is_base64_json():
    data = json.loads(base64.b64decode(export_token(HalftoneConfig())))
    assert data["dotSpacing"] == 12
    assert data["colorMode"] == "single"


@pytest.mark.parametrize("bad", [
    "not base64 !!",
    base64.b64encode(b"\xff\xfe").decode(),
    base64.b64encode(b"{not json").decode(),
    _token([1, 2, 3]),
    _token("a string"),
])
def test_invalid_token_raises(bad):
    with pytest.raises(ConfigTokenError):
        import_token(HalftoneConfig(), bad)


def test_token_error_is_a_value_error():
    assert issubclass(ConfigTokenError, ValueError)


def test_partial_token_keeps_current_values():
    current = HalftoneConfig().merged({"dotSpacing": 30, "invert": True})
    out = import_token(current, _token({"contrastBoost": 2.0, "someFutureKey": 1}))
    assert out.preprocess.contrast == 2.0
    assert out.grid.spacing == 30
    assert out.preprocess.invert is True


@pytest.mark.parametrize("patch,check", [
    ({"dotSpacing": 1}, lambda c: c.grid.spacing == 2),
    ({"dotSpacing": "nope"}, lambda c: c.grid.spacing == 12),
    ({"thresholdClamp": 0.7}, lambda c: c.preprocess.threshold == MAX_THRESHOLD),
    ({"thresholdClamp": -1}, lambda c: c.preprocess.threshold == 0.0),
    ({"contrastBoost": -1}, lambda c: c.preprocess.contrast == 1.2),
    ({"contrastBoost": float("nan")}, lambda c: c.preprocess.contrast == 1.2),
    ({"colorMode": "bogus"}, lambda c: c.mode == "single"),
    ({"colorMode": "QUAD"}, lambda c: c.mode == "quad"),
    ({"dotShape": 3}, lambda c: c.palette.shape == 1.0),
    ({"dotSizeMin": 10, "dotSizeMax": 4}, lambda c: c.palette.size_max == 10),
    ({"dotSizeMin": -3}, lambda c: c.palette.size_min == 0.0),
    ({"noiseVariation": -5}, lambda c: c.displacement.jitter == 0.0),
    ({"explodeDirection": "spiral"}, lambda c: c.displacement.direction == "radial"),
    ({"invert": "yes"}, lambda c: c.preprocess.invert is True),
    ({"invert": "maybe"}, lambda c: c.preprocess.invert is False),
    ({"lineDirection": "diagonal"}, lambda c: c.grid.line_direction == "horizontal"),
])
def test_merge_validates(patch, check):
    assert check(HalftoneConfig().merged(patch))


def test_invalid_value_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="dotter.settings"):
        HalftoneConfig().merged({"colorMode": "bogus"})
    assert "colorMode" in caplog.text


def test_quad_lists_accept_comma_strings():
    c = HalftoneConfig().merged({"colorMode": "quad", "quadSizes": "14, 9, 5, 2", "quadShapes": [0, 0.5, 2, -1]})
    assert isinstance(c.palette, QuadPalette)
    assert [b.size for b in c.palette.bands] == [14.0, 9.0, 5.0, 2.0]
    assert [b.shape for b in c.palette.bands] == [0.0, 0.5, 1.0, 0.0]


def test_quad_list_of_wrong_length_is_ignored():
    c = HalftoneConfig().merged({"colorMode": "quad", "quadSizes": "1,2,3"})
    assert [b.size for b in c.palette.bands] == [12.0, 8.0, 4.0, 2.0]


def test_mode_switch_and_back_keeps_palette_values():
    red = HalftoneConfig().merged({"dotColor": "#ff0000", "dotSizeMax": 20})
    quad = import_token(red, _token({"colorMode": "quad"}))
    assert isinstance(quad.palette, QuadPalette)
    back = quad.merged({"colorMode": "single"})
    assert back.palette == SinglePalette(color="#ff0000", size_max=20.0)
    assert back == red


def test_inactive_mode_keys_are_kept():
    quad = HalftoneConfig().merged({"colorMode": "quad"})
    patched = quad.merged({"dotColor": "#00ff00", "textCharacters": "ab"})
    assert patched.mode == "quad"
    assert patched.to_dict()["dotColor"] == "#00ff00"
    assert patched.merged({"colorMode": "single"}).palette.color == "#00ff00"
    assert patched.merged({"colorMode": "text"}).palette.characters == "ab"


def test_token_carries_every_mode():
    config = HalftoneConfig().merged({"dotColor": "#123456", "quadSizes": "9,7,5,3", "colorMode": "text"})
    restored = import_token(preset_config("quad_grey"), export_token(config))
    assert restored == config
    assert restored.single.color == "#123456"
    assert [b.size for b in restored.quad.bands] == [9.0, 7.0, 5.0, 3.0]


def test_with_palette_switches_mode():
    config = HalftoneConfig().merged({"dotColor": "#abcdef"})
    text = config.with_palette(TextPalette(characters="xy"))
    assert text.mode == "text"
    assert text.palette.characters == "xy"
    assert text.single == config.single


def test_empty_glyph_ramp_is_rejected():
    c = HalftoneConfig().merged({"colorMode": "text", "textCharacters": ""})
    assert c.palette.characters == TextPalette().characters


def test_presets():
    assert "classic" in list_presets()
    assert preset_config("ascii").mode == "text"
    assert preset_config("Quad_Grey").mode == "quad"
    assert "burst" in describe_preset("burst")
    assert "unknown" in describe_preset("nope")
    with pytest.raises(KeyError):
        preset_config("nope")


def test_extras_order_preset_then_token_then_keys():
    token = export_token(HalftoneConfig().merged({"dotSpacing": 30}))
    assert config_from_extras({"preset": "ascii", "config": token}).grid.spacing == 30
    assert config_from_extras({"preset": "ascii", "config": token, "dotSpacing": 8}).grid.spacing == 8
    # the token carries colorMode too, so it wins over the preset
    assert config_from_extras({"preset": "ascii", "config": token}).mode == "single"


def test_bad_token_in_extras_is_ignored(caplog):
    with caplog.at_level(logging.WARNING, logger="dotter.settings"):
        c = config_from_extras({"preset": "classic", "config": "%%%"})
    assert c == preset_config("classic")
    assert "Invalid configuration code" in caplog.text
