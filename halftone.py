# halftone.py: the mark pipeline (registers itself as `halftone`)
# -----------------------------------------------------------------------------
# One render = one pass over the frame:
#
#   SampleGrid -> brightness_grid -> resolve_mark -> DisplacementField -> MarkRasterizer
#
# Rejected samples (alpha < 50) and marks with radius <= 0.5 are skipped
# without drawing. A missing or 0x0 buffer renders nothing (returns None).
#
# Usage (examples):
#   python main.py run --url input.jpg --out out.png --extra preset=classic
#   python main.py run --url input.jpg --out out.png \
#     --extra colorMode=quad quadSizes=14,9,5,2 dotSpacing=10
#   python main.py run --url input.jpg --out out.png \
#     --extra colorMode=text textCharacters=" .:oO@" dotSpacing=8
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from PIL import Image

from palettes import PAPER, REGISTRY, BaseGenerator, Mark, TextPalette, _rng, parse_hex_color, resolve_mark
from sampling import PixelBuffer, SampleGrid, as_buffer, brightness_grid, clamp_spacing
from displace import DIRECTIONS, DisplacementField
from raster import LINE_DIRECTIONS, TEXT_INK, TEXT_PAPER, MarkRasterizer, new_surface
from settings import COLOR_MODES, HalftoneConfig, config_from_extras

__all__ = ["iter_marks", "render", "param_text", "HalftoneGenerator"]

log = logging.getLogger("dotter.halftone")


def iter_marks(buf: PixelBuffer, config: HalftoneConfig, field: DisplacementField) -> Iterator[Mark]:
    """Resolved (and displaced) marks in grid order."""
    spacing = clamp_spacing(config.grid.spacing)
    lum = brightness_grid(buf, spacing, config.preprocess)
    palette = config.palette

    for x, y in SampleGrid(buf.width, buf.height, spacing):
        b = float(lum[y // spacing, x // spacing])
        if math.isnan(b):
            continue
        mark = resolve_mark(palette, b, x, y, spacing)
        if mark is None:
            continue
        if field.active:
            mark.x, mark.y = field.apply(x, y, b)
        yield mark


def render(
    source,
    config: Optional[HalftoneConfig] = None,
    *,
    rng=None,
    seed: Optional[int] = None,
) -> Optional[Image.Image]:
    """
    Render one frame. `source` is a PixelBuffer, Pillow image or pixel array.
    Returns an RGBA image of the frame size, or None when there is nothing to draw.
    """
    buf = as_buffer(source)
    if buf is None or buf.empty:
        log.debug("No pixels to render (source missing or empty)")
        return None
    config = config or HalftoneConfig()
    spacing = clamp_spacing(config.grid.spacing)

    text_mode = isinstance(config.palette, TextPalette)
    if text_mode:
        background = TEXT_PAPER
    elif config.transparent:
        background = None
    else:
        background = parse_hex_color(config.background, PAPER)

    surface = new_surface(buf.width, buf.height, background)
    raster = MarkRasterizer(
        surface,
        spacing,
        config.grid.line_direction,
        font=config.palette.font if text_mode else "",
        text_color=TEXT_INK,
    )
    field = DisplacementField(
        config.displacement, buf.width, buf.height,
        rng=rng if rng is not None else _rng(seed),
    )

    for mark in iter_marks(buf, config, field):
        raster.draw(mark)

    log.debug("Rendered %dx%d (%s, spacing=%d): %d marks", buf.width, buf.height, config.mode, spacing, raster.count)
    return surface


# ============================ HalftoneGenerator ============================

def param_text(value: Any) -> Any:
    """Lists as the comma-separated text the CLI and GUI edit them as."""
    if isinstance(value, list):
        return ",".join(f"{v:g}" if isinstance(v, float) else str(v) for v in value)
    return value


@dataclass
class HalftoneGenerator(BaseGenerator):
    """
    Halftone artwork from any image.

    Extras are the flat config keys (see get_params) plus:
      preset: str   named preset applied before the other keys
      config: str   share token applied after the preset
    """

    @staticmethod
    def get_params() -> List[Dict[str, Any]]:
        d = {k: param_text(v) for k, v in HalftoneConfig().to_dict().items()}
        return [
            {"name": "contrastBoost", "type": float, "default": d["contrastBoost"], "min": 0.5, "max": 3.0,
             "help": "Stretch brightness around mid-grey."},
            {"name": "thresholdClamp", "type": float, "default": d["thresholdClamp"], "min": 0.0, "max": 0.45,
             "help": "Snap near-black to 0 and near-white to 1."},
            {"name": "invert", "type": bool, "default": d["invert"], "help": "Invert source brightness."},
            {"name": "dotSpacing", "type": int, "default": d["dotSpacing"], "min": 4, "max": 60,
             "help": "Grid spacing in pixels."},
            {"name": "lineDirection", "type": str, "default": d["lineDirection"], "choices": list(LINE_DIRECTIONS),
             "help": "Orientation of stretched marks."},
            {"name": "colorMode", "type": str, "default": d["colorMode"], "choices": list(COLOR_MODES),
             "help": "single: one ink, sized by brightness. quad: 4 bands. text: glyphs."},
            {"name": "backgroundColor", "type": str, "default": d["backgroundColor"], "help": "Paper color (hex)."},
            {"name": "transparentBackground", "type": bool, "default": d["transparentBackground"],
             "help": "Leave the paper transparent (graphic modes)."},
            {"name": "dotColor", "type": str, "default": d["dotColor"], "help": "Ink color for single mode."},
            {"name": "dotSizeMin", "type": float, "default": d["dotSizeMin"], "min": 0.0, "max": 20.0,
             "help": "Dot diameter at brightness 0."},
            {"name": "dotSizeMax", "type": float, "default": d["dotSizeMax"], "min": 1.0, "max": 100.0,
             "help": "Dot diameter at brightness 1."},
            {"name": "dotShape", "type": float, "default": d["dotShape"], "min": 0.0, "max": 1.0,
             "help": "0 = disc, 1 = line."},
            {"name": "quadColors", "type": str, "default": d["quadColors"],
             "help": "Four comma-separated colors, darkest band first."},
            {"name": "quadSizes", "type": str, "default": d["quadSizes"], "help": "Four dot diameters."},
            {"name": "quadShapes", "type": str, "default": d["quadShapes"], "help": "Four shape factors (0..1)."},
            {"name": "textCharacters", "type": str, "default": d["textCharacters"],
             "help": "Glyph ramp, lightest first."},
            {"name": "textFont", "type": str, "default": d["textFont"], "help": "TrueType font file or name."},
            {"name": "textWeightMapping", "type": bool, "default": d["textWeightMapping"],
             "help": "Pick glyphs by darkness (off = checkerboard)."},
            {"name": "explodeDirection", "type": str, "default": d["explodeDirection"], "choices": list(DIRECTIONS),
             "help": "Displacement field."},
            {"name": "explodeStrength", "type": float, "default": d["explodeStrength"], "min": -100.0, "max": 100.0,
             "help": "Displacement strength."},
            {"name": "noiseVariation", "type": float, "default": d["noiseVariation"], "min": 0.0, "max": 50.0,
             "help": "Random jitter in pixels."},
        ]

    def generate(self, input_image: Image.Image, **kwargs) -> Image.Image:
        config = config_from_extras(kwargs)
        out = render(input_image, config, seed=self.seed)
        return out if out is not None else input_image


# Register with the shared registry so `--generator halftone` works
REGISTRY.register("halftone", HalftoneGenerator)
