from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

from palettes import Color, Mark

log = logging.getLogger("dotter.raster")

LINE_DIRECTIONS = ("horizontal", "vertical")

# text mode always draws light glyphs on a dark sheet
TEXT_INK: Color = (255, 255, 255)
TEXT_PAPER: Color = (0, 0, 0)


@lru_cache(maxsize=32)
def load_font(name: str, size: int):
    size = max(1, int(size))
    try:
        return ImageFont.truetype(name, size)
    except (OSError, ValueError):
        log.debug("Font %r not available, using Pillow default at %dpx", name, size)
        return ImageFont.load_default(size=size)


def new_surface(width: int, height: int, background: Optional[Color]) -> Image.Image:
    """RGBA surface of the frame size; background=None leaves it transparent."""
    fill = (0, 0, 0, 0) if background is None else (*background, 255)
    return Image.new("RGBA", (int(width), int(height)), fill)


class MarkRasterizer:
    """
    Draws marks onto a Pillow surface.

    Graphic marks interpolate from disc to pill: the segment length is
    spacing * 1.1 * shape; at or below 1px the mark is a filled disc,
    otherwise a round-capped line of thickness 2 * radius oriented by
    line_direction. Text marks draw their glyph centered on the position.
    """

    def __init__(
        self,
        surface: Image.Image,
        spacing: int,
        line_direction: str = "horizontal",
        *,
        font: str = "DejaVuSansMono.ttf",
        text_color: Color = TEXT_INK,
    ) -> None:
        self.surface = surface
        self.spacing = spacing
        self.vertical = line_direction == "vertical"
        self.font_name = font
        self.text_fill = (*text_color, 255)
        self.count = 0
        self._draw = ImageDraw.Draw(surface)
        self._glyph_offsets: Dict[str, Tuple[float, float]] = {}

    def draw(self, mark: Mark) -> None:
        if mark.glyph is not None:
            if mark.glyph.strip():
                self._glyph(mark)
                self.count += 1
            return
        if mark.radius <= 0.5:
            return
        self._shape(mark)
        self.count += 1

    def _shape(self, mark: Mark) -> None:
        r = mark.radius
        x, y = mark.x, mark.y
        fill = (*mark.color, 255)
        extension = (self.spacing * 1.1) * mark.shape

        if extension <= 1:
            self._draw.ellipse((x - r, y - r, x + r, y + r), fill=fill)
            return

        half = extension / 2
        if self.vertical:
            ends = ((x, y - half), (x, y + half))
        else:
            ends = ((x - half, y), (x + half, y))
        self._draw.line(ends, fill=fill, width=max(1, int(round(r * 2))))
        # round caps
        for ex, ey in ends:
            self._draw.ellipse((ex - r, ey - r, ex + r, ey + r), fill=fill)

    def _glyph(self, mark: Mark) -> None:
        font = load_font(self.font_name, self.spacing)
        off = self._glyph_offsets.get(mark.glyph)
        if off is None:
            left, top, right, bottom = self._draw.textbbox((0, 0), mark.glyph, font=font)
            off = ((left + right) / 2, (top + bottom) / 2)
            self._glyph_offsets[mark.glyph] = off
        self._draw.text((mark.x - off[0], mark.y - off[1]), mark.glyph, fill=self.text_fill, font=font)
