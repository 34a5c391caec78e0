from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import ClassVar, Dict, List, Optional, Tuple, Union

import numpy as np
from PIL import Image

log = logging.getLogger("dotter.palettes")

Color = Tuple[int, int, int]

INK: Color = (0, 0, 0)
PAPER: Color = (255, 255, 255)


# =============== Registry ===============
class GeneratorRegistry:
    def __init__(self) -> None:
        self._by_name: Dict[str, type[BaseGenerator]] = {}

    def register(self, name: str, cls: type["BaseGenerator"]) -> None:
        key = name.strip().lower()
        self._by_name[key] = cls

    def names(self) -> list[str]:
        return sorted(self._by_name.keys())

    def get(self, name: str) -> Optional[type["BaseGenerator"]]:
        return self._by_name.get(name.strip().lower())

    def create(self, name: str, **kwargs) -> "BaseGenerator":
        cls = self.get(name)
        if cls is None:
            raise KeyError(f"Unknown generator '{name}'. Available: {', '.join(self.names()) or '(none)'}")
        return cls(**kwargs)


REGISTRY = GeneratorRegistry()


# =============== Base & common utils ===============
@dataclass
class BaseGenerator:
    seed: Optional[int] = None

    @staticmethod
    def get_params() -> List[Dict]:
        return []

    def generate(self, input_image: Image.Image, **kwargs) -> Image.Image:  # pragma: no cover
        raise NotImplementedError


def _rng(seed: Optional[int]) -> np.random.Generator:
    return np.random.default_rng(seed if seed is not None else np.random.SeedSequence().entropy)


_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


@lru_cache(maxsize=512)
def parse_hex_color(code: str, default: Color = INK) -> Color:
    """'#rgb' / '#rrggbb' (hash optional) -> (r, g, b). Anything else -> default."""
    m = _HEX_RE.match(str(code).strip())
    if not m:
        log.debug("Malformed color %r, falling back to %s", code, to_hex(default))
        return default
    s = m.group(1)
    if len(s) == 3:
        s = "".join([c * 2 for c in s])
    return int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16)


def to_hex(color: Color) -> str:
    r, g, b = color
    return f"#{r:02x}{g:02x}{b:02x}"


# =============== Marks ===============
@dataclass
class Mark:
    """One resolved mark. Graphic marks carry radius/shape/color, text marks a glyph."""
    x: float
    y: float
    radius: float = 0.0
    shape: float = 0.0
    color: Color = INK
    glyph: Optional[str] = None


# =============== Palette modes ===============
@dataclass(frozen=True)
class Band:
    color: str = "#000000"
    size: float = 0.0
    shape: float = 0.0


DEFAULT_BANDS: Tuple[Band, Band, Band, Band] = (
    Band("#000000", 12.0, 0.0),
    Band("#404040", 8.0, 0.0),
    Band("#737373", 4.0, 0.0),
    Band("#d4d4d4", 2.0, 0.0),
)


def band_index(brightness: float) -> int:
    # strict '>' so exact boundaries fall to the lower band
    if brightness > 0.75:
        return 3
    if brightness > 0.50:
        return 2
    if brightness > 0.25:
        return 1
    return 0


@dataclass(frozen=True)
class SinglePalette:
    """One ink; dot diameter runs linearly from size_min (black) to size_max (white)."""
    mode: ClassVar[str] = "single"

    color: str = "#000000"
    size_min: float = 2.0
    size_max: float = 14.0
    shape: float = 0.0

    def resolve(self, brightness: float, x: int, y: int, spacing: int) -> Optional[Mark]:
        radius = (self.size_min + brightness * (self.size_max - self.size_min)) / 2
        if radius <= 0.5:
            return None
        return Mark(x, y, radius, self.shape, parse_hex_color(self.color, INK))


@dataclass(frozen=True)
class QuadPalette:
    """Four brightness bands, darkest first, each with its own color/size/shape."""
    mode: ClassVar[str] = "quad"

    bands: Tuple[Band, Band, Band, Band] = DEFAULT_BANDS

    def resolve(self, brightness: float, x: int, y: int, spacing: int) -> Optional[Mark]:
        band = self.bands[band_index(brightness)]
        radius = band.size / 2
        if radius <= 0.5:
            return None
        return Mark(x, y, radius, band.shape, parse_hex_color(band.color, INK))


@dataclass(frozen=True)
class TextPalette:
    """
    Glyph marks. With weight_mapping the character ramp is indexed by darkness
    (later characters for darker samples); without it the glyphs cycle over
    grid cells as a checkerboard and brightness is ignored.
    """
    mode: ClassVar[str] = "text"

    characters: str = " .:-=+*#%@"
    font: str = "DejaVuSansMono.ttf"
    weight_mapping: bool = True

    def glyph_index(self, brightness: float, x: int, y: int, spacing: int) -> int:
        n = len(self.characters)
        if self.weight_mapping:
            idx = math.floor((1 - brightness) * (n - 1))
            return min(max(idx, 0), n - 1)
        return (x // spacing + y // spacing) % n

    def resolve(self, brightness: float, x: int, y: int, spacing: int) -> Optional[Mark]:
        if not self.characters:
            return None
        return Mark(x, y, glyph=self.characters[self.glyph_index(brightness, x, y, spacing)])


Palette = Union[SinglePalette, QuadPalette, TextPalette]

PALETTE_MODES: Dict[str, type] = {
    SinglePalette.mode: SinglePalette,
    QuadPalette.mode: QuadPalette,
    TextPalette.mode: TextPalette,
}


def resolve_mark(palette: Palette, brightness: float, x: int, y: int, spacing: int) -> Optional[Mark]:
    """Brightness + grid position -> Mark, or None when the sample produces no mark."""
    return palette.resolve(brightness, x, y, spacing)
