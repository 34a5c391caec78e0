# sampling.py: grid walk + brightness extraction
# -----------------------------------------------------------------------------
# A frame is an HxWx4 uint8 RGBA array (PixelBuffer). The halftone pipeline
# visits it on a square grid and reduces each visited pixel to one brightness
# value in [0, 1]:
#
#   alpha < 50                     -> sample rejected (no mark)
#   luma = (.299 r + .587 g + .114 b) / 255
#   invert                         -> 1 - luma
#   contrast                       -> (luma - .5) * contrast + .5
#   threshold                      -> snap below t to 0, above 1 - t to 1
#   clamp [0, 1]
#
# Both extract_brightness() (one sample) and brightness_grid() (every grid
# point at once) go through the same float64 numpy expression.
# -----------------------------------------------------------------------------

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union

import numpy as np
from PIL import Image

__all__ = [
    "ALPHA_CUTOFF", "MIN_SPACING", "PixelBuffer", "Sample", "Preprocess", "SampleGrid",
    "as_buffer", "clamp_spacing", "read_sample", "extract_brightness", "brightness_grid",
]

ALPHA_CUTOFF = 50
MIN_SPACING = 2


def clamp_spacing(spacing) -> int:
    try:
        s = int(spacing)
    except (TypeError, ValueError, OverflowError):
        s = MIN_SPACING
    return max(MIN_SPACING, s)


# ============================ pixel buffers ============================

@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """Interleaved 8-bit RGBA samples, shape (height, width, 4)."""
    data: np.ndarray

    @property
    def width(self) -> int:
        return int(self.data.shape[1]) if self.data.ndim == 3 else 0

    @property
    def height(self) -> int:
        return int(self.data.shape[0]) if self.data.ndim == 3 else 0

    @property
    def empty(self) -> bool:
        return self.width == 0 or self.height == 0

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        return cls(np.asarray(img.convert("RGBA"), dtype=np.uint8))

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "PixelBuffer":
        a = np.asarray(arr)
        if a.dtype != np.uint8:
            a = np.clip(a, 0, 255).astype(np.uint8)
        if a.ndim == 2:
            a = np.repeat(a[..., None], 3, axis=2)
        if a.ndim != 3 or a.shape[2] not in (3, 4):
            raise ValueError(f"Expected HxW, HxWx3 or HxWx4 pixels, got shape {a.shape}")
        if a.shape[2] == 3:
            alpha = np.full(a.shape[:2] + (1,), 255, np.uint8)
            a = np.concatenate([a, alpha], axis=2)
        return cls(np.ascontiguousarray(a))

    @classmethod
    def from_bytes(cls, raw: bytes, width: int, height: int) -> "PixelBuffer":
        w, h = max(0, int(width)), max(0, int(height))
        if w == 0 or h == 0:
            return cls(np.zeros((h, w, 4), np.uint8))
        return cls(np.frombuffer(raw, np.uint8, count=w * h * 4).reshape(h, w, 4))


def as_buffer(src: Union[None, PixelBuffer, Image.Image, np.ndarray]) -> Optional[PixelBuffer]:
    if src is None or isinstance(src, PixelBuffer):
        return src
    if isinstance(src, Image.Image):
        return PixelBuffer.from_image(src)
    return PixelBuffer.from_array(src)


# ============================ grid walk ============================

class SampleGrid:
    """
    Row-major (x, y) grid coordinates, 0 <= x < width and 0 <= y < height,
    stepping by spacing. Iterating again restarts from (0, 0).
    """

    def __init__(self, width: int, height: int, spacing: int) -> None:
        self.width = max(0, int(width))
        self.height = max(0, int(height))
        self.spacing = clamp_spacing(spacing)

    @property
    def cols(self) -> int:
        return -(-self.width // self.spacing)

    @property
    def rows(self) -> int:
        return -(-self.height // self.spacing)

    def __len__(self) -> int:
        return self.cols * self.rows

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        s = self.spacing
        for y in range(0, self.height, s):
            for x in range(0, self.width, s):
                yield x, y


# ============================ brightness ============================

@dataclass(frozen=True)
class Sample:
    x: int
    y: int
    r: int
    g: int
    b: int
    a: int = 255


@dataclass(frozen=True)
class Preprocess:
    contrast: float = 1.2
    threshold: float = 0.1
    invert: bool = False


def read_sample(buf: PixelBuffer, x: int, y: int) -> Sample:
    r, g, b, a = (int(v) for v in buf.data[y, x])
    return Sample(x, y, r, g, b, a)


def _normalize(rgba: np.ndarray, pre: Preprocess) -> np.ndarray:
    """Brightness of (..., 4) RGBA pixels as float64; NaN where rejected."""
    px = np.asarray(rgba)
    luma = (0.299 * px[..., 0].astype(np.float64)
            + 0.587 * px[..., 1].astype(np.float64)
            + 0.114 * px[..., 2].astype(np.float64)) / 255
    if pre.invert:
        luma = 1.0 - luma
    if pre.contrast != 1:
        luma = (luma - 0.5) * pre.contrast + 0.5
    luma = np.where(luma < pre.threshold, 0.0, luma)
    luma = np.where(luma > (1 - pre.threshold), 1.0, luma)
    luma = np.clip(luma, 0.0, 1.0)
    return np.where(px[..., 3] < ALPHA_CUTOFF, np.nan, luma)


def extract_brightness(sample: Sample, pre: Preprocess) -> Optional[float]:
    """Normalized brightness in [0, 1], or None for a (near) transparent sample."""
    v = float(_normalize(np.array([sample.r, sample.g, sample.b, sample.a]), pre))
    return None if math.isnan(v) else v


def brightness_grid(buf: PixelBuffer, spacing: int, pre: Preprocess) -> np.ndarray:
    """(rows, cols) float64 brightness at every grid point; NaN where rejected."""
    s = clamp_spacing(spacing)
    return _normalize(buf.data[::s, ::s], pre)
