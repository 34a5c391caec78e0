# displace.py: per-mark displacement fields with random jitter
# -----------------------------------------------------------------------------
# Moves each resolved mark away from its grid position before it is drawn.
#
#   radial      push along the ray from the frame center; magnitude grows with
#               the square of the normalized distance (corners move the most)
#   horizontal  push right by strength * 5 * (1 - brightness)
#   vertical    push down by the same amount
#   planar      uniform scale toward (+strength) / away from (-strength) the
#               center; strength / 100 is the compression factor
#
# Jitter adds independent uniform noise in [-jitter/2, jitter/2) on both axes
# in every mode. The random source is injected so a seeded Generator replays
# the same frame.
#
# Examples (CLI):
#   python main.py run --url in.jpg --out out.png \
#     --extra explodeDirection=radial explodeStrength=40 noiseVariation=4
#   python main.py run --url in.jpg --out out.png \
#     --extra explodeDirection=planar explodeStrength=-25
# -----------------------------------------------------------------------------

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

__all__ = ["DIRECTIONS", "Displacement", "DisplacementField"]

DIRECTIONS = ("radial", "horizontal", "vertical", "planar")


@dataclass(frozen=True)
class Displacement:
    strength: float = 0.0
    direction: str = "radial"
    jitter: float = 0.0

    @property
    def active(self) -> bool:
        return self.strength != 0 or self.jitter > 0


class DisplacementField:
    """Displacement for one frame: fixed center and corner distance, shared rng."""

    def __init__(
        self,
        cfg: Displacement,
        width: int,
        height: int,
        *,
        rng=None,
        seed: Optional[int] = None,
    ) -> None:
        self.cfg = cfg
        self.cx = width / 2
        self.cy = height / 2
        self.max_dist = math.sqrt(self.cx * self.cx + self.cy * self.cy) or 1.0
        self.shift = cfg.strength * 5
        # anything with .random() -> float in [0, 1)
        self.rng = rng if rng is not None else np.random.default_rng(seed)

    @property
    def active(self) -> bool:
        return self.cfg.active

    def _noise(self) -> Tuple[float, float]:
        j = self.cfg.jitter
        nx = (float(self.rng.random()) - 0.5) * j
        ny = (float(self.rng.random()) - 0.5) * j
        return nx, ny

    def apply(self, x: float, y: float, brightness: float) -> Tuple[float, float]:
        if not self.active:
            return float(x), float(y)

        nx, ny = self._noise()
        mode = self.cfg.direction
        dx = x - self.cx
        dy = y - self.cy

        if mode == "radial":
            dist = math.sqrt(dx * dx + dy * dy)
            norm_dist = dist / self.max_dist
            push = self.shift * (norm_dist * norm_dist)
            div = dist or 1.0
            px = x + (dx / div) * push + nx
            py = y + (dy / div) * push + ny
        elif mode == "horizontal":
            px = x + self.shift * (1 - brightness) + nx
            py = y + ny
        elif mode == "vertical":
            px = x + nx
            py = y + self.shift * (1 - brightness) + ny
        elif mode == "planar":
            compression = self.cfg.strength / 100
            px = x - dx * compression + nx
            py = y - dy * compression + ny
        else:
            px, py = x + nx, y + ny

        if not (math.isfinite(px) and math.isfinite(py)):
            return float(x), float(y)
        return px, py
