# Shared fixtures. The modules live flat at the repo root; put it on sys.path so
# the tests run from a fresh clone without installing.
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def solid():
    """solid(w, h, rgba) -> RGBA Pillow image of one color."""
    def make(w, h, rgba=(0, 0, 0, 255)):
        return Image.new("RGBA", (w, h), tuple(rgba))
    return make


@pytest.fixture
def noise_rgba():
    """Random RGBA pixels (alpha included) from a fixed seed."""
    def make(h, w, seed=0):
        return np.random.default_rng(seed).integers(0, 256, size=(h, w, 4), dtype=np.uint8)
    return make


class SequenceRng:
    """Stands in for a Generator: .random() returns the given values in order."""

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    def random(self):
        self.calls += 1
        return self.values.pop(0) if self.values else 0.5


@pytest.fixture
def seq_rng():
    return SequenceRng
