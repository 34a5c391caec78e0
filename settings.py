"""
settings.py: halftone configuration snapshot, key/value merging, share tokens

What this does
--------------
• HalftoneConfig is a frozen snapshot: a render reads one and never sees a
  later edit halfway through a frame.
• Every setting has a flat camelCase key (the same keys the share token and
  the CLI/GUI use). `merged()` applies a patch of those keys, clamping ranges
  and ignoring unknown keys or values of the wrong type.
• Share tokens are base64(UTF-8 JSON of the flat keys). Importing merges the
  token into the current config; a broken token leaves it untouched.
• Named presets are small patches over the defaults.
"""
from __future__ import annotations

import base64
import json
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from palettes import Band, Palette, QuadPalette, SinglePalette, TextPalette
from sampling import Preprocess, clamp_spacing
from displace import DIRECTIONS, Displacement
from raster import LINE_DIRECTIONS

log = logging.getLogger("dotter.settings")

COLOR_MODES = ("single", "quad", "text")
MAX_THRESHOLD = 0.49


# ------------------------------- Snapshot -------------------------------- #

@dataclass(frozen=True)
class Grid:
    spacing: int = 12
    line_direction: str = "horizontal"


@dataclass(frozen=True)
class HalftoneConfig:
    """
    One palette per color mode is kept; `color_mode` picks the one that draws.
    Switching modes and back restores the earlier palette.
    """
    preprocess: Preprocess = field(default_factory=Preprocess)
    grid: Grid = field(default_factory=Grid)
    color_mode: str = "single"
    single: SinglePalette = field(default_factory=SinglePalette)
    quad: QuadPalette = field(default_factory=QuadPalette)
    text: TextPalette = field(default_factory=TextPalette)
    displacement: Displacement = field(default_factory=Displacement)
    background: str = "#ffffff"
    transparent: bool = False

    @property
    def mode(self) -> str:
        return self.color_mode

    @property
    def palette(self) -> Palette:
        return getattr(self, self.color_mode)

    def with_palette(self, palette: Palette) -> "HalftoneConfig":
        """Make `palette` the active one (its mode becomes the color mode)."""
        return replace(self, color_mode=palette.mode, **{palette.mode: palette})

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "contrastBoost": self.preprocess.contrast,
            "thresholdClamp": self.preprocess.threshold,
            "invert": self.preprocess.invert,
            "dotSpacing": self.grid.spacing,
            "lineDirection": self.grid.line_direction,
            "colorMode": self.color_mode,
            "backgroundColor": self.background,
            "transparentBackground": self.transparent,
            "explodeStrength": self.displacement.strength,
            "explodeDirection": self.displacement.direction,
            "noiseVariation": self.displacement.jitter,
        }
        for palette in (self.single, self.quad, self.text):
            out.update(palette_fields(palette))
        return out

    def merged(self, patch: Mapping[str, Any]) -> "HalftoneConfig":
        """New config with the recognized keys of `patch` applied (validated)."""
        unknown = sorted(k for k in patch if k not in CONFIG_KEYS)
        if unknown:
            log.debug("Ignoring unknown config keys: %s", ", ".join(unknown))
        v = _FieldReader(self.to_dict(), patch)

        pre = Preprocess(
            contrast=v.positive("contrastBoost"),
            threshold=min(max(v.number("thresholdClamp"), 0.0), MAX_THRESHOLD),
            invert=v.flag("invert"),
        )
        grid = Grid(
            spacing=clamp_spacing(v.number("dotSpacing")),
            line_direction=v.choice("lineDirection", LINE_DIRECTIONS),
        )
        disp = Displacement(
            strength=v.number("explodeStrength"),
            direction=v.choice("explodeDirection", DIRECTIONS),
            jitter=max(0.0, v.number("noiseVariation")),
        )
        return HalftoneConfig(
            preprocess=pre,
            grid=grid,
            color_mode=v.choice("colorMode", COLOR_MODES),
            single=_single_from(v),
            quad=_quad_from(v),
            text=_text_from(v),
            displacement=disp,
            background=v.text("backgroundColor"),
            transparent=v.flag("transparentBackground"),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HalftoneConfig":
        return cls().merged(data)


# --------------------------- Palette <-> keys ---------------------------- #

def palette_fields(palette: Palette) -> Dict[str, Any]:
    if isinstance(palette, QuadPalette):
        return {
            "quadColors": [b.color for b in palette.bands],
            "quadSizes": [b.size for b in palette.bands],
            "quadShapes": [b.shape for b in palette.bands],
        }
    if isinstance(palette, TextPalette):
        return {
            "textCharacters": palette.characters,
            "textFont": palette.font,
            "textWeightMapping": palette.weight_mapping,
        }
    return {
        "dotColor": palette.color,
        "dotSizeMin": palette.size_min,
        "dotSizeMax": palette.size_max,
        "dotShape": palette.shape,
    }


def _unit(x: float) -> float:
    return min(max(x, 0.0), 1.0)


def _single_from(v: "_FieldReader") -> SinglePalette:
    size_min = max(0.0, v.number("dotSizeMin"))
    return SinglePalette(
        color=v.text("dotColor"),
        size_min=size_min,
        size_max=max(size_min, v.number("dotSizeMax")),
        shape=_unit(v.number("dotShape")),
    )


def _quad_from(v: "_FieldReader") -> QuadPalette:
    colors = v.texts("quadColors", 4)
    sizes = v.numbers("quadSizes", 4)
    shapes = v.numbers("quadShapes", 4)
    return QuadPalette(tuple(Band(c, max(0.0, s), _unit(h)) for c, s, h in zip(colors, sizes, shapes)))


def _text_from(v: "_FieldReader") -> TextPalette:
    return TextPalette(
        characters=v.glyphs("textCharacters"),
        font=v.text("textFont"),
        weight_mapping=v.flag("textWeightMapping"),
    )


CONFIG_KEYS = frozenset(HalftoneConfig().to_dict())


class _FieldReader:
    """Reads patched values, falling back to the current value when invalid."""

    def __init__(self, current: Dict[str, Any], patch: Mapping[str, Any]) -> None:
        self.current = current
        self.patch = patch

    def _reject(self, key: str, value: Any, why: str) -> Any:
        log.warning("Ignoring %s=%r (%s)", key, value, why)
        return self.current[key]

    @staticmethod
    def _to_float(value: Any) -> Optional[float]:
        if isinstance(value, bool):
            return None
        try:
            out = float(value)
        except (TypeError, ValueError):
            return None
        return out if math.isfinite(out) else None

    def number(self, key: str) -> float:
        if key not in self.patch:
            return self.current[key]
        out = self._to_float(self.patch[key])
        if out is None:
            return self._reject(key, self.patch[key], "not a finite number")
        return out

    def positive(self, key: str) -> float:
        out = self.number(key)
        if out <= 0:
            return self._reject(key, out, "must be > 0")
        return out

    def flag(self, key: str) -> bool:
        if key not in self.patch:
            return self.current[key]
        value = self.patch[key]
        if isinstance(value, bool):
            return value
        s = str(value).strip().lower()
        if s in ("true", "1", "yes", "on"):
            return True
        if s in ("false", "0", "no", "off"):
            return False
        return self._reject(key, value, "not a boolean")

    def choice(self, key: str, allowed: Sequence[str]) -> str:
        if key not in self.patch:
            return self.current[key]
        s = str(self.patch[key]).strip().lower()
        if s not in allowed:
            return self._reject(key, self.patch[key], f"expected one of {', '.join(allowed)}")
        return s

    def text(self, key: str) -> str:
        if key not in self.patch:
            return self.current[key]
        value = self.patch[key]
        if not isinstance(value, str):
            return self._reject(key, value, "not a string")
        return value

    def glyphs(self, key: str) -> str:
        if key not in self.patch:
            return self.current[key]
        value = self.patch[key]
        if isinstance(value, (list, tuple)) and all(isinstance(c, str) for c in value):
            value = "".join(value)
        if not isinstance(value, str) or not value:
            return self._reject(key, value, "need at least one character")
        return value

    def _items(self, key: str, n: int) -> Optional[List[Any]]:
        value = self.patch[key]
        if isinstance(value, str):
            value = [p.strip() for p in value.split(",")]
        if not isinstance(value, (list, tuple)) or len(value) != n:
            return None
        return list(value)

    def numbers(self, key: str, n: int) -> List[float]:
        if key not in self.patch:
            return list(self.current[key])
        items = self._items(key, n)
        nums = [self._to_float(i) for i in items] if items is not None else [None]
        if any(x is None for x in nums):
            return list(self._reject(key, self.patch[key], f"expected {n} numbers"))
        return nums

    def texts(self, key: str, n: int) -> List[str]:
        if key not in self.patch:
            return list(self.current[key])
        items = self._items(key, n)
        if items is None or not all(isinstance(i, str) for i in items):
            return list(self._reject(key, self.patch[key], f"expected {n} colors"))
        return items


# ----------------------------- Share tokens ------------------------------ #

class ConfigTokenError(ValueError):
    pass


def export_token(config: HalftoneConfig) -> str:
    raw = json.dumps(config.to_dict(), separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def import_token(current: HalftoneConfig, token: str) -> HalftoneConfig:
    try:
        raw = base64.b64decode(str(token).strip(), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except ValueError as e:  # binascii.Error, UnicodeDecodeError, JSONDecodeError
        raise ConfigTokenError(f"Invalid configuration code: {e}") from e
    if not isinstance(data, dict):
        raise ConfigTokenError("Invalid configuration code: expected a JSON object")
    return current.merged(data)


# -------------------------------- Presets -------------------------------- #

@dataclass(frozen=True)
class Preset:
    extras: Dict[str, Any]
    description: str = ""


PRESETS: Dict[str, Preset] = {
    "classic": Preset(
        extras=dict(invert=True, dotSizeMin=0, dotSizeMax=14),
        description="Black ink on white paper, darker areas get bigger dots.",
    ),
    "quad_grey": Preset(
        extras=dict(colorMode="quad"),
        description="Four grey bands; darkest band has the largest dots.",
    ),
    "pills": Preset(
        extras=dict(invert=True, dotShape=0.8, dotSpacing=10, lineDirection="horizontal"),
        description="Dots stretched into horizontal round-capped lines.",
    ),
    "ascii": Preset(
        extras=dict(colorMode="text", dotSpacing=10, contrastBoost=1.4, textWeightMapping=True),
        description="Character ramp picked by darkness.",
    ),
    "checker_text": Preset(
        extras=dict(colorMode="text", textCharacters="01", textWeightMapping=False),
        description="Alternating glyphs over the grid, brightness ignored.",
    ),
    "burst": Preset(
        extras=dict(invert=True, explodeDirection="radial", explodeStrength=40, noiseVariation=4),
        description="Marks thrown outward from the center.",
    ),
    "zoom": Preset(
        extras=dict(invert=True, explodeDirection="planar", explodeStrength=-20),
        description="Whole grid scaled away from the center.",
    ),
}


def list_presets() -> List[str]:
    return sorted(PRESETS.keys())


def describe_preset(name: str) -> str:
    key = (name or "").strip().lower()
    if key not in PRESETS:
        return f"(unknown preset: {name})"
    return f"{key}: {PRESETS[key].description or '(no description)'}"


def preset_config(name: str, base: Optional[HalftoneConfig] = None) -> HalftoneConfig:
    key = (name or "").strip().lower()
    if key not in PRESETS:
        raise KeyError(f"Unknown preset '{name}'. Available: {', '.join(list_presets())}")
    return (base or HalftoneConfig()).merged(PRESETS[key].extras)


def config_from_extras(extras: Mapping[str, Any], base: Optional[HalftoneConfig] = None) -> HalftoneConfig:
    """
    Build a config from loose key/values (CLI --extra, generator kwargs).
    Order: base -> preset=NAME -> config=TOKEN -> remaining keys.
    """
    rest = dict(extras)
    preset = rest.pop("preset", None)
    token = rest.pop("config", None)

    cfg = base or HalftoneConfig()
    if preset:
        cfg = preset_config(str(preset), cfg)
    if token:
        try:
            cfg = import_token(cfg, str(token))
        except ConfigTokenError as e:
            log.warning("%s (ignored)", e)

    unused = sorted(k for k in rest if k not in CONFIG_KEYS)
    if unused:
        log.info("Unused extras (not a halftone setting): %s", ", ".join(unused))
    return cfg.merged(rest)
