# store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from palettes import Palette
from settings import HalftoneConfig, palette_fields

log = logging.getLogger("dotter.store")

DEFAULT_STORE_PATH = Path.home() / ".dotter" / "palettes.json"


# ----------------------------- Saved palettes ----------------------------- #

@dataclass(frozen=True)
class SavedPalette:
    """A named palette. `id` is opaque (uuid4 hex)."""
    id: str
    name: str
    palette: Palette

    @property
    def mode(self) -> str:
        return self.palette.mode

    def to_json(self) -> Dict[str, Any]:
        return {"name": self.name, "palette": {"colorMode": self.mode, **palette_fields(self.palette)}}

    @staticmethod
    def from_json(pid: str, data: Dict[str, Any]) -> "SavedPalette":
        fields = data.get("palette")
        if not isinstance(fields, dict):
            raise ValueError("palette must be an object")
        # palette keys go through the same validation as any config patch
        palette = HalftoneConfig().merged(fields).palette
        return SavedPalette(id=str(pid), name=str(data.get("name") or "untitled"), palette=palette)


class PaletteRepository(Protocol):
    def list(self) -> List[SavedPalette]: ...

    def save(self, name: str, palette: Palette, id: Optional[str] = None) -> SavedPalette: ...

    def delete(self, id: str) -> bool: ...


def _new_id() -> str:
    return uuid.uuid4().hex


# ----------------------------- Implementations ----------------------------- #

class MemoryPaletteStore:
    """Process-local store; insertion ordered."""

    def __init__(self) -> None:
        self._items: Dict[str, SavedPalette] = {}

    def list(self) -> List[SavedPalette]:
        return list(self._items.values())

    def save(self, name: str, palette: Palette, id: Optional[str] = None) -> SavedPalette:
        item = SavedPalette(id=id or _new_id(), name=name, palette=palette)
        self._items[item.id] = item
        return item

    def delete(self, id: str) -> bool:
        return self._items.pop(id, None) is not None


class JsonPaletteStore:
    """
    Palettes in one JSON file: {id: {"name": ..., "palette": {flat keys}}}.
    Every save/delete rewrites the file through a temp file + os.replace.
    Malformed entries are skipped with a warning.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else DEFAULT_STORE_PATH

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Could not read palette store %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            log.warning("Palette store %s is not a JSON object; ignoring it", self.path)
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".palettes-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def list(self) -> List[SavedPalette]:
        out: List[SavedPalette] = []
        for pid, entry in self._read().items():
            try:
                out.append(SavedPalette.from_json(pid, entry))
            except (AttributeError, TypeError, ValueError) as e:
                log.warning("Skipping malformed palette %r: %s", pid, e)
        return out

    def save(self, name: str, palette: Palette, id: Optional[str] = None) -> SavedPalette:
        item = SavedPalette(id=id or _new_id(), name=name, palette=palette)
        data = self._read()
        data[item.id] = item.to_json()
        self._write(data)
        log.info("Saved palette %r (%s) to %s", item.name, item.id, self.path)
        return item

    def delete(self, id: str) -> bool:
        data = self._read()
        if id not in data:
            return False
        del data[id]
        self._write(data)
        log.info("Deleted palette %s", id)
        return True
