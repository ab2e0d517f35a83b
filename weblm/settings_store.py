from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol

logger = logging.getLogger("weblm.settings")


class SettingsStore(Protocol):
    """Host persistent key-value settings store."""

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]: ...

    async def set(self, values: Dict[str, Any]) -> None: ...

    async def remove(self, keys: Iterable[str]) -> None: ...


class InMemorySettingsStore:
    """Volatile store; also stands in for the host's session-scoped storage."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: self._data[key] for key in keys if key in self._data}

    async def set(self, values: Dict[str, Any]) -> None:
        self._data.update(values)

    async def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)


class JsonFileSettingsStore:
    """Settings store persisted as a single JSON object on disk."""

    def __init__(self, path: Path) -> None:
        """Purpose: Initialize the store and hydrate values from disk.
        Inputs/Outputs: Input is a Path to the JSON file; no return value.
        Side Effects / State: Loads persisted settings into an in-memory dict.
        Dependencies: Calls _load; uses a JSON file on disk.
        Failure Modes: Missing file or JSON decode errors leave an empty store.
        If Removed: Provider config and feature flags do not survive restarts.
        Testing Notes: Set a value, build a new store on the same path, read it back.
        """
        # Keep the backing file path and hydrate cached values.
        self._path = path
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        # Read and decode persisted JSON if present.
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("settings file is not valid JSON path=%s", self._path)
            return
        if isinstance(data, dict):
            self._data = data

    def _persist(self) -> None:
        """Purpose: Write all settings to disk.
        Inputs/Outputs: Writes a JSON file; no return value.
        Side Effects / State: Creates the parent directory if needed.
        Dependencies: json.dumps and Path.write_text.
        Failure Modes: IO errors raise exceptions (not handled here).
        If Removed: Saved settings are lost on restart.
        Testing Notes: Ensure file content matches the in-memory dict.
        """
        # Persist the whole dict; writes are rare (explicit saves only).
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: self._data[key] for key in keys if key in self._data}

    async def set(self, values: Dict[str, Any]) -> None:
        self._data.update(values)
        self._persist()

    async def remove(self, keys: Iterable[str]) -> None:
        removed = False
        for key in keys:
            if key in self._data:
                del self._data[key]
                removed = True
        if removed:
            self._persist()
