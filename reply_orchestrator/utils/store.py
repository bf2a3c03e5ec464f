"""Keyed record stores used for same-day continuity across restarts."""

from __future__ import annotations

import copy
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict

from .atomic import atomic_write_json, read_json

logger = logging.getLogger(__name__)

_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class JsonFileStore:
    """One JSON file per key under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path_for(self, key: str) -> Path:
        safe = _UNSAFE_KEY_RE.sub("_", key.strip())
        if not safe:
            raise ValueError("Record key must not be empty")
        return self._dir / f"{safe}.json"

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return read_json(self._path_for(key), default)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            atomic_write_json(self._path_for(key), value)


class MemoryStore:
    """In-process store; values are deep-copied so callers cannot alias state."""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)
