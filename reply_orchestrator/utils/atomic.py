"""Atomic JSON persistence shared by every file-backed component.

The record store, the send queue and the watcher cursor all go through
``atomic_write_json`` so a crash mid-write never leaves a truncated file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_json(
    path: Path,
    data: Any,
    *,
    indent: int = 2,
    ensure_ascii: bool = False,
) -> None:
    """Serialize *data* to a ``.tmp`` sibling, then ``os.replace`` it over *path*.

    Parent directories are created on demand. On failure the temporary file is
    removed and the original is left untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")

    try:
        tmp.write_text(
            json.dumps(data, indent=indent, ensure_ascii=ensure_ascii, default=str),
            encoding="utf-8",
        )
        os.replace(str(tmp), str(path))
    except Exception:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove partial file %s", tmp)
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*; missing or unreadable files yield *default*."""
    path = Path(path)
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Unreadable JSON at %s (%s); using default", path, exc)
        return default
