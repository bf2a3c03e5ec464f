"""File-based instance lock so only one engine answers a Messages account.

Uses ``fcntl.flock`` (the iMessage transport is macOS-only). The lock is
held for the lifetime of the returned context manager; a second process
fails fast with ``InstanceAlreadyRunning``.
"""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

_LOCK_FILENAME = "reply_orchestrator.lock"


class InstanceAlreadyRunning(RuntimeError):
    """Raised when another engine instance holds the lock."""


@contextmanager
def acquire_instance_lock(lock_dir: Path) -> Iterator[Path]:
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path = lock_dir / _LOCK_FILENAME

    fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            owner_pid = lock_path.read_text(encoding="utf-8").strip() or "unknown"
            raise InstanceAlreadyRunning(
                f"Another reply orchestrator is already running (pid={owner_pid}). Lock file: {lock_path}"
            ) from None

        # PID for diagnostics
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.info("[LOCK] Instance lock acquired: %s (pid=%s)", lock_path, os.getpid())
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            lock_path.unlink(missing_ok=True)
            logger.info("[LOCK] Instance lock released.")
    finally:
        os.close(fd)
