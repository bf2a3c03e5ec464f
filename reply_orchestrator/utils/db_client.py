from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


def _is_locked_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database schema is locked" in message


def _open_with_retries(uri: str, *, retries: int, backoff_seconds: float) -> sqlite3.Connection:
    for attempt in range(1, retries + 1):
        try:
            return sqlite3.connect(uri, uri=True, check_same_thread=False, timeout=1.0)
        except sqlite3.OperationalError as exc:
            if not _is_locked_error(exc) or attempt >= retries:
                raise
            logger.warning("Messages db locked; retrying (%s/%s)", attempt, retries)
            time.sleep(backoff_seconds * attempt)
    raise sqlite3.OperationalError("Messages db could not be opened")


@contextmanager
def connect_readonly(
    db_path: Path,
    *,
    retries: int = 3,
    backoff_seconds: float = 0.35,
) -> Iterator[sqlite3.Connection]:
    """Read-only SQLite connection with retries for the macOS Messages lock."""

    if not db_path.exists():
        raise FileNotFoundError(f"Messages db not found: {db_path}")

    conn = _open_with_retries(
        f"file:{db_path.as_posix()}?mode=ro",
        retries=max(1, retries),
        backoff_seconds=backoff_seconds,
    )
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def fetch_all(conn: sqlite3.Connection, query: str, params: tuple = ()) -> list[sqlite3.Row]:
    return list(conn.execute(query, params).fetchall())
