from __future__ import annotations

import logging
import threading
from typing import Dict

from reply_orchestrator.config import settings

logger = logging.getLogger(__name__)


class SeenMessageIds:
    """Bounded set of processed message ids.

    Insertion order is kept; once the set grows past ``ceiling`` the oldest
    half is dropped.
    """

    def __init__(self, ceiling: int = settings.SEEN_IDS_CEILING) -> None:
        self.ceiling = max(2, ceiling)
        self._ids: Dict[str, None] = {}
        self._lock = threading.Lock()

    def add(self, message_id: str) -> bool:
        """Record *message_id*. Returns False if it was already seen."""
        with self._lock:
            if message_id in self._ids:
                return False
            self._ids[message_id] = None
            if len(self._ids) > self.ceiling:
                drop = len(self._ids) // 2
                for old in list(self._ids)[:drop]:
                    del self._ids[old]
                logger.debug("[DEDUP] Evicted %d oldest ids (kept %d)", drop, len(self._ids))
            return True

    def __contains__(self, message_id: object) -> bool:
        with self._lock:
            return message_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)
