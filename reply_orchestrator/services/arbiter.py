"""Race arbitration between automated replies and the human owner.

Before an automated reply is dispatched, the arbiter checks whether the
owner has written in the same conversation since the reply was decided.
Two sources are consulted: owner messages the engine itself observed in
the inbound stream, then the transport's own history. A transport lookup
that fails or times out counts as "no conflict".
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, List, Optional, Tuple

from reply_orchestrator.config import settings

from .interfaces import ChatActivity

logger = logging.getLogger(__name__)

QueryFn = Callable[[str, float], List[ChatActivity]]

# Own sends older than this are no longer matched as echoes.
_ECHO_TTL_SECONDS = 15 * 60
# Transport timestamps for our own sends lag the bridge call slightly.
_ECHO_SKEW_SECONDS = 5.0


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").split()).lower()


class RaceArbiter:
    def __init__(
        self,
        query_fn: Optional[QueryFn] = None,
        *,
        timeout: float = settings.ARBITER_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._query_fn = query_fn
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        # conversation_id -> latest owner-authored timestamp seen inbound
        self._owner_seen: Dict[str, float] = {}
        # conversation_id -> [(sent_at, normalized_text)]
        self._own_sends: Dict[str, List[Tuple[float, str]]] = {}
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="race-arbiter")

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def record_own_send(self, conversation_id: str, text: str, sent_at: Optional[float] = None) -> None:
        ts = sent_at if sent_at is not None else self._clock()
        with self._lock:
            sends = self._own_sends.setdefault(conversation_id, [])
            sends.append((ts, _normalize(text)))
            cutoff = self._clock() - _ECHO_TTL_SECONDS
            self._own_sends[conversation_id] = [s for s in sends if s[0] >= cutoff]

    def is_own_echo(self, conversation_id: str, text: Optional[str], timestamp: float) -> bool:
        """True if an owner-authored row is really a send the engine made."""
        normalized = _normalize(text)
        if not normalized:
            return False
        with self._lock:
            for sent_at, sent_text in self._own_sends.get(conversation_id, []):
                if sent_text == normalized and timestamp >= sent_at - _ECHO_SKEW_SECONDS:
                    return True
        return False

    def observe_owner_message(self, conversation_id: str, timestamp: float, text: Optional[str] = None) -> bool:
        """Record an owner message seen in the inbound stream.

        Returns False when the message is an echo of an automated send.
        """
        if self.is_own_echo(conversation_id, text, timestamp):
            logger.debug("[RACE] Ignoring echo of own send in %s", conversation_id)
            return False
        with self._lock:
            prev = self._owner_seen.get(conversation_id, 0.0)
            self._owner_seen[conversation_id] = max(prev, timestamp)
        logger.info("[RACE] Owner activity observed in %s", conversation_id)
        return True

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------

    def _query(self, conversation_id: str, since: float) -> List[ChatActivity] | None:
        if self._query_fn is None:
            return []
        future = self._executor.submit(self._query_fn, conversation_id, since)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("[RACE] History lookup for %s timed out after %.1fs; sending", conversation_id, self.timeout)
        except Exception as exc:
            logger.warning("[RACE] History lookup for %s failed (%s); sending", conversation_id, exc)
        return None

    def arbitrate(self, conversation_id: str, decision_ts: float, candidate: str = "") -> bool:
        """Return True if the candidate reply may be sent."""
        with self._lock:
            seen = self._owner_seen.get(conversation_id)
        if seen is not None and seen >= decision_ts:
            logger.info("[RACE] Owner already replied in %s; dropping automated reply", conversation_id)
            return False

        activity = self._query(conversation_id, decision_ts)
        if not activity:
            return True

        for item in activity:
            if not item.author_is_owner or item.timestamp < decision_ts:
                continue
            if self.is_own_echo(conversation_id, item.text, item.timestamp):
                continue
            logger.info("[RACE] Owner reply found in %s history; dropping automated reply", conversation_id)
            return False
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
