"""Non-blocking scheduled send queue.

Automated replies are not sent inline: the orchestrator enqueues them with
a ``send_after_epoch`` computed from the pacing delay and the main loop
calls ``drain()`` every tick. Each due entry is re-checked right before
dispatch (pause state, then race arbitration), so a reply stays
cancellable until the moment it is handed to the transport.

The queue is persisted under the ``send_queue`` record key so pending
replies survive a restart; restored entries go through the same checks.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List

from reply_orchestrator.config import settings

from .digest import Outcome
from .interfaces import RecordStore

logger = logging.getLogger(__name__)

QUEUE_KEY = "send_queue"
AUDIT_LOGGER = "reply_orchestrator.audit"


@dataclass
class PendingReply:
    """A single automated reply awaiting delivery."""

    conversation_id: str
    text: str
    send_after_epoch: float
    # Owner activity at or after this moment cancels the reply.
    decided_at: float
    message_id: str = ""
    sender: str = ""
    inbound_text: str = ""
    is_group: bool = False
    was_urgent: bool = False
    ack: bool = False
    created_epoch: float = field(default_factory=time.time)
    attempts: int = 0

    @property
    def success_outcome(self) -> Outcome:
        return Outcome.ACKNOWLEDGED if self.ack else Outcome.RESPONDED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingReply":
        # Accept only known fields to avoid TypeError on schema evolution
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in d.items() if k in known}
        return cls(**filtered)


SettleFn = Callable[[PendingReply, Outcome], None]


class SendQueue:
    """Record-store-backed queue of scheduled automated replies."""

    def __init__(
        self,
        store: RecordStore,
        *,
        max_attempts: int = settings.SEND_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.max_attempts = max(1, max_attempts)
        self._clock = clock
        self._lock = threading.Lock()
        self._queue: List[PendingReply] = []
        self._audit = logging.getLogger(AUDIT_LOGGER)
        self._load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, entry: PendingReply) -> None:
        with self._lock:
            self._queue.append(entry)
            self._save_locked()
            depth = len(self._queue)
        logger.info(
            "[SEND_Q] Enqueued reply for %s (in %.1fs, queue_depth=%d)",
            entry.conversation_id,
            max(0.0, entry.send_after_epoch - self._clock()),
            depth,
        )

    def cancel_conversation(self, conversation_id: str, reason: str) -> List[PendingReply]:
        """Remove every pending reply for *conversation_id*; returns them."""
        with self._lock:
            cancelled = [e for e in self._queue if e.conversation_id == conversation_id]
            if not cancelled:
                return []
            self._queue = [e for e in self._queue if e.conversation_id != conversation_id]
            self._save_locked()
        for entry in cancelled:
            self._audit_cancel(entry, reason)
        logger.info("[SEND_Q] Cancelled %d pending reply(s) for %s (%s)", len(cancelled), conversation_id, reason)
        return cancelled

    def drain(
        self,
        send_fn: Callable[[str, str], bool],
        *,
        arbitrate_fn: Callable[[PendingReply], bool],
        is_paused_fn: Callable[[], bool],
        on_settled: SettleFn,
        max_per_tick: int = 10,
    ) -> int:
        """Dispatch all due replies. Returns number of replies sent.

        Args:
            send_fn: ``(conversation_id, text) -> bool``
            arbitrate_fn: False if the owner already answered.
            is_paused_fn: engine pause state, read at dispatch time.
            on_settled: called once per entry that leaves the queue.
            max_per_tick: Cap sends per call to avoid blocking too long.
        """
        now = self._clock()
        with self._lock:
            due = [e for e in self._queue if e.send_after_epoch <= now][:max_per_tick]
            if not due:
                return 0
            due_ids = {id(e) for e in due}
            self._queue = [e for e in self._queue if id(e) not in due_ids]
            self._save_locked()

        sent = 0
        retry: List[PendingReply] = []

        for entry in due:
            if is_paused_fn():
                self._audit_cancel(entry, "paused")
                on_settled(entry, Outcome.PAUSED)
                continue

            if not arbitrate_fn(entry):
                self._audit_cancel(entry, "owner_replied")
                on_settled(entry, Outcome.OWNER_REPLIED)
                continue

            success = False
            try:
                success = send_fn(entry.conversation_id, entry.text)
            except Exception as exc:
                logger.error("[SEND_Q] Send raised for %s: %s", entry.conversation_id, exc)

            if success:
                logger.info("[SEND_Q] Delivered to %s", entry.conversation_id)
                sent += 1
                on_settled(entry, entry.success_outcome)
                continue

            entry.attempts += 1
            if entry.attempts >= self.max_attempts:
                logger.error(
                    "[SEND_Q] Permanently failed for %s after %d attempt(s)",
                    entry.conversation_id,
                    entry.attempts,
                )
                on_settled(entry, Outcome.SEND_FAILED)
            else:
                # Re-schedule with exponential backoff (10s, 20s, 40s ...)
                backoff = 10.0 * (2 ** (entry.attempts - 1))
                entry.send_after_epoch = self._clock() + backoff
                retry.append(entry)
                logger.warning(
                    "[SEND_Q] Retry %d/%d for %s in %.0fs",
                    entry.attempts + 1,
                    self.max_attempts,
                    entry.conversation_id,
                    backoff,
                )

        if retry:
            with self._lock:
                self._queue.extend(retry)
                self._save_locked()

        return sent

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._queue)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _audit_cancel(self, entry: PendingReply, reason: str) -> None:
        self._audit.warning(
            "CANCELLED conversation=%s reason=%s message_id=%s len=%d text=%s",
            entry.conversation_id,
            reason,
            entry.message_id,
            len(entry.text),
            entry.text[:500],
        )

    def _save_locked(self) -> None:
        try:
            self._store.put(QUEUE_KEY, [e.to_dict() for e in self._queue])
        except Exception as exc:
            logger.error("[SEND_Q] Failed to persist queue: %s", exc)

    def _load(self) -> None:
        raw = self._store.get(QUEUE_KEY)
        if not isinstance(raw, list):
            return
        try:
            self._queue = [PendingReply.from_dict(d) for d in raw if isinstance(d, dict)]
        except TypeError as exc:
            logger.warning("[SEND_Q] Failed to load queue: %s", exc)
            self._queue = []
            return
        if self._queue:
            logger.info("[SEND_Q] Loaded %d pending replies from store", len(self._queue))
