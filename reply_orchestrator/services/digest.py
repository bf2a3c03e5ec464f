"""Per-day message digest.

Every processed message lands here exactly once with its outcome. The
digest is persisted under the ``daily_digest`` key so a restart keeps the
same day's history; the first ``record``/``summarize`` on a new owner-local
day replaces it with an empty one.
"""

from __future__ import annotations

import datetime
import logging
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from reply_orchestrator.config import settings

from .interfaces import RecordStore

logger = logging.getLogger(__name__)

DIGEST_KEY = "daily_digest"
PREVIEW_LENGTH = 100
SENDER_DISPLAY_MAX = 15
SENDER_DISPLAY_TRUNCATE = 12
RULE = "━" * 20


class Outcome(str, Enum):
    RESPONDED = "responded"
    ACKNOWLEDGED = "acknowledged"
    SPAM = "spam"
    INVITE = "invite"
    NOT_ADDRESSED = "not_addressed"
    PAUSED = "paused"
    RATE_LIMITED = "rate_limited"
    OWNER_REPLIED = "owner_replied"
    GENERATION_FAILED = "generation_failed"
    SEND_FAILED = "send_failed"
    BLOCKED = "blocked"
    DISABLED = "disabled"
    ATTACHMENT = "attachment"
    ERROR = "error"

    @property
    def did_respond(self) -> bool:
        return self in (Outcome.RESPONDED, Outcome.ACKNOWLEDGED)


def make_preview(text: str) -> str:
    text = text or ""
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


@dataclass
class DigestEntry:
    timestamp: float
    sender: str
    text_preview: str
    was_urgent: bool
    did_respond: bool
    conversation_id: str
    is_group: bool
    outcome: str = ""

    @classmethod
    def build(
        cls,
        *,
        sender: str,
        text: str,
        conversation_id: str,
        is_group: bool,
        was_urgent: bool,
        outcome: Outcome,
        timestamp: Optional[float] = None,
    ) -> "DigestEntry":
        return cls(
            timestamp=timestamp if timestamp is not None else time.time(),
            sender=sender,
            text_preview=make_preview(text),
            was_urgent=was_urgent,
            did_respond=outcome.did_respond,
            conversation_id=conversation_id,
            is_group=is_group,
            outcome=outcome.value,
        )

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DigestEntry":
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in d.items() if k in known})


def _empty_stats() -> Dict[str, int]:
    return {
        "total_messages": 0,
        "unique_senders": 0,
        "urgent_count": 0,
        "responses": 0,
        "group_messages": 0,
        "dm_messages": 0,
        "spam_blocked": 0,
        "owner_replied": 0,
    }


@dataclass
class DailyDigest:
    date: str
    entries: List[DigestEntry] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=_empty_stats)

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "entries": [asdict(e) for e in self.entries], "stats": dict(self.stats)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DailyDigest":
        stats = _empty_stats()
        stats.update({k: int(v) for k, v in (d.get("stats") or {}).items() if k in stats})
        entries = [DigestEntry.from_dict(e) for e in (d.get("entries") or []) if isinstance(e, dict)]
        return cls(date=str(d.get("date") or ""), entries=entries, stats=stats)


class DigestAggregator:
    def __init__(
        self,
        store: RecordStore,
        *,
        top_senders: int = settings.DIGEST_TOP_SENDERS,
        clock: Callable[[], float] = time.time,
        tz: str = settings.OWNER_TIMEZONE,
    ) -> None:
        self._store = store
        self.top_senders = top_senders
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._lock = threading.Lock()
        self._digest = self._load()

    # ------------------------------------------------------------------
    # Persistence / rollover
    # ------------------------------------------------------------------

    def _today(self) -> str:
        return datetime.datetime.fromtimestamp(self._clock(), tz=self._tz).date().isoformat()

    def _load(self) -> DailyDigest:
        today = self._today()
        raw = self._store.get(DIGEST_KEY)
        if isinstance(raw, dict):
            try:
                digest = DailyDigest.from_dict(raw)
            except (TypeError, ValueError) as exc:
                logger.warning("[DIGEST] Ignoring unreadable stored digest: %s", exc)
            else:
                if digest.date == today:
                    logger.info("[DIGEST] Restored %d entries for %s", len(digest.entries), today)
                    return digest
        return DailyDigest(date=today)

    def _rollover_locked(self) -> None:
        today = self._today()
        if self._digest.date != today:
            logger.info("[DIGEST] New day %s; starting fresh digest", today)
            self._digest = DailyDigest(date=today)

    def _save_locked(self) -> None:
        try:
            self._store.put(DIGEST_KEY, self._digest.to_dict())
        except Exception as exc:
            logger.error("[DIGEST] Failed to persist digest: %s", exc)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, entry: DigestEntry) -> None:
        with self._lock:
            self._rollover_locked()
            d = self._digest
            d.entries.append(entry)

            stats = d.stats
            stats["total_messages"] += 1
            if entry.was_urgent:
                stats["urgent_count"] += 1
            if entry.did_respond:
                stats["responses"] += 1
            if entry.is_group:
                stats["group_messages"] += 1
            else:
                stats["dm_messages"] += 1
            if entry.outcome == Outcome.SPAM.value:
                stats["spam_blocked"] += 1
            elif entry.outcome == Outcome.OWNER_REPLIED.value:
                stats["owner_replied"] += 1
            stats["unique_senders"] = len({e.sender for e in d.entries})

            self._save_locked()
        logger.debug("[DIGEST] %s from %s -> %s", entry.conversation_id, entry.sender, entry.outcome)

    def current(self) -> DailyDigest:
        with self._lock:
            self._rollover_locked()
            return DailyDigest.from_dict(self._digest.to_dict())

    def summarize(self) -> str:
        digest = self.current()
        if not digest.entries:
            return "📭 No messages received yet today."

        now = datetime.datetime.fromtimestamp(self._clock(), tz=self._tz)
        time_str = now.strftime("%I:%M %p").lstrip("0")
        stats = digest.stats

        lines = [
            f"📊 Message Recap ({time_str})",
            RULE,
            "",
            f"📬 Total: {stats['total_messages']}",
            f"💬 DMs: {stats['dm_messages']} | 👥 Groups: {stats['group_messages']}",
            f"🤖 AI responded: {stats['responses']}",
        ]
        if stats["urgent_count"] > 0:
            lines.append(f"🚨 Urgent: {stats['urgent_count']}")
        if stats["spam_blocked"] > 0:
            lines.append(f"🚫 Spam blocked: {stats['spam_blocked']}")
        if stats["owner_replied"] > 0:
            lines.append(f"🙋 You replied first: {stats['owner_replied']}")

        lines.append("")
        lines.append(f"👥 People ({stats['unique_senders']}):")

        ranked = rank_senders(digest.entries)
        for sender, count, urgent in ranked[: self.top_senders]:
            marker = "🚨" if urgent else ""
            lines.append(f"• {shorten_sender(sender)}{marker}: {count} msg")
        if len(ranked) > self.top_senders:
            lines.append(f"  ...and {len(ranked) - self.top_senders} more")

        return "\n".join(lines) + "\n"


def shorten_sender(sender: str) -> str:
    if len(sender) > SENDER_DISPLAY_MAX:
        return sender[:SENDER_DISPLAY_TRUNCATE] + "..."
    return sender


def rank_senders(entries: Iterable[DigestEntry]) -> List[tuple[str, int, bool]]:
    """(sender, count, any_urgent) by descending volume; ties keep first-seen order."""
    counts: Counter[str] = Counter()
    urgent: Dict[str, bool] = {}
    for e in entries:
        counts[e.sender] += 1
        urgent[e.sender] = urgent.get(e.sender, False) or e.was_urgent
    return [(s, n, urgent[s]) for s, n in counts.most_common()]


class RecapScheduler:
    """Fires once per configured owner-local hour per day."""

    def __init__(
        self,
        hours: Iterable[int] = settings.RECAP_HOURS,
        *,
        clock: Callable[[], float] = time.time,
        tz: str = settings.OWNER_TIMEZONE,
    ) -> None:
        self.hours = sorted(set(hours))
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._fired: set[tuple[str, int]] = set()

    def due(self) -> bool:
        now = datetime.datetime.fromtimestamp(self._clock(), tz=self._tz)
        if now.hour not in self.hours:
            return False
        key = (now.date().isoformat(), now.hour)
        if key in self._fired:
            return False
        self._fired = {k for k in self._fired if k[0] == key[0]}
        self._fired.add(key)
        return True
