"""Generation quota and human-like pacing.

One controller is shared by every conversation: the daily counter and the
per-minute window are global, and ``try_acquire`` is the only place they
are mutated.
"""

from __future__ import annotations

import datetime
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from reply_orchestrator.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    reason: str = ""


class QuotaController:
    def __init__(
        self,
        *,
        daily_limit: int = settings.DAILY_API_LIMIT,
        per_minute_limit: int = settings.MAX_REQUESTS_PER_MINUTE,
        window_seconds: float = settings.RATE_LIMIT_WINDOW_SECONDS,
        min_delay: float = settings.MIN_RESPONSE_DELAY_SECONDS,
        max_delay: float = settings.MAX_RESPONSE_DELAY_SECONDS,
        typing_seconds_per_char: float = settings.TYPING_SECONDS_PER_CHAR,
        ack_delay_range: tuple[float, float] = (settings.ACK_DELAY_MIN_SECONDS, settings.ACK_DELAY_MAX_SECONDS),
        clock: Callable[[], float] = time.time,
        tz: str = settings.OWNER_TIMEZONE,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.daily_limit = daily_limit
        self.per_minute_limit = per_minute_limit
        self.window_seconds = window_seconds
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.typing_seconds_per_char = typing_seconds_per_char
        self.ack_delay_range = ack_delay_range
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._rng = rng or random.Random()

        self._lock = threading.Lock()
        self._daily_count = 0
        self._day: datetime.date = self._today()
        self._recent: List[float] = []

    def _today(self) -> datetime.date:
        return datetime.datetime.fromtimestamp(self._clock(), tz=self._tz).date()

    def _rollover_locked(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info("[QUOTA] New day %s; resetting daily count (was %d)", today, self._daily_count)
            self._day = today
            self._daily_count = 0

    def try_acquire(self) -> QuotaDecision:
        """Check both limits and record one request if allowed (atomic)."""
        with self._lock:
            self._rollover_locked()
            now = self._clock()

            if self._daily_count >= self.daily_limit:
                return QuotaDecision(False, f"Daily limit ({self.daily_limit})")

            cutoff = now - self.window_seconds
            self._recent = [t for t in self._recent if t > cutoff]
            if len(self._recent) >= self.per_minute_limit:
                return QuotaDecision(False, f"Rate limit ({self.per_minute_limit}/min)")

            self._recent.append(now)
            self._daily_count += 1
            return QuotaDecision(True)

    def compute_delay(self, response_length: int, *, ack: bool = False) -> float:
        """Seconds to wait before sending a reply of *response_length* chars."""
        if ack:
            lo, hi = self.ack_delay_range
            return self._rng.uniform(lo, hi)
        base = self._rng.uniform(self.min_delay, self.max_delay)
        typing = max(response_length, 0) * self.typing_seconds_per_char * self._rng.uniform(0.5, 1.5)
        return min(base + typing, self.max_delay)

    def snapshot(self) -> dict:
        with self._lock:
            self._rollover_locked()
            cutoff = self._clock() - self.window_seconds
            return {
                "daily_count": self._daily_count,
                "daily_limit": self.daily_limit,
                "recent_requests": sum(1 for t in self._recent if t > cutoff),
                "per_minute_limit": self.per_minute_limit,
            }
