from __future__ import annotations

import datetime
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from reply_orchestrator.config import prompts, settings

from .classifier import COMMAND_PREFIX

logger = logging.getLogger(__name__)

RULE = "━" * 20


@dataclass
class EngineControlState:
    paused: bool = False
    paused_at: Optional[float] = None


class RemoteControlHandler:
    """Owner-channel commands: pause/resume the engine, status, digest, help.

    Callers must only pass commands that arrived on the verified owner
    channel. Every reply goes back through ``reply_fn``.
    """

    def __init__(
        self,
        *,
        reply_fn: Callable[[str], bool],
        status_fn: Callable[[], Dict[str, object]],
        digest_fn: Callable[[], str],
        clock: Callable[[], float] = time.time,
        tz: str = settings.OWNER_TIMEZONE,
    ) -> None:
        self._reply = reply_fn
        self._status = status_fn
        self._digest = digest_fn
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._lock = threading.Lock()
        self.state = EngineControlState()

    @property
    def paused(self) -> bool:
        with self._lock:
            return self.state.paused

    def handle(self, command: str) -> bool:
        """Run *command* (name, with or without "!"). False if not in the vocabulary."""
        name = (command or "").strip().lower()
        if name.startswith(COMMAND_PREFIX):
            name = name[len(COMMAND_PREFIX):]

        handler = {
            "pause": self._pause,
            "resume": self._resume,
            "status": self._status_report,
            "digest": self._digest_report,
            "help": self._help,
        }.get(name)
        if handler is None:
            logger.info("[REMOTE] Unhandled command %r", command)
            return False

        message = handler()
        if not self._reply(message):
            logger.warning("[REMOTE] Failed to send reply for !%s", name)
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _pause(self) -> str:
        with self._lock:
            if self.state.paused:
                return "⏸️ Already paused"
            self.state.paused = True
            self.state.paused_at = self._clock()
        logger.info("[REMOTE] Engine PAUSED via remote command")
        return '⏸️ Bot PAUSED\n\nAI responses disabled.\nMessages still being logged.\n\nText "!resume" to restart.'

    def _resume(self) -> str:
        with self._lock:
            if not self.state.paused:
                return "▶️ Already running"
            paused_at = self.state.paused_at
            self.state.paused = False
            self.state.paused_at = None
        minutes = round((self._clock() - paused_at) / 60) if paused_at else 0
        logger.info("[REMOTE] Engine RESUMED via remote command after %d min", minutes)
        return f"▶️ Bot RESUMED\n\nPaused for {minutes} min.\nAI responses re-enabled."

    def _status_report(self) -> str:
        with self._lock:
            paused, paused_at = self.state.paused, self.state.paused_at
        counters = self._status()

        lines = [
            "⏸️ PAUSED" if paused else "🟢 ACTIVE",
            RULE,
            f"📊 API calls: {counters.get('api_calls', 0)}/{counters.get('daily_limit', 0)}",
            f"⏱️ Last minute: {counters.get('recent_requests', 0)}/{counters.get('per_minute_limit', 0)}",
            f"💬 Responses: {counters.get('responses', 0)}",
            f"🚨 Urgent alerts: {counters.get('urgent_alerts', 0)}",
            f"📅 Calendar: {'✅' if counters.get('calendar_enabled') else '❌'}",
        ]
        if paused_at:
            since = datetime.datetime.fromtimestamp(paused_at, tz=self._tz).strftime("%I:%M:%S %p").lstrip("0")
            lines.append(f"Paused since: {since}")
        return "\n".join(lines)

    def _digest_report(self) -> str:
        logger.info("[REMOTE] Digest requested via remote command")
        return self._digest()

    def _help(self) -> str:
        lines = ["🤖 Remote Commands:", RULE]
        for name, desc in prompts.REMOTE_COMMANDS.items():
            lines.append(f"{COMMAND_PREFIX}{name} - {desc}")
        return "\n".join(lines) + "\n"
