from __future__ import annotations

import warnings
warnings.filterwarnings("ignore", category=FutureWarning, module="google.generativeai")

import datetime
import logging
import random
import sys
import threading
import time
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from reply_orchestrator.config import prompts, settings
from reply_orchestrator.config.overrides import ResponseRules, load_response_rules
from reply_orchestrator.services.arbiter import RaceArbiter
from reply_orchestrator.services.bridge import iMessageBridge
from reply_orchestrator.services.calendar_client import GoogleCalendarClient
from reply_orchestrator.services.classifier import UNKNOWN_COMMAND, Classification, InviteInfo, classify
from reply_orchestrator.services.dedup import SeenMessageIds
from reply_orchestrator.services.delegate import Delegate, GenerationError, RateLimitError
from reply_orchestrator.services.digest import DigestAggregator, DigestEntry, Outcome, RecapScheduler
from reply_orchestrator.services.interfaces import (
    CalendarService,
    InboundMessage,
    RecordStore,
    TextGenerator,
    TransportBridge,
    TransportWatcher,
)
from reply_orchestrator.services.notifier import NotificationHub, build_alert, default_channels
from reply_orchestrator.services.policy import EngagementLevel, EngagementPolicy, canonicalize_handle, is_owner_channel
from reply_orchestrator.services.quota import QuotaController
from reply_orchestrator.services.remote_control import RemoteControlHandler
from reply_orchestrator.services.send_queue import AUDIT_LOGGER, PendingReply, SendQueue
from reply_orchestrator.services.watcher import iMessageWatcher
from reply_orchestrator.utils.instance_lock import InstanceAlreadyRunning, acquire_instance_lock
from reply_orchestrator.utils.store import JsonFileStore, MemoryStore

logger = logging.getLogger(__name__)

CREATED_EVENTS_KEY = "created_events"
ATTACHMENT_PLACEHOLDER = "[Attachment]"


def _configure_logging() -> None:
    settings.LOG_DIR.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    if any(isinstance(h, logging.FileHandler) for h in root_logger.handlers):
        return

    level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(settings.LOG_FILE, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )

    # Dedicated audit logger for cancelled automated replies
    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.propagate = False
    audit_handler = logging.FileHandler(settings.AUDIT_LOG_FILE, encoding="utf-8")
    audit_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)


class Orchestrator:
    """Routes each inbound message through triage, engagement and pacing.

    ``process`` handles one message and never raises. Replies are not sent
    inline: they are queued with a pacing delay and dispatched by ``tick``,
    where the race arbiter gets the last word.

    Messages of one conversation are serialized by a per-conversation lock;
    different conversations may be processed from different threads.
    """

    def __init__(
        self,
        *,
        bridge: TransportBridge,
        watcher: Optional[TransportWatcher] = None,
        generator: Optional[TextGenerator] = None,
        calendar: Optional[CalendarService] = None,
        notifier: Optional[NotificationHub] = None,
        store: Optional[RecordStore] = None,
        quota: Optional[QuotaController] = None,
        policy: Optional[EngagementPolicy] = None,
        arbiter: Optional[RaceArbiter] = None,
        rules: Optional[ResponseRules] = None,
        owner_handle: Optional[str] = settings.OWNER_HANDLE,
        tz: str = settings.OWNER_TIMEZONE,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.bridge = bridge
        self.watcher = watcher
        self.generator = generator
        self.calendar = calendar
        self.store = store if store is not None else MemoryStore()
        self.owner_handle = canonicalize_handle(owner_handle) if owner_handle else None
        self.tz_name = tz
        self._tz = ZoneInfo(tz)
        self._clock = clock
        self._rng = rng or random.Random()

        self.rules = rules or ResponseRules()
        self.quota = quota or QuotaController(clock=clock, tz=tz, rng=self._rng)
        self.policy = policy or EngagementPolicy(rules=self.rules, rng=self._rng)
        query_fn = watcher.query_messages_since if watcher is not None else None
        self.arbiter = arbiter or RaceArbiter(query_fn, clock=clock)
        self.notifier = notifier or NotificationHub(default_channels(self.send_to_owner if self.owner_handle else None))
        self.digest = DigestAggregator(self.store, clock=clock, tz=tz)
        self.recaps = RecapScheduler(clock=clock, tz=tz)
        self.send_queue = SendQueue(self.store, clock=clock)
        self.seen = SeenMessageIds()
        self.remote = RemoteControlHandler(
            reply_fn=self.send_to_owner,
            status_fn=self.status_counters,
            digest_fn=self.digest.summarize,
            clock=clock,
            tz=tz,
        )

        self._conversation_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._counters_lock = threading.Lock()
        self._counters = {"responses": 0, "urgent_alerts": 0}
        self._created_events: Dict[str, float] = self._load_created_events()
        self._generation_cooldown_until = 0.0
        self._last_calendar_refresh = 0.0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._conversation_locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._conversation_locks[conversation_id] = lock
            return lock

    def _bump(self, counter: str) -> None:
        with self._counters_lock:
            self._counters[counter] += 1

    def _local_time(self, ts: float) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(ts, tz=self._tz)

    def status_counters(self) -> Dict[str, Any]:
        with self._counters_lock:
            counters = dict(self._counters)
        quota = self.quota.snapshot()
        counters["api_calls"] = quota["daily_count"]
        counters["daily_limit"] = quota["daily_limit"]
        counters["recent_requests"] = quota["recent_requests"]
        counters["per_minute_limit"] = quota["per_minute_limit"]
        counters["calendar_enabled"] = bool(getattr(self.calendar, "enabled", False))
        counters["queue_depth"] = self.send_queue.depth
        return counters

    def send_to_owner(self, text: str) -> bool:
        if not self.owner_handle:
            logger.warning("[OWNER] OWNER_HANDLE not set; dropping self-text: %s", text[:80])
            return False
        try:
            return bool(self.bridge.send_message(self.owner_handle, text))
        except Exception as exc:
            logger.error("[OWNER] Self-text failed: %s", exc)
            return False

    def _record(
        self,
        msg: InboundMessage,
        outcome: Outcome,
        *,
        was_urgent: bool = False,
        text: Optional[str] = None,
    ) -> Outcome:
        self.digest.record(
            DigestEntry.build(
                sender=msg.sender_id,
                text=msg.text if text is None else text,
                conversation_id=msg.conversation_id,
                is_group=msg.is_group,
                was_urgent=was_urgent,
                outcome=outcome,
                timestamp=msg.received_at,
            )
        )
        logger.info("[PROCESS] %s in %s -> %s", msg.id, msg.conversation_id, outcome.value)
        return outcome

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def process(self, msg: InboundMessage) -> Optional[Outcome]:
        """Handle one inbound message.

        Returns the recorded outcome, or None when nothing was recorded yet:
        duplicates, owner messages, and replies queued for dispatch (their
        outcome is recorded by ``tick``).
        """
        if not self.seen.add(msg.id):
            logger.debug("[DEDUP] Skipping already processed message %s", msg.id)
            return None
        try:
            return self._process(msg)
        except Exception as exc:
            logger.exception("[PROCESS] Error handling %s in %s: %s", msg.id, msg.conversation_id, exc)
            return self._record(msg, Outcome.ERROR)

    def _process(self, msg: InboundMessage) -> Optional[Outcome]:
        # Owner-authored rows include self-texts; only inbound copies on the owner channel carry commands
        if msg.is_from_owner:
            self._observe_owner(msg)
            return None

        if is_owner_channel(msg, self.owner_handle or ""):
            self._handle_owner_channel(msg)
            return None

        if not (msg.text or "").strip():
            return self._record(msg, Outcome.ATTACHMENT, text=ATTACHMENT_PLACEHOLDER)

        if canonicalize_handle(msg.sender_id) in {canonicalize_handle(h) for h in self.rules.blocked_contacts}:
            return self._record(msg, Outcome.BLOCKED)

        with self._lock_for(msg.conversation_id):
            return self._handle_content(msg)

    def _handle_owner_channel(self, msg: InboundMessage) -> None:
        classification = classify(msg, now=self._local_time(msg.received_at))
        if classification.command is None:
            logger.debug("[OWNER] Ignoring non-command owner message")
            return
        if classification.command == UNKNOWN_COMMAND:
            logger.info("[REMOTE] Unhandled command from owner: %s", msg.text.strip()[:40])
            return
        self.remote.handle(classification.command)

    def _observe_owner(self, msg: InboundMessage) -> None:
        if not self.arbiter.observe_owner_message(msg.conversation_id, msg.received_at, msg.text):
            return
        for entry in self.send_queue.cancel_conversation(msg.conversation_id, "owner_replied"):
            self._on_settled(entry, Outcome.OWNER_REPLIED)
        self.policy.mark_answered(msg.conversation_id)

    def _handle_content(self, msg: InboundMessage) -> Optional[Outcome]:
        classification = classify(msg, now=self._local_time(msg.received_at))
        is_spam = classification.spam.is_spam
        was_urgent = classification.urgency.is_urgent and not is_spam
        state = self.policy.state_for(msg)

        if is_spam:
            logger.info("[SPAM] %s from %s (%s)", msg.id, msg.sender_id, classification.spam.reason)

        if not msg.is_group and not is_spam and classification.invite is not None:
            self._handle_invite(msg, classification.invite)

        if was_urgent:
            self._alert(msg, classification)

        engagement = self.policy.decide(state, msg, classification)
        if engagement.level is EngagementLevel.SKIP:
            return self._record(msg, Outcome(engagement.reason), was_urgent=was_urgent)

        if self.remote.paused:
            return self._record(msg, Outcome.PAUSED, was_urgent=was_urgent)

        ack = engagement.level is EngagementLevel.ACK
        if ack:
            reply = self._rng.choice(prompts.CASUAL_ACKS)
        else:
            reply_or_outcome = self._generate(msg, classification)
            if isinstance(reply_or_outcome, Outcome):
                return self._record(msg, reply_or_outcome, was_urgent=was_urgent)
            reply = reply_or_outcome

        delay = self.quota.compute_delay(len(reply), ack=ack)
        self.send_queue.enqueue(
            PendingReply(
                conversation_id=msg.conversation_id,
                text=reply,
                send_after_epoch=self._clock() + delay,
                decided_at=msg.received_at,
                message_id=msg.id,
                sender=msg.sender_id,
                inbound_text=msg.text,
                is_group=msg.is_group,
                was_urgent=was_urgent,
                ack=ack,
                created_epoch=msg.received_at,
            )
        )
        return None

    def _generate(self, msg: InboundMessage, classification: Classification) -> str | Outcome:
        if self._clock() < self._generation_cooldown_until:
            logger.info("[QUOTA] Provider cooldown active; not generating for %s", msg.conversation_id)
            return Outcome.RATE_LIMITED

        decision = self.quota.try_acquire()
        if not decision.allowed:
            logger.info("[QUOTA] %s; not generating for %s", decision.reason, msg.conversation_id)
            return Outcome.RATE_LIMITED

        if self.generator is None:
            logger.warning("[GENERATE] No text generator configured")
            return Outcome.GENERATION_FAILED

        context = {
            "text": msg.text,
            "sender": msg.sender_id,
            "is_group": msg.is_group,
            "chat_name": msg.chat_name,
            "urgent": classification.urgency.is_urgent,
            "calendar_context": self.calendar.context() if hasattr(self.calendar, "context") else "",
        }
        try:
            return self.generator.generate(msg.conversation_id, context)
        except RateLimitError as exc:
            self._generation_cooldown_until = self._clock() + exc.retry_after_seconds
            logger.warning("[RATE_LIMIT] %s; backing off for %.1fs", exc.provider, exc.retry_after_seconds)
            return Outcome.GENERATION_FAILED
        except GenerationError as exc:
            logger.error("[GENERATE] Failed for %s: %s", msg.conversation_id, exc)
            return Outcome.GENERATION_FAILED

    # ------------------------------------------------------------------
    # Side effects: alerts, invites
    # ------------------------------------------------------------------

    def _alert(self, msg: InboundMessage, classification: Classification) -> None:
        title, body = build_alert(
            msg.sender_id,
            msg.text,
            is_group=msg.is_group,
            chat_name=msg.chat_name,
            reason=classification.urgency.reason,
        )
        delivered = self.notifier.notify(title, body)
        self._bump("urgent_alerts")
        logger.warning("[URGENT] %s (%s); alerted %d channel(s)", title, classification.urgency.reason, delivered)

    def _load_created_events(self) -> Dict[str, float]:
        raw = self.store.get(CREATED_EVENTS_KEY)
        if not isinstance(raw, dict):
            return {}
        return {str(k): float(v) for k, v in raw.items() if isinstance(v, (int, float))}

    def _save_created_events(self) -> None:
        # Keys of events that started more than a day ago can no longer recur
        cutoff = self._clock() - 86400
        self._created_events = {k: v for k, v in self._created_events.items() if v >= cutoff}
        try:
            self.store.put(CREATED_EVENTS_KEY, self._created_events)
        except Exception as exc:
            logger.error("[CALENDAR] Failed to persist created events: %s", exc)

    def _handle_invite(self, msg: InboundMessage, invite: InviteInfo) -> bool:
        logger.info("[CALENDAR] Invite detected: %r at %s", invite.title, invite.start.isoformat())
        if invite.key in self._created_events:
            logger.info("[CALENDAR] Event already added: %r", invite.title)
            return False
        if self.calendar is None or not self.calendar.is_configured():
            logger.info("[CALENDAR] Calendar not configured; invite %r not added", invite.title)
            return False

        try:
            created = self.calendar.create_event(invite.title, invite.start, invite.link, source=msg.sender_id)
        except Exception as exc:
            logger.error("[CALENDAR] Create raised for %r: %s", invite.title, exc)
            created = False
        if not created:
            return False

        self._created_events[invite.key] = invite.start.timestamp()
        self._save_created_events()
        when = invite.start.astimezone(self._tz).strftime("%a %b %d, %I:%M %p")
        self.send_to_owner(f"📅 Auto-added event:\n\n{invite.title}\n{when}\n{invite.link or ''}".rstrip())
        return True

    # ------------------------------------------------------------------
    # Dispatch / periodic work
    # ------------------------------------------------------------------

    def _on_settled(self, entry: PendingReply, outcome: Outcome) -> None:
        if outcome.did_respond:
            self.policy.mark_answered(entry.conversation_id)
            self._bump("responses")
        self.digest.record(
            DigestEntry.build(
                sender=entry.sender,
                text=entry.inbound_text,
                conversation_id=entry.conversation_id,
                is_group=entry.is_group,
                was_urgent=entry.was_urgent,
                outcome=outcome,
                timestamp=entry.created_epoch,
            )
        )
        logger.info("[DISPATCH] %s in %s -> %s", entry.message_id, entry.conversation_id, outcome.value)

    def _send_reply(self, conversation_id: str, text: str) -> bool:
        ok = self.bridge.send_message(conversation_id, text)
        if ok:
            # Registered before the next poll so the echo is recognized
            self.arbiter.record_own_send(conversation_id, text)
        return ok

    def drain_send_queue(self) -> int:
        return self.send_queue.drain(
            self._send_reply,
            arbitrate_fn=lambda e: self.arbiter.arbitrate(e.conversation_id, e.decided_at, e.text),
            is_paused_fn=lambda: self.remote.paused,
            on_settled=self._on_settled,
        )

    def maybe_send_recap(self) -> bool:
        if not self.recaps.due():
            return False
        logger.info("[DIGEST] Sending scheduled recap")
        return self.send_to_owner(self.digest.summarize())

    def maybe_refresh_calendar(self, *, force: bool = False) -> None:
        refresh = getattr(self.calendar, "refresh", None)
        if refresh is None:
            return
        now = self._clock()
        if not force and now - self._last_calendar_refresh < settings.CALENDAR_REFRESH_SECONDS:
            return
        self._last_calendar_refresh = now
        refresh()

    def tick(self) -> None:
        """Periodic work: dispatch due replies, scheduled recaps, calendar refresh."""
        sent = self.drain_send_queue()
        if sent:
            logger.info("[SEND_Q] Delivered %d scheduled replies", sent)
        self.maybe_send_recap()
        self.maybe_refresh_calendar()

    def shutdown(self) -> None:
        self.arbiter.shutdown()


def run() -> None:
    _configure_logging()
    log = logging.getLogger("reply_orchestrator")

    # iMessage (chat.db + AppleScript) is macOS-only.
    if sys.platform != "darwin":
        log.error("The iMessage transport requires macOS (platform is %s).", sys.platform)
        return

    if not settings.OWNER_HANDLE:
        log.warning("OWNER_HANDLE is not set: remote commands, recaps and self-text alerts are disabled.")

    try:
        with acquire_instance_lock(settings.STATE_DIR):
            _run_main_loop(log)
    except InstanceAlreadyRunning as exc:
        log.error(str(exc))


def _run_main_loop(log: logging.Logger) -> None:
    """Inner loop extracted so the instance lock context manager wraps it."""
    store = JsonFileStore(settings.STATE_DIR)
    watcher = iMessageWatcher(store)
    watcher.initialize()

    delegate = Delegate()
    if not delegate.is_configured():
        log.warning("No LLM provider has credentials; full replies will be recorded as generation_failed.")

    calendar = GoogleCalendarClient()
    bot = Orchestrator(
        bridge=iMessageBridge(),
        watcher=watcher,
        generator=delegate,
        calendar=calendar,
        store=store,
        rules=load_response_rules(settings.RESPONSE_RULES_FILE),
    )
    bot.maybe_refresh_calendar(force=True)

    log.info(
        "Reply orchestrator running. Poll interval=%ss, queue depth=%d",
        settings.POLL_INTERVAL_SECONDS,
        bot.send_queue.depth,
    )

    try:
        while True:
            try:
                bot.tick()
                for msg in watcher.poll():
                    bot.process(msg)
            except Exception as e:
                log.exception("Top-level error in loop: %s", e)
                time.sleep(5)
                continue
            time.sleep(settings.POLL_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        log.info("Reply orchestrator stopped by user.")
        stats = bot.status_counters()
        log.info(
            "Session: %d API calls, %d responses, %d urgent alerts\n%s",
            stats["api_calls"],
            stats["responses"],
            stats["urgent_alerts"],
            bot.digest.summarize(),
        )
    finally:
        bot.shutdown()


if __name__ == "__main__":
    run()
