"""End-to-end engine behaviour with fake transport and collaborators."""

from __future__ import annotations

import datetime
import random
from typing import Optional
from unittest.mock import MagicMock, patch

import pytest

from conftest import TZ, TZ_NAME, FakeBridge, FakeClock, MONDAY_NOON, make_message
from reply_orchestrator.config import prompts, settings
from reply_orchestrator.config.overrides import ResponseRules
from reply_orchestrator.orchestrator import CREATED_EVENTS_KEY, Orchestrator
from reply_orchestrator.services.delegate import Delegate, GenerationError, RateLimitError
from reply_orchestrator.services.digest import Outcome
from reply_orchestrator.services.interfaces import ChatActivity
from reply_orchestrator.services.notifier import NotificationHub
from reply_orchestrator.services.policy import EngagementPolicy
from reply_orchestrator.services.quota import QuotaController
from reply_orchestrator.utils.store import MemoryStore

OWNER = "+15550009999"
OWNER_CID = f"iMessage;-;{OWNER}"
CID = "iMessage;-;+15550001111"
GROUP_CID = "iMessage;+;chat900"
FAMILY_CID = "iMessage;+;chat222"
NOW = MONDAY_NOON.timestamp()
# Longer than the maximum pacing delay
AFTER_DELAY = 181


class Harness:
    def __init__(
        self,
        *,
        start: float = NOW,
        bridge_ok: bool = True,
        rules: Optional[ResponseRules] = None,
        policy: Optional[EngagementPolicy] = None,
        quota: Optional[QuotaController] = None,
        watcher=None,
        store: Optional[MemoryStore] = None,
    ) -> None:
        self.clock = FakeClock(start)
        self.bridge = FakeBridge(ok=bridge_ok)
        self.store = store or MemoryStore()

        self.generator = MagicMock()
        self.generator.generate.return_value = "sounds good 👍"

        self.calendar = MagicMock()
        self.calendar.is_configured.return_value = True
        self.calendar.create_event.return_value = True
        self.calendar.context.return_value = "Calendar: No events today or not connected"
        self.calendar.enabled = True

        self.channels = [MagicMock(), MagicMock()]
        for i, channel in enumerate(self.channels):
            channel.name = f"channel-{i}"
            channel.notify.return_value = True

        self.orch = Orchestrator(
            bridge=self.bridge,
            watcher=watcher,
            generator=self.generator,
            calendar=self.calendar,
            notifier=NotificationHub(self.channels),
            store=self.store,
            quota=quota,
            policy=policy,
            rules=rules,
            owner_handle=OWNER,
            tz=TZ_NAME,
            clock=self.clock,
            rng=random.Random(0),
        )

    def process(self, text: str, **kwargs) -> Optional[Outcome]:
        kwargs.setdefault("received_at", self.clock.now)
        return self.orch.process(make_message(text, **kwargs))

    def owner_command(self, text: str) -> None:
        self.process(text, conversation_id=OWNER_CID, sender_id=OWNER)

    def owner_reply(self, text: str, conversation_id: str = CID) -> None:
        self.process(text, conversation_id=conversation_id, sender_id=OWNER, is_from_owner=True)

    def run_for(self, seconds: float) -> None:
        self.clock.advance(seconds)
        self.orch.tick()

    def outcomes(self) -> list:
        return [e.outcome for e in self.orch.digest.current().entries]


@pytest.fixture
def h() -> Harness:
    return Harness()


# ---------------------------------------------------------------------------
# Direct messages
# ---------------------------------------------------------------------------

class TestDirectMessages:

    def test_reply_is_paced_then_sent(self, h: Harness) -> None:
        assert h.process("hey are you free for dinner?") is None
        assert h.bridge.texts_to(CID) == []
        assert h.orch.send_queue.depth == 1

        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == ["sounds good 👍"]
        assert h.outcomes() == ["responded"]
        assert h.orch.status_counters()["responses"] == 1

    def test_generation_context(self, h: Harness) -> None:
        h.process("hey are you free for dinner?")
        cid, context = h.generator.generate.call_args.args
        assert cid == CID
        assert context["text"] == "hey are you free for dinner?"
        assert context["is_group"] is False
        assert context["calendar_context"] == "Calendar: No events today or not connected"

    def test_urgent_message_alerts_every_channel(self, h: Harness) -> None:
        h.process("URGENT call me now!!!")

        for channel in h.channels:
            channel.notify.assert_called_once()
        title, body = h.channels[0].notify.call_args.args
        assert title == "Urgent from +15550001111"
        assert body.startswith("URGENT call me now!!!")

        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == ["sounds good 👍"]
        [entry] = h.orch.digest.current().entries
        assert entry.was_urgent and entry.did_respond
        assert h.orch.status_counters()["urgent_alerts"] == 1

    def test_spam_gets_no_reply(self, h: Harness) -> None:
        assert h.process("You've won a free $500 prize! Click here to claim") is Outcome.SPAM
        h.generator.generate.assert_not_called()
        h.run_for(AFTER_DELAY)
        assert h.bridge.sent == []
        digest = h.orch.digest.current()
        assert not digest.entries[0].did_respond
        assert digest.stats["spam_blocked"] == 1

    def test_spam_is_never_urgent(self, h: Harness) -> None:
        h.process("URGENT: act now, claim your prize, click here!!!")
        for channel in h.channels:
            channel.notify.assert_not_called()

    def test_duplicate_message_is_ignored(self, h: Harness) -> None:
        assert h.process("You won! Click here", id="dup-1") is Outcome.SPAM
        assert h.process("You won! Click here", id="dup-1") is None
        assert len(h.orch.digest.current().entries) == 1

    def test_attachment_only(self, h: Harness) -> None:
        assert h.process("") is Outcome.ATTACHMENT
        assert h.orch.digest.current().entries[0].text_preview == "[Attachment]"
        h.generator.generate.assert_not_called()

    def test_blocked_contact(self) -> None:
        h = Harness(rules=ResponseRules(blocked_contacts=frozenset({"+1 (555) 000-1111"})))
        assert h.process("hey") is Outcome.BLOCKED
        h.generator.generate.assert_not_called()

    def test_unexpected_error_is_recorded(self, h: Harness) -> None:
        h.generator.generate.side_effect = ValueError("bad payload")
        assert h.process("hey") is Outcome.ERROR
        assert h.outcomes() == ["error"]


# ---------------------------------------------------------------------------
# Generation failures and quota
# ---------------------------------------------------------------------------

class TestGenerationLimits:

    def test_generation_failure(self, h: Harness) -> None:
        h.generator.generate.side_effect = GenerationError("all providers down")
        assert h.process("hey") is Outcome.GENERATION_FAILED
        h.run_for(AFTER_DELAY)
        assert h.bridge.sent == []

    def test_every_provider_throttled_starts_cooldown(self, h: Harness) -> None:
        h.generator.generate.side_effect = RateLimitError(provider="gemini", retry_after_seconds=60)
        assert h.process("hey") is Outcome.GENERATION_FAILED
        assert h.process("hello?", conversation_id="iMessage;-;+15550003333") is Outcome.RATE_LIMITED
        assert h.generator.generate.call_count == 1

        h.clock.advance(61)
        h.generator.generate.side_effect = None
        assert h.process("still there?") is None

    def test_throttled_primary_answers_from_fallback(self, h: Harness) -> None:
        with patch.object(settings, "ANTHROPIC_API_KEY", "a-key"), \
             patch.object(settings, "GEMINI_API_KEY", "g-key"), \
             patch.object(settings, "OPENAI_API_KEY", None):
            h.orch.generator = Delegate("anthropic", failover_chain=["gemini"])
            throttled = RateLimitError(provider="anthropic", retry_after_seconds=60)
            with patch.object(h.orch.generator, "_dispatch", side_effect=[throttled, "on my way", "yep"]):
                assert h.process("you close?") is None
                # no cooldown: the next conversation still gets a reply
                assert h.process("hey", conversation_id="iMessage;-;+15550003333") is None

        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == ["on my way"]
        assert h.outcomes() == ["responded", "responded"]

    def test_daily_limit(self) -> None:
        h = Harness()
        h.orch.quota = QuotaController(daily_limit=1, clock=h.clock, tz=TZ_NAME)
        assert h.process("hey") is None
        assert h.process("hey again", conversation_id="iMessage;-;+15550003333") is Outcome.RATE_LIMITED

    def test_no_generator(self, h: Harness) -> None:
        h.orch.generator = None
        assert h.process("hey") is Outcome.GENERATION_FAILED


# ---------------------------------------------------------------------------
# Race arbitration
# ---------------------------------------------------------------------------

class TestOwnerRace:

    def test_owner_reply_cancels_pending(self, h: Harness) -> None:
        h.process("hey are you free for dinner?")
        h.clock.advance(30)
        h.owner_reply("yes! 7?")

        assert h.orch.send_queue.depth == 0
        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == []
        assert h.outcomes() == ["owner_replied"]
        assert h.orch.digest.current().stats["owner_replied"] == 1

    def test_owner_reply_in_other_conversation_does_not_cancel(self, h: Harness) -> None:
        h.process("hey are you free for dinner?")
        h.owner_reply("unrelated", conversation_id="iMessage;-;+15550003333")
        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == ["sounds good 👍"]

    def test_owner_reply_found_in_history_at_dispatch(self) -> None:
        watcher = MagicMock()
        watcher.query_messages_since.return_value = [
            ChatActivity(author_is_owner=True, timestamp=NOW + 60, text="on my way"),
        ]
        h = Harness(watcher=watcher)
        h.process("you close?")
        h.run_for(AFTER_DELAY)

        assert h.bridge.texts_to(CID) == []
        assert h.outcomes() == ["owner_replied"]
        assert watcher.query_messages_since.call_args.args == (CID, NOW)

    def test_history_failure_still_sends(self) -> None:
        watcher = MagicMock()
        watcher.query_messages_since.side_effect = RuntimeError("database is locked")
        h = Harness(watcher=watcher)
        h.process("you close?")
        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == ["sounds good 👍"]

    def test_echo_of_own_reply_is_not_an_owner_reply(self, h: Harness) -> None:
        h.process("you close?")
        h.run_for(AFTER_DELAY)
        h.owner_reply("sounds good 👍")  # the sent reply coming back through the transport

        h.generator.generate.return_value = "10 min"
        h.process("ok cool, where should I park?")
        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == ["sounds good 👍", "10 min"]

    def test_send_failure_recorded(self) -> None:
        h = Harness(bridge_ok=False)
        h.process("hey")
        h.run_for(AFTER_DELAY)
        assert h.outcomes() == []
        h.run_for(10)
        assert h.outcomes() == ["send_failed"]
        assert h.orch.status_counters()["responses"] == 0


# ---------------------------------------------------------------------------
# Owner channel
# ---------------------------------------------------------------------------

class TestOwnerChannel:

    def test_pause_blocks_new_replies(self, h: Harness) -> None:
        h.owner_command("!pause")
        assert h.orch.remote.paused
        assert h.bridge.texts_to(OWNER)[-1].startswith("⏸️ Bot PAUSED")

        assert h.process("hey") is Outcome.PAUSED
        h.generator.generate.assert_not_called()

    def test_pause_cancels_queued_reply_at_dispatch(self, h: Harness) -> None:
        h.process("hey")
        h.owner_command("!pause")
        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == []
        assert h.outcomes() == ["paused"]

    def test_resume(self, h: Harness) -> None:
        h.owner_command("!pause")
        h.owner_command("!resume")
        assert not h.orch.remote.paused
        assert h.process("hey") is None

    def test_status(self, h: Harness) -> None:
        h.process("hey")
        h.owner_command("!status")
        report = h.bridge.texts_to(OWNER)[-1]
        assert report.startswith("🟢 ACTIVE")
        assert "📊 API calls: 1/" in report
        assert "⏱️ Last minute: 1/" in report
        assert "📅 Calendar: ✅" in report

    def test_digest_command(self, h: Harness) -> None:
        h.process("You won! Click here")
        h.owner_command("!digest")
        assert h.bridge.texts_to(OWNER)[-1].startswith("📊 Message Recap (12:00 PM)")

    def test_unknown_command_and_chatter_get_no_reply(self, h: Harness) -> None:
        h.owner_command("!dance")
        h.owner_command("note to self: buy milk")
        assert h.bridge.sent == []
        assert h.outcomes() == []

    def test_owner_self_text_echo_is_not_a_command(self, h: Harness) -> None:
        h.owner_reply("!pause", conversation_id=OWNER_CID)
        assert not h.orch.remote.paused

    def test_commands_in_groups_are_not_honored(self, h: Harness) -> None:
        h.process("!pause", conversation_id=GROUP_CID, sender_id=OWNER, is_group=True, chat_name="Climbing crew")
        assert not h.orch.remote.paused

    def test_scheduled_recap(self) -> None:
        two_pm = datetime.datetime(2025, 1, 6, 14, 0, tzinfo=TZ).timestamp()
        h = Harness(start=two_pm)
        h.process("You won! Click here")
        h.orch.tick()
        h.orch.tick()
        recaps = [t for t in h.bridge.texts_to(OWNER) if t.startswith("📊 Message Recap")]
        assert len(recaps) == 1


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

class TestGroups:

    def test_unaddressed_group_chatter(self, h: Harness) -> None:
        outcome = h.process("lol", conversation_id=GROUP_CID, is_group=True, chat_name="Climbing crew")
        assert outcome is Outcome.NOT_ADDRESSED
        h.generator.generate.assert_not_called()

    def test_mention_gets_reply(self, h: Harness) -> None:
        h.process("kyle you in?", conversation_id=GROUP_CID, is_group=True, chat_name="Climbing crew")
        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(GROUP_CID) == ["sounds good 👍"]

    def test_priority_group_ambient_ack(self) -> None:
        policy = EngagementPolicy(
            persona_names=["kyle"],
            priority_groups=["bartlett family"],
            engage_every=2,
            ambient_ack_probability=1.0,
            rng=random.Random(0),
        )
        h = Harness(policy=policy)
        family = dict(conversation_id=FAMILY_CID, is_group=True, chat_name="Bartlett Family")
        assert h.process("grandma says hi", **family) is Outcome.NOT_ADDRESSED
        assert h.process("pic from the lake", **family) is None

        h.run_for(AFTER_DELAY)
        [ack] = h.bridge.texts_to(FAMILY_CID)
        assert ack in prompts.CASUAL_ACKS
        assert h.outcomes() == ["not_addressed", "acknowledged"]
        h.generator.generate.assert_not_called()

    def test_groups_disabled(self) -> None:
        h = Harness(rules=ResponseRules(group_chats_enabled=False))
        outcome = h.process("kyle?", conversation_id=GROUP_CID, is_group=True, chat_name="Climbing crew")
        assert outcome is Outcome.DISABLED


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------

class TestInvites:

    INVITE = "Team sync is starting on Thursday, 10:00 AM CST, https://zoom.us/j/123"

    def test_invite_creates_event_without_chat_reply(self, h: Harness) -> None:
        assert h.process(self.INVITE) is Outcome.INVITE

        h.calendar.create_event.assert_called_once()
        title, start, link = h.calendar.create_event.call_args.args
        assert title == "Team sync"
        assert start == datetime.datetime(2025, 1, 9, 10, 0, tzinfo=TZ)
        assert link == "https://zoom.us/j/123"
        assert h.calendar.create_event.call_args.kwargs["source"] == "+15550001111"

        h.run_for(AFTER_DELAY)
        assert h.bridge.texts_to(CID) == []
        assert h.bridge.texts_to(OWNER) == [
            "📅 Auto-added event:\n\nTeam sync\nThu Jan 09, 10:00 AM\nhttps://zoom.us/j/123"
        ]

    def test_same_invite_added_once(self, h: Harness) -> None:
        h.process(self.INVITE)
        h.process(self.INVITE)
        h.calendar.create_event.assert_called_once()
        assert len(h.store.get(CREATED_EVENTS_KEY)) == 1

    def test_created_events_survive_restart(self) -> None:
        store = MemoryStore()
        Harness(store=store).process(self.INVITE)
        again = Harness(store=store)
        again.process(self.INVITE)
        again.calendar.create_event.assert_not_called()

    def test_failed_create_is_retried_on_next_invite(self, h: Harness) -> None:
        h.calendar.create_event.return_value = False
        h.process(self.INVITE)
        h.process(self.INVITE)
        assert h.calendar.create_event.call_count == 2
        assert h.bridge.texts_to(OWNER) == []

    def test_unconfigured_calendar(self, h: Harness) -> None:
        h.calendar.is_configured.return_value = False
        assert h.process(self.INVITE) is Outcome.INVITE
        h.calendar.create_event.assert_not_called()

    def test_untimed_invite_goes_through_normal_engagement(self, h: Harness) -> None:
        assert h.process("Alex invited you to Demo Night. RSVP at lu.ma/demo") is None
        h.calendar.create_event.assert_not_called()
        h.generator.generate.assert_called_once()


def test_run_requires_macos() -> None:
    from reply_orchestrator import orchestrator

    with patch.object(orchestrator, "_configure_logging"), \
         patch.object(orchestrator.sys, "platform", "linux"), \
         patch.object(orchestrator, "_run_main_loop") as main_loop:
        orchestrator.run()
    main_loop.assert_not_called()
