from __future__ import annotations

import logging
import random
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional

from reply_orchestrator.config import settings
from reply_orchestrator.config.overrides import ResponseRules

from .classifier import Classification
from .interfaces import InboundMessage

logger = logging.getLogger(__name__)


_PHONE_RE = re.compile(r"[^0-9+]")


def canonicalize_handle(handle: str) -> str:
    """Best-effort canonicalization for transport handles.

    - Preserves leading '+' for E.164-ish phone handles.
    - Strips whitespace and common punctuation.
    - Lower-cases email handles; leaves chat ids intact.
    """

    raw = (handle or "").strip()
    if not raw:
        return ""

    if raw.startswith("+") or raw.isdigit():
        cleaned = _PHONE_RE.sub("", raw)
        return "+" + re.sub(r"\D", "", cleaned)

    if "@" in raw:
        return raw.lower()
    return raw


def get_owner_handle() -> str | None:
    owner = settings.OWNER_HANDLE
    if not owner:
        return None
    canon = canonicalize_handle(owner)
    return canon or None


def is_owner_channel(message: InboundMessage, owner_handle: str | None = None) -> bool:
    """True for a direct message from the verified owner handle."""
    owner = owner_handle if owner_handle is not None else get_owner_handle()
    if not owner or message.is_group:
        return False
    return canonicalize_handle(message.sender_id) == canonicalize_handle(owner)


class ConversationKind(str, Enum):
    DIRECT = "direct"
    REGULAR_GROUP = "regular-group"
    PRIORITY_GROUP = "priority-group"


class EngagementLevel(str, Enum):
    SKIP = "skip"
    ACK = "ack"
    FULL = "full"


@dataclass
class ConversationState:
    conversation_id: str
    kind: ConversationKind
    pending_since: Optional[float] = None
    engagement_counter: int = 0


@dataclass(frozen=True)
class Engagement:
    level: EngagementLevel
    # Outcome name for skips (spam, invite, not_addressed, disabled); empty otherwise.
    reason: str = ""


class EngagementPolicy:
    """Decides skip / ack / full per message and owns per-conversation state.

    Callers serialize messages of one conversation; the policy only guards
    its state table.
    """

    def __init__(
        self,
        *,
        persona_names: Iterable[str] = settings.PERSONA_NAMES,
        priority_groups: Iterable[str] = settings.PRIORITY_GROUPS,
        engage_every: int = settings.PRIORITY_GROUP_ENGAGE_EVERY,
        ambient_ack_probability: float = settings.AMBIENT_ACK_PROBABILITY,
        question_max_length: int = settings.GROUP_QUESTION_MAX_LENGTH,
        rules: Optional[ResponseRules] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.persona_names = [n.lower() for n in persona_names if n]
        self.priority_groups = [g.lower() for g in priority_groups if g]
        self.engage_every = max(1, engage_every)
        self.ambient_ack_probability = ambient_ack_probability
        self.question_max_length = question_max_length
        self.rules = rules or ResponseRules()
        self._rng = rng or random.Random()

        self._lock = threading.Lock()
        self._states: Dict[str, ConversationState] = {}

        self._mention_res = [
            re.compile(rf"(?:^|\W)@?{re.escape(name)}\b", re.IGNORECASE) for name in self.persona_names
        ]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def kind_of(self, message: InboundMessage) -> ConversationKind:
        if not message.is_group:
            return ConversationKind.DIRECT
        name = (message.chat_name or "").lower()
        if name and any(group in name for group in self.priority_groups):
            return ConversationKind.PRIORITY_GROUP
        return ConversationKind.REGULAR_GROUP

    def state_for(self, message: InboundMessage) -> ConversationState:
        with self._lock:
            state = self._states.get(message.conversation_id)
            if state is None:
                state = ConversationState(
                    conversation_id=message.conversation_id,
                    kind=self.kind_of(message),
                )
                self._states[message.conversation_id] = state
            if state.pending_since is None:
                state.pending_since = message.received_at
            return state

    def mark_answered(self, conversation_id: str) -> None:
        with self._lock:
            state = self._states.get(conversation_id)
            if state is not None:
                state.pending_since = None

    def get_state(self, conversation_id: str) -> ConversationState | None:
        with self._lock:
            return self._states.get(conversation_id)

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def is_mention(self, text: str) -> bool:
        return any(r.search(text or "") for r in self._mention_res)

    def is_short_question(self, text: str) -> bool:
        stripped = (text or "").strip()
        return stripped.endswith("?") and len(stripped) < self.question_max_length

    def has_keyword(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(k in lowered for k in self.rules.always_respond_keywords)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(
        self,
        state: ConversationState,
        message: InboundMessage,
        classification: Classification,
    ) -> Engagement:
        if classification.spam.is_spam:
            return Engagement(EngagementLevel.SKIP, reason="spam")

        if state.kind is ConversationKind.DIRECT:
            if classification.invite is not None:
                return Engagement(EngagementLevel.SKIP, reason="invite")
            if not self.rules.direct_messages_enabled:
                return Engagement(EngagementLevel.SKIP, reason="disabled")
            return Engagement(EngagementLevel.FULL)

        if not self.rules.group_chats_enabled:
            return Engagement(EngagementLevel.SKIP, reason="disabled")

        text = message.text or ""
        addressed = self.is_mention(text) or self.is_short_question(text) or self.has_keyword(text)

        if state.kind is ConversationKind.REGULAR_GROUP:
            if addressed or classification.urgency.is_urgent:
                return Engagement(EngagementLevel.FULL)
            return Engagement(EngagementLevel.SKIP, reason="not_addressed")

        # Priority group
        if addressed:
            state.engagement_counter = 0
            return Engagement(EngagementLevel.FULL)

        state.engagement_counter += 1
        if state.engagement_counter < self.engage_every:
            return Engagement(EngagementLevel.SKIP, reason="not_addressed")

        state.engagement_counter = 0
        level = EngagementLevel.ACK if self._rng.random() < self.ambient_ack_probability else EngagementLevel.FULL
        logger.info(
            "[POLICY] Ambient presence in %s after %d messages -> %s",
            state.conversation_id,
            self.engage_every,
            level.value,
        )
        return Engagement(level)
