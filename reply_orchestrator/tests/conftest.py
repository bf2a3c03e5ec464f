from __future__ import annotations

import datetime
import itertools
from typing import List, Tuple
from zoneinfo import ZoneInfo

import pytest

from reply_orchestrator.services.interfaces import InboundMessage

TZ_NAME = "America/Chicago"
TZ = ZoneInfo(TZ_NAME)

# Monday 2025-01-06 12:00 owner-local
MONDAY_NOON = datetime.datetime(2025, 1, 6, 12, 0, tzinfo=TZ)


class FakeClock:
    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBridge:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: List[Tuple[str, str]] = []

    def send_message(self, conversation_id: str, text: str) -> bool:
        self.sent.append((conversation_id, text))
        return self.ok

    def texts_to(self, conversation_id: str) -> List[str]:
        return [t for c, t in self.sent if c == conversation_id]


_ids = itertools.count(1)


def make_message(
    text: str,
    *,
    conversation_id: str = "iMessage;-;+15550001111",
    sender_id: str = "+15550001111",
    is_group: bool = False,
    received_at: float | None = None,
    is_from_owner: bool = False,
    chat_name: str = "",
    id: str | None = None,
) -> InboundMessage:
    return InboundMessage(
        id=id or f"msg-{next(_ids)}",
        conversation_id=conversation_id,
        sender_id=sender_id,
        text=text,
        is_group=is_group,
        received_at=MONDAY_NOON.timestamp() if received_at is None else received_at,
        is_from_owner=is_from_owner,
        chat_name=chat_name,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MONDAY_NOON.timestamp())


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()
