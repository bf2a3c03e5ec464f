from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol


@dataclass(frozen=True)
class InboundMessage:
    id: str
    conversation_id: str
    sender_id: str
    text: str
    is_group: bool
    received_at: float  # epoch seconds
    is_from_owner: bool = False
    chat_name: str = ""


@dataclass(frozen=True)
class ChatActivity:
    """One message seen in a conversation, as reported by the transport."""

    author_is_owner: bool
    timestamp: float
    text: str | None = None


class TransportBridge(Protocol):
    def send_message(self, conversation_id: str, text: str) -> bool:
        """Deliver *text* to the conversation. Returns False on failure."""
        ...


class TransportWatcher(Protocol):
    def initialize(self) -> None:
        """Perform any necessary startup checks."""
        ...

    def poll(self) -> List[InboundMessage]:
        """Return messages that arrived since the last poll, oldest first."""
        ...

    def query_messages_since(self, conversation_id: str, since: float) -> List[ChatActivity]:
        """Messages in the conversation with a timestamp at or after *since*."""
        ...


class TextGenerator(Protocol):
    def generate(self, conversation_id: str, context: dict[str, Any]) -> str:
        ...


class CalendarService(Protocol):
    def is_configured(self) -> bool:
        ...

    def create_event(
        self,
        title: str,
        start: datetime.datetime,
        link: Optional[str] = None,
        *,
        source: str = "",
    ) -> bool:
        ...


class NotificationChannel(Protocol):
    name: str

    def notify(self, title: str, message: str) -> bool:
        ...


class RecordStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        ...

    def put(self, key: str, value: Any) -> None:
        ...
