"""Urgent-message alert channels.

Each channel is independent: ``NotificationHub.notify`` fires every
configured channel and a failure in one (returned False or raised) never
stops the others.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

import httpx

from reply_orchestrator.config import settings

from .interfaces import NotificationChannel

logger = logging.getLogger(__name__)

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"
ALERT_TEXT_LIMIT = 200


class PushoverChannel:
    name = "pushover"

    def __init__(
        self,
        user_key: str = settings.PUSHOVER_USER_KEY,
        app_token: str = settings.PUSHOVER_APP_TOKEN,
        *,
        timeout: float = settings.NOTIFY_TIMEOUT_SECONDS,
    ) -> None:
        self.user_key = user_key
        self.app_token = app_token
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.user_key and self.app_token)

    def notify(self, title: str, message: str) -> bool:
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(
                PUSHOVER_URL,
                data={
                    "token": self.app_token,
                    "user": self.user_key,
                    "title": title,
                    "message": message,
                    "priority": 1,
                    "sound": "siren",
                },
            )
        return resp.status_code == 200


class LarkChannel:
    name = "lark"

    def __init__(self, webhook_url: str = settings.LARK_WEBHOOK_URL, *, timeout: float = settings.NOTIFY_TIMEOUT_SECONDS) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, title: str, message: str) -> bool:
        payload = {"msg_type": "text", "content": {"text": f"🚨 {title}\n\n{message}"}}
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.webhook_url, json=payload)
        return resp.status_code == 200


class SelfTextChannel:
    """Alert by texting the owner through the transport."""

    name = "self_text"

    def __init__(self, send_fn: Callable[[str], bool]) -> None:
        self._send = send_fn

    def is_configured(self) -> bool:
        return True

    def notify(self, title: str, message: str) -> bool:
        return bool(self._send(f"🚨 {title}\n\n{message}"))


class NotificationHub:
    def __init__(self, channels: Iterable[NotificationChannel]) -> None:
        self.channels: List[NotificationChannel] = list(channels)

    def notify(self, title: str, message: str) -> int:
        """Fire every channel; returns how many delivered."""
        delivered = 0
        for channel in self.channels:
            name = getattr(channel, "name", type(channel).__name__)
            try:
                ok = channel.notify(title, message)
            except Exception as exc:
                logger.warning("[NOTIFY] %s failed: %s", name, exc)
                continue
            if ok:
                delivered += 1
                logger.info("[NOTIFY] %s delivered: %s", name, title)
            else:
                logger.warning("[NOTIFY] %s rejected alert: %s", name, title)
        return delivered


def build_alert(sender: str, text: str, *, is_group: bool, chat_name: str = "", reason: Optional[str] = None) -> tuple[str, str]:
    """Title and body for an urgent-message alert."""
    title = f"Urgent in {chat_name or 'group'}" if is_group else f"Urgent from {sender}"
    body = (text or "")[:ALERT_TEXT_LIMIT]
    if is_group:
        body = f"{sender}: {body}"
    if reason:
        body = f"{body}\n\n({reason})"
    return title, body


def default_channels(self_text_fn: Optional[Callable[[str], bool]] = None) -> List[NotificationChannel]:
    channels: List[NotificationChannel] = []
    for channel in (PushoverChannel(), LarkChannel()):
        if channel.is_configured():
            channels.append(channel)
    if self_text_fn is not None:
        channels.append(SelfTextChannel(self_text_fn))
    return channels
