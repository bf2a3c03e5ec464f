from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Optional

from reply_orchestrator.config import settings
from reply_orchestrator.utils.db_client import connect_readonly, fetch_all

from .interfaces import ChatActivity, InboundMessage, RecordStore

logger = logging.getLogger(__name__)

STATE_KEY = "watcher_state"

# iMessage stores dates as nanoseconds since 2001-01-01 (Apple epoch)
APPLE_EPOCH_OFFSET = 978307200
# chat.style for multi-party chats (45 = one-to-one)
GROUP_CHAT_STYLE = 43
HISTORY_LOOKBACK_ROWS = 50


def apple_to_unix(raw: Any) -> float:
    if not raw:
        return 0.0
    raw = float(raw)
    # Nanoseconds on modern macOS, seconds on old databases
    if raw > 1e12:
        return raw / 1e9 + APPLE_EPOCH_OFFSET
    return raw + APPLE_EPOCH_OFFSET


def unix_to_apple(ts: float) -> int:
    return int((ts - APPLE_EPOCH_OFFSET) * 1e9)


def extract_text_from_attributed_body(blob: Optional[bytes]) -> str:
    """Plain text from an NSAttributedString blob (``attributedBody``).

    Outgoing and some SMS messages keep their text only there, between the
    NSString marker and the trailing NSDictionary.
    """
    if not blob:
        return ""
    text = blob.decode("utf-8", errors="ignore")

    ns_string_idx = text.find("NSString")
    ns_dict_idx = text.find("NSDictionary")
    if ns_string_idx != -1 and ns_dict_idx > ns_string_idx:
        # "NSString" + two marker bytes + "+" + length byte
        raw = text[ns_string_idx + 12:ns_dict_idx]
        clean = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", raw)
        clean = re.sub(r"([.!?])[iI]+$", r"\1", clean)
        clean = re.sub(r"[iI]{1,2}[A-Z]?[^a-z]*$", "", clean)
        if len(clean) > 3:
            return clean.strip()

    readable = re.sub(r"[^\x20-\x7E‘’“”—…]", " ", text)
    parts = re.findall(r"[A-Za-z][A-Za-z0-9\s.,!?\'\"\-]{10,}", readable)
    return max(parts, key=len).strip() if parts else ""


class iMessageWatcher:
    """Ingress service: polls chat.db for new messages in both directions.

    Owner-authored rows (``is_from_me``) are delivered too, flagged
    ``is_from_owner``, so the engine can see manual replies.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        chat_db_path: Path = settings.CHAT_DB_PATH,
        owner_handle: Optional[str] = settings.OWNER_HANDLE,
    ) -> None:
        self.chat_db_path = chat_db_path
        self.owner_handle = owner_handle or "me"
        self._store = store
        self._state: dict[str, Any] = {}

    def initialize(self) -> None:
        """Perform startup checks and load state."""
        self.verify_permissions()
        self.load_state()

    def verify_permissions(self) -> None:
        # On macOS, Full Disk Access is typically required for ~/Library/Messages.
        if not self.chat_db_path.exists():
            raise FileNotFoundError(f"Messages db not found at {self.chat_db_path}. Is Messages enabled?")
        if not os.access(self.chat_db_path, os.R_OK):
            raise PermissionError(
                "No read access to chat.db. Grant your terminal/python Full Disk Access "
                "(System Settings → Privacy & Security → Full Disk Access)."
            )

    def _connect(self):
        return connect_readonly(
            self.chat_db_path,
            retries=settings.DB_LOCKED_RETRIES,
            backoff_seconds=settings.DB_LOCKED_BACKOFF_SECONDS,
        )

    def load_state(self) -> None:
        raw = self._store.get(STATE_KEY)
        self._state = dict(raw) if isinstance(raw, dict) else {}
        if "last_message_rowid" not in self._state:
            # First run: start from the newest row instead of replaying history
            with self._connect() as conn:
                rows = fetch_all(conn, "SELECT COALESCE(MAX(ROWID), 0) AS max_rowid FROM message")
            self._state["last_message_rowid"] = int(rows[0]["max_rowid"]) if rows else 0
            self.save_state()
        logger.info("[WATCHER] Resuming after message row %s", self._state["last_message_rowid"])

    def save_state(self) -> None:
        self._store.put(STATE_KEY, self._state)

    def poll(self) -> list[InboundMessage]:
        """Return new messages since last poll, oldest first."""
        last_rowid = int(self._state.get("last_message_rowid", 0))

        query = """
        SELECT
            m.ROWID AS message_rowid,
            COALESCE(m.guid, '') AS guid,
            COALESCE(m.text, '') AS text,
            m.attributedBody AS attributed_body,
            COALESCE(m.is_from_me, 0) AS is_from_me,
            m.date AS date,
            COALESCE(m.cache_has_attachments, 0) AS has_attachments,
            COALESCE(h.id, '') AS handle,
            c.guid AS chat_guid,
            COALESCE(c.chat_identifier, '') AS chat_identifier,
            COALESCE(c.display_name, '') AS display_name,
            COALESCE(c.style, 0) AS style
        FROM message m
        JOIN chat_message_join cmj ON cmj.message_id = m.ROWID
        JOIN chat c ON c.ROWID = cmj.chat_id
        LEFT JOIN handle h ON h.ROWID = m.handle_id
        WHERE m.ROWID > ?
        ORDER BY m.ROWID ASC
        """

        with self._connect() as conn:
            rows = fetch_all(conn, query, (last_rowid,))

        messages: list[InboundMessage] = []
        max_rowid = last_rowid
        for r in rows:
            rowid = int(r["message_rowid"])
            max_rowid = max(max_rowid, rowid)

            text = str(r["text"]).strip()
            if not text and r["attributed_body"]:
                text = extract_text_from_attributed_body(r["attributed_body"])
            if not text and not int(r["has_attachments"]):
                continue  # tapbacks, receipts and other empty rows

            from_me = int(r["is_from_me"]) == 1
            is_group = int(r["style"]) == GROUP_CHAT_STYLE
            sender = self.owner_handle if from_me else (str(r["handle"]) or str(r["chat_identifier"]))
            messages.append(
                InboundMessage(
                    id=str(r["guid"]) or f"row-{rowid}",
                    conversation_id=str(r["chat_guid"]),
                    sender_id=sender,
                    text=text,
                    is_group=is_group,
                    received_at=apple_to_unix(r["date"]) or time.time(),
                    is_from_owner=from_me,
                    chat_name=str(r["display_name"]) if is_group else "",
                )
            )

        if max_rowid != last_rowid:
            self._state["last_message_rowid"] = max_rowid
            self.save_state()

        return messages

    def query_messages_since(self, conversation_id: str, since: float) -> list[ChatActivity]:
        """Messages in *conversation_id* timestamped at or after *since*."""
        query = """
        SELECT
            COALESCE(m.is_from_me, 0) AS is_from_me,
            COALESCE(m.text, '') AS text,
            m.attributedBody AS attributed_body,
            m.date AS date
        FROM message m
        JOIN chat_message_join cmj ON cmj.message_id = m.ROWID
        JOIN chat c ON c.ROWID = cmj.chat_id
        WHERE c.guid = ?
        ORDER BY m.date DESC
        LIMIT ?
        """
        with self._connect() as conn:
            rows = fetch_all(conn, query, (conversation_id, HISTORY_LOOKBACK_ROWS))

        activity: list[ChatActivity] = []
        for r in reversed(rows):
            ts = apple_to_unix(r["date"])
            if ts < since:
                continue
            text = str(r["text"]).strip()
            if not text and r["attributed_body"]:
                text = extract_text_from_attributed_body(r["attributed_body"])
            activity.append(ChatActivity(author_is_owner=int(r["is_from_me"]) == 1, timestamp=ts, text=text or None))
        return activity
