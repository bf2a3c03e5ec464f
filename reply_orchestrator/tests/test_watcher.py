from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

import pytest

from reply_orchestrator.services.watcher import (
    STATE_KEY,
    apple_to_unix,
    extract_text_from_attributed_body,
    iMessageWatcher,
    unix_to_apple,
)
from reply_orchestrator.utils.store import MemoryStore

SCHEMA = """
CREATE TABLE handle (ROWID INTEGER PRIMARY KEY, id TEXT);
CREATE TABLE chat (
    ROWID INTEGER PRIMARY KEY, guid TEXT, chat_identifier TEXT, display_name TEXT, style INTEGER
);
CREATE TABLE message (
    ROWID INTEGER PRIMARY KEY, guid TEXT, text TEXT, attributedBody BLOB, is_from_me INTEGER,
    date INTEGER, cache_has_attachments INTEGER, handle_id INTEGER
);
CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER);
"""

DM_GUID = "iMessage;-;+15550001111"
GROUP_GUID = "iMessage;+;chat900"
BASE_TS = 1_736_186_400.0  # 2025-01-06 12:00 America/Chicago


class ChatDb:
    def __init__(self, path: Path) -> None:
        self.path = path
        with sqlite3.connect(path) as conn:
            conn.executescript(SCHEMA)
            conn.execute("INSERT INTO handle VALUES (1, '+15550001111'), (2, '+15550002222')")
            conn.execute(
                "INSERT INTO chat VALUES (1, ?, '+15550001111', '', 45), (2, ?, 'chat900', 'Climbing crew', 43)",
                (DM_GUID, GROUP_GUID),
            )

    def add(
        self,
        text: Optional[str],
        *,
        chat: int = 1,
        handle: int = 1,
        from_me: bool = False,
        ts: float = BASE_TS,
        guid: Optional[str] = None,
        attachments: bool = False,
        body: Optional[bytes] = None,
    ) -> int:
        with sqlite3.connect(self.path) as conn:
            cur = conn.execute(
                "INSERT INTO message (guid, text, attributedBody, is_from_me, date, cache_has_attachments, handle_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (guid, text, body, int(from_me), unix_to_apple(ts), int(attachments), 0 if from_me else handle),
            )
            rowid = cur.lastrowid
            conn.execute("INSERT INTO chat_message_join VALUES (?, ?)", (chat, rowid))
        return rowid


@pytest.fixture
def db(tmp_path: Path) -> ChatDb:
    return ChatDb(tmp_path / "chat.db")


@pytest.fixture
def watcher(db: ChatDb) -> iMessageWatcher:
    w = iMessageWatcher(MemoryStore(), chat_db_path=db.path, owner_handle="+15550009999")
    w.initialize()
    return w


# ---------------------------------------------------------------------------
# Timestamps / text extraction
# ---------------------------------------------------------------------------

class TestConversions:

    def test_apple_epoch_round_trip(self) -> None:
        assert apple_to_unix(unix_to_apple(BASE_TS)) == pytest.approx(BASE_TS, abs=1e-3)

    def test_legacy_seconds(self) -> None:
        assert apple_to_unix(100) == 978307300

    def test_missing_date(self) -> None:
        assert apple_to_unix(None) == 0.0

    def test_attributed_body(self) -> None:
        blob = b"\x04\x0bstreamtyped\x81\xe8\x03NSString\x01\x94\x84\x01+\x0fsee you at 8pm\x86\x84\x02iI\x01NSDictionary"
        assert extract_text_from_attributed_body(blob) == "see you at 8pm"

    def test_empty_body(self) -> None:
        assert extract_text_from_attributed_body(None) == ""


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class TestPoll:

    def test_first_run_skips_history(self, db: ChatDb) -> None:
        db.add("old message")
        store = MemoryStore()
        w = iMessageWatcher(store, chat_db_path=db.path, owner_handle="+15550009999")
        w.initialize()

        assert w.poll() == []
        assert store.get(STATE_KEY) == {"last_message_rowid": 1}

    def test_inbound_direct_message(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        db.add("hey you around?", guid="G-1", ts=BASE_TS + 5)
        [msg] = watcher.poll()

        assert msg.id == "G-1"
        assert msg.conversation_id == DM_GUID
        assert msg.sender_id == "+15550001111"
        assert msg.text == "hey you around?"
        assert not msg.is_group
        assert not msg.is_from_owner
        assert msg.chat_name == ""
        assert msg.received_at == pytest.approx(BASE_TS + 5, abs=1e-3)

    def test_owner_rows_are_delivered(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        db.add("on my way", from_me=True)
        [msg] = watcher.poll()
        assert msg.is_from_owner
        assert msg.sender_id == "+15550009999"

    def test_group_message(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        db.add("who's driving?", chat=2, handle=2)
        [msg] = watcher.poll()
        assert msg.is_group
        assert msg.conversation_id == GROUP_GUID
        assert msg.chat_name == "Climbing crew"
        assert msg.sender_id == "+15550002222"

    def test_empty_rows_skipped_but_attachments_kept(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        db.add(None)
        db.add(None, attachments=True, guid="PHOTO")
        messages = watcher.poll()
        assert [(m.id, m.text) for m in messages] == [("PHOTO", "")]

    def test_missing_guid_uses_rowid(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        rowid = db.add("hi")
        [msg] = watcher.poll()
        assert msg.id == f"row-{rowid}"

    def test_cursor_advances(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        db.add("one")
        db.add("two")
        assert [m.text for m in watcher.poll()] == ["one", "two"]
        assert watcher.poll() == []
        db.add("three")
        assert [m.text for m in watcher.poll()] == ["three"]

    def test_cursor_persists_across_restart(self, db: ChatDb) -> None:
        store = MemoryStore()
        first = iMessageWatcher(store, chat_db_path=db.path)
        first.initialize()
        db.add("one")
        first.poll()

        second = iMessageWatcher(store, chat_db_path=db.path)
        second.initialize()
        db.add("two")
        assert [m.text for m in second.poll()] == ["two"]

    def test_missing_db(self, tmp_path: Path) -> None:
        w = iMessageWatcher(MemoryStore(), chat_db_path=tmp_path / "nope.db")
        with pytest.raises(FileNotFoundError):
            w.initialize()


class TestHistory:

    def test_query_messages_since(self, db: ChatDb, watcher: iMessageWatcher) -> None:
        db.add("before", ts=BASE_TS - 60)
        db.add("owner reply", from_me=True, ts=BASE_TS + 30)
        db.add("them again", ts=BASE_TS + 40)
        db.add("other chat", chat=2, handle=2, ts=BASE_TS + 50)

        activity = watcher.query_messages_since(DM_GUID, BASE_TS)
        assert [(a.author_is_owner, a.text) for a in activity] == [(True, "owner reply"), (False, "them again")]
        assert activity[0].timestamp == pytest.approx(BASE_TS + 30, abs=1e-3)
