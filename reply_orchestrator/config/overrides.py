"""Response rules edited from the web dashboard.

The dashboard writes a JSON document shaped like::

    {
      "contacts": {"blocked": ["+15550001111"]},
      "responseRules": {"alwaysRespondKeywords": ["dinner"]},
      "settings": {"groupChatsEnabled": true, "directMessagesEnabled": true}
    }

Only the fields below are consumed; everything else in the file belongs to
the dashboard. A missing or unreadable file means "no overrides".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reply_orchestrator.utils.atomic import read_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResponseRules:
    blocked_contacts: frozenset[str] = field(default_factory=frozenset)
    always_respond_keywords: tuple[str, ...] = ()
    group_chats_enabled: bool = True
    direct_messages_enabled: bool = True

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ResponseRules":
        contacts = raw.get("contacts") if isinstance(raw.get("contacts"), dict) else {}
        rules = raw.get("responseRules") if isinstance(raw.get("responseRules"), dict) else {}
        toggles = raw.get("settings") if isinstance(raw.get("settings"), dict) else {}

        blocked = contacts.get("blocked") or []
        keywords = rules.get("alwaysRespondKeywords") or []
        return cls(
            blocked_contacts=frozenset(str(h).strip() for h in blocked if str(h).strip()),
            always_respond_keywords=tuple(str(k).strip().lower() for k in keywords if str(k).strip()),
            group_chats_enabled=bool(toggles.get("groupChatsEnabled", True)),
            direct_messages_enabled=bool(toggles.get("directMessagesEnabled", True)),
        )


def load_response_rules(path: Path) -> ResponseRules:
    raw = read_json(path, default=None)
    if raw is None:
        return ResponseRules()
    if not isinstance(raw, dict):
        logger.warning("Response rules at %s are not an object; ignoring", path)
        return ResponseRules()
    return ResponseRules.from_dict(raw)
