from __future__ import annotations

import os
from pathlib import Path


def _parse_csv(raw: str) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


# Persistent local state (digest, send queue, watcher cursor, created events)
DATA_DIR: Path = Path(os.getenv("REPLY_ORCHESTRATOR_DATA_DIR") or Path(__file__).resolve().parents[2] / "data")
STATE_DIR: Path = DATA_DIR / "state"

# Logging
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "reply_orchestrator.log"
AUDIT_LOG_FILE: Path = LOG_DIR / "blocked_replies_audit.log"
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# ---- Owner (the human operator) ----
# Messages from this handle in a direct chat form the verified owner channel:
# remote commands, recaps and alerts all go through it. Format: "+15550000000"
OWNER_HANDLE: str | None = (os.getenv("OWNER_HANDLE") or "").strip() or None

# Owner-local calendar day drives quota resets, digest rollover and invite times.
OWNER_TIMEZONE: str = os.getenv("OWNER_TIMEZONE", "America/Chicago")

# Names / handles that count as addressing the persona in a group.
PERSONA_NAMES: list[str] = _parse_csv(os.getenv("PERSONA_NAMES", "kyle"))

# ---- Engagement ----
# Priority (family) groups: case-insensitive substrings of the chat name.
PRIORITY_GROUPS: list[str] = _parse_csv(os.getenv("PRIORITY_GROUPS", "bartlett family,houston folks"))
PRIORITY_GROUP_ENGAGE_EVERY: int = _env_int("PRIORITY_GROUP_ENGAGE_EVERY", 8)
# Ambient presence draw: ack with this probability, otherwise a full reply.
AMBIENT_ACK_PROBABILITY: float = _env_float("AMBIENT_ACK_PROBABILITY", 0.7)
GROUP_QUESTION_MAX_LENGTH: int = _env_int("GROUP_QUESTION_MAX_LENGTH", 120)

# ---- Quota & pacing ----
DAILY_API_LIMIT: int = _env_int("DAILY_API_LIMIT", 200)
MAX_REQUESTS_PER_MINUTE: int = _env_int("MAX_REQUESTS_PER_MINUTE", 15)
RATE_LIMIT_WINDOW_SECONDS: float = _env_float("RATE_LIMIT_WINDOW_SECONDS", 60.0)

MIN_RESPONSE_DELAY_SECONDS: float = _env_float("MIN_RESPONSE_DELAY_SECONDS", 15.0)
MAX_RESPONSE_DELAY_SECONDS: float = _env_float("MAX_RESPONSE_DELAY_SECONDS", 180.0)
TYPING_SECONDS_PER_CHAR: float = _env_float("TYPING_SECONDS_PER_CHAR", 0.05)
ACK_DELAY_MIN_SECONDS: float = _env_float("ACK_DELAY_MIN_SECONDS", 3.0)
ACK_DELAY_MAX_SECONDS: float = _env_float("ACK_DELAY_MAX_SECONDS", 8.0)

# ---- Race arbitration / dispatch ----
ARBITER_TIMEOUT_SECONDS: float = _env_float("ARBITER_TIMEOUT_SECONDS", 10.0)
# Total attempts for one automated send (1 = no retry).
SEND_MAX_ATTEMPTS: int = _env_int("SEND_MAX_ATTEMPTS", 2)

# ---- Dedup ----
SEEN_IDS_CEILING: int = _env_int("SEEN_IDS_CEILING", 1000)

# ---- Digest ----
RECAP_HOURS: list[int] = [int(h) for h in _parse_csv(os.getenv("RECAP_HOURS", "9,14,21")) if h.isdigit()]
DIGEST_TOP_SENDERS: int = _env_int("DIGEST_TOP_SENDERS", 10)

# ---- Text generation ----
CONVERSATION_MEMORY: int = _env_int("CONVERSATION_MEMORY", 30)

ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")

# IMPORTANT: Do not hardcode API keys in this repo. Set env var instead.
GEMINI_API_KEY: str | None = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")

OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")

GENERATION_MAX_TOKENS: int = _env_int("GENERATION_MAX_TOKENS", 200)

# Priority:
# 1) Explicit env var always wins
# 2) Otherwise the first provider with credentials configured
_env_provider = (os.getenv("LLM_PROVIDER") or "").strip().lower()

if _env_provider:
    _default_provider = _env_provider
elif ANTHROPIC_API_KEY:
    _default_provider = "anthropic"
elif GEMINI_API_KEY:
    _default_provider = "gemini"
elif OPENAI_API_KEY:
    _default_provider = "openai"
else:
    _default_provider = ""

LLM_PROVIDER: str = _default_provider

# Fallback order (csv). Empty = every other provider with credentials.
LLM_FAILOVER_CHAIN: list[str] = [p.lower() for p in _parse_csv(os.getenv("LLM_FAILOVER_CHAIN", ""))]

# ---- Notifications ----
PUSHOVER_USER_KEY: str = os.getenv("PUSHOVER_USER_KEY", "")
PUSHOVER_APP_TOKEN: str = os.getenv("PUSHOVER_APP_TOKEN", "")
LARK_WEBHOOK_URL: str = os.getenv("LARK_WEBHOOK_URL", "")
NOTIFY_TIMEOUT_SECONDS: float = _env_float("NOTIFY_TIMEOUT_SECONDS", 10.0)

# ---- Calendar (Google Calendar REST) ----
GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REFRESH_TOKEN: str = os.getenv("GOOGLE_REFRESH_TOKEN", "")
GOOGLE_CALENDAR_ID: str = os.getenv("GOOGLE_CALENDAR_ID", "primary")
CALENDAR_REFRESH_SECONDS: float = _env_float("CALENDAR_REFRESH_SECONDS", 15 * 60)
EVENT_DURATION_MINUTES: int = _env_int("EVENT_DURATION_MINUTES", 60)

# ---- iMessage transport ----
CHAT_DB_PATH: Path = Path(os.getenv("CHAT_DB_PATH") or Path.home() / "Library" / "Messages" / "chat.db")
POLL_INTERVAL_SECONDS: float = _env_float("POLL_INTERVAL_SECONDS", 5.0)

# Retry behavior when the Messages db is locked
DB_LOCKED_RETRIES: int = 3
DB_LOCKED_BACKOFF_SECONDS: float = 0.35

# Bridge retry settings
BRIDGE_SEND_RETRIES: int = _env_int("BRIDGE_SEND_RETRIES", 3)
BRIDGE_SEND_BACKOFF: float = _env_float("BRIDGE_SEND_BACKOFF", 2.0)

# Dashboard-managed response rules (blocked contacts, toggles, keywords)
RESPONSE_RULES_FILE: Path = Path(os.getenv("RESPONSE_RULES_FILE") or DATA_DIR / "response-rules.json")
