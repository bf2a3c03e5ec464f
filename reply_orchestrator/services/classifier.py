"""Content classification for inbound messages.

Pure functions only: every verdict depends on the message text (plus the
reference time for invite dates), never on engine state or I/O.

Pattern sets are ordered tuples of tagged rules so that rule order and the
spam tie-break stay explicit and can be tested one rule at a time.
"""

from __future__ import annotations

import datetime
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from reply_orchestrator.config import settings

from .interfaces import InboundMessage


@dataclass(frozen=True)
class PatternRule:
    tag: str
    pattern: re.Pattern[str]

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(tag: str, regex: str) -> PatternRule:
    return PatternRule(tag=tag, pattern=re.compile(regex, re.IGNORECASE))


# ---------------------------------------------------------------------------
# Spam scoring
# ---------------------------------------------------------------------------

SPAM_INDICATORS: tuple[PatternRule, ...] = (
    # Prize/money scams
    _rule("prize.free_cash", r"free\s+\$\d+"),
    _rule("prize.you_won", r"you('ve|r)?\s*(have\s+)?won"),
    _rule("prize.claim", r"claim\s+(your\s+)?(reward|prize|gift)"),
    _rule("prize.winner", r"congratulations.*winner"),
    # Urgency scams
    _rule("pressure.act_now", r"act\s+now"),
    _rule("pressure.limited_time", r"limited\s+time"),
    _rule("pressure.expires", r"expires?\s+(today|soon|in\s+\d+)"),
    _rule("pressure.last_chance", r"last\s+chance"),
    _rule("pressure.dont_miss", r"don't\s+miss\s+out"),
    # Survey/phishing
    _rule("phishing.survey", r"take\s+a\s+(quick\s+)?(\d+[- ]?min(ute)?\s+)?survey"),
    _rule("phishing.verify_account", r"verify\s+your\s+(account|identity)"),
    _rule("phishing.confirm_identity", r"confirm\s+your\s+(identity|ssn|social)"),
    _rule("phishing.account_locked", r"your\s+account\s+(has\s+been|is|will\s+be)\s+(suspended|locked|closed)"),
    # Medical/insurance
    _rule("medical.kit", r"medical\s+kit"),
    _rule("medical.free", r"free\s+(health|medical|insurance)"),
    _rule("medical.medicare", r"medicare\s+(benefit|plan|savings)"),
    # Loans/debt
    _rule("loan.preapproved", r"pre-?approved\s+(for\s+)?\$?\d+"),
    _rule("loan.debt_relief", r"debt\s+(relief|forgiveness|consolidation)"),
    _rule("loan.student_forgiveness", r"student\s+loan\s+forgiveness"),
    # Generic marketing
    _rule("marketing.unsubscribe", r"\bunsubscribe\b"),
    _rule("marketing.reply_stop", r"\breply\s+stop\b"),
    _rule("marketing.data_rates", r"msg\s*&?\s*data\s*rates"),
    _rule("marketing.text_stop", r"text\s+stop\s+to\s+(opt[- ]?out|cancel|end)"),
    _rule("marketing.click_here", r"click\s+(here|now|the\s+link)"),
)

LEGIT_INDICATORS: tuple[PatternRule, ...] = (
    # Event/calendar
    _rule("event.invited", r"invited\s+you\s+to"),
    _rule("event.rsvp", r"rsvp"),
    _rule("event.starting", r"is\s+starting\s+(on|in|at)"),
    _rule("event.header", r"event\s*[-–]\s*"),
    _rule("event.webinar", r"webinar"),
    _rule("event.hackathon", r"hackathon"),
    _rule("event.conference", r"conference"),
    _rule("event.workshop", r"workshop"),
    _rule("event.meeting_starting", r"meeting\s+(is\s+)?starting"),
    # Known event platforms
    _rule("platform.luma", r"lu\.ma/"),
    _rule("platform.eventbrite", r"eventbrite\."),
    _rule("platform.zoom", r"zoom\.(us|com)"),
    _rule("platform.meet", r"meet\.google"),
    _rule("platform.calendly", r"calendly\."),
    _rule("platform.hopin", r"hopin\."),
    _rule("platform.airmeet", r"airmeet\."),
    # Appointments and one-time codes
    _rule("notice.appointment", r"appointment\s+(confirmed|scheduled|reminder)"),
    _rule("notice.order", r"your\s+(order|package|delivery)"),
    _rule("notice.verification_code", r"verification\s+code"),
    _rule("notice.one_time_code", r"one[- ]?time\s+(code|password|pin)"),
    # Shipping
    _rule("shipping.status", r"shipped|tracking|delivered"),
    _rule("shipping.out_for_delivery", r"out\s+for\s+delivery"),
)

# Opaque alphanumeric host on a common public TLD followed by a short path.
SUSPICIOUS_LINK_RE = re.compile(r"https?://[a-z0-9]{8,}\.(com|net|org|info)/[a-z0-9]{3}", re.IGNORECASE)


@dataclass(frozen=True)
class SpamVerdict:
    is_spam: bool
    spam_score: int
    legit_score: int
    spam_tags: tuple[str, ...] = ()
    legit_tags: tuple[str, ...] = ()
    reason: str = ""


def _matching_tags(rules: tuple[PatternRule, ...], text: str) -> tuple[str, ...]:
    return tuple(r.tag for r in rules if r.matches(text))


def analyze_spam(text: str) -> SpamVerdict:
    """Score *text* against both indicator sets and apply the tie-break.

    Weak or absent signals resolve to "not spam": silencing a real
    notification costs more than letting one marketing text through.
    """
    spam_tags = _matching_tags(SPAM_INDICATORS, text)
    legit_tags = _matching_tags(LEGIT_INDICATORS, text)
    spam_score, legit_score = len(spam_tags), len(legit_tags)

    if legit_score > 0 and spam_score == 0:
        is_spam, reason = False, "legit indicators only"
    elif spam_score > 0 and legit_score == 0:
        is_spam, reason = True, "spam indicators only"
    elif spam_score > 0:
        is_spam = spam_score > legit_score
        reason = "spam outweighs legit" if is_spam else "legit outweighs or ties spam"
    elif SUSPICIOUS_LINK_RE.search(text):
        is_spam, reason = True, "suspicious link"
    else:
        is_spam, reason = False, "no indicators"

    return SpamVerdict(
        is_spam=is_spam,
        spam_score=spam_score,
        legit_score=legit_score,
        spam_tags=spam_tags,
        legit_tags=legit_tags,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Urgency
# ---------------------------------------------------------------------------

URGENT_KEYWORDS: tuple[str, ...] = (
    "urgent",
    "emergency",
    "asap",
    "help",
    "important",
    "need you",
    "call me",
    "911",
    "hospital",
    "accident",
)


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class UrgencyVerdict:
    is_urgent: bool
    confidence: Confidence
    reason: str | None = None


NOT_URGENT = UrgencyVerdict(is_urgent=False, confidence=Confidence.LOW)

_REPEATED_PUNCTUATION_RE = re.compile(r"[!?]{3,}")


def _keyword_rule(text: str) -> UrgencyVerdict | None:
    lowered = text.lower()
    for keyword in URGENT_KEYWORDS:
        if keyword in lowered:
            return UrgencyVerdict(True, Confidence.HIGH, f'Contains "{keyword}"')
    return None


def _punctuation_rule(text: str) -> UrgencyVerdict | None:
    if _REPEATED_PUNCTUATION_RE.search(text):
        return UrgencyVerdict(True, Confidence.MEDIUM, "Multiple !!!???")
    return None


def _caps_rule(text: str) -> UrgencyVerdict | None:
    caps_words = [w for w in text.split(" ") if len(w) > 2 and w.isupper()]
    if len(caps_words) >= 3:
        return UrgencyVerdict(True, Confidence.MEDIUM, "ALL CAPS words")
    return None


# Checked in order; first match wins.
URGENCY_RULES: tuple[tuple[str, Callable[[str], Optional[UrgencyVerdict]]], ...] = (
    ("keyword", _keyword_rule),
    ("punctuation", _punctuation_rule),
    ("caps", _caps_rule),
)


def detect_urgency(text: str) -> UrgencyVerdict:
    for _name, rule in URGENCY_RULES:
        verdict = rule(text)
        if verdict is not None:
            return verdict
    return NOT_URGENT


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------

TITLE_MAX_LENGTH = 100

EVENT_VOCABULARY_RE = re.compile(r"invited|starting|rsvp|event|webinar|hackathon", re.IGNORECASE)

# First capture group of the first matching pattern becomes the title.
TITLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"invited\s+you\s+to\s+(.+?)(?:\.\s|RSVP|Event|$)", re.IGNORECASE),
    re.compile(r"you're\s+registered\s+for\s+(.+?)(?:\.\s|\.$|$)", re.IGNORECASE),
    re.compile(r"reminder:\s*(.+?)\s+(?:starts?|begins?)", re.IGNORECASE),
    re.compile(r"(.+?)\s+is\s+starting", re.IGNORECASE),
)

# Known event platforms first, then short lu.ma links, then any URL.
LINK_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(
        r"https?://(?:[\w-]+\.)*(?:lu\.ma|eventbrite\.[a-z.]+|zoom\.(?:us|com)|meet\.google\.com|calendly\.com|hopin\.(?:com|to)|airmeet\.com)[^\s]*",
        re.IGNORECASE,
    ),
    re.compile(r"\b[a-z]+\.lu\.ma/[^\s]+", re.IGNORECASE),
    re.compile(r"https?://[^\s]+", re.IGNORECASE),
)

_TRAILING_PUNCTUATION_RE = re.compile(r"[.,;:!?)]+$")

DAY_TIME_RE = re.compile(
    r"(?:on\s+)?(\w+day),?\s+(\d{1,2}):(\d{2})\s*(AM|PM)?\s*([A-Za-z]{2,4})?",
    re.IGNORECASE,
)
STARTING_NOW_RE = re.compile(r"starting\s+now", re.IGNORECASE)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

TIMEZONE_ABBREVIATIONS = {
    "est": "America/New_York",
    "edt": "America/New_York",
    "cst": "America/Chicago",
    "cdt": "America/Chicago",
    "mst": "America/Denver",
    "mdt": "America/Denver",
    "pst": "America/Los_Angeles",
    "pdt": "America/Los_Angeles",
    "utc": "UTC",
    "gmt": "UTC",
}


@dataclass(frozen=True)
class InviteInfo:
    title: str
    start: datetime.datetime
    link: str | None
    source: str

    @property
    def key(self) -> str:
        return f"{self.title}|{self.start.isoformat()}"


def _to_24h(hour: int, ampm: str | None) -> int | None:
    if ampm:
        if not 1 <= hour <= 12:
            return None
        if ampm.upper() == "PM" and hour != 12:
            return hour + 12
        if ampm.upper() == "AM" and hour == 12:
            return 0
        return hour
    return hour if 0 <= hour <= 23 else None


def parse_event_datetime(text: str, now: datetime.datetime) -> datetime.datetime | None:
    """Next occurrence of "<weekday>, HH:MM [AM|PM] [TZ]", or *now* for "starting now".

    Today's weekday maps to next week; the event is never in the past.
    """
    for match in DAY_TIME_RE.finditer(text):
        day_name, hours, minutes, ampm, tz_token = match.groups()
        if day_name.lower() not in WEEKDAYS:
            continue
        hour = _to_24h(int(hours), ampm)
        minute = int(minutes)
        if hour is None or minute > 59:
            continue

        tz = now.tzinfo
        zone_name = TIMEZONE_ABBREVIATIONS.get((tz_token or "").lower())
        if zone_name:
            tz = ZoneInfo(zone_name)

        local_now = now.astimezone(tz) if tz is not None else now
        days_until = WEEKDAYS.index(day_name.lower()) - local_now.weekday()
        if days_until <= 0:
            days_until += 7
        event_date = local_now.date() + datetime.timedelta(days=days_until)
        return datetime.datetime.combine(event_date, datetime.time(hour, minute), tzinfo=tz)

    if STARTING_NOW_RE.search(text):
        return now
    return None


def extract_event_link(text: str) -> str | None:
    for pattern in LINK_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        link = _TRAILING_PUNCTUATION_RE.sub("", match.group(0))
        if not link.lower().startswith("http"):
            link = "https://" + link
        return link
    return None


def extract_event_title(text: str, sender: str) -> str:
    title = f"Event from {sender}"
    for pattern in TITLE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            title = match.group(1).strip()
            break
    return re.sub(r"[:.]$", "", title)[:TITLE_MAX_LENGTH]


def parse_invite(text: str, sender: str, now: datetime.datetime) -> InviteInfo | None:
    """Calendar-event candidate, or None when the text is not a timed invite."""
    if not any(rule.matches(text) for rule in LEGIT_INDICATORS):
        return None
    if not EVENT_VOCABULARY_RE.search(text):
        return None

    start = parse_event_datetime(text, now)
    if start is None:
        return None

    return InviteInfo(
        title=extract_event_title(text, sender),
        start=start,
        link=extract_event_link(text),
        source=sender,
    )


# ---------------------------------------------------------------------------
# Remote commands
# ---------------------------------------------------------------------------

COMMAND_PREFIX = "!"
COMMAND_VOCABULARY: tuple[str, ...] = ("pause", "resume", "status", "digest", "help")
UNKNOWN_COMMAND = "unknown"


def parse_command(text: str) -> str | None:
    """Command name for "!"-prefixed text; ``UNKNOWN_COMMAND`` if unrecognized."""
    cmd = (text or "").strip().lower()
    if not cmd.startswith(COMMAND_PREFIX):
        return None
    name = cmd[len(COMMAND_PREFIX):].strip()
    return name if name in COMMAND_VOCABULARY else UNKNOWN_COMMAND


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Classification:
    spam: SpamVerdict
    urgency: UrgencyVerdict
    invite: InviteInfo | None
    command: str | None


def reference_time(message: InboundMessage, tz_name: str | None = None) -> datetime.datetime:
    tz = ZoneInfo(tz_name or settings.OWNER_TIMEZONE)
    return datetime.datetime.fromtimestamp(message.received_at, tz=tz)


def classify(message: InboundMessage, *, now: datetime.datetime | None = None) -> Classification:
    text = message.text or ""
    if now is None:
        now = reference_time(message)
    return Classification(
        spam=analyze_spam(text),
        urgency=detect_urgency(text),
        invite=parse_invite(text, message.sender_id, now),
        command=parse_command(text),
    )
