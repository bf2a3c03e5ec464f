"""Google Calendar collaborator (REST, refresh-token auth).

Used for two things: creating events from parsed invites, and rendering
today's schedule into the persona prompt. Every failure is reported as a
False/empty result and logged; nothing here raises into the engine.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from reply_orchestrator.config import settings

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"
REQUEST_TIMEOUT = 20.0
NO_EVENTS_CONTEXT = "Calendar: No events today or not connected"


def _format_time(dt: datetime.datetime) -> str:
    return dt.strftime("%I:%M %p").lstrip("0")


@dataclass(frozen=True)
class CalendarEvent:
    summary: str
    start: datetime.datetime
    end: datetime.datetime
    location: Optional[str] = None


class GoogleCalendarClient:
    """Minimal Google Calendar REST client with token refresh."""

    def __init__(
        self,
        client_id: str = settings.GOOGLE_CLIENT_ID,
        client_secret: str = settings.GOOGLE_CLIENT_SECRET,
        refresh_token: str = settings.GOOGLE_REFRESH_TOKEN,
        *,
        calendar_id: str = settings.GOOGLE_CALENDAR_ID,
        tz: str = settings.OWNER_TIMEZONE,
        event_minutes: int = settings.EVENT_DURATION_MINUTES,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id or "primary"
        self.tz_name = tz
        self._tz = ZoneInfo(tz)
        self.event_minutes = event_minutes
        self._clock = clock or (lambda: datetime.datetime.now(self._tz))

        self._lock = threading.Lock()
        self._cached_token = ""
        self._token_expiry: Optional[datetime.datetime] = None
        self._events: List[CalendarEvent] = []
        self.enabled = False

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)

    # ------------------------------------------------------------------
    # Auth / transport
    # ------------------------------------------------------------------

    def _ensure_token(self, force_refresh: bool = False) -> tuple[bool, str]:
        now = datetime.datetime.now(datetime.timezone.utc)
        if (
            not force_refresh
            and self._cached_token
            and self._token_expiry
            and self._token_expiry > now + datetime.timedelta(seconds=30)
        ):
            return True, self._cached_token

        if not self.is_configured():
            return False, "Google credentials not configured."

        try:
            with httpx.Client(timeout=REQUEST_TIMEOUT) as client:
                response = client.post(
                    TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
            if response.status_code != 200:
                return False, f"Token refresh failed ({response.status_code})"
            data = response.json()
            token = data.get("access_token", "")
            if not token:
                return False, "Token refresh failed: no access_token"
            expires_in = int(data.get("expires_in", 3600))
            self._cached_token = token
            self._token_expiry = now + datetime.timedelta(seconds=max(60, expires_in - 30))
            return True, token
        except (httpx.HTTPError, json.JSONDecodeError, ValueError) as e:
            return False, str(e)

    def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> tuple[bool, dict[str, Any]]:
        """Perform an authenticated request; one retry after a 401."""
        ok, token_or_error = self._ensure_token()
        if not ok:
            return False, {"error": token_or_error}
        token = token_or_error

        try:
            with httpx.Client(timeout=REQUEST_TIMEOUT) as client:
                for attempt in range(2):
                    response = client.request(
                        method=method.upper(),
                        url=url,
                        params=params,
                        json=json_body,
                        headers={"Authorization": f"Bearer {token}"},
                    )

                    try:
                        payload = response.json()
                    except json.JSONDecodeError:
                        payload = {"raw": response.text}
                    if not isinstance(payload, dict):
                        payload = {"raw": payload}

                    if response.status_code == 401 and attempt == 0:
                        refreshed, refreshed_or_error = self._ensure_token(force_refresh=True)
                        if not refreshed:
                            return False, {"error": refreshed_or_error}
                        token = refreshed_or_error
                        continue

                    if response.status_code >= 400:
                        return False, {"error": f"Google API error {response.status_code}", "body": payload}

                    return True, payload
            return False, {"error": "Google API request failed without response."}
        except httpx.HTTPError as e:
            return False, {"error": str(e)}

    def _events_url(self) -> str:
        return EVENTS_URL.format(calendar_id=quote(self.calendar_id, safe=""))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def create_event(
        self,
        title: str,
        start: datetime.datetime,
        link: Optional[str] = None,
        *,
        source: str = "",
    ) -> bool:
        if not self.is_configured():
            logger.info("[CALENDAR] Not configured; skipping event %r", title)
            return False

        if start.tzinfo is None:
            start = start.replace(tzinfo=self._tz)
        end = start + datetime.timedelta(minutes=self.event_minutes)
        footer = f"Auto-added from SMS ({source})"
        body = {
            "summary": title,
            "description": f"Link: {link}\n\n{footer}" if link else footer,
            "start": {"dateTime": start.isoformat(), "timeZone": self.tz_name},
            "end": {"dateTime": end.isoformat(), "timeZone": self.tz_name},
            "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 15}]},
        }

        ok, data = self.request("POST", self._events_url(), json_body=body)
        if not ok:
            logger.error("[CALENDAR] Create failed for %r: %s", title, data.get("error"))
            return False
        logger.info("[CALENDAR] Created event %r at %s", title, start.isoformat())
        return True

    def list_today_events(self) -> List[CalendarEvent]:
        now = self._clock().astimezone(self._tz)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end_of_day = start_of_day + datetime.timedelta(days=1)
        ok, data = self.request(
            "GET",
            self._events_url(),
            params={
                "timeMin": start_of_day.isoformat(),
                "timeMax": end_of_day.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": 20,
            },
        )
        if not ok:
            raise RuntimeError(str(data.get("error")))

        events: List[CalendarEvent] = []
        for item in data.get("items", []) or []:
            start = self._parse_when(item.get("start") or {})
            end = self._parse_when(item.get("end") or {})
            if start is None or end is None:
                continue
            events.append(
                CalendarEvent(
                    summary=item.get("summary") or "Untitled",
                    start=start,
                    end=end,
                    location=item.get("location"),
                )
            )
        return events

    def _parse_when(self, when: dict[str, Any]) -> Optional[datetime.datetime]:
        raw = when.get("dateTime") or when.get("date")
        if not raw:
            return None
        try:
            parsed = datetime.datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=self._tz)
        return parsed

    def refresh(self) -> int:
        """Reload today's events; returns how many were loaded (0 on failure)."""
        if not self.is_configured():
            return 0
        try:
            events = self.list_today_events()
        except RuntimeError as exc:
            logger.error("[CALENDAR] Load failed: %s", exc)
            return 0
        with self._lock:
            self._events = events
            self.enabled = True
        logger.info("[CALENDAR] Loaded %d events for today", len(events))
        return len(events)

    def context(self) -> str:
        """Today's schedule for the persona prompt."""
        with self._lock:
            events = list(self._events)
            enabled = self.enabled
        if not enabled or not events:
            return NO_EVENTS_CONTEXT

        now = self._clock()
        current = next((e for e in events if e.start <= now < e.end), None)
        upcoming = [e for e in events if e.start > now]

        lines = ["Kyle's schedule today:"]
        if current:
            lines.append(f"- NOW: {current.summary} (until {_format_time(current.end.astimezone(self._tz))})")
        for e in upcoming[:3]:
            lines.append(f"- {_format_time(e.start.astimezone(self._tz))}: {e.summary}")
        if not current and not upcoming:
            lines.append("- No more events today")
        return "\n".join(lines)
