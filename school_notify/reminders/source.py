"""
Reminder source: calendar events with attendees, and upcoming birthdays.

The calendar and user data live in other services. ReminderSource is the
narrow interface the engine needs; HttpReminderSource reads it over HTTP.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

import httpx

from school_notify import config
from school_notify.errors import ReminderSourceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderOffset:
    reminder_type: str  # e.g., "day_before", "hour_before"
    minutes_before: int
    channel: str = "whatsapp"


@dataclass
class Attendee:
    person_id: int
    name: str
    phone: str | None = None
    email: str | None = None
    send_reminders: bool = True


@dataclass
class CalendarEvent:
    event_id: str
    tenant_id: int
    title: str
    event_type: str  # training, match, tournament, meeting, payment_due, ...
    start: datetime
    location: str | None = None
    calendar_name: str | None = None
    attendees: list[Attendee] = field(default_factory=list)
    reminders: list[ReminderOffset] = field(default_factory=list)

    def reminder_offsets(self) -> list[ReminderOffset]:
        """The event's own offsets, or the defaults for its type."""
        return self.reminders or default_reminders(self.event_type)


@dataclass
class UpcomingBirthday:
    person_id: int
    tenant_id: int
    name: str
    birth_date: date
    phone: str | None = None
    email: str | None = None
    school_name: str | None = None


def _offsets(*specs: tuple[int, str, str]) -> list[ReminderOffset]:
    return [ReminderOffset(reminder_type=t, minutes_before=m, channel=c) for m, c, t in specs]


# Offsets used when an event doesn't define its own
DEFAULT_REMINDERS: dict[str, list[ReminderOffset]] = {
    "training": _offsets(
        (1440, "whatsapp", "day_before"),
        (60, "whatsapp", "hour_before"),
    ),
    "match": _offsets(
        (2880, "whatsapp", "two_days_before"),
        (1440, "whatsapp", "day_before"),
        (120, "whatsapp", "two_hours_before"),
    ),
    "tournament": _offsets(
        (10080, "whatsapp", "week_before"),
        (2880, "whatsapp", "two_days_before"),
        (1440, "whatsapp", "day_before"),
    ),
    "meeting": _offsets(
        (1440, "email", "day_before"),
        (30, "whatsapp", "thirty_minutes"),
    ),
    "payment_due": _offsets(
        (4320, "whatsapp", "three_days_before"),
        (1440, "whatsapp", "day_before"),
        (0, "whatsapp", "due_date"),
    ),
}

FALLBACK_REMINDERS = _offsets(
    (1440, "whatsapp", "day_before"),
    (60, "whatsapp", "hour_before"),
)


def default_reminders(event_type: str) -> list[ReminderOffset]:
    return DEFAULT_REMINDERS.get(event_type, FALLBACK_REMINDERS)


# =============================================================================
# Source interface
# =============================================================================


class ReminderSource(ABC):
    @abstractmethod
    async def get_upcoming_events(
        self, start: datetime, end: datetime, tenant_id: int | None = None
    ) -> list[CalendarEvent]:
        """Events starting in (start, end], with attendees and reminder offsets."""

    @abstractmethod
    async def get_event(self, event_id: str, tenant_id: int | None = None) -> CalendarEvent | None:
        ...

    @abstractmethod
    async def get_upcoming_birthdays(
        self, days: int, tenant_id: int | None = None
    ) -> list[UpcomingBirthday]:
        ...


# =============================================================================
# HTTP implementation
# =============================================================================


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_event(data: dict) -> CalendarEvent:
    """Build a CalendarEvent from the calendar service's JSON."""
    reminders = [
        ReminderOffset(
            reminder_type=r.get("type") or "custom",
            minutes_before=int(r.get("minutes", r.get("minutes_before", 0))),
            channel=r.get("method") or r.get("channel") or "whatsapp",
        )
        for r in data.get("reminders") or []
    ]
    attendees = [
        Attendee(
            person_id=int(a.get("attendee_id") or a.get("id")),
            name=a.get("attendee_name") or a.get("name") or "",
            phone=a.get("attendee_phone") or a.get("phone"),
            email=a.get("attendee_email") or a.get("email"),
            send_reminders=bool(a.get("send_reminders", True)),
        )
        for a in data.get("attendees") or data.get("event_attendees") or []
    ]
    calendar = data.get("calendar") or {}
    return CalendarEvent(
        event_id=str(data["id"]),
        tenant_id=int(data.get("school_id") or data.get("tenant_id")),
        title=data.get("title") or "",
        event_type=data.get("type") or "other",
        start=_parse_datetime(data.get("start_date") or data["start"]),
        location=data.get("location"),
        calendar_name=calendar.get("name") or data.get("calendar_name"),
        attendees=attendees,
        reminders=reminders,
    )


def parse_birthday(data: dict) -> UpcomingBirthday:
    return UpcomingBirthday(
        person_id=int(data["id"]),
        tenant_id=int(data.get("school_id") or data.get("tenant_id")),
        name=data.get("name") or "",
        birth_date=date.fromisoformat(str(data["birthday"])[:10]),
        phone=data.get("phone"),
        email=data.get("email"),
        school_name=data.get("school_name"),
    )


class HttpReminderSource(ReminderSource):
    """Reads events from the calendar service and birthdays from the auth service."""

    def __init__(
        self,
        calendar_url: str = config.CALENDAR_SERVICE_URL,
        auth_url: str = config.AUTH_SERVICE_URL,
        timeout: float = config.SERVICE_TIMEOUT_SECONDS,
    ):
        self.calendar_url = calendar_url.rstrip("/")
        self.auth_url = auth_url.rstrip("/")
        self.timeout = timeout

    async def _get(self, url: str, params: dict | None = None) -> dict:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ReminderSourceError(f"Request to {url} failed: {e}") from e

        if response.status_code == 404:
            return {}
        if response.status_code != 200:
            raise ReminderSourceError(f"{url} returned HTTP {response.status_code}")
        return response.json()

    async def get_upcoming_events(
        self, start: datetime, end: datetime, tenant_id: int | None = None
    ) -> list[CalendarEvent]:
        data = await self._get(
            f"{self.calendar_url}/api/events/upcoming",
            {"from": start.isoformat(), "to": end.isoformat(), "school_id": tenant_id},
        )
        events = []
        for item in data.get("data", []):
            try:
                events.append(parse_event(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed event {item.get('id')}: {e}")
        return events

    async def get_event(self, event_id: str, tenant_id: int | None = None) -> CalendarEvent | None:
        data = await self._get(
            f"{self.calendar_url}/api/events/{event_id}", {"school_id": tenant_id}
        )
        if not data.get("data"):
            return None
        return parse_event(data["data"])

    async def get_upcoming_birthdays(
        self, days: int, tenant_id: int | None = None
    ) -> list[UpcomingBirthday]:
        data = await self._get(
            f"{self.auth_url}/api/users/upcoming-birthdays",
            {"days": days, "school_id": tenant_id},
        )
        birthdays = []
        for item in data.get("data", []):
            try:
                birthdays.append(parse_birthday(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed birthday {item.get('id')}: {e}")
        return birthdays


_source: ReminderSource | None = None


def get_reminder_source() -> ReminderSource:
    global _source
    if _source is None:
        _source = HttpReminderSource()
    return _source


def set_reminder_source(source: ReminderSource | None) -> None:
    global _source
    _source = source
