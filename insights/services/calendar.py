"""External calendar and reminder integrations.

An integration is addressed by name (``"apple"``, ``"google"``) and stores
events and reminders under its own external ids. :class:`InMemoryCalendar`
stands in for the on-device calendar and for tests; :class:`GoogleCalendar`
talks to Google Calendar v3 and Google Tasks v1.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from typing import Protocol

from insights.config import Settings
from insights.domain.models import CalendarEvent, Deadline, DeadlineStatus

logger = logging.getLogger(__name__)

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/tasks",
]


@dataclass
class ExternalItem:
    """An event or reminder as the external system currently holds it."""

    external_id: str
    title: str
    start: datetime | None
    all_day: bool = False
    completed: bool = False
    container: str = ""
    notes: str | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CalendarIntegration(Protocol):
    name: str

    async def create_event(self, event: CalendarEvent, calendar_name: str) -> str: ...

    async def update_event(
        self, external_id: str, event: CalendarEvent, calendar_name: str
    ) -> str: ...

    async def get_event(self, external_id: str) -> ExternalItem | None: ...

    async def create_reminder(self, deadline: Deadline, list_name: str) -> str: ...

    async def update_reminder(
        self, external_id: str, deadline: Deadline, list_name: str
    ) -> str: ...

    async def get_reminder(self, external_id: str) -> ExternalItem | None: ...

    def open_url(self, external_id: str) -> str: ...


def _event_item(external_id: str, event: CalendarEvent, calendar_name: str) -> ExternalItem:
    return ExternalItem(
        external_id=external_id,
        title=event.title,
        start=event.start,
        all_day=event.time is None,
        container=calendar_name,
        notes=event.description,
    )


def _reminder_item(external_id: str, deadline: Deadline, list_name: str) -> ExternalItem:
    return ExternalItem(
        external_id=external_id,
        title=deadline.task,
        start=deadline.due,
        completed=deadline.status == DeadlineStatus.COMPLETED,
        container=list_name,
        notes=deadline.details,
    )


# ---------------------------------------------------------------------------
# In-memory integration
# ---------------------------------------------------------------------------


class InMemoryCalendar:
    """Dict-backed calendar and reminders store.

    ``failure`` makes every write raise it; ``latency`` delays writes so
    concurrent callers interleave.
    """

    def __init__(self, name: str, latency: float = 0.0) -> None:
        self.name = name
        self.latency = latency
        self.failure: Exception | None = None
        self.events: dict[str, ExternalItem] = {}
        self.reminders: dict[str, ExternalItem] = {}
        self._ids = itertools.count(1)

    async def create_event(self, event: CalendarEvent, calendar_name: str) -> str:
        await self._write()
        external_id = f"{self.name}-event-{next(self._ids)}"
        self.events[external_id] = _event_item(external_id, event, calendar_name)
        return external_id

    async def update_event(
        self, external_id: str, event: CalendarEvent, calendar_name: str
    ) -> str:
        await self._write()
        if external_id not in self.events:
            raise LookupError(f"{self.name} has no event {external_id}")
        self.events[external_id] = _event_item(external_id, event, calendar_name)
        return external_id

    async def get_event(self, external_id: str) -> ExternalItem | None:
        return self.events.get(external_id)

    async def create_reminder(self, deadline: Deadline, list_name: str) -> str:
        await self._write()
        external_id = f"{self.name}-reminder-{next(self._ids)}"
        self.reminders[external_id] = _reminder_item(external_id, deadline, list_name)
        return external_id

    async def update_reminder(
        self, external_id: str, deadline: Deadline, list_name: str
    ) -> str:
        await self._write()
        if external_id not in self.reminders:
            raise LookupError(f"{self.name} has no reminder {external_id}")
        self.reminders[external_id] = _reminder_item(external_id, deadline, list_name)
        return external_id

    async def get_reminder(self, external_id: str) -> ExternalItem | None:
        return self.reminders.get(external_id)

    def open_url(self, external_id: str) -> str:
        return f"{self.name}-calendar://open/{external_id}"

    # Edits made directly in the calendar, outside of this service.

    def edit_item(self, external_id: str, **changes) -> None:
        store = self.events if external_id in self.events else self.reminders
        changes.setdefault("updated_at", datetime.now(timezone.utc))
        store[external_id] = replace(store[external_id], **changes)

    def remove_item(self, external_id: str) -> None:
        self.events.pop(external_id, None)
        self.reminders.pop(external_id, None)

    async def _write(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.failure is not None:
            raise self.failure


# ---------------------------------------------------------------------------
# Google Calendar / Google Tasks
# ---------------------------------------------------------------------------


def _split_id(external_id: str) -> tuple[str, str]:
    container, _, item_id = external_id.rpartition("|")
    return container, item_id


def _parse_rfc3339(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


class GoogleCalendar:
    """Google Calendar v3 for events and Google Tasks v1 for reminders.

    External ids are ``"<calendarId>|<eventId>"`` and ``"<tasklistId>|<taskId>"``.
    The client library is blocking, so every call runs in a worker thread.
    """

    def __init__(self, credentials_file: str, default_event_minutes: int = 60) -> None:
        self.name = "google"
        self.credentials_file = credentials_file
        self.default_event_minutes = default_event_minutes
        self._calendar = None
        self._tasks = None
        self._calendar_ids: dict[str, str] = {}
        self._tasklist_ids: dict[str, str] = {}

    def _services(self):
        if self._calendar is None:
            from google.oauth2.credentials import Credentials
            from googleapiclient.discovery import build

            creds = Credentials.from_authorized_user_file(self.credentials_file, GOOGLE_SCOPES)
            self._calendar = build("calendar", "v3", credentials=creds)
            self._tasks = build("tasks", "v1", credentials=creds)
            logger.info("Google Calendar and Tasks services initialised")
        return self._calendar, self._tasks

    # -- events ------------------------------------------------------------

    async def create_event(self, event: CalendarEvent, calendar_name: str) -> str:
        return await asyncio.to_thread(self._create_event, event, calendar_name)

    async def update_event(
        self, external_id: str, event: CalendarEvent, calendar_name: str
    ) -> str:
        return await asyncio.to_thread(self._update_event, external_id, event, calendar_name)

    async def get_event(self, external_id: str) -> ExternalItem | None:
        return await asyncio.to_thread(self._get_event, external_id)

    def _create_event(self, event: CalendarEvent, calendar_name: str) -> str:
        calendar, _ = self._services()
        calendar_id = self._calendar_id(calendar_name)
        created = (
            calendar.events()
            .insert(calendarId=calendar_id, body=self._event_body(event))
            .execute()
        )
        return f"{calendar_id}|{created['id']}"

    def _update_event(self, external_id: str, event: CalendarEvent, calendar_name: str) -> str:
        calendar, _ = self._services()
        calendar_id, event_id = _split_id(external_id)
        target_id = self._calendar_id(calendar_name)
        if target_id != calendar_id:
            calendar.events().move(
                calendarId=calendar_id, eventId=event_id, destination=target_id
            ).execute()
            logger.info("Moved event %s from %s to %s", event_id, calendar_id, target_id)
            calendar_id = target_id
        calendar.events().patch(
            calendarId=calendar_id, eventId=event_id, body=self._event_body(event)
        ).execute()
        return f"{calendar_id}|{event_id}"

    def _get_event(self, external_id: str) -> ExternalItem | None:
        from googleapiclient.errors import HttpError

        calendar, _ = self._services()
        calendar_id, event_id = _split_id(external_id)
        try:
            raw = calendar.events().get(calendarId=calendar_id, eventId=event_id).execute()
        except HttpError as exc:
            if exc.resp.status in (404, 410):
                return None
            raise
        if raw.get("status") == "cancelled":
            return None
        start = raw.get("start", {})
        if "dateTime" in start:
            begins, all_day = _parse_rfc3339(start["dateTime"]), False
        else:
            begins = datetime.fromisoformat(start["date"]).replace(tzinfo=timezone.utc)
            all_day = True
        return ExternalItem(
            external_id=external_id,
            title=raw.get("summary", ""),
            start=begins,
            all_day=all_day,
            container=calendar_id,
            notes=raw.get("description"),
            updated_at=_parse_rfc3339(raw["updated"]),
        )

    def _event_body(self, event: CalendarEvent) -> dict:
        body = {
            "summary": event.title,
            "location": event.location,
            "description": event.description,
        }
        if event.time is None:
            body["start"] = {"date": event.date.isoformat()}
            body["end"] = {"date": (event.date + timedelta(days=1)).isoformat()}
        else:
            end = event.start + timedelta(minutes=self.default_event_minutes)
            body["start"] = {"dateTime": event.start.isoformat(), "timeZone": "UTC"}
            body["end"] = {"dateTime": end.isoformat(), "timeZone": "UTC"}
        return body

    def _calendar_id(self, calendar_name: str) -> str:
        if calendar_name not in self._calendar_ids:
            calendar, _ = self._services()
            listing = calendar.calendarList().list().execute()
            matches = [
                c["id"] for c in listing.get("items", []) if c.get("summary") == calendar_name
            ]
            self._calendar_ids[calendar_name] = matches[0] if matches else "primary"
        return self._calendar_ids[calendar_name]

    # -- reminders ---------------------------------------------------------

    async def create_reminder(self, deadline: Deadline, list_name: str) -> str:
        return await asyncio.to_thread(self._create_reminder, deadline, list_name)

    async def update_reminder(
        self, external_id: str, deadline: Deadline, list_name: str
    ) -> str:
        return await asyncio.to_thread(self._update_reminder, external_id, deadline, list_name)

    async def get_reminder(self, external_id: str) -> ExternalItem | None:
        return await asyncio.to_thread(self._get_reminder, external_id)

    def _create_reminder(self, deadline: Deadline, list_name: str) -> str:
        _, tasks = self._services()
        tasklist_id = self._tasklist_id(list_name)
        created = (
            tasks.tasks()
            .insert(tasklist=tasklist_id, body=self._task_body(deadline))
            .execute()
        )
        return f"{tasklist_id}|{created['id']}"

    def _update_reminder(self, external_id: str, deadline: Deadline, list_name: str) -> str:
        _, tasks = self._services()
        tasklist_id, task_id = _split_id(external_id)
        target_id = self._tasklist_id(list_name)
        if target_id != tasklist_id:
            # Tasks cannot move between lists: re-create, then drop the old copy.
            new_id = self._create_reminder(deadline, list_name)
            tasks.tasks().delete(tasklist=tasklist_id, task=task_id).execute()
            logger.info("Moved task %s from %s to %s", task_id, tasklist_id, target_id)
            return new_id
        tasks.tasks().patch(
            tasklist=tasklist_id, task=task_id, body=self._task_body(deadline)
        ).execute()
        return external_id

    def _get_reminder(self, external_id: str) -> ExternalItem | None:
        from googleapiclient.errors import HttpError

        _, tasks = self._services()
        tasklist_id, task_id = _split_id(external_id)
        try:
            raw = tasks.tasks().get(tasklist=tasklist_id, task=task_id).execute()
        except HttpError as exc:
            if exc.resp.status in (404, 410):
                return None
            raise
        if raw.get("deleted"):
            return None
        return ExternalItem(
            external_id=external_id,
            title=raw.get("title", ""),
            start=_parse_rfc3339(raw["due"]) if raw.get("due") else None,
            completed=raw.get("status") == "completed",
            container=tasklist_id,
            notes=raw.get("notes"),
            updated_at=_parse_rfc3339(raw["updated"]),
        )

    @staticmethod
    def _task_body(deadline: Deadline) -> dict:
        # Tasks only keeps the date part of "due".
        due = datetime.combine(deadline.due.date(), time(0, 0), tzinfo=timezone.utc)
        return {
            "title": deadline.task,
            "notes": deadline.details,
            "due": due.isoformat().replace("+00:00", "Z"),
            "status": (
                "completed" if deadline.status == DeadlineStatus.COMPLETED else "needsAction"
            ),
        }

    def _tasklist_id(self, list_name: str) -> str:
        if list_name not in self._tasklist_ids:
            _, tasks = self._services()
            listing = tasks.tasklists().list().execute()
            matches = [t["id"] for t in listing.get("items", []) if t.get("title") == list_name]
            self._tasklist_ids[list_name] = matches[0] if matches else "@default"
        return self._tasklist_ids[list_name]

    def open_url(self, external_id: str) -> str:
        _, item_id = _split_id(external_id)
        return f"https://calendar.google.com/calendar/event?eid={item_id}"


def build_integrations(settings: Settings) -> dict[str, CalendarIntegration]:
    integrations: dict[str, CalendarIntegration] = {"apple": InMemoryCalendar("apple")}
    if settings.calendar_backend == "google":
        integrations["google"] = GoogleCalendar(
            settings.google_credentials_file, settings.default_event_minutes
        )
    else:
        integrations["google"] = InMemoryCalendar("google")
    logger.info("Calendar integrations: %s", ", ".join(sorted(integrations)))
    return integrations
