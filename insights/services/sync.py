"""Reconciliation of calendar events and deadlines with external calendars.

Outbound syncs are create-or-update keyed on the entity's stored external
ids, and syncs of the same entity are serialized with a per-entity lock, so
repeated or concurrent calls never create a second external item. Failed
syncs are recorded on the entity and queued for retry with exponential
backoff.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, TypeVar

from insights.config import Settings
from insights.domain.errors import (
    AccessDeniedError,
    ExternalTimeoutError,
    InsightsError,
    InvalidRequestError,
    NotFoundError,
    SyncError,
)
from insights.domain.models import (
    CalendarEvent,
    CalendarSyncSettings,
    Deadline,
    DeadlineStatus,
    QueueStatus,
    SyncBatchResult,
    SyncEntityType,
    SyncItemResult,
    SyncQueueEntry,
    SyncStatus,
)
from insights.repos.memory import (
    CalendarEventRepository,
    DeadlineRepository,
    ParticipantRepository,
    SyncQueueRepository,
    SyncSettingsRepository,
)
from insights.services.calendar import CalendarIntegration, ExternalItem

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Delay before the next retry after *attempts* failed attempts."""
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=min(base_seconds * 2**exponent, max_seconds))


class SyncEngine:
    def __init__(
        self,
        settings: Settings,
        event_repo: CalendarEventRepository,
        deadline_repo: DeadlineRepository,
        participant_repo: ParticipantRepository,
        queue_repo: SyncQueueRepository,
        settings_repo: SyncSettingsRepository,
        integrations: dict[str, CalendarIntegration],
    ) -> None:
        self.settings = settings
        self.event_repo = event_repo
        self.deadline_repo = deadline_repo
        self.participant_repo = participant_repo
        self.queue_repo = queue_repo
        self.settings_repo = settings_repo
        self.integrations = integrations
        self._locks: dict[tuple[SyncEntityType, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[SyncEntityType, str], int] = {}

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self, user_id: str) -> CalendarSyncSettings:
        stored = self.settings_repo.get(user_id)
        if stored is None:
            stored = CalendarSyncSettings(user_id=user_id)
            self.settings_repo.save(stored)
        return stored

    def update_settings(self, sync_settings: CalendarSyncSettings) -> CalendarSyncSettings:
        unknown = [
            name
            for name in sync_settings.enabled_calendar_integrations()
            + sync_settings.enabled_reminder_integrations()
            if name not in self.integrations
        ]
        if unknown:
            raise InvalidRequestError(f"No integration available for: {', '.join(unknown)}")
        self.settings_repo.save(sync_settings)
        logger.info("Saved sync settings for %s", sync_settings.user_id)
        return sync_settings

    # ------------------------------------------------------------------
    # Outbound sync
    # ------------------------------------------------------------------

    async def sync_calendar_event(self, event_id: str, user_id: str) -> SyncItemResult:
        """Create or update *event_id* in every enabled calendar.

        Raises :class:`SyncError` when an integration fails; the failure is
        recorded on the event and queued for retry first.
        """
        try:
            return await self._sync_event(event_id, user_id)
        except SyncError as exc:
            self._record_failure(user_id, SyncEntityType.CALENDAR_EVENT, event_id, str(exc))
            raise

    async def sync_deadline_to_reminders(self, deadline_id: str, user_id: str) -> SyncItemResult:
        """Create or update *deadline_id* in every enabled reminders app."""
        try:
            return await self._sync_deadline(deadline_id, user_id)
        except SyncError as exc:
            self._record_failure(user_id, SyncEntityType.DEADLINE, deadline_id, str(exc))
            raise

    async def _sync_event(self, event_id: str, user_id: str) -> SyncItemResult:
        self._authorized_event(event_id, user_id)
        sync_settings = self.get_settings(user_id)
        targets = sync_settings.enabled_calendar_integrations()
        if not targets:
            return SyncItemResult(
                entity_type=SyncEntityType.CALENDAR_EVENT, entity_id=event_id, status="skipped"
            )

        async with self._entity_lock(SyncEntityType.CALENDAR_EVENT, event_id):
            event = self.event_repo.get(event_id)
            if event is None:
                raise NotFoundError(f"Calendar event {event_id} not found")
            calendar_name = sync_settings.calendar_name(event.category)
            external_ids = dict(event.external_ids)
            attempted_at = _utcnow()
            try:
                for name in targets:
                    integration = self._integration(name)
                    existing = external_ids.get(name)
                    if existing:
                        external_ids[name] = await self._call(
                            integration.update_event(existing, event, calendar_name)
                        )
                    else:
                        external_ids[name] = await self._call(
                            integration.create_event(event, calendar_name)
                        )
            except (SyncError, ExternalTimeoutError) as exc:
                logger.warning("Sync of event %s failed: %s", event_id, exc)
                self.event_repo.update(
                    event.model_copy(
                        update={
                            "external_ids": external_ids,
                            "sync_status": SyncStatus.FAILED,
                            "sync_error": str(exc),
                            "last_sync_attempt": attempted_at,
                        }
                    )
                )
                raise SyncError(f"Failed to sync event '{event.title}': {exc}") from exc

            self.event_repo.update(
                event.model_copy(
                    update={
                        "external_ids": external_ids,
                        "sync_status": SyncStatus.SYNCED,
                        "sync_error": None,
                        "last_sync_attempt": attempted_at,
                        "last_synced_at": _utcnow(),
                    }
                )
            )
        self.queue_repo.remove(SyncEntityType.CALENDAR_EVENT, event_id)
        logger.info("Synced event %s to %s", event_id, ", ".join(targets))
        return SyncItemResult(
            entity_type=SyncEntityType.CALENDAR_EVENT,
            entity_id=event_id,
            status="synced",
            external_ids=external_ids,
        )

    async def _sync_deadline(self, deadline_id: str, user_id: str) -> SyncItemResult:
        self._authorized_deadline(deadline_id, user_id)
        sync_settings = self.get_settings(user_id)
        targets = sync_settings.enabled_reminder_integrations()
        if not targets:
            return SyncItemResult(
                entity_type=SyncEntityType.DEADLINE, entity_id=deadline_id, status="skipped"
            )

        async with self._entity_lock(SyncEntityType.DEADLINE, deadline_id):
            deadline = self.deadline_repo.get(deadline_id)
            if deadline is None:
                raise NotFoundError(f"Deadline {deadline_id} not found")
            list_name = sync_settings.calendar_name(deadline.category)
            external_ids = dict(deadline.external_ids)
            attempted_at = _utcnow()
            try:
                for name in targets:
                    integration = self._integration(name)
                    existing = external_ids.get(name)
                    if existing:
                        external_ids[name] = await self._call(
                            integration.update_reminder(existing, deadline, list_name)
                        )
                    else:
                        external_ids[name] = await self._call(
                            integration.create_reminder(deadline, list_name)
                        )
            except (SyncError, ExternalTimeoutError) as exc:
                logger.warning("Sync of deadline %s failed: %s", deadline_id, exc)
                self.deadline_repo.update(
                    deadline.model_copy(
                        update={
                            "external_ids": external_ids,
                            "sync_status": SyncStatus.FAILED,
                            "sync_error": str(exc),
                            "last_sync_attempt": attempted_at,
                        }
                    )
                )
                raise SyncError(f"Failed to sync deadline '{deadline.task}': {exc}") from exc

            self.deadline_repo.update(
                deadline.model_copy(
                    update={
                        "external_ids": external_ids,
                        "sync_status": SyncStatus.SYNCED,
                        "sync_error": None,
                        "last_sync_attempt": attempted_at,
                        "last_synced_at": _utcnow(),
                    }
                )
            )
        self.queue_repo.remove(SyncEntityType.DEADLINE, deadline_id)
        logger.info("Synced deadline %s to %s", deadline_id, ", ".join(targets))
        return SyncItemResult(
            entity_type=SyncEntityType.DEADLINE,
            entity_id=deadline_id,
            status="synced",
            external_ids=external_ids,
        )

    # ------------------------------------------------------------------
    # Batch sync
    # ------------------------------------------------------------------

    async def sync_all_pending_events(
        self, user_id: str, cancel: asyncio.Event | None = None
    ) -> SyncBatchResult:
        """Sync every event without external ids in the user's conversations."""
        if not self.get_settings(user_id).enabled_calendar_integrations():
            return SyncBatchResult()
        conversation_ids = self.participant_repo.conversations_for(user_id)
        pending = self.event_repo.list_pending_sync(conversation_ids)
        logger.info("Syncing %d pending event(s) for %s", len(pending), user_id)
        return await self._run_batch(
            [(SyncEntityType.CALENDAR_EVENT, e.id) for e in pending], user_id, cancel
        )

    async def sync_all_pending_deadlines(
        self, user_id: str, cancel: asyncio.Event | None = None
    ) -> SyncBatchResult:
        """Sync every deadline of the user that has no external ids yet."""
        if not self.get_settings(user_id).enabled_reminder_integrations():
            return SyncBatchResult()
        pending = self.deadline_repo.list_pending_sync(user_id)
        logger.info("Syncing %d pending deadline(s) for %s", len(pending), user_id)
        return await self._run_batch(
            [(SyncEntityType.DEADLINE, d.id) for d in pending], user_id, cancel
        )

    async def auto_sync(
        self,
        user_id: str,
        event_ids: list[str] | None = None,
        deadline_ids: list[str] | None = None,
    ) -> SyncBatchResult:
        """Sync freshly extracted items, only when the user turned auto-sync on."""
        if not self.get_settings(user_id).auto_sync_enabled:
            return SyncBatchResult()
        items = [(SyncEntityType.CALENDAR_EVENT, i) for i in event_ids or []]
        items += [(SyncEntityType.DEADLINE, i) for i in deadline_ids or []]
        return await self._run_batch(items, user_id, None)

    async def _run_batch(
        self,
        items: list[tuple[SyncEntityType, str]],
        user_id: str,
        cancel: asyncio.Event | None,
    ) -> SyncBatchResult:
        batch = SyncBatchResult()
        for entity_type, entity_id in items:
            if cancel is not None and cancel.is_set():
                logger.info(
                    "Sync batch cancelled with %d item(s) left",
                    len(items) - len(batch.results),
                )
                batch.cancelled = True
                break
            try:
                if entity_type == SyncEntityType.CALENDAR_EVENT:
                    result = await self.sync_calendar_event(entity_id, user_id)
                else:
                    result = await self.sync_deadline_to_reminders(entity_id, user_id)
            except (SyncError, NotFoundError, AccessDeniedError) as exc:
                result = SyncItemResult(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status="failed",
                    error=exc.message,
                )
            batch.results.append(result)
        return batch

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    async def process_sync_queue(
        self,
        user_id: str,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncBatchResult:
        """Retry queued syncs that are due; give up after ``sync_max_attempts``."""
        now = now or _utcnow()
        due = self.queue_repo.list_due(user_id, now)
        logger.info("Processing %d queued sync(s) for %s", len(due), user_id)

        batch = SyncBatchResult()
        for entry in due:
            if cancel is not None and cancel.is_set():
                batch.cancelled = True
                break
            sync_one = (
                self._sync_event
                if entry.entity_type == SyncEntityType.CALENDAR_EVENT
                else self._sync_deadline
            )
            try:
                result = await sync_one(entry.entity_id, user_id)
            except (NotFoundError, AccessDeniedError) as exc:
                self.queue_repo.remove(entry.entity_type, entry.entity_id)
                result = SyncItemResult(
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    status="skipped",
                    error=exc.message,
                )
            except SyncError as exc:
                updated = self._record_failure(
                    user_id, entry.entity_type, entry.entity_id, exc.message, now
                )
                result = SyncItemResult(
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    status="abandoned" if updated.status == QueueStatus.ABANDONED else "failed",
                    error=exc.message,
                )
            else:
                if result.status == "skipped":
                    # Sync was turned off for this kind since the failure.
                    self.queue_repo.remove(entry.entity_type, entry.entity_id)
                    result = result.model_copy(update={"error": "sync disabled"})
            batch.results.append(result)
        return batch

    def _record_failure(
        self,
        user_id: str,
        entity_type: SyncEntityType,
        entity_id: str,
        error: str,
        now: datetime | None = None,
    ) -> SyncQueueEntry:
        now = now or _utcnow()
        entry = self.queue_repo.get_for_entity(entity_type, entity_id) or SyncQueueEntry(
            user_id=user_id, entity_type=entity_type, entity_id=entity_id, created_at=now
        )
        attempts = entry.attempts + 1
        abandoned = attempts >= self.settings.sync_max_attempts
        entry = entry.model_copy(
            update={
                "attempts": attempts,
                "last_error": error,
                "next_attempt_at": now
                + backoff_delay(
                    attempts,
                    self.settings.sync_backoff_seconds,
                    self.settings.sync_max_backoff_seconds,
                ),
                "status": QueueStatus.ABANDONED if abandoned else QueueStatus.QUEUED,
                "updated_at": now,
            }
        )
        self.queue_repo.upsert(entry)
        if abandoned:
            logger.error(
                "Giving up on %s %s after %d attempts: %s",
                entity_type,
                entity_id,
                attempts,
                error,
            )
        return entry

    # ------------------------------------------------------------------
    # Inbound reconciliation
    # ------------------------------------------------------------------

    async def detect_and_sync_external_changes(
        self, user_id: str, cancel: asyncio.Event | None = None
    ) -> SyncBatchResult:
        """Pull edits and deletions made directly in the external calendars.

        When both sides changed since the last sync, the most recent
        modification wins.
        """
        sync_settings = self.get_settings(user_id)
        conversation_ids = self.participant_repo.conversations_for(user_id)
        items: list[tuple[SyncEntityType, str]] = [
            (SyncEntityType.CALENDAR_EVENT, e.id)
            for e in self.event_repo.list_synced(conversation_ids)
        ]
        items += [
            (SyncEntityType.DEADLINE, d.id)
            for d in self.deadline_repo.list_synced(user_id)
            if d.status != DeadlineStatus.CANCELLED
        ]

        batch = SyncBatchResult()
        for entity_type, entity_id in items:
            if cancel is not None and cancel.is_set():
                batch.cancelled = True
                break
            try:
                if entity_type == SyncEntityType.CALENDAR_EVENT:
                    status = await self._reconcile_event(entity_id, sync_settings)
                else:
                    status = await self._reconcile_deadline(entity_id, sync_settings)
            except (SyncError, ExternalTimeoutError) as exc:
                logger.warning("Reconciling %s %s failed: %s", entity_type, entity_id, exc)
                batch.results.append(
                    SyncItemResult(
                        entity_type=entity_type,
                        entity_id=entity_id,
                        status="failed",
                        error=exc.message,
                    )
                )
                continue
            batch.results.append(
                SyncItemResult(entity_type=entity_type, entity_id=entity_id, status=status)
            )
        changed = sum(1 for r in batch.results if r.status not in ("unchanged", "failed"))
        logger.info("External reconciliation for %s: %d change(s)", user_id, changed)
        return batch

    async def _reconcile_event(self, event_id: str, sync_settings: CalendarSyncSettings) -> str:
        async with self._entity_lock(SyncEntityType.CALENDAR_EVENT, event_id):
            event = self.event_repo.get(event_id)
            if event is None:
                return "unchanged"
            for name, external_id in event.external_ids.items():
                integration = self.integrations.get(name)
                if integration is None:
                    continue
                item = await self._call(integration.get_event(external_id))
                if item is None:
                    self.event_repo.delete(event_id)
                    logger.info("Event %s was deleted in %s", event_id, name)
                    return "deleted"
                if not _event_differs(event, item):
                    continue
                now = _utcnow()
                if item.updated_at > event.updated_at:
                    starts = item.start.astimezone(timezone.utc)
                    self.event_repo.update(
                        event.model_copy(
                            update={
                                "title": item.title,
                                "date": starts.date(),
                                "time": None if item.all_day else starts.time(),
                                "updated_at": now,
                                "last_synced_at": now,
                            }
                        )
                    )
                    logger.info("Pulled %s changes into event %s", name, event_id)
                    return "pulled"
                pushed_id = await self._call(
                    integration.update_event(
                        external_id, event, sync_settings.calendar_name(event.category)
                    )
                )
                self.event_repo.update(
                    event.model_copy(
                        update={
                            "external_ids": {**event.external_ids, name: pushed_id},
                            "last_synced_at": now,
                        }
                    )
                )
                logger.info("Pushed event %s over older %s copy", event_id, name)
                return "pushed"
        return "unchanged"

    async def _reconcile_deadline(
        self, deadline_id: str, sync_settings: CalendarSyncSettings
    ) -> str:
        async with self._entity_lock(SyncEntityType.DEADLINE, deadline_id):
            deadline = self.deadline_repo.get(deadline_id)
            if deadline is None:
                return "unchanged"
            for name, external_id in deadline.external_ids.items():
                integration = self.integrations.get(name)
                if integration is None:
                    continue
                item = await self._call(integration.get_reminder(external_id))
                now = _utcnow()
                if item is None:
                    self.deadline_repo.update(
                        deadline.model_copy(
                            update={
                                "status": DeadlineStatus.CANCELLED,
                                "completed_at": None,
                                "updated_at": now,
                            }
                        )
                    )
                    logger.info("Reminder for deadline %s was deleted in %s", deadline_id, name)
                    return "deleted"
                if not _deadline_differs(deadline, item):
                    continue
                if item.updated_at > deadline.updated_at:
                    self.deadline_repo.update(_pull_reminder(deadline, item, now))
                    logger.info("Pulled %s changes into deadline %s", name, deadline_id)
                    return "pulled"
                pushed_id = await self._call(
                    integration.update_reminder(
                        external_id, deadline, sync_settings.calendar_name(deadline.category)
                    )
                )
                self.deadline_repo.update(
                    deadline.model_copy(
                        update={
                            "external_ids": {**deadline.external_ids, name: pushed_id},
                            "last_synced_at": now,
                        }
                    )
                )
                logger.info("Pushed deadline %s over older %s copy", deadline_id, name)
                return "pushed"
        return "unchanged"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorized_event(self, event_id: str, user_id: str) -> CalendarEvent:
        event = self.event_repo.get(event_id)
        if event is None:
            raise NotFoundError(f"Calendar event {event_id} not found")
        if not self.participant_repo.is_participant(event.conversation_id, user_id):
            raise AccessDeniedError()
        return event

    def _authorized_deadline(self, deadline_id: str, user_id: str) -> Deadline:
        deadline = self.deadline_repo.get(deadline_id)
        if deadline is None:
            raise NotFoundError(f"Deadline {deadline_id} not found")
        if deadline.user_id != user_id:
            raise AccessDeniedError("Access denied to deadline")
        return deadline

    @asynccontextmanager
    async def _entity_lock(
        self, entity_type: SyncEntityType, entity_id: str
    ) -> AsyncIterator[None]:
        """Serialize work on one entity; the lock is dropped once nobody holds or awaits it."""
        key = (entity_type, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    def _integration(self, name: str) -> CalendarIntegration:
        integration = self.integrations.get(name)
        if integration is None:
            raise SyncError(f"No integration configured for '{name}'")
        return integration

    async def _call(self, call: Awaitable[_T]) -> _T:
        """Await an integration call under the calendar timeout."""
        timeout = self.settings.calendar_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalTimeoutError(
                f"Calendar call timed out after {timeout:g}s"
            ) from exc
        except InsightsError:
            raise
        except Exception as exc:
            raise SyncError(str(exc)) from exc

    def open_url(self, entity_type: SyncEntityType, entity_id: str) -> str | None:
        """Deep link to the first external copy of an entity, if it has one."""
        repo = self.event_repo if entity_type == SyncEntityType.CALENDAR_EVENT else self.deadline_repo
        entity = repo.get(entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type} {entity_id} not found")
        for name, external_id in entity.external_ids.items():
            if name in self.integrations:
                return self.integrations[name].open_url(external_id)
        return None


def _event_differs(event: CalendarEvent, item: ExternalItem) -> bool:
    if item.title != event.title or item.all_day != (event.time is None):
        return True
    if item.start is None:
        return False
    if item.all_day:
        return item.start.date() != event.date
    return item.start != event.start


def _deadline_differs(deadline: Deadline, item: ExternalItem) -> bool:
    if item.title != deadline.task:
        return True
    if item.completed != (deadline.status == DeadlineStatus.COMPLETED):
        return True
    return item.start is not None and item.start.date() != deadline.due.date()


def _pull_reminder(deadline: Deadline, item: ExternalItem, now: datetime) -> Deadline:
    update: dict = {"task": item.title, "updated_at": now, "last_synced_at": now}
    if item.start is not None and item.start.date() != deadline.due.date():
        update["due"] = datetime.combine(
            item.start.date(), deadline.due.timetz()
        )
    if item.completed and deadline.status != DeadlineStatus.COMPLETED:
        update["status"] = DeadlineStatus.COMPLETED
        update["completed_at"] = item.updated_at
    elif not item.completed and deadline.status == DeadlineStatus.COMPLETED:
        update["status"] = DeadlineStatus.PENDING
        update["completed_at"] = None
    return deadline.model_copy(update=update)
