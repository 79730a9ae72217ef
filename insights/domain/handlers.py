"""Domain event handlers, wired up when the context is built."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from insights.domain.bus import EventBus
from insights.domain.events import DeadlinesExtracted, EventsExtracted, RSVPResponded
from insights.domain.models import CalendarEvent, EventCategory, RSVPStatus
from insights.repos.memory import CalendarEventRepository, RSVPRepository
from insights.services.sync import SyncEngine

logger = logging.getLogger(__name__)

_RSVP_DESCRIPTIONS = {
    RSVPStatus.YES: "RSVP Response: Yes",
    RSVPStatus.MAYBE: "RSVP Response: Maybe (Tentative)",
}


class HandlerRegistry:
    """Wires domain-event handlers to the bus."""

    def __init__(
        self,
        bus: EventBus,
        rsvp_repo: RSVPRepository,
        event_repo: CalendarEventRepository,
        sync_engine: SyncEngine,
    ) -> None:
        self.bus = bus
        self.rsvp_repo = rsvp_repo
        self.event_repo = event_repo
        self.sync_engine = sync_engine
        self._register()

    def _register(self) -> None:
        self.bus.subscribe(RSVPResponded, self.on_rsvp_responded)
        self.bus.subscribe(EventsExtracted, self.on_events_extracted)
        self.bus.subscribe(DeadlinesExtracted, self.on_deadlines_extracted)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def on_rsvp_responded(self, event: RSVPResponded) -> None:
        """Put an accepted RSVP on the calendar, at most one event per RSVP."""
        rsvp = self.rsvp_repo.get(event.rsvp_id)
        if rsvp is None or event.status not in _RSVP_DESCRIPTIONS:
            return

        now = datetime.now(timezone.utc)
        description = _RSVP_DESCRIPTIONS[event.status]
        existing = self.event_repo.get(rsvp.calendar_event_id) if rsvp.calendar_event_id else None

        if existing is not None:
            calendar_event = existing.model_copy(
                update={"description": description, "updated_at": now}
            )
            self.event_repo.update(calendar_event)
        else:
            when = rsvp.event_date or now + timedelta(days=7)
            has_time = rsvp.event_date is not None and (when.hour, when.minute) != (0, 0)
            calendar_event = CalendarEvent(
                conversation_id=rsvp.conversation_id,
                message_id=rsvp.message_id,
                user_id=event.responder_id,
                title=rsvp.event_name,
                date=when.date(),
                time=when.time().replace(second=0, microsecond=0) if has_time else None,
                description=description,
                category=EventCategory.SOCIAL,
                confidence=1.0,
                confirmed=True,
            )
            self.event_repo.add(calendar_event)
            self.rsvp_repo.update(
                rsvp.model_copy(update={"calendar_event_id": calendar_event.id})
            )
            logger.info("Created calendar event %s from RSVP %s", calendar_event.id, rsvp.id)

        settings = self.sync_engine.get_settings(event.responder_id)
        if settings.enabled_calendar_integrations():
            await self.sync_engine.sync_calendar_event(calendar_event.id, event.responder_id)

    async def on_events_extracted(self, event: EventsExtracted) -> None:
        batch = await self.sync_engine.auto_sync(event.user_id, event_ids=event.event_ids)
        if batch.failed:
            logger.warning(
                "Auto-sync left %d of %d event(s) unsynced for %s",
                len(batch.failed),
                len(batch.results),
                event.user_id,
            )

    async def on_deadlines_extracted(self, event: DeadlinesExtracted) -> None:
        batch = await self.sync_engine.auto_sync(event.user_id, deadline_ids=event.deadline_ids)
        if batch.failed:
            logger.warning(
                "Auto-sync left %d of %d deadline(s) unsynced for %s",
                len(batch.failed),
                len(batch.results),
                event.user_id,
            )
