"""RSVP responses for conversation-scoped invitations."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from insights.domain.bus import EventBus
from insights.domain.errors import AccessDeniedError, InvalidRequestError, NotFoundError
from insights.domain.events import RSVPResponded
from insights.domain.models import (
    RSVPResponseResult,
    RSVPStatus,
    RSVPSummary,
    RSVPTracking,
)
from insights.repos.memory import (
    CalendarEventRepository,
    ParticipantRepository,
    RSVPRepository,
)

logger = logging.getLogger(__name__)

_MATERIALIZED = (RSVPStatus.YES, RSVPStatus.MAYBE)


class RSVPService:
    def __init__(
        self,
        rsvp_repo: RSVPRepository,
        event_repo: CalendarEventRepository,
        participant_repo: ParticipantRepository,
        bus: EventBus,
    ) -> None:
        self.rsvp_repo = rsvp_repo
        self.event_repo = event_repo
        self.participant_repo = participant_repo
        self.bus = bus

    async def respond(
        self, rsvp_id: str, status: RSVPStatus, responder_id: str
    ) -> RSVPResponseResult:
        """Record a response and, for yes/maybe, put the event on the calendar.

        Calendar materialization runs after the response is stored; its
        failure is reported in ``calendar_error`` and never undoes the
        response. A second response overwrites the first.
        """
        if status == RSVPStatus.PENDING:
            raise InvalidRequestError("status must be one of yes, no, maybe")
        if not responder_id:
            raise InvalidRequestError("userId is required")

        rsvp = self.rsvp_repo.get(rsvp_id)
        if rsvp is None:
            raise NotFoundError(f"RSVP {rsvp_id} not found")
        if not self.participant_repo.is_participant(rsvp.conversation_id, responder_id):
            raise AccessDeniedError()

        if rsvp.status != RSVPStatus.PENDING:
            logger.info(
                "RSVP %s re-answered by %s: %s -> %s",
                rsvp_id,
                responder_id,
                rsvp.status,
                status,
            )
        updated = rsvp.model_copy(
            update={
                "status": status,
                "user_id": responder_id,
                "responded_at": datetime.now(timezone.utc),
            }
        )
        self.rsvp_repo.update(updated)

        calendar_event = None
        calendar_error = None
        if status in _MATERIALIZED:
            errors = await self.bus.publish(
                RSVPResponded(rsvp_id=rsvp_id, status=status, responder_id=responder_id)
            )
            if errors:
                calendar_error = str(errors[0])
            stored = self.rsvp_repo.get(rsvp_id)
            if stored is not None and stored.calendar_event_id:
                calendar_event = self.event_repo.get(stored.calendar_event_id)

        return RSVPResponseResult(
            rsvp=self.rsvp_repo.get(rsvp_id),
            calendar_event=calendar_event,
            calendar_error=calendar_error,
            rsvps=self.list_for_conversation(rsvp.conversation_id),
        )

    def list_for_conversation(self, conversation_id: str) -> list[RSVPTracking]:
        return self.rsvp_repo.list_for_conversation(conversation_id)

    def pending_summary(self, conversation_id: str, new_count: int = 0) -> RSVPSummary:
        pending = self.rsvp_repo.list_pending(conversation_id)
        return RSVPSummary(
            new_count=new_count, total_pending=len(pending), pending_rsvps=pending
        )
