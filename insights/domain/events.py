"""Domain events emitted by the insights pipeline."""

from __future__ import annotations

from pydantic import BaseModel

from insights.domain.models import RSVPStatus


class RSVPResponded(BaseModel):
    """Fired after a participant answers an RSVP."""

    rsvp_id: str
    status: RSVPStatus
    responder_id: str


class EventsExtracted(BaseModel):
    """Fired when calendar events were extracted for a user."""

    user_id: str
    event_ids: list[str]


class DeadlinesExtracted(BaseModel):
    """Fired when deadlines were extracted for a user."""

    user_id: str
    deadline_ids: list[str]

