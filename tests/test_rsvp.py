"""Tests for RSVP responses and calendar materialization."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import pytest

from insights.config import Settings
from insights.context import build_context
from insights.domain.errors import AccessDeniedError, InvalidRequestError, NotFoundError
from insights.domain.models import (
    CalendarSyncSettings,
    EventCategory,
    RSVPStatus,
    RSVPTracking,
    SyncEntityType,
    SyncStatus,
)
from insights.services.calendar import InMemoryCalendar
from insights.services.llm import MockModel

_CONVERSATION = "family-chat"
_PARENT = "parent-1"
_OTHER_PARENT = "parent-2"


@pytest.fixture()
def env():
    ctx = build_context(
        Settings(_env_file=None),
        model=MockModel(),
        integrations={"apple": InMemoryCalendar("apple"), "google": InMemoryCalendar("google")},
    )
    ctx.participants.add(_CONVERSATION, _PARENT)
    ctx.participants.add(_CONVERSATION, _OTHER_PARENT)
    return ctx


def _make_rsvp(env, **overrides) -> RSVPTracking:
    defaults = dict(
        conversation_id=_CONVERSATION,
        message_id="msg-1",
        event_name="Emma's birthday party",
        requested_by="coach-1",
        event_date=datetime.now(timezone.utc).replace(hour=14, minute=30, second=0, microsecond=0)
        + timedelta(days=10),
    )
    defaults.update(overrides)
    rsvp = RSVPTracking(**defaults)
    env.rsvps.add(rsvp)
    return rsvp


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_yes_creates_confirmed_social_event(env):
    """Answering yes records the responder and puts the event on the calendar."""
    rsvp = _make_rsvp(env)

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, _PARENT)

    assert result.rsvp.status == RSVPStatus.YES
    assert result.rsvp.user_id == _PARENT
    assert result.rsvp.responded_at is not None
    event = result.calendar_event
    assert event is not None
    assert event.title == "Emma's birthday party"
    assert event.category == EventCategory.SOCIAL
    assert event.confirmed is True
    assert event.confidence == 1.0
    assert event.description == "RSVP Response: Yes"
    assert event.date == rsvp.event_date.date()
    assert event.time == time(14, 30)
    assert result.rsvp.calendar_event_id == event.id
    assert result.calendar_error is None


@pytest.mark.asyncio
async def test_maybe_is_tentative(env):
    rsvp = _make_rsvp(env)

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.MAYBE, _PARENT)

    assert result.calendar_event.description == "RSVP Response: Maybe (Tentative)"


@pytest.mark.asyncio
async def test_undated_rsvp_defaults_to_a_week_out(env):
    """Without an event date the event is placed seven days from now, all day."""
    rsvp = _make_rsvp(env, event_date=None)
    before = (datetime.now(timezone.utc) + timedelta(days=7)).date()

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, _PARENT)

    after = (datetime.now(timezone.utc) + timedelta(days=7)).date()
    assert result.calendar_event.date in (before, after)
    assert result.calendar_event.time is None


@pytest.mark.asyncio
async def test_no_does_not_create_an_event(env):
    rsvp = _make_rsvp(env)

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.NO, _PARENT)

    assert result.rsvp.status == RSVPStatus.NO
    assert result.calendar_event is None
    assert env.events.list_for_conversation(_CONVERSATION) == []


@pytest.mark.asyncio
async def test_re_response_overwrites_and_reuses_event(env):
    """A second answer wins, and the RSVP keeps a single calendar event."""
    rsvp = _make_rsvp(env)

    first = await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, _PARENT)
    second = await env.rsvp_service.respond(rsvp.id, RSVPStatus.MAYBE, _OTHER_PARENT)

    assert second.rsvp.status == RSVPStatus.MAYBE
    assert second.rsvp.user_id == _OTHER_PARENT
    assert second.calendar_event.id == first.calendar_event.id
    assert second.calendar_event.description == "RSVP Response: Maybe (Tentative)"
    assert len(env.events.list_for_conversation(_CONVERSATION)) == 1


@pytest.mark.asyncio
async def test_no_after_yes_keeps_responder_and_event(env):
    rsvp = _make_rsvp(env)
    await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, _PARENT)

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.NO, _PARENT)

    assert result.rsvp.status == RSVPStatus.NO
    assert result.rsvp.user_id == _PARENT
    assert result.rsvp.responded_at is not None
    assert result.rsvp.calendar_event_id is not None
    assert len(env.events.list_for_conversation(_CONVERSATION)) == 1


@pytest.mark.asyncio
async def test_result_lists_conversation_rsvps(env):
    rsvp = _make_rsvp(env)
    _make_rsvp(env, message_id="msg-2", event_name="Bake sale")

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.NO, _PARENT)

    assert {r.event_name for r in result.rsvps} == {"Emma's birthday party", "Bake sale"}
    summary = env.rsvp_service.pending_summary(_CONVERSATION)
    assert summary.total_pending == 1
    assert summary.pending_rsvps[0].event_name == "Bake sale"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pending_is_not_a_response(env):
    rsvp = _make_rsvp(env)

    with pytest.raises(InvalidRequestError):
        await env.rsvp_service.respond(rsvp.id, RSVPStatus.PENDING, _PARENT)


@pytest.mark.asyncio
async def test_unknown_rsvp(env):
    with pytest.raises(NotFoundError):
        await env.rsvp_service.respond("missing", RSVPStatus.YES, _PARENT)


@pytest.mark.asyncio
async def test_outsider_cannot_respond(env):
    rsvp = _make_rsvp(env)

    with pytest.raises(AccessDeniedError):
        await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, "stranger")
    assert env.rsvps.get(rsvp.id).status == RSVPStatus.PENDING


# ---------------------------------------------------------------------------
# Calendar sync of the materialized event
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_event_syncs_when_calendar_enabled(env):
    env.sync_engine.update_settings(
        CalendarSyncSettings(user_id=_PARENT, apple_calendar_enabled=True)
    )
    rsvp = _make_rsvp(env)

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, _PARENT)

    assert result.calendar_event.sync_status == SyncStatus.SYNCED
    assert "apple" in result.calendar_event.external_ids
    assert len(env.integrations["apple"].events) == 1


@pytest.mark.asyncio
async def test_calendar_failure_keeps_the_response(env):
    """A calendar error is reported alongside the stored response, never instead of it."""
    env.sync_engine.update_settings(
        CalendarSyncSettings(user_id=_PARENT, apple_calendar_enabled=True)
    )
    env.integrations["apple"].failure = RuntimeError("calendar offline")
    rsvp = _make_rsvp(env)

    result = await env.rsvp_service.respond(rsvp.id, RSVPStatus.YES, _PARENT)

    assert result.rsvp.status == RSVPStatus.YES
    assert env.rsvps.get(rsvp.id).status == RSVPStatus.YES
    assert "calendar offline" in result.calendar_error
    assert result.calendar_event.sync_status == SyncStatus.FAILED
    entry = env.sync_queue.get_for_entity(SyncEntityType.CALENDAR_EVENT, result.calendar_event.id)
    assert entry is not None and entry.attempts == 1
