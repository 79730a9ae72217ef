"""Tests for model-backed extraction: access, rate limits, tag mapping, dedup and auto-sync."""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta, timezone
from unittest.mock import patch

import pytest

from insights.config import Settings
from insights.context import build_context
from insights.domain.errors import (
    AccessDeniedError,
    DataFormatError,
    InvalidRequestError,
    NotFoundError,
    RateLimitedError,
    UpstreamModelError,
)
from insights.domain.models import (
    CalendarSyncSettings,
    DeadlinePriority,
    EventCategory,
    Message,
    SyncStatus,
    UsageRecord,
)
from insights.services.calendar import InMemoryCalendar
from insights.services.llm import MockModel

_CONVERSATION = "family-chat"
_PARENT = "parent-1"
_COACH = "coach-1"


def _future(days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).date().isoformat()


@pytest.fixture()
def model():
    return MockModel()


@pytest.fixture()
def env(model):
    """Fresh context with two in-memory calendars and a two-member conversation."""
    ctx = build_context(
        Settings(_env_file=None, request_limit=3),
        model=model,
        integrations={"apple": InMemoryCalendar("apple"), "google": InMemoryCalendar("google")},
    )
    ctx.participants.add(_CONVERSATION, _PARENT)
    ctx.participants.add(_CONVERSATION, _COACH)
    return ctx


def _post(env, sender: str, content: str, minutes_ago: int = 30) -> Message:
    message = Message(
        conversation_id=_CONVERSATION,
        sender_id=sender,
        content=content,
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )
    env.messages.add(message)
    return message


# ---------------------------------------------------------------------------
# Request checks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_window_skips_model(env, model):
    """With no messages in the window the model is never called."""
    _post(env, _COACH, "Practice is cancelled this week", minutes_ago=60 * 24 * 10)

    events = await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT, days_back=7)

    assert events == []
    assert model.calls == []


@pytest.mark.asyncio
async def test_non_participant_is_denied(env, model):
    """Callers outside the conversation get access denied before the model runs."""
    _post(env, _COACH, "Soccer practice Thursday at 4pm")

    with pytest.raises(AccessDeniedError):
        await env.extraction.extract_calendar_events(_CONVERSATION, "stranger")
    assert model.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("days_back", [0, 15])
async def test_days_back_out_of_range(env, days_back):
    """daysBack outside 1..14 is an invalid request."""
    with pytest.raises(InvalidRequestError):
        await env.extraction.track_decisions(_CONVERSATION, _PARENT, days_back=days_back)


@pytest.mark.asyncio
async def test_rate_limit_boundary(env, model):
    """One below the limit succeeds; at the limit the call is rejected with the count."""
    _post(env, _COACH, "Soccer practice Thursday at 4pm")
    now = datetime.now(timezone.utc)
    for _ in range(2):
        env.usage.add(
            UsageRecord(user_id=_PARENT, operation="extract-calendar-events", created_at=now)
        )

    await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)
    calls_before = len(model.calls)

    with pytest.raises(RateLimitedError) as excinfo:
        await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    assert excinfo.value.count == 3
    assert excinfo.value.limit == 3
    assert len(model.calls) == calls_before


@pytest.mark.asyncio
async def test_rate_limit_is_per_operation(env):
    """Usage of one operation does not count against another."""
    _post(env, _COACH, "We decided to carpool from school")
    now = datetime.now(timezone.utc)
    for _ in range(3):
        env.usage.add(
            UsageRecord(user_id=_PARENT, operation="extract-calendar-events", created_at=now)
        )

    decisions = await env.extraction.track_decisions(_CONVERSATION, _PARENT)

    assert decisions == []


@pytest.mark.asyncio
async def test_concurrent_calls_stop_at_the_limit(env, model):
    """Calls running at the same time cannot all slip under the limit."""
    _post(env, _COACH, "Soccer practice Thursday at 4pm")

    outcomes = await asyncio.gather(
        *(env.extraction.extract_calendar_events(_CONVERSATION, _PARENT) for _ in range(5)),
        return_exceptions=True,
    )

    limited = [o for o in outcomes if isinstance(o, RateLimitedError)]
    assert len(limited) == 2
    assert len(model.calls) == 3


@pytest.mark.asyncio
async def test_failed_model_call_still_counts(env, model):
    _post(env, _COACH, "Soccer practice Thursday at 4pm")
    model.responses["events"] = UpstreamModelError("Model call failed: overloaded")

    with pytest.raises(UpstreamModelError):
        await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    since = datetime.now(timezone.utc) - timedelta(hours=1)
    assert env.usage.count_since(_PARENT, "extract-calendar-events", since) == 1


# ---------------------------------------------------------------------------
# Calendar events
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_events_map_tags_to_message_ids(env, model):
    """MSG-n tags are mapped back to real message ids; unknown tags keep no origin."""
    _post(env, _PARENT, "How is everyone?", minutes_ago=40)
    practice = _post(env, _COACH, "Soccer practice Thursday at 4pm at Sunset Field", minutes_ago=20)
    model.responses["events"] = {
        "events": [
            {
                "messageId": "MSG-1",
                "title": "Soccer practice",
                "date": _future(3),
                "time": "16:00",
                "location": "Sunset Field",
                "category": "sports",
                "confidence": 0.9,
            },
            {"messageId": "MSG-7", "title": "Bake sale", "date": _future(4), "confidence": 0.4},
        ]
    }

    events = await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    assert len(events) == 2
    soccer, bake_sale = events
    assert soccer.message_id == practice.id
    assert soccer.time == time(16, 0)
    assert soccer.category == EventCategory.SPORTS
    assert soccer.date.isoformat() == _future(3)
    assert bake_sale.message_id is None
    assert bake_sale.time is None
    assert len(env.events.list_for_conversation(_CONVERSATION)) == 2


@pytest.mark.asyncio
async def test_prompt_lists_tagged_messages(env, model):
    """The transcript sent to the model tags each message in order."""
    _post(env, _PARENT, "First message here", minutes_ago=40)
    _post(env, _COACH, "Second message here", minutes_ago=20)

    await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    task, prompt = model.calls[0]
    assert task == "events"
    assert "[MSG-0]" in prompt and "First message here" in prompt
    assert "[MSG-1]" in prompt and "Second message here" in prompt


@pytest.mark.asyncio
async def test_schema_violation_names_the_field(env, model):
    """Out-of-range confidence is a data format error naming the offending path."""
    _post(env, _COACH, "Soccer practice Thursday at 4pm")
    model.responses["events"] = {
        "events": [{"title": "Soccer", "date": _future(2), "confidence": 1.5}]
    }

    with pytest.raises(DataFormatError) as excinfo:
        await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    assert excinfo.value.field_path == "events.0.confidence"
    assert env.events.list_for_conversation(_CONVERSATION) == []


@pytest.mark.asyncio
async def test_unparseable_date_is_data_format_error(env, model):
    _post(env, _COACH, "Soccer practice sometime")
    model.responses["events"] = {
        "events": [{"title": "Soccer", "date": "banana", "confidence": 0.5}]
    }

    with pytest.raises(DataFormatError) as excinfo:
        await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    assert excinfo.value.field_path == "events.0.date"


@pytest.mark.asyncio
async def test_model_failure_surfaces_as_upstream_error(env, model):
    _post(env, _COACH, "Soccer practice Thursday at 4pm")
    model.responses["events"] = UpstreamModelError("Model call failed: overloaded")

    with pytest.raises(UpstreamModelError):
        await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)


# ---------------------------------------------------------------------------
# Decisions and priority
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_decisions_record_the_sender(env, model):
    """decided_by is the sender of the message the decision came from."""
    _post(env, _COACH, "We decided to carpool from the school parking lot")
    model.responses["decisions"] = {
        "decisions": [
            {"messageId": "MSG-0", "decisionText": "Carpool from school", "category": "activity"}
        ]
    }

    decisions = await env.extraction.track_decisions(_CONVERSATION, _PARENT)

    assert len(decisions) == 1
    assert decisions[0].decided_by == _COACH
    assert env.decisions.list_for_conversation(_CONVERSATION) == decisions


@pytest.mark.asyncio
async def test_priority_flags_with_unknown_tags_are_dropped(env, model):
    urgent = _post(env, _COACH, "URGENT: pickup moved to 2pm today")
    model.responses["priority"] = {
        "priorityMessages": [
            {"messageId": "MSG-0", "level": "urgent", "reason": "Pickup changed", "actionRequired": True},
            {"messageId": "MSG-4", "level": "high", "reason": "Hallucinated"},
        ]
    }

    flags = await env.extraction.detect_priority(_CONVERSATION, _PARENT)

    assert [f.message_id for f in flags] == [urgent.id]
    assert env.priority.get(urgent.id).action_required is True


# ---------------------------------------------------------------------------
# RSVPs and deadlines
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_track_rsvps_dedups_and_summarises(env, model):
    """Re-running never duplicates RSVPs; pending ones are ordered by deadline."""
    _post(env, _COACH, "RSVP for the team party by Friday", minutes_ago=50)
    _post(env, _COACH, "Let me know about the picnic", minutes_ago=40)
    _post(env, _COACH, "Birthday party RSVP by Wednesday", minutes_ago=30)
    model.responses["rsvps"] = {
        "rsvps": [
            {"messageId": "MSG-0", "eventName": "Team party", "deadline": _future(5)},
            {"messageId": "MSG-1", "eventName": "Picnic"},
            {"messageId": "MSG-2", "eventName": "Birthday party", "deadline": _future(2)},
            {"messageId": "MSG-9", "eventName": "Ghost party"},
        ]
    }

    first = await env.extraction.track_rsvps(_CONVERSATION, _PARENT)
    second = await env.extraction.track_rsvps(_CONVERSATION, _PARENT)

    assert len(first.new_rsvps) == 3
    assert first.summary.new_count == 3
    assert [r.event_name for r in first.summary.pending_rsvps] == [
        "Birthday party",
        "Team party",
        "Picnic",
    ]
    assert second.new_rsvps == []
    assert second.summary.new_count == 0
    assert second.summary.total_pending == 3
    assert len(env.rsvps.list_for_conversation(_CONVERSATION)) == 3


@pytest.mark.asyncio
async def test_extract_deadlines_returns_stored_rows(env, model):
    """A second extraction returns the existing rows instead of inserting copies."""
    slip = _post(env, _PARENT, "The permission slip is due Friday at 5pm")
    model.responses["deadlines"] = {
        "deadlines": [
            {
                "messageId": "MSG-0",
                "task": "Sign permission slip",
                "deadline": f"{_future(3)} 17:00",
                "category": "forms",
                "priority": "high",
            },
            {"messageId": "MSG-5", "task": "Unknown origin", "deadline": _future(3)},
        ]
    }

    first = await env.extraction.extract_deadlines(_CONVERSATION, _PARENT)
    second = await env.extraction.extract_deadlines(_CONVERSATION, _PARENT)

    assert len(first) == 1
    assert first[0].message_id == slip.id
    assert first[0].priority == DeadlinePriority.HIGH
    assert first[0].due.hour == 17
    assert first[0].due.date().isoformat() == _future(3)
    assert [d.id for d in second] == [first[0].id]
    assert len(env.deadlines.list_for_conversation(_CONVERSATION)) == 1


@pytest.mark.asyncio
async def test_deadlines_from_one_message_are_returned_once(env, model):
    _post(env, _PARENT, "Permission slip and field trip money both due Friday")
    model.responses["deadlines"] = {
        "deadlines": [
            {"messageId": "MSG-0", "task": "Permission slip", "deadline": _future(3)},
            {"messageId": "MSG-0", "task": "Field trip money", "deadline": _future(3)},
        ]
    }

    returned = await env.extraction.extract_deadlines(_CONVERSATION, _PARENT)

    stored = env.deadlines.list_for_conversation(_CONVERSATION)
    assert [d.id for d in returned] == [d.id for d in stored]
    assert [d.task for d in returned] == ["Permission slip"]


# ---------------------------------------------------------------------------
# Per-message extraction
# ---------------------------------------------------------------------------


def _message_answer() -> dict:
    return {
        "events": [{"title": "Team party", "date": _future(5), "time": "15:00", "confidence": 0.9}],
        "rsvps": [{"eventName": "Team party", "deadline": _future(3)}],
        "deadlines": [{"task": "Sign permission slip", "deadline": _future(2), "priority": "urgent"}],
        "decisions": [{"decisionText": "Carpool from school"}],
        "priority": {"level": "high", "reason": "RSVP needed", "actionRequired": True},
    }


@pytest.mark.asyncio
async def test_parse_message_skips_short_messages(env, model):
    short = _post(env, _COACH, "ok!")

    result = await env.extraction.parse_message(short.id)

    assert result.skipped is True
    assert result.reason == "too_short"
    assert model.calls == []
    assert env.messages.get(short.id).ai_last_processed is None


@pytest.mark.asyncio
async def test_parse_message_unknown_id(env):
    with pytest.raises(NotFoundError):
        await env.extraction.parse_message("missing")


@pytest.mark.asyncio
async def test_parse_message_persists_every_kind(env, model):
    """One pass stores all kinds, tied to the message, and marks it processed."""
    _post(env, _PARENT, "Are we doing anything this weekend?", minutes_ago=40)
    message = _post(env, _COACH, "Team party Saturday 3pm! RSVP by Thursday.", minutes_ago=5)
    model.responses["message"] = _message_answer()

    result = await env.extraction.parse_message(message.id)

    assert result.skipped is False
    assert result.counts == {"events": 1, "rsvps": 1, "deadlines": 1, "decisions": 1, "priority": 1}
    assert result.errors == {}
    rsvp = env.rsvps.list_for_conversation(_CONVERSATION)[0]
    assert rsvp.message_id == message.id
    assert rsvp.requested_by == _COACH
    assert env.decisions.list_for_conversation(_CONVERSATION)[0].decided_by == _COACH
    assert env.messages.get(message.id).ai_last_processed == result.processed_at
    assert "Are we doing anything this weekend?" in model.calls[0][1]


@pytest.mark.asyncio
async def test_parse_message_partial_persistence_failure(env, model):
    """A failing kind is reported; the other kinds are still written."""
    message = _post(env, _COACH, "Team party Saturday 3pm! RSVP by Thursday.")
    model.responses["message"] = _message_answer()

    with patch.object(env.persistence, "save_decisions", side_effect=RuntimeError("db down")):
        result = await env.extraction.parse_message(message.id)

    assert result.errors == {"decisions": "db down"}
    assert result.counts["decisions"] == 0
    assert result.counts["events"] == 1
    assert len(env.deadlines.list_for_conversation(_CONVERSATION)) == 1
    assert env.messages.get(message.id).ai_last_processed is not None


@pytest.mark.asyncio
async def test_parse_message_daily_limit(env, model):
    first = _post(env, _COACH, "Soccer practice Thursday at 4pm", minutes_ago=10)
    second = _post(env, _COACH, "Bring snacks for Saturday's game", minutes_ago=5)
    env.extraction.limiter.daily_message_limit = 1

    await env.extraction.parse_message(first.id)
    with pytest.raises(RateLimitedError):
        await env.extraction.parse_message(second.id)


# ---------------------------------------------------------------------------
# Auto-sync after extraction
# ---------------------------------------------------------------------------


def _two_events() -> dict:
    return {
        "events": [
            {"messageId": "MSG-0", "title": "Soccer practice", "date": _future(3), "time": "16:00", "confidence": 0.9},
            {"messageId": "MSG-1", "title": "Dentist", "date": _future(6), "time": "09:30", "confidence": 0.8},
        ]
    }


@pytest.mark.asyncio
async def test_auto_sync_pushes_extracted_events(env, model):
    """With auto-sync on, freshly extracted events land in both calendars."""
    _post(env, _COACH, "Soccer practice Thursday at 4pm", minutes_ago=30)
    _post(env, _PARENT, "Dentist next Monday 9:30", minutes_ago=20)
    model.responses["events"] = _two_events()
    env.sync_engine.update_settings(
        CalendarSyncSettings(
            user_id=_PARENT,
            apple_calendar_enabled=True,
            google_calendar_enabled=True,
            auto_sync_enabled=True,
        )
    )

    events = await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    for event in events:
        stored = env.events.get(event.id)
        assert stored.sync_status == SyncStatus.SYNCED
        assert set(stored.external_ids) == {"apple", "google"}
    assert len(env.integrations["apple"].events) == 2
    assert len(env.integrations["google"].events) == 2


@pytest.mark.asyncio
async def test_auto_sync_off_leaves_events_pending(env, model):
    _post(env, _COACH, "Soccer practice Thursday at 4pm", minutes_ago=30)
    _post(env, _PARENT, "Dentist next Monday 9:30", minutes_ago=20)
    model.responses["events"] = _two_events()
    env.sync_engine.update_settings(
        CalendarSyncSettings(user_id=_PARENT, apple_calendar_enabled=True)
    )

    events = await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    assert all(env.events.get(e.id).is_pending_sync for e in events)
    assert env.integrations["apple"].events == {}


@pytest.mark.asyncio
async def test_auto_sync_failure_does_not_fail_extraction(env, model):
    """Extraction still returns its events when the calendar rejects them."""
    _post(env, _COACH, "Soccer practice Thursday at 4pm", minutes_ago=30)
    _post(env, _PARENT, "Dentist next Monday 9:30", minutes_ago=20)
    model.responses["events"] = _two_events()
    env.sync_engine.update_settings(
        CalendarSyncSettings(user_id=_PARENT, apple_calendar_enabled=True, auto_sync_enabled=True)
    )
    env.integrations["apple"].failure = RuntimeError("calendar offline")

    events = await env.extraction.extract_calendar_events(_CONVERSATION, _PARENT)

    assert len(events) == 2
    assert all(env.events.get(e.id).sync_status == SyncStatus.FAILED for e in events)
    assert len(env.sync_queue.list_for_user(_PARENT)) == 2
