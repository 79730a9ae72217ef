"""Tests for domain model invariants and small helpers."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest
from pydantic import ValidationError

from insights.domain.models import (
    CalendarEvent,
    CalendarSyncSettings,
    ConversationRequest,
    Deadline,
    DeadlinePriority,
    DeadlineStatus,
    Message,
    RSVPStatus,
    RSVPTracking,
    sort_by_priority,
)
from insights.services.transcript import build_transcript

_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _deadline(priority: DeadlinePriority, hours: int = 24, **overrides) -> Deadline:
    defaults = dict(
        conversation_id="family-chat",
        user_id="parent-1",
        task=f"{priority} task",
        due=_NOW + timedelta(hours=hours),
        priority=priority,
    )
    defaults.update(overrides)
    return Deadline(**defaults)


def test_priority_ordering():
    """[medium, urgent, high] sorts to [urgent, high, medium]."""
    deadlines = [
        _deadline(DeadlinePriority.MEDIUM),
        _deadline(DeadlinePriority.URGENT),
        _deadline(DeadlinePriority.HIGH),
    ]

    ordered = sort_by_priority(deadlines)

    assert [d.priority for d in ordered] == [
        DeadlinePriority.URGENT,
        DeadlinePriority.HIGH,
        DeadlinePriority.MEDIUM,
    ]


def test_priority_ties_break_on_due_time():
    later = _deadline(DeadlinePriority.HIGH, hours=48)
    sooner = _deadline(DeadlinePriority.HIGH, hours=2)

    assert sort_by_priority([later, sooner]) == [sooner, later]


def test_priority_comparisons():
    assert DeadlinePriority.URGENT < DeadlinePriority.HIGH
    assert DeadlinePriority.LOW > DeadlinePriority.MEDIUM
    assert max(DeadlinePriority) == DeadlinePriority.LOW


def test_completed_deadline_requires_completed_at():
    with pytest.raises(ValidationError):
        _deadline(DeadlinePriority.HIGH, status=DeadlineStatus.COMPLETED)
    with pytest.raises(ValidationError):
        _deadline(DeadlinePriority.HIGH, completed_at=_NOW)


def test_responded_rsvp_requires_responder():
    with pytest.raises(ValidationError):
        RSVPTracking(
            conversation_id="family-chat",
            message_id="msg-1",
            event_name="Team party",
            status=RSVPStatus.YES,
        )


def test_event_confidence_bounds():
    with pytest.raises(ValidationError):
        CalendarEvent(conversation_id="family-chat", title="x", date=date(2026, 6, 3), confidence=1.2)


def test_untimed_event_starts_at_midnight():
    event = CalendarEvent(conversation_id="family-chat", title="Field day", date=date(2026, 6, 3))

    assert event.start == datetime(2026, 6, 3, 0, 0, tzinfo=timezone.utc)
    assert event.is_pending_sync is True


def test_timed_event_start():
    event = CalendarEvent(
        conversation_id="family-chat", title="Soccer", date=date(2026, 6, 3), time=time(16, 0)
    )

    assert event.start == datetime(2026, 6, 3, 16, 0, tzinfo=timezone.utc)


def test_sync_settings_helpers():
    settings = CalendarSyncSettings(
        user_id="parent-1",
        apple_calendar_enabled=True,
        google_tasks_enabled=True,
        category_calendars={"sports": "Kids Sports"},
    )

    assert settings.enabled_calendar_integrations() == ["apple"]
    assert settings.enabled_reminder_integrations() == ["google"]
    assert settings.calendar_name("sports") == "Kids Sports"
    assert settings.calendar_name("medical") == "Family"
    assert settings.has_any_sync_enabled is True


def test_requests_accept_camel_case():
    request = ConversationRequest.model_validate({"conversationId": "family-chat", "daysBack": 3})

    assert request.conversation_id == "family-chat"
    assert request.days_back == 3


def test_transcript_tags_resolve_back():
    messages = [
        Message(conversation_id="family-chat", sender_id="coach-1", content="Practice at 4"),
        Message(conversation_id="family-chat", sender_id="parent-1", content="Thanks!"),
    ]

    transcript = build_transcript(messages)

    assert transcript.resolve("MSG-1") == messages[1].id
    assert transcript.resolve("[msg-0]") == messages[0].id
    assert transcript.resolve("MSG-2") is None
    assert transcript.resolve(None) is None
    assert len(transcript) == 2
