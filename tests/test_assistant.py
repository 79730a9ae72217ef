"""Tests for the proactive assistant."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from unittest.mock import patch

import pytest

from insights.config import Settings
from insights.context import build_context
from insights.domain.errors import AccessDeniedError
from insights.domain.models import (
    CalendarEvent,
    Deadline,
    DeadlinePriority,
    RSVPTracking,
)
from insights.services.calendar import InMemoryCalendar
from insights.services.llm import MockModel

_CONVERSATION = "family-chat"
_PARENT = "parent-1"


@pytest.fixture()
def model():
    return MockModel(reply="Soccer is Thursday and the permission slip is due first.")


@pytest.fixture()
def env(model):
    ctx = build_context(
        Settings(_env_file=None),
        model=model,
        integrations={"apple": InMemoryCalendar("apple")},
    )
    ctx.participants.add(_CONVERSATION, _PARENT)
    return ctx


def _in_days(days: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def _seed(env) -> None:
    env.events.add(
        CalendarEvent(
            conversation_id=_CONVERSATION,
            title="Soccer practice",
            date=_in_days(3).date(),
            time=time(16, 0),
            location="Sunset Field",
            confirmed=True,
        )
    )
    env.events.add(
        CalendarEvent(
            conversation_id=_CONVERSATION,
            title="Dentist appointment",
            date=_in_days(5).date(),
            time=time(9, 30),
            confirmed=True,
        )
    )
    env.rsvps.add(
        RSVPTracking(
            conversation_id=_CONVERSATION,
            message_id="msg-1",
            event_name="Team party",
            deadline=_in_days(2),
        )
    )
    env.deadlines.add(
        Deadline(
            conversation_id=_CONVERSATION,
            user_id=_PARENT,
            task="Permission slip",
            due=_in_days(1),
            priority=DeadlinePriority.URGENT,
        )
    )


@pytest.mark.asyncio
async def test_answer_comes_from_the_model(env, model):
    _seed(env)

    response = await env.assistant.ask(_CONVERSATION, _PARENT)

    assert response.message == "Soccer is Thursday and the permission slip is due first."
    assert [t.tool for t in response.tools_used] == [
        "get_upcoming_events",
        "get_pending_rsvps",
        "get_upcoming_deadlines",
        "detect_conflicts",
    ]
    assert all(t.error is None for t in response.tools_used)
    assert len(response.insights.upcoming_events) == 2
    assert len(response.insights.pending_rsvps) == 1
    prompt = model.calls[-1][1]
    assert "Soccer practice" in prompt and "Permission slip" in prompt


@pytest.mark.asyncio
async def test_fallback_when_model_unavailable(env, model):
    """Without a model answer a plain summary is built from the gathered data."""
    model.reply = None
    _seed(env)

    response = await env.assistant.ask(_CONVERSATION, _PARENT)

    assert response.message.startswith(
        "You have 2 upcoming events, 1 pending RSVP, 1 open deadline."
    )
    assert "Most pressing: Permission slip" in response.message


@pytest.mark.asyncio
async def test_fallback_with_nothing_to_report(env, model):
    model.reply = None

    response = await env.assistant.ask(_CONVERSATION, _PARENT)

    assert response.message == "Nothing needs your attention right now."


@pytest.mark.asyncio
async def test_failing_tool_is_reported(env):
    _seed(env)

    with patch.object(
        env.conflict_detector, "detect_conflicts", side_effect=RuntimeError("boom")
    ):
        response = await env.assistant.ask(_CONVERSATION, _PARENT)

    errors = {t.tool: t.error for t in response.tools_used}
    assert errors["detect_conflicts"] == "boom"
    assert errors["get_upcoming_events"] is None
    assert response.insights.scheduling_conflicts is None
    assert len(response.insights.upcoming_events) == 2


@pytest.mark.asyncio
async def test_all_tools_failing(env, model):
    with patch.object(env.events, "list_for_conversation", side_effect=RuntimeError("down")), \
            patch.object(env.rsvps, "list_pending", side_effect=RuntimeError("down")), \
            patch.object(env.deadlines, "list_for_conversation", side_effect=RuntimeError("down")):
        response = await env.assistant.ask(_CONVERSATION, _PARENT)

    assert response.insights is None
    assert all(t.error == "down" for t in response.tools_used)
    assert not any(task == "complete" for task, _ in model.calls)


@pytest.mark.asyncio
async def test_deadlines_are_ordered_by_priority(env):
    for task, priority in [
        ("Return library books", DeadlinePriority.MEDIUM),
        ("Pay school fees", DeadlinePriority.URGENT),
        ("Book flu shots", DeadlinePriority.HIGH),
    ]:
        env.deadlines.add(
            Deadline(
                conversation_id=_CONVERSATION,
                user_id=_PARENT,
                task=task,
                due=_in_days(4),
                priority=priority,
            )
        )

    response = await env.assistant.ask(_CONVERSATION, _PARENT)

    assert [d.priority for d in response.insights.upcoming_deadlines] == [
        DeadlinePriority.URGENT,
        DeadlinePriority.HIGH,
        DeadlinePriority.MEDIUM,
    ]


@pytest.mark.asyncio
async def test_query_narrows_the_bundles(env):
    _seed(env)

    response = await env.assistant.ask(_CONVERSATION, _PARENT, query="When is soccer?")

    assert [e.title for e in response.insights.upcoming_events] == ["Soccer practice"]
    assert response.insights.upcoming_deadlines == []


@pytest.mark.asyncio
async def test_unmatched_query_keeps_everything(env):
    _seed(env)

    response = await env.assistant.ask(_CONVERSATION, _PARENT, query="anything about xylophones?")

    assert len(response.insights.upcoming_events) == 2


@pytest.mark.asyncio
async def test_outsider_is_denied(env):
    with pytest.raises(AccessDeniedError):
        await env.assistant.ask(_CONVERSATION, "stranger")
