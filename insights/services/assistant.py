"""Proactive assistant: a consolidated answer over a conversation's insights."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from insights.domain.errors import (
    AccessDeniedError,
    InvalidRequestError,
    UpstreamModelError,
)
from insights.domain.models import (
    AssistantInsights,
    AssistantResponse,
    CalendarEvent,
    ConflictStatus,
    Deadline,
    DeadlineStatus,
    RSVPTracking,
    SchedulingConflict,
    ToolExecution,
    sort_by_priority,
)
from insights.repos.memory import (
    CalendarEventRepository,
    DeadlineRepository,
    ParticipantRepository,
    RSVPRepository,
)
from insights.services.conflicts import ConflictDetector
from insights.services.llm import LanguageModel

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """\
You are a proactive family assistant. Using ONLY the facts provided, write a \
short, friendly summary (at most 5 sentences) of what needs attention: \
upcoming events, RSVPs still waiting for an answer, deadlines and scheduling \
conflicts. Mention the most urgent items first. Do not invent anything.
"""

_WORD = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "the", "and", "for", "what", "whats", "with", "any", "are", "there", "this",
    "that", "have", "has", "our", "about", "when", "next", "week", "coming", "upcoming",
    "show", "tell", "need", "needs", "do", "does", "can", "you",
}


def _keywords(query: str | None) -> set[str]:
    if not query:
        return set()
    return {w for w in _WORD.findall(query.lower()) if len(w) >= 3 and w not in _STOPWORDS}


def _matches(text: str, keywords: set[str]) -> bool:
    return bool(keywords & set(_WORD.findall(text.lower())))


def _text_of(item: Any) -> str:
    if isinstance(item, CalendarEvent):
        return " ".join(filter(None, [item.title, item.location, item.description]))
    if isinstance(item, RSVPTracking):
        return " ".join(filter(None, [item.event_name, item.requested_by]))
    if isinstance(item, Deadline):
        return " ".join(filter(None, [item.task, item.details, item.category]))
    if isinstance(item, SchedulingConflict):
        return " ".join([item.first.title, item.second.title, item.reason])
    return ""


class ProactiveAssistant:
    def __init__(
        self,
        model: LanguageModel,
        event_repo: CalendarEventRepository,
        rsvp_repo: RSVPRepository,
        deadline_repo: DeadlineRepository,
        participant_repo: ParticipantRepository,
        conflict_detector: ConflictDetector,
        horizon_days: int = 30,
        timeout: float = 30.0,
    ) -> None:
        self.model = model
        self.event_repo = event_repo
        self.rsvp_repo = rsvp_repo
        self.deadline_repo = deadline_repo
        self.participant_repo = participant_repo
        self.conflict_detector = conflict_detector
        self.horizon_days = horizon_days
        self.timeout = timeout

    async def ask(
        self, conversation_id: str, user_id: str, query: str | None = None
    ) -> AssistantResponse:
        """Gather the conversation's insights and summarise them.

        Each tool runs independently; a failing tool is recorded in
        ``tools_used`` and its bundle left out. If the model cannot answer, a
        plain summary is built from the gathered data instead.
        """
        if not conversation_id or not user_id:
            raise InvalidRequestError("conversationId and userId are required")
        if not self.participant_repo.is_participant(conversation_id, user_id):
            raise AccessDeniedError()

        now = datetime.now(timezone.utc)
        tools: list[tuple[str, dict, Callable[[], Awaitable[list]]]] = [
            ("get_upcoming_events", {"conversationId": conversation_id, "days": self.horizon_days},
             lambda: self._upcoming_events(conversation_id, now)),
            ("get_pending_rsvps", {"conversationId": conversation_id},
             lambda: self._pending_rsvps(conversation_id)),
            ("get_upcoming_deadlines", {"conversationId": conversation_id},
             lambda: self._upcoming_deadlines(conversation_id, now)),
            ("detect_conflicts", {"conversationId": conversation_id},
             lambda: self._conflicts(conversation_id, now)),
        ]
        outcomes = await asyncio.gather(*(self._run_tool(name, fn) for name, _, fn in tools))

        executions: list[ToolExecution] = []
        bundles: dict[str, list | None] = {}
        for (name, params, _), (result, error) in zip(tools, outcomes):
            executions.append(ToolExecution(tool=name, params=params, error=error))
            bundles[name] = result

        if all(result is None for result in bundles.values()):
            logger.warning("No assistant tool succeeded for %s", conversation_id)
            return AssistantResponse(
                message="I couldn't look up this conversation's plans right now.",
                tools_used=executions,
            )

        bundles = self._narrow(bundles, _keywords(query))
        insights = AssistantInsights(
            upcoming_events=bundles["get_upcoming_events"],
            pending_rsvps=bundles["get_pending_rsvps"],
            upcoming_deadlines=bundles["get_upcoming_deadlines"],
            scheduling_conflicts=bundles["detect_conflicts"],
        )
        message = await self._compose(insights, query)
        return AssistantResponse(message=message, insights=insights, tools_used=executions)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _upcoming_events(self, conversation_id: str, now: datetime) -> list[CalendarEvent]:
        today = now.date()
        horizon = today + timedelta(days=self.horizon_days)
        return [
            e
            for e in self.event_repo.list_for_conversation(conversation_id)
            if today <= e.date <= horizon
        ]

    async def _pending_rsvps(self, conversation_id: str) -> list[RSVPTracking]:
        return self.rsvp_repo.list_pending(conversation_id)

    async def _upcoming_deadlines(self, conversation_id: str, now: datetime) -> list[Deadline]:
        pending = [
            d
            for d in self.deadline_repo.list_for_conversation(conversation_id)
            if d.status == DeadlineStatus.PENDING
            and d.due <= now + timedelta(days=self.horizon_days)
        ]
        return sort_by_priority(pending)

    async def _conflicts(self, conversation_id: str, now: datetime) -> list[SchedulingConflict]:
        report = self.conflict_detector.detect_conflicts(conversation_id, now=now)
        return [c for c in report.conflicts if c.status == ConflictStatus.UNRESOLVED]

    @staticmethod
    async def _run_tool(
        name: str, fn: Callable[[], Awaitable[list]]
    ) -> tuple[list | None, str | None]:
        try:
            return await fn(), None
        except Exception as exc:
            logger.warning("Assistant tool %s failed: %s", name, exc)
            return None, str(exc)

    # ------------------------------------------------------------------
    # Answer
    # ------------------------------------------------------------------

    @staticmethod
    def _narrow(bundles: dict[str, list | None], keywords: set[str]) -> dict[str, list | None]:
        if not keywords:
            return bundles
        narrowed = {
            name: None if items is None else [i for i in items if _matches(_text_of(i), keywords)]
            for name, items in bundles.items()
        }
        if not any(narrowed.values()):
            return bundles
        return narrowed

    async def _compose(self, insights: AssistantInsights, query: str | None) -> str:
        prompt = self._facts(insights)
        if query:
            prompt = f"Question: {query}\n\n{prompt}"
        try:
            reply = await asyncio.wait_for(
                self.model.complete(_SYSTEM_PROMPT, prompt), timeout=self.timeout
            )
        except (asyncio.TimeoutError, UpstreamModelError) as exc:
            logger.info("Assistant falling back to plain summary: %s", exc)
            return self._fallback_message(insights)
        return reply.strip() or self._fallback_message(insights)

    @staticmethod
    def _facts(insights: AssistantInsights) -> str:
        lines = ["Upcoming events:"]
        for e in insights.upcoming_events or []:
            when = e.date.isoformat() + (f" {e.time.strftime('%H:%M')}" if e.time else "")
            lines.append(f"- {e.title} on {when}" + (f" at {e.location}" if e.location else ""))
        lines.append("Pending RSVPs:")
        for r in insights.pending_rsvps or []:
            by = f" (reply by {r.deadline.date().isoformat()})" if r.deadline else ""
            lines.append(f"- {r.event_name}{by}")
        lines.append("Deadlines:")
        for d in insights.upcoming_deadlines or []:
            lines.append(f"- [{d.priority}] {d.task} due {d.due.date().isoformat()}")
        lines.append("Scheduling conflicts:")
        for c in insights.scheduling_conflicts or []:
            lines.append(f"- [{c.severity}] {c.reason}")
        return "\n".join(lines)

    @staticmethod
    def _fallback_message(insights: AssistantInsights) -> str:
        parts = []
        counts = [
            (len(insights.upcoming_events or []), "upcoming event", "upcoming events"),
            (len(insights.pending_rsvps or []), "pending RSVP", "pending RSVPs"),
            (len(insights.upcoming_deadlines or []), "open deadline", "open deadlines"),
            (
                len(insights.scheduling_conflicts or []),
                "scheduling conflict",
                "scheduling conflicts",
            ),
        ]
        for count, singular, plural in counts:
            if count:
                parts.append(f"{count} {singular if count == 1 else plural}")
        if not parts:
            return "Nothing needs your attention right now."
        summary = "You have " + ", ".join(parts) + "."
        deadlines = insights.upcoming_deadlines or []
        if deadlines:
            top = deadlines[0]
            summary += f" Most pressing: {top.task} (due {top.due.date().isoformat()})."
        return summary
