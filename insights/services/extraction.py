"""Language-model extraction of events, RSVPs, deadlines, decisions and
priority flags from conversation messages.

Every pull-based operation follows the same steps: validate the request,
check conversation access, check the rate limit, fetch the message window,
ask the model, validate its answer, remap ``MSG-n`` tags and persist.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import TypeVar

import dateparser
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from insights.config import Settings
from insights.domain.bus import EventBus
from insights.domain.errors import (
    AccessDeniedError,
    DataFormatError,
    InvalidRequestError,
    NotFoundError,
    UpstreamModelError,
)
from insights.domain.events import DeadlinesExtracted, EventsExtracted
from insights.domain.models import (
    CalendarEvent,
    Deadline,
    DeadlineCategory,
    DeadlinePriority,
    Decision,
    DecisionCategory,
    EventCategory,
    Message,
    ParseMessageResult,
    PriorityLevel,
    PriorityMessage,
    RSVPSummary,
    RSVPTracking,
    TrackRSVPsResult,
)
from insights.repos.memory import MessageRepository, ParticipantRepository, RSVPRepository
from insights.services.llm import LanguageModel
from insights.services.persistence import InsightBatch, InsightPersistence
from insights.services.ratelimit import RateLimiter
from insights.services.transcript import Transcript, build_transcript

logger = logging.getLogger(__name__)

_T = TypeVar("_T", bound=BaseModel)


# ---------------------------------------------------------------------------
# Model output schemas
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class EventCandidate(_Payload):
    message_id: str | None = None
    title: str = Field(min_length=1)
    date: str
    time: str | None = None
    location: str | None = None
    description: str | None = None
    category: EventCategory | None = None
    confidence: float = Field(ge=0.0, le=1.0)


class RSVPCandidate(_Payload):
    message_id: str | None = None
    event_name: str = Field(min_length=1)
    deadline: str | None = None
    event_date: str | None = None
    requested_by: str | None = None


class DeadlineCandidate(_Payload):
    message_id: str | None = None
    task: str = Field(min_length=1)
    deadline: str
    category: DeadlineCategory | None = None
    priority: DeadlinePriority | None = None
    details: str | None = None
    assigned_to: str | None = None


class DecisionCandidate(_Payload):
    message_id: str | None = None
    decision_text: str = Field(min_length=1)
    category: DecisionCategory | None = None
    deadline: str | None = None


class PriorityCandidate(_Payload):
    message_id: str | None = None
    level: PriorityLevel
    reason: str
    action_required: bool = False


class EventsPayload(_Payload):
    events: list[EventCandidate] = Field(default_factory=list)


class RSVPsPayload(_Payload):
    rsvps: list[RSVPCandidate] = Field(default_factory=list)


class DeadlinesPayload(_Payload):
    deadlines: list[DeadlineCandidate] = Field(default_factory=list)


class DecisionsPayload(_Payload):
    decisions: list[DecisionCandidate] = Field(default_factory=list)


class PriorityPayload(_Payload):
    priority_messages: list[PriorityCandidate] = Field(default_factory=list)


class MessageInsightsPayload(_Payload):
    events: list[EventCandidate] = Field(default_factory=list)
    rsvps: list[RSVPCandidate] = Field(default_factory=list)
    deadlines: list[DeadlineCandidate] = Field(default_factory=list)
    decisions: list[DecisionCandidate] = Field(default_factory=list)
    priority: PriorityCandidate | None = None


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are analyzing messages from a busy parent/caregiver's group conversation. \
Each message is prefixed with a tag like [MSG-3] followed by its timestamp \
and sender. Be accurate and conservative: only extract clear, unambiguous \
information. Use ISO 8601 for dates and times. Whenever an item comes from a \
specific message, set "messageId" to that message's tag (e.g. "MSG-3"). \
Respond with ONLY a JSON object, no other text.
"""

_TASK_PROMPTS = {
    "events": """\
Extract calendar events (meetings, appointments, activities) as:
{"events": [{"messageId": "MSG-n", "title": "...", "date": "YYYY-MM-DD", \
"time": "HH:MM or null", "location": "... or null", "description": "... or null", \
"category": "school|medical|social|sports|work|other", "confidence": 0.0-1.0}]}""",
    "decisions": """\
Extract decisions or commitments the group agreed on as:
{"decisions": [{"messageId": "MSG-n", "decisionText": "...", \
"category": "activity|schedule|purchase|policy|other", \
"deadline": "YYYY-MM-DD or null"}]}""",
    "priority": """\
Flag messages that are urgent or need attention soon as:
{"priorityMessages": [{"messageId": "MSG-n", "level": "urgent|high|medium", \
"reason": "...", "actionRequired": true|false}]}
Leave ordinary chatter out.""",
    "rsvps": """\
Extract invitations that ask for a response (RSVP) as:
{"rsvps": [{"messageId": "MSG-n", "eventName": "...", \
"deadline": "ISO 8601 or null", "eventDate": "ISO 8601 or null", \
"requestedBy": "... or null"}]}""",
    "deadlines": """\
Extract tasks with due dates (e.g. "form due Friday") as:
{"deadlines": [{"messageId": "MSG-n", "task": "...", "deadline": "ISO 8601", \
"category": "school|bills|chores|forms|medical|work|other", \
"priority": "urgent|high|medium|low", "details": "... or null", \
"assignedTo": "... or null"}]}""",
}

_MESSAGE_PROMPT = """\
Extract ALL relevant insights from the current message in ONE pass:
{"events": [...], "rsvps": [...], "deadlines": [...], "decisions": [...], \
"priority": {"level": "urgent|high|medium", "reason": "...", \
"actionRequired": true|false} or null}
Use the same item shapes as the single-kind extractions; messageId may be omitted.

Context (previous messages):
%(context)s

Current message to analyze:
%(content)s"""


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_time(raw: str | None, now: datetime) -> datetime | None:
    """Parse a raw date/time string using dateparser, returning a UTC datetime."""
    if not raw:
        return None
    settings = {
        "PREFER_DATES_FROM": "future",
        "RELATIVE_BASE": now.replace(tzinfo=None),
        "TIMEZONE": "UTC",
        "TO_TIMEZONE": "UTC",
        "RETURN_AS_TIMEZONE_AWARE": False,
    }
    result = dateparser.parse(raw, settings=settings)
    if result is None:
        return None
    return result.replace(tzinfo=timezone.utc)


def _parse_date(raw: str | None, now: datetime) -> date | None:
    parsed = _parse_time(raw, now)
    return parsed.date() if parsed else None


def _parse_clock(raw: str | None, now: datetime) -> time | None:
    if not raw:
        return None
    try:
        return datetime.strptime(raw.strip(), "%H:%M").time()
    except ValueError:
        parsed = _parse_time(raw, now)
        return parsed.time() if parsed else None


def _validate(schema: type[_T], data: dict) -> _T:
    """Validate model output, naming the first offending field on failure."""
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        error = exc.errors()[0]
        path = ".".join(str(part) for part in error["loc"]) or "$"
        raise DataFormatError(path, error["msg"]) from exc


def _new_request_id() -> str:
    return uuid.uuid4().hex[:8]


class ExtractionService:
    """Turns conversation messages into candidate insights via a language model."""

    def __init__(
        self,
        settings: Settings,
        model: LanguageModel,
        message_repo: MessageRepository,
        participant_repo: ParticipantRepository,
        rsvp_repo: RSVPRepository,
        persistence: InsightPersistence,
        limiter: RateLimiter,
        bus: EventBus,
    ) -> None:
        self.settings = settings
        self.model = model
        self.message_repo = message_repo
        self.participant_repo = participant_repo
        self.rsvp_repo = rsvp_repo
        self.persistence = persistence
        self.limiter = limiter
        self.bus = bus

    # ------------------------------------------------------------------
    # Pull-based operations
    # ------------------------------------------------------------------

    async def extract_calendar_events(
        self, conversation_id: str, caller_id: str, days_back: int = 7
    ) -> list[CalendarEvent]:
        request_id = _new_request_id()
        window = await self._run(
            "extract-calendar-events", "events", EventsPayload,
            conversation_id, caller_id, days_back, request_id,
        )
        if window is None:
            return []
        payload, transcript, now = window

        events: list[CalendarEvent] = []
        for idx, item in enumerate(payload.events):
            event_date = _parse_date(item.date, now)
            if event_date is None:
                raise DataFormatError(f"events.{idx}.date", f"unparseable date {item.date!r}")
            events.append(
                CalendarEvent(
                    conversation_id=conversation_id,
                    message_id=transcript.resolve(item.message_id),
                    user_id=caller_id,
                    title=item.title,
                    date=event_date,
                    time=_parse_clock(item.time, now),
                    location=item.location,
                    description=item.description,
                    category=item.category or EventCategory.OTHER,
                    confidence=item.confidence,
                )
            )
        self._log_step(request_id, "events_extracted", count=len(events))

        self.persistence.save_events(events)
        if events:
            await self._publish(EventsExtracted(user_id=caller_id, event_ids=[e.id for e in events]))
        self._log_step(request_id, "complete")
        return events

    async def track_decisions(
        self, conversation_id: str, caller_id: str, days_back: int = 7
    ) -> list[Decision]:
        request_id = _new_request_id()
        window = await self._run(
            "track-decisions", "decisions", DecisionsPayload,
            conversation_id, caller_id, days_back, request_id,
        )
        if window is None:
            return []
        payload, transcript, now = window

        decisions = []
        for item in payload.decisions:
            message_id = transcript.resolve(item.message_id)
            origin = self.message_repo.get(message_id) if message_id else None
            decisions.append(
                Decision(
                    conversation_id=conversation_id,
                    message_id=message_id,
                    decision_text=item.decision_text,
                    category=item.category or DecisionCategory.OTHER,
                    decided_by=origin.sender_id if origin else None,
                    deadline=_parse_date(item.deadline, now),
                )
            )
        self._log_step(request_id, "decisions_extracted", count=len(decisions))

        self.persistence.save_decisions(decisions)
        self._log_step(request_id, "complete")
        return decisions

    async def detect_priority(
        self, conversation_id: str, caller_id: str, days_back: int = 7
    ) -> list[PriorityMessage]:
        request_id = _new_request_id()
        window = await self._run(
            "detect-priority", "priority", PriorityPayload,
            conversation_id, caller_id, days_back, request_id,
        )
        if window is None:
            return []
        payload, transcript, now = window

        flags = []
        for item in payload.priority_messages:
            message_id = transcript.resolve(item.message_id)
            if message_id is None:
                logger.warning("Dropping priority flag with unknown tag %r", item.message_id)
                continue
            flags.append(
                PriorityMessage(
                    message_id=message_id,
                    conversation_id=conversation_id,
                    priority=item.level,
                    reason=item.reason,
                    action_required=item.action_required,
                )
            )
        self._log_step(request_id, "priority_extracted", count=len(flags))

        self.persistence.save_priority(flags)
        self._log_step(request_id, "complete")
        return flags

    async def track_rsvps(
        self, conversation_id: str, caller_id: str, days_back: int = 7
    ) -> TrackRSVPsResult:
        request_id = _new_request_id()
        window = await self._run(
            "track-rsvps", "rsvps", RSVPsPayload,
            conversation_id, caller_id, days_back, request_id,
        )
        if window is None:
            return TrackRSVPsResult(summary=self._rsvp_summary(conversation_id, 0))
        payload, transcript, now = window

        candidates = []
        for item in payload.rsvps:
            message_id = transcript.resolve(item.message_id)
            if message_id is None:
                logger.warning("Dropping RSVP with unknown tag %r", item.message_id)
                continue
            candidates.append(
                RSVPTracking(
                    conversation_id=conversation_id,
                    message_id=message_id,
                    event_name=item.event_name,
                    requested_by=item.requested_by,
                    event_date=_parse_time(item.event_date, now),
                    deadline=_parse_time(item.deadline, now),
                )
            )
        self._log_step(request_id, "rsvps_extracted", count=len(candidates))

        inserted = self.persistence.save_rsvps(candidates)
        self._log_step(request_id, "rsvps_saved", count=len(inserted))
        self._log_step(request_id, "complete")
        return TrackRSVPsResult(
            new_rsvps=inserted,
            summary=self._rsvp_summary(conversation_id, len(inserted)),
        )

    async def extract_deadlines(
        self, conversation_id: str, caller_id: str, days_back: int = 7
    ) -> list[Deadline]:
        """Extract deadlines and return the stored rows, existing ones included."""
        request_id = _new_request_id()
        window = await self._run(
            "extract-deadlines", "deadlines", DeadlinesPayload,
            conversation_id, caller_id, days_back, request_id,
        )
        if window is None:
            return []
        payload, transcript, now = window

        candidates = []
        for idx, item in enumerate(payload.deadlines):
            message_id = transcript.resolve(item.message_id)
            if message_id is None:
                logger.warning("Dropping deadline with unknown tag %r", item.message_id)
                continue
            due = _parse_time(item.deadline, now)
            if due is None:
                raise DataFormatError(
                    f"deadlines.{idx}.deadline", f"unparseable date {item.deadline!r}"
                )
            candidates.append(
                Deadline(
                    conversation_id=conversation_id,
                    message_id=message_id,
                    user_id=caller_id,
                    task=item.task,
                    due=due,
                    category=item.category or DeadlineCategory.OTHER,
                    priority=item.priority or DeadlinePriority.MEDIUM,
                    details=item.details,
                    assigned_to=item.assigned_to,
                )
            )
        self._log_step(request_id, "deadlines_extracted", count=len(candidates))

        inserted = self.persistence.save_deadlines(candidates)
        stored: dict[str, Deadline] = {}
        for candidate in candidates:
            row = self.persistence.deadline_repo.find_by_origin(
                candidate.message_id, conversation_id
            )
            if row is not None:
                stored.setdefault(row.id, row)
        if inserted:
            await self._publish(
                DeadlinesExtracted(user_id=caller_id, deadline_ids=[d.id for d in inserted])
            )
        self._log_step(request_id, "complete")
        return list(stored.values())

    # ------------------------------------------------------------------
    # Opportunistic per-message extraction
    # ------------------------------------------------------------------

    async def parse_message(self, message_id: str) -> ParseMessageResult:
        if not message_id:
            raise InvalidRequestError("messageId is required")
        message = self.message_repo.get(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")

        request_id = _new_request_id()
        self._log_step(request_id, "start", operation="parse-message-ai", message_id=message_id)

        if len(message.content.strip()) < self.settings.min_message_length:
            self._log_step(request_id, "skipped", reason="too_short")
            return ParseMessageResult(message_id=message_id, skipped=True, reason="too_short")

        now = datetime.now(timezone.utc)
        count = self.limiter.check_daily_messages(message.sender_id, now)
        self._log_step(request_id, "rate_check", count=count)

        context = self.message_repo.list_context(
            message.conversation_id, message_id, self.settings.parse_context_messages
        )
        context_text = build_transcript(context).text or "(none)"
        prompt = _MESSAGE_PROMPT % {"context": context_text, "content": message.content}
        data = await self._call_model("message", prompt, request_id)
        payload = _validate(MessageInsightsPayload, data)

        batch = self._message_batch(message, payload, now)
        self._log_step(
            request_id,
            "insights_extracted",
            events=len(batch.events),
            rsvps=len(batch.rsvps),
            deadlines=len(batch.deadlines),
            decisions=len(batch.decisions),
            priority=bool(batch.priority),
        )

        report = self.persistence.persist(batch)
        self.persistence.mark_processed(message_id, now)

        if batch.events and "events" not in report.errors:
            await self._publish(
                EventsExtracted(user_id=message.sender_id, event_ids=[e.id for e in batch.events])
            )
        if report.counts.get("deadlines") and "deadlines" not in report.errors:
            await self._publish(
                DeadlinesExtracted(
                    user_id=message.sender_id,
                    deadline_ids=[
                        d.id for d in batch.deadlines if self.persistence.deadline_repo.get(d.id)
                    ],
                )
            )
        self._log_step(request_id, "complete", counts=report.counts)
        return ParseMessageResult(
            message_id=message_id,
            counts=report.counts,
            errors=report.errors,
            processed_at=now,
        )

    def _message_batch(
        self, message: Message, payload: MessageInsightsPayload, now: datetime
    ) -> InsightBatch:
        conversation_id = message.conversation_id
        batch = InsightBatch()
        for idx, item in enumerate(payload.events):
            event_date = _parse_date(item.date, now)
            if event_date is None:
                raise DataFormatError(f"events.{idx}.date", f"unparseable date {item.date!r}")
            batch.events.append(
                CalendarEvent(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    user_id=message.sender_id,
                    title=item.title,
                    date=event_date,
                    time=_parse_clock(item.time, now),
                    location=item.location,
                    description=item.description,
                    category=item.category or EventCategory.OTHER,
                    confidence=item.confidence,
                )
            )
        for item in payload.rsvps:
            batch.rsvps.append(
                RSVPTracking(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    event_name=item.event_name,
                    requested_by=item.requested_by or message.sender_id,
                    event_date=_parse_time(item.event_date, now),
                    deadline=_parse_time(item.deadline, now),
                )
            )
        for idx, item in enumerate(payload.deadlines):
            due = _parse_time(item.deadline, now)
            if due is None:
                raise DataFormatError(
                    f"deadlines.{idx}.deadline", f"unparseable date {item.deadline!r}"
                )
            batch.deadlines.append(
                Deadline(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    user_id=message.sender_id,
                    task=item.task,
                    due=due,
                    category=item.category or DeadlineCategory.OTHER,
                    priority=item.priority or DeadlinePriority.MEDIUM,
                    details=item.details,
                    assigned_to=item.assigned_to,
                )
            )
        for item in payload.decisions:
            batch.decisions.append(
                Decision(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    decision_text=item.decision_text,
                    category=item.category or DecisionCategory.OTHER,
                    decided_by=message.sender_id,
                    deadline=_parse_date(item.deadline, now),
                )
            )
        if payload.priority is not None:
            batch.priority.append(
                PriorityMessage(
                    message_id=message.id,
                    conversation_id=conversation_id,
                    priority=payload.priority.level,
                    reason=payload.priority.reason,
                    action_required=payload.priority.action_required,
                )
            )
        return batch

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    async def _run(
        self,
        operation: str,
        task: str,
        schema: type[_T],
        conversation_id: str,
        caller_id: str,
        days_back: int,
        request_id: str,
    ) -> tuple[_T, Transcript, datetime] | None:
        """Run the common steps up to a validated payload.

        Returns None when the window holds no messages; the model is not
        called in that case.
        """
        self._log_step(request_id, "start", operation=operation, conversation_id=conversation_id)
        self._check_request(conversation_id, caller_id, days_back)
        if not self.participant_repo.is_participant(conversation_id, caller_id):
            raise AccessDeniedError()

        now = datetime.now(timezone.utc)
        count = self.limiter.acquire(caller_id, operation, now)
        self._log_step(request_id, "rate_check", count=count)

        messages = self.message_repo.list_recent(
            conversation_id,
            since=now - timedelta(days=days_back),
            limit=self.settings.max_context_messages,
        )
        self._log_step(request_id, "messages_fetched", count=len(messages))
        if not messages:
            self._log_step(request_id, "complete")
            return None

        transcript = build_transcript(messages)
        prompt = (
            f"{_TASK_PROMPTS[task]}\n\n"
            f"Today's date: {now.date().isoformat()}\n\n"
            f"Messages:\n{transcript.text}"
        )
        data = await self._call_model(task, prompt, request_id)
        return _validate(schema, data), transcript, now

    def _check_request(self, conversation_id: str, caller_id: str, days_back: int) -> None:
        if not conversation_id:
            raise InvalidRequestError("conversationId is required")
        if not caller_id:
            raise InvalidRequestError("userId is required")
        low, high = self.settings.min_days_back, self.settings.max_days_back
        if not low <= days_back <= high:
            raise InvalidRequestError(f"daysBack must be between {low} and {high}")

    async def _call_model(self, task: str, prompt: str, request_id: str) -> dict:
        timeout = self.settings.model_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.model.extract(task, _SYSTEM_PROMPT, prompt), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            self._log_step(request_id, "error", reason="timeout")
            raise UpstreamModelError(f"Model call timed out after {timeout:g}s") from exc
        except UpstreamModelError as exc:
            self._log_step(request_id, "error", reason=exc.code)
            raise

    def _rsvp_summary(self, conversation_id: str, new_count: int) -> RSVPSummary:
        pending = self.rsvp_repo.list_pending(conversation_id)
        return RSVPSummary(
            new_count=new_count, total_pending=len(pending), pending_rsvps=pending
        )

    async def _publish(self, event: BaseModel) -> None:
        errors = await self.bus.publish(event)
        if errors:
            logger.warning(
                "%d follow-up handler(s) failed after %s", len(errors), type(event).__name__
            )

    @staticmethod
    def _log_step(request_id: str, step: str, **data) -> None:
        logger.info("[%s] %s %s", request_id, step, data if data else "")
