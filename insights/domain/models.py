"""Domain models for the conversation insights pipeline."""

from __future__ import annotations

import datetime as dt
import uuid
from datetime import datetime, time, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

try:
    from enum import StrEnum
except ImportError:  # pragma: no cover - fallback for older Python runtimes

    class StrEnum(str, Enum):
        pass


class EventCategory(StrEnum):
    SCHOOL = "school"
    MEDICAL = "medical"
    SOCIAL = "social"
    SPORTS = "sports"
    WORK = "work"
    OTHER = "other"


class RSVPStatus(StrEnum):
    PENDING = "pending"
    YES = "yes"
    NO = "no"
    MAYBE = "maybe"


class DeadlineCategory(StrEnum):
    SCHOOL = "school"
    BILLS = "bills"
    CHORES = "chores"
    FORMS = "forms"
    MEDICAL = "medical"
    WORK = "work"
    OTHER = "other"


class DeadlinePriority(StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for the most pressing priority."""
        return _PRIORITY_ORDER.index(self)

    def __lt__(self, other):  # type: ignore[override]
        if isinstance(other, DeadlinePriority):
            return self.rank < other.rank
        return NotImplemented

    def __gt__(self, other):  # type: ignore[override]
        if isinstance(other, DeadlinePriority):
            return self.rank > other.rank
        return NotImplemented

    def __le__(self, other):  # type: ignore[override]
        if isinstance(other, DeadlinePriority):
            return self.rank <= other.rank
        return NotImplemented

    def __ge__(self, other):  # type: ignore[override]
        if isinstance(other, DeadlinePriority):
            return self.rank >= other.rank
        return NotImplemented


_PRIORITY_ORDER = [
    DeadlinePriority.URGENT,
    DeadlinePriority.HIGH,
    DeadlinePriority.MEDIUM,
    DeadlinePriority.LOW,
]


class DeadlineStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DecisionCategory(StrEnum):
    ACTIVITY = "activity"
    SCHEDULE = "schedule"
    PURCHASE = "purchase"
    POLICY = "policy"
    OTHER = "other"


class PriorityLevel(StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"


class SyncStatus(StrEnum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class ConflictSeverity(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ConflictStatus(StrEnum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"


class SyncEntityType(StrEnum):
    CALENDAR_EVENT = "calendar_event"
    DEADLINE = "deadline"


class QueueStatus(StrEnum):
    QUEUED = "queued"
    ABANDONED = "abandoned"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def sort_by_priority(deadlines: list[Deadline]) -> list[Deadline]:
    """Most pressing first; ties broken by due time."""
    return sorted(deadlines, key=lambda d: (d.priority.rank, d.due))


# ---------------------------------------------------------------------------
# Core domain models
# ---------------------------------------------------------------------------


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    ai_last_processed: datetime | None = None


class CalendarEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    message_id: str | None = None
    user_id: str | None = None
    title: str
    date: dt.date
    time: dt.time | None = None
    location: str | None = None
    description: str | None = None
    category: EventCategory = EventCategory.OTHER
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    confirmed: bool = False
    external_ids: dict[str, str] = Field(default_factory=dict)
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None
    last_sync_attempt: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_pending_sync(self) -> bool:
        return not self.external_ids

    @property
    def start(self) -> datetime:
        """Start instant in UTC; untimed events start at midnight."""
        return datetime.combine(self.date, self.time or time(0, 0), tzinfo=timezone.utc)


class RSVPTracking(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    message_id: str
    event_name: str
    requested_by: str | None = None
    event_date: datetime | None = None
    deadline: datetime | None = None
    status: RSVPStatus = RSVPStatus.PENDING
    user_id: str | None = None
    responded_at: datetime | None = None
    calendar_event_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _responded_fields_set(self) -> RSVPTracking:
        if self.status != RSVPStatus.PENDING and (
            self.user_id is None or self.responded_at is None
        ):
            raise ValueError("a responded RSVP must record user_id and responded_at")
        return self


class Deadline(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    message_id: str | None = None
    user_id: str
    task: str
    due: datetime
    category: DeadlineCategory = DeadlineCategory.OTHER
    priority: DeadlinePriority = DeadlinePriority.MEDIUM
    details: str | None = None
    assigned_to: str | None = None
    status: DeadlineStatus = DeadlineStatus.PENDING
    completed_at: datetime | None = None
    external_ids: dict[str, str] = Field(default_factory=dict)
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None
    last_sync_attempt: datetime | None = None
    last_synced_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _completed_at_matches_status(self) -> Deadline:
        if (self.status == DeadlineStatus.COMPLETED) != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when status is completed")
        return self

    @property
    def is_pending_sync(self) -> bool:
        return not self.external_ids


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    conversation_id: str
    message_id: str | None = None
    decision_text: str
    category: DecisionCategory = DecisionCategory.OTHER
    decided_by: str | None = None
    deadline: dt.date | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class PriorityMessage(BaseModel):
    message_id: str
    conversation_id: str
    priority: PriorityLevel
    reason: str
    action_required: bool = False
    dismissed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class ConflictItem(BaseModel):
    kind: SyncEntityType
    id: str
    title: str
    start: datetime


class SchedulingConflict(BaseModel):
    id: str
    conversation_id: str
    first: ConflictItem
    second: ConflictItem
    date: dt.date
    reason: str
    severity: ConflictSeverity
    status: ConflictStatus = ConflictStatus.UNRESOLVED
    fingerprint: str
    detected_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None


class SyncQueueEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    entity_type: SyncEntityType
    entity_id: str
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime = Field(default_factory=_utcnow)
    status: QueueStatus = QueueStatus.QUEUED
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class CalendarSyncSettings(BaseModel):
    user_id: str
    apple_calendar_enabled: bool = False
    google_calendar_enabled: bool = False
    apple_reminders_enabled: bool = False
    google_tasks_enabled: bool = False
    auto_sync_enabled: bool = False
    category_calendars: dict[str, str] = Field(default_factory=dict)
    default_calendar_name: str = "Family"

    @property
    def has_any_sync_enabled(self) -> bool:
        return bool(
            self.enabled_calendar_integrations() or self.enabled_reminder_integrations()
        )

    def calendar_name(self, category: str) -> str:
        return self.category_calendars.get(category, self.default_calendar_name)

    def enabled_calendar_integrations(self) -> list[str]:
        names = []
        if self.apple_calendar_enabled:
            names.append("apple")
        if self.google_calendar_enabled:
            names.append("google")
        return names

    def enabled_reminder_integrations(self) -> list[str]:
        names = []
        if self.apple_reminders_enabled:
            names.append("apple")
        if self.google_tasks_enabled:
            names.append("google")
        return names


class UsageRecord(BaseModel):
    user_id: str
    operation: str
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Request / Response DTOs
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationRequest(_CamelModel):
    conversation_id: str = Field(min_length=1)
    days_back: int = 7


class UserConversationRequest(ConversationRequest):
    user_id: str = Field(min_length=1)


class ParseMessageRequest(_CamelModel):
    message_id: str = Field(min_length=1)


class AssistantRequest(_CamelModel):
    conversation_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    query: str | None = None


class RSVPResponseRequest(_CamelModel):
    status: RSVPStatus
    user_id: str = Field(min_length=1)


class SyncEntityRequest(_CamelModel):
    user_id: str = Field(min_length=1)


class RSVPSummary(BaseModel):
    new_count: int
    total_pending: int
    pending_rsvps: list[RSVPTracking] = Field(default_factory=list)


class TrackRSVPsResult(BaseModel):
    new_rsvps: list[RSVPTracking] = Field(default_factory=list)
    summary: RSVPSummary


class ParseMessageResult(BaseModel):
    message_id: str
    skipped: bool = False
    reason: str | None = None
    counts: dict[str, int] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    processed_at: datetime | None = None


class RSVPResponseResult(BaseModel):
    rsvp: RSVPTracking
    calendar_event: CalendarEvent | None = None
    calendar_error: str | None = None
    rsvps: list[RSVPTracking] = Field(default_factory=list)


class ConflictReport(BaseModel):
    conversation_id: str
    conflicts: list[SchedulingConflict] = Field(default_factory=list)
    unresolved_count: int = 0
    high_count: int = 0


class SyncItemResult(BaseModel):
    entity_type: SyncEntityType
    entity_id: str
    status: str  # synced, failed, skipped, pulled, pushed, deleted, abandoned
    external_ids: dict[str, str] = Field(default_factory=dict)
    error: str | None = None


class SyncBatchResult(BaseModel):
    results: list[SyncItemResult] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def failed(self) -> list[SyncItemResult]:
        return [r for r in self.results if r.status == "failed"]


class ToolExecution(BaseModel):
    tool: str
    params: dict = Field(default_factory=dict)
    error: str | None = None


class AssistantInsights(BaseModel):
    upcoming_events: list[CalendarEvent] | None = None
    pending_rsvps: list[RSVPTracking] | None = None
    upcoming_deadlines: list[Deadline] | None = None
    scheduling_conflicts: list[SchedulingConflict] | None = None


class AssistantResponse(BaseModel):
    message: str
    insights: AssistantInsights | None = None
    tools_used: list[ToolExecution] | None = None


class ConversationInsights(BaseModel):
    conversation_id: str
    events: list[CalendarEvent] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    priority_messages: list[PriorityMessage] = Field(default_factory=list)
    rsvps: list[RSVPTracking] = Field(default_factory=list)
    deadlines: list[Deadline] = Field(default_factory=list)
    conflicts: list[SchedulingConflict] = Field(default_factory=list)
