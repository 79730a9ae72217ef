"""Service for detecting scheduling conflicts between events and deadlines."""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from insights.domain.errors import NotFoundError
from insights.domain.models import (
    CalendarEvent,
    ConflictItem,
    ConflictReport,
    ConflictSeverity,
    ConflictStatus,
    Deadline,
    DeadlineStatus,
    SchedulingConflict,
    SyncEntityType,
)
from insights.repos.memory import (
    CalendarEventRepository,
    ConflictRepository,
    DeadlineRepository,
)

logger = logging.getLogger(__name__)

_CONFLICT_NAMESPACE = uuid.UUID("6f1b2c8e-4a57-4c1e-9a2b-2f0f3c8d5e71")

_SEVERITY_ORDER = {
    ConflictSeverity.HIGH: 0,
    ConflictSeverity.MEDIUM: 1,
    ConflictSeverity.LOW: 2,
}


def ranges_overlap(
    start: datetime, end: datetime, other_start: datetime, other_end: datetime
) -> bool:
    """Overlap rule: start < other_end AND other_start < end.

    Exact boundary touches (end == other_start) are NOT considered conflicts.
    """
    return start < other_end and other_start < end


@dataclass(frozen=True)
class _Slot:
    item: ConflictItem
    day: date
    end: datetime | None  # None for deadlines, which are instants

    @property
    def is_event(self) -> bool:
        return self.item.kind == SyncEntityType.CALENDAR_EVENT


def _event_slot(event: CalendarEvent, default_minutes: int) -> _Slot:
    start = event.start
    length = timedelta(minutes=default_minutes) if event.time else timedelta(days=1)
    return _Slot(
        item=ConflictItem(
            kind=SyncEntityType.CALENDAR_EVENT, id=event.id, title=event.title, start=start
        ),
        day=event.date,
        end=start + length,
    )


def _deadline_slot(deadline: Deadline) -> _Slot:
    return _Slot(
        item=ConflictItem(
            kind=SyncEntityType.DEADLINE,
            id=deadline.id,
            title=deadline.task,
            start=deadline.due,
        ),
        day=deadline.due.date(),
        end=None,
    )


def classify_pair(a: _Slot, b: _Slot) -> tuple[ConflictSeverity, str] | None:
    """Return (severity, reason) when the two slots collide, else None."""
    if a.day != b.day:
        return None
    day = a.day.strftime("%A %B %d")

    if a.is_event and b.is_event:
        if a.item.start == b.item.start:
            return (
                ConflictSeverity.HIGH,
                f'"{a.item.title}" and "{b.item.title}" are at the same time on {day}',
            )
        if ranges_overlap(a.item.start, a.end, b.item.start, b.end):
            return (
                ConflictSeverity.MEDIUM,
                f'"{a.item.title}" and "{b.item.title}" overlap on {day}',
            )
        return (
            ConflictSeverity.LOW,
            f'"{a.item.title}" and "{b.item.title}" are both on {day}',
        )

    if a.is_event or b.is_event:
        event, deadline = (a, b) if a.is_event else (b, a)
        if event.item.start <= deadline.item.start < event.end:
            return (
                ConflictSeverity.HIGH,
                f'"{deadline.item.title}" is due during "{event.item.title}"',
            )
        return (
            ConflictSeverity.MEDIUM,
            f'"{deadline.item.title}" is due the same day as "{event.item.title}"',
        )

    if a.item.start == b.item.start:
        return (
            ConflictSeverity.MEDIUM,
            f'"{a.item.title}" and "{b.item.title}" are due at the same time',
        )
    return None


def _conflict_id(a: _Slot, b: _Slot) -> str:
    key = "|".join(sorted(f"{s.item.kind}:{s.item.id}" for s in (a, b)))
    return str(uuid.uuid5(_CONFLICT_NAMESPACE, key))


def _fingerprint(a: _Slot, b: _Slot) -> str:
    parts = sorted(
        f"{s.item.kind}:{s.item.id}:{s.item.start.isoformat()}:"
        f"{s.end.isoformat() if s.end else '-'}:{s.item.title}"
        for s in (a, b)
    )
    return hashlib.sha1("|".join(parts).encode()).hexdigest()


class ConflictDetector:
    """Derives the conflict set of a conversation from its events and deadlines.

    Each run replaces the stored set. A conflict the user resolved stays
    resolved while both entities keep the same times and titles.
    """

    def __init__(
        self,
        conflict_repo: ConflictRepository,
        event_repo: CalendarEventRepository,
        deadline_repo: DeadlineRepository,
        horizon_days: int = 30,
        default_event_minutes: int = 60,
    ) -> None:
        self.conflict_repo = conflict_repo
        self.event_repo = event_repo
        self.deadline_repo = deadline_repo
        self.horizon_days = horizon_days
        self.default_event_minutes = default_event_minutes

    def detect_conflicts(
        self, conversation_id: str, now: datetime | None = None
    ) -> ConflictReport:
        now = now or datetime.now(timezone.utc)
        slots = self._candidates(conversation_id, now)
        previous = {c.id: c for c in self.conflict_repo.list_for_conversation(conversation_id)}

        conflicts: list[SchedulingConflict] = []
        for i, a in enumerate(slots):
            for b in slots[i + 1 :]:
                verdict = classify_pair(a, b)
                if verdict is None:
                    continue
                severity, reason = verdict
                first, second = sorted((a, b), key=lambda s: (s.item.start, s.item.id))
                conflict = SchedulingConflict(
                    id=_conflict_id(a, b),
                    conversation_id=conversation_id,
                    first=first.item,
                    second=second.item,
                    date=a.day,
                    reason=reason,
                    severity=severity,
                    fingerprint=_fingerprint(a, b),
                    detected_at=now,
                )
                prior = previous.get(conflict.id)
                if (
                    prior is not None
                    and prior.status == ConflictStatus.RESOLVED
                    and prior.fingerprint == conflict.fingerprint
                ):
                    conflict.status = ConflictStatus.RESOLVED
                    conflict.resolved_at = prior.resolved_at
                conflicts.append(conflict)

        conflicts.sort(key=lambda c: (_SEVERITY_ORDER[c.severity], c.date, c.first.start))
        self.conflict_repo.replace_for_conversation(conversation_id, conflicts)
        report = self._report(conversation_id, conflicts)
        logger.info(
            "Detected %d conflict(s) for %s (%d unresolved, %d high)",
            len(conflicts),
            conversation_id,
            report.unresolved_count,
            report.high_count,
        )
        return report

    def resolve(self, conflict_id: str, now: datetime | None = None) -> SchedulingConflict:
        conflict = self.conflict_repo.get(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        conflict.status = ConflictStatus.RESOLVED
        conflict.resolved_at = now or datetime.now(timezone.utc)
        self.conflict_repo.update(conflict)
        return conflict

    def list_for_conversation(self, conversation_id: str) -> ConflictReport:
        return self._report(
            conversation_id, self.conflict_repo.list_for_conversation(conversation_id)
        )

    def _candidates(self, conversation_id: str, now: datetime) -> list[_Slot]:
        today = now.date()
        horizon = today + timedelta(days=self.horizon_days)
        slots = [
            _event_slot(e, self.default_event_minutes)
            for e in self.event_repo.list_for_conversation(conversation_id)
            if e.confirmed and today <= e.date <= horizon
        ]
        slots.extend(
            _deadline_slot(d)
            for d in self.deadline_repo.list_for_conversation(conversation_id)
            if d.status == DeadlineStatus.PENDING and today <= d.due.date() <= horizon
        )
        return slots

    @staticmethod
    def _report(
        conversation_id: str, conflicts: list[SchedulingConflict]
    ) -> ConflictReport:
        unresolved = [c for c in conflicts if c.status == ConflictStatus.UNRESOLVED]
        return ConflictReport(
            conversation_id=conversation_id,
            conflicts=conflicts,
            unresolved_count=len(unresolved),
            high_count=sum(1 for c in unresolved if c.severity == ConflictSeverity.HIGH),
        )
