"""Idempotent persistence of extracted insights.

RSVPs and deadlines are keyed by ``(message_id, conversation_id)``: a row
with that pair blocks re-insertion. Events and decisions have no dedup key.
Priority flags are one per message and overwritten.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from insights.domain.models import (
    CalendarEvent,
    Deadline,
    Decision,
    PriorityMessage,
    RSVPTracking,
)
from insights.repos.memory import (
    CalendarEventRepository,
    DeadlineRepository,
    DecisionRepository,
    MessageRepository,
    PriorityMessageRepository,
    RSVPRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class InsightBatch:
    events: list[CalendarEvent] = field(default_factory=list)
    rsvps: list[RSVPTracking] = field(default_factory=list)
    deadlines: list[Deadline] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    priority: list[PriorityMessage] = field(default_factory=list)


@dataclass
class PersistenceReport:
    counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class InsightPersistence:
    def __init__(
        self,
        event_repo: CalendarEventRepository,
        rsvp_repo: RSVPRepository,
        deadline_repo: DeadlineRepository,
        decision_repo: DecisionRepository,
        priority_repo: PriorityMessageRepository,
        message_repo: MessageRepository,
    ) -> None:
        self.event_repo = event_repo
        self.rsvp_repo = rsvp_repo
        self.deadline_repo = deadline_repo
        self.decision_repo = decision_repo
        self.priority_repo = priority_repo
        self.message_repo = message_repo

    def save_events(self, events: list[CalendarEvent]) -> list[CalendarEvent]:
        for event in events:
            self.event_repo.add(event)
        return events

    def save_decisions(self, decisions: list[Decision]) -> list[Decision]:
        for decision in decisions:
            self.decision_repo.add(decision)
        return decisions

    def save_priority(self, flags: list[PriorityMessage]) -> list[PriorityMessage]:
        for flag in flags:
            self.priority_repo.upsert(flag)
        return flags

    def save_rsvps(self, rsvps: list[RSVPTracking]) -> list[RSVPTracking]:
        """Insert RSVPs whose origin pair is not stored yet; return the new rows."""
        inserted: list[RSVPTracking] = []
        for rsvp in rsvps:
            if self.rsvp_repo.find_by_origin(rsvp.message_id, rsvp.conversation_id):
                continue
            self.rsvp_repo.add(rsvp)
            inserted.append(rsvp)
        if len(inserted) < len(rsvps):
            logger.debug("Skipped %d already tracked RSVPs", len(rsvps) - len(inserted))
        return inserted

    def save_deadlines(self, deadlines: list[Deadline]) -> list[Deadline]:
        """Insert deadlines whose origin pair is not stored yet; return the new rows."""
        inserted: list[Deadline] = []
        for deadline in deadlines:
            if deadline.message_id is not None and self.deadline_repo.find_by_origin(
                deadline.message_id, deadline.conversation_id
            ):
                continue
            self.deadline_repo.add(deadline)
            inserted.append(deadline)
        if len(inserted) < len(deadlines):
            logger.debug(
                "Skipped %d already tracked deadlines", len(deadlines) - len(inserted)
            )
        return inserted

    def persist(self, batch: InsightBatch) -> PersistenceReport:
        """Write every kind independently; one kind failing does not block the rest."""
        report = PersistenceReport()
        writers = [
            ("events", self.save_events, batch.events),
            ("rsvps", self.save_rsvps, batch.rsvps),
            ("deadlines", self.save_deadlines, batch.deadlines),
            ("decisions", self.save_decisions, batch.decisions),
            ("priority", self.save_priority, batch.priority),
        ]
        for kind, writer, items in writers:
            if not items:
                report.counts[kind] = 0
                continue
            try:
                report.counts[kind] = len(writer(items))
            except Exception as exc:
                logger.error("Error inserting %s: %s", kind, exc)
                report.counts[kind] = 0
                report.errors[kind] = str(exc)
            else:
                logger.info("Inserted %d %s", report.counts[kind], kind)
        return report

    def mark_processed(self, message_id: str, processed_at: datetime) -> None:
        self.message_repo.mark_processed(message_id, processed_at)
