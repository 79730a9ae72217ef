"""Multi-conversation coordination of analysis, caches, sync and conflicts.

Each user has one error slot per operation family (``analysis``, ``sync``,
``conflicts``). Starting an operation clears the caller's slot; failures for
single conversations or entity kinds are written there while the successful
ones are kept.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from insights.domain.errors import AccessDeniedError, InvalidRequestError, NotFoundError, SyncError
from insights.domain.models import (
    CalendarEvent,
    ConversationInsights,
    Deadline,
    DeadlineStatus,
    Decision,
    PriorityMessage,
    RSVPTracking,
    SchedulingConflict,
    SyncBatchResult,
    SyncStatus,
)
from insights.repos.memory import (
    CalendarEventRepository,
    ConflictRepository,
    DeadlineRepository,
    DecisionRepository,
    ParticipantRepository,
    PriorityMessageRepository,
    RSVPRepository,
)
from insights.services.conflicts import ConflictDetector
from insights.services.extraction import ExtractionService
from insights.services.sync import SyncEngine

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

ERROR_SLOTS = ("analysis", "sync", "conflicts")


async def _capture(call: Awaitable[_T]) -> tuple[_T | None, Exception | None]:
    try:
        return await call, None
    except Exception as exc:
        return None, exc


def _describe(errors: dict[str, Exception]) -> str:
    return "; ".join(f"{key}: {exc}" for key, exc in errors.items())


async def _reread(call: Awaitable[list], repo: Any) -> list:
    """Await an extraction, then return the stored rows (sync state included)."""
    items = await call
    return [repo.get(item.id) or item for item in items]


class InsightsCoordinator:
    def __init__(
        self,
        extraction: ExtractionService,
        conflict_detector: ConflictDetector,
        sync_engine: SyncEngine,
        participant_repo: ParticipantRepository,
        event_repo: CalendarEventRepository,
        decision_repo: DecisionRepository,
        priority_repo: PriorityMessageRepository,
        rsvp_repo: RSVPRepository,
        deadline_repo: DeadlineRepository,
        conflict_repo: ConflictRepository,
    ) -> None:
        self.extraction = extraction
        self.conflict_detector = conflict_detector
        self.sync_engine = sync_engine
        self.participant_repo = participant_repo
        self.event_repo = event_repo
        self.decision_repo = decision_repo
        self.priority_repo = priority_repo
        self.rsvp_repo = rsvp_repo
        self.deadline_repo = deadline_repo
        self.conflict_repo = conflict_repo

        self.events: dict[str, list[CalendarEvent]] = {}
        self.decisions: dict[str, list[Decision]] = {}
        self.priority_messages: dict[str, list[PriorityMessage]] = {}
        self.rsvps: dict[str, list[RSVPTracking]] = {}
        self.deadlines: dict[str, list[Deadline]] = {}
        self.conflicts: dict[str, list[SchedulingConflict]] = {}
        self._errors: dict[str, dict[str, str | None]] = {}

    # ------------------------------------------------------------------
    # Error slots
    # ------------------------------------------------------------------

    def error(self, user_id: str, slot: str) -> str | None:
        return self.errors(user_id)[slot]

    def errors(self, user_id: str) -> dict[str, str | None]:
        return dict(self._errors.get(user_id) or dict.fromkeys(ERROR_SLOTS))

    def clear_error(self, user_id: str, slot: str) -> None:
        if slot not in ERROR_SLOTS:
            raise InvalidRequestError(f"Unknown error slot '{slot}'")
        slots = self._errors.get(user_id)
        if slots is not None:
            slots[slot] = None

    def _fail(self, user_id: str, slot: str, message: str) -> None:
        logger.warning("%s error for %s: %s", slot, user_id, message)
        self._errors.setdefault(user_id, dict.fromkeys(ERROR_SLOTS))[slot] = message

    # ------------------------------------------------------------------
    # Per-kind analysis across conversations
    # ------------------------------------------------------------------

    async def _across(
        self,
        conversation_ids: list[str],
        user_id: str,
        run: Callable[[str], Awaitable[_T]],
        cache: dict[str, _T],
    ) -> dict[str, _T]:
        """Run *run* for every conversation at once; keep what succeeded."""
        self.clear_error(user_id, "analysis")
        if not conversation_ids:
            self._fail(user_id, "analysis", "No conversations available")
            return {}
        outcomes = await asyncio.gather(*(_capture(run(cid)) for cid in conversation_ids))
        results: dict[str, _T] = {}
        errors: dict[str, Exception] = {}
        for cid, (value, exc) in zip(conversation_ids, outcomes):
            if exc is not None:
                errors[cid] = exc
            else:
                results[cid] = value
                cache[cid] = value
        if errors:
            self._fail(user_id, "analysis", _describe(errors))
        return results

    async def analyze_events(
        self, conversation_ids: list[str], user_id: str, days_back: int = 7
    ) -> dict[str, list[CalendarEvent]]:
        return await self._across(
            conversation_ids,
            user_id,
            lambda cid: _reread(
                self.extraction.extract_calendar_events(cid, user_id, days_back), self.event_repo
            ),
            self.events,
        )

    async def analyze_decisions(
        self, conversation_ids: list[str], user_id: str, days_back: int = 7
    ) -> dict[str, list[Decision]]:
        return await self._across(
            conversation_ids,
            user_id,
            lambda cid: self.extraction.track_decisions(cid, user_id, days_back),
            self.decisions,
        )

    async def analyze_priority(
        self, conversation_ids: list[str], user_id: str, days_back: int = 7
    ) -> dict[str, list[PriorityMessage]]:
        return await self._across(
            conversation_ids,
            user_id,
            lambda cid: self.extraction.detect_priority(cid, user_id, days_back),
            self.priority_messages,
        )

    async def analyze_rsvps(
        self, conversation_ids: list[str], user_id: str, days_back: int = 7
    ) -> dict[str, list[RSVPTracking]]:
        async def extract_then_reload(cid: str) -> list[RSVPTracking]:
            await self.extraction.track_rsvps(cid, user_id, days_back)
            return self.rsvp_repo.list_for_conversation(cid)

        return await self._across(conversation_ids, user_id, extract_then_reload, self.rsvps)

    async def analyze_deadlines(
        self, conversation_ids: list[str], user_id: str, days_back: int = 7
    ) -> dict[str, list[Deadline]]:
        return await self._across(
            conversation_ids,
            user_id,
            lambda cid: _reread(
                self.extraction.extract_deadlines(cid, user_id, days_back), self.deadline_repo
            ),
            self.deadlines,
        )

    async def analyze_all(
        self, conversation_id: str, user_id: str, days_back: int = 7
    ) -> ConversationInsights:
        """Run all five extractions for one conversation concurrently.

        Auto-sync of the extracted events and deadlines happens through the
        extraction handlers; entities that failed to sync are reported in the
        ``sync`` slot.
        """
        self.clear_error(user_id, "analysis")
        self.clear_error(user_id, "sync")

        async def rsvps_then_reload() -> list[RSVPTracking]:
            await self.extraction.track_rsvps(conversation_id, user_id, days_back)
            return self.rsvp_repo.list_for_conversation(conversation_id)

        kinds: dict[str, Awaitable[Any]] = {
            "events": _reread(
                self.extraction.extract_calendar_events(conversation_id, user_id, days_back),
                self.event_repo,
            ),
            "decisions": self.extraction.track_decisions(conversation_id, user_id, days_back),
            "priority": self.extraction.detect_priority(conversation_id, user_id, days_back),
            "rsvps": rsvps_then_reload(),
            "deadlines": _reread(
                self.extraction.extract_deadlines(conversation_id, user_id, days_back),
                self.deadline_repo,
            ),
        }
        outcomes = dict(zip(kinds, await asyncio.gather(*(_capture(c) for c in kinds.values()))))

        caches = {
            "events": self.events,
            "decisions": self.decisions,
            "priority": self.priority_messages,
            "rsvps": self.rsvps,
            "deadlines": self.deadlines,
        }
        errors: dict[str, Exception] = {}
        for kind, (value, exc) in outcomes.items():
            if exc is not None:
                errors[kind] = exc
            else:
                caches[kind][conversation_id] = value
        if errors:
            self._fail(user_id, "analysis", _describe(errors))

        failed = [
            item
            for kind in ("events", "deadlines")
            if kind not in errors
            for item in outcomes[kind][0]
            if item.sync_status == SyncStatus.FAILED
        ]
        if failed:
            self._fail(
                user_id, "sync", "; ".join(item.sync_error or "sync failed" for item in failed)
            )
        return self.insights_for(conversation_id)

    # ------------------------------------------------------------------
    # Cached reads
    # ------------------------------------------------------------------

    async def load_all_insights(
        self, conversation_ids: list[str], user_id: str
    ) -> dict[str, ConversationInsights]:
        """Refresh every cache from storage; each entry is replaced wholesale."""
        allowed = [
            cid for cid in conversation_ids if self.participant_repo.is_participant(cid, user_id)
        ]
        if len(allowed) < len(conversation_ids):
            raise AccessDeniedError()

        async def read(repo_call: Callable[[str], list], cache: dict) -> None:
            for cid in allowed:
                cache[cid] = repo_call(cid)

        loaders = [
            read(self.event_repo.list_for_conversation, self.events),
            read(self.decision_repo.list_for_conversation, self.decisions),
            read(self.priority_repo.list_for_conversation, self.priority_messages),
            read(self.rsvp_repo.list_for_conversation, self.rsvps),
            read(self.deadline_repo.list_for_conversation, self.deadlines),
            read(self.conflict_repo.list_for_conversation, self.conflicts),
        ]
        outcomes = await asyncio.gather(*(_capture(loader) for loader in loaders))
        failures = [exc for _, exc in outcomes if exc is not None]
        for exc in failures:
            logger.warning("Failed to load cached insights: %s", exc)
        return {cid: self.insights_for(cid) for cid in allowed}

    def insights_for(self, conversation_id: str) -> ConversationInsights:
        return ConversationInsights(
            conversation_id=conversation_id,
            events=self.events.get(conversation_id, []),
            decisions=self.decisions.get(conversation_id, []),
            priority_messages=self.priority_messages.get(conversation_id, []),
            rsvps=self.rsvps.get(conversation_id, []),
            deadlines=self.deadlines.get(conversation_id, []),
            conflicts=self.conflicts.get(conversation_id, []),
        )

    # ------------------------------------------------------------------
    # Conflicts and sync
    # ------------------------------------------------------------------

    async def detect_conflicts(
        self, conversation_ids: list[str], user_id: str
    ) -> dict[str, list[SchedulingConflict]]:
        self.clear_error(user_id, "conflicts")
        results: dict[str, list[SchedulingConflict]] = {}
        for cid in conversation_ids:
            try:
                report = self.conflict_detector.detect_conflicts(cid)
            except Exception as exc:
                self._fail(user_id, "conflicts", f"{cid}: {exc}")
                continue
            self.conflicts[cid] = report.conflicts
            results[cid] = report.conflicts
        return results

    async def sync_all_pending(self, user_id: str) -> SyncBatchResult:
        """Push all unsynced events and deadlines, then re-run conflict detection."""
        self.clear_error(user_id, "sync")
        (events, events_exc), (deadlines, deadlines_exc) = await asyncio.gather(
            _capture(self.sync_engine.sync_all_pending_events(user_id)),
            _capture(self.sync_engine.sync_all_pending_deadlines(user_id)),
        )
        combined = SyncBatchResult()
        for batch, exc in ((events, events_exc), (deadlines, deadlines_exc)):
            if exc is not None:
                self._fail(user_id, "sync", str(exc))
                continue
            combined.results.extend(batch.results)
            combined.cancelled = combined.cancelled or batch.cancelled
        if combined.failed:
            self._fail(
                user_id, "sync", "; ".join(r.error or r.entity_id for r in combined.failed)
            )
        if events_exc is None and deadlines_exc is None:
            await self.detect_conflicts(self.participant_repo.conversations_for(user_id), user_id)
        return combined

    async def process_retry_queue(self, user_id: str) -> SyncBatchResult:
        self.clear_error(user_id, "sync")
        batch = await self.sync_engine.process_sync_queue(user_id)
        if batch.failed:
            self._fail(user_id, "sync", "; ".join(r.error or r.entity_id for r in batch.failed))
        return batch

    async def detect_external_changes(self, user_id: str) -> SyncBatchResult:
        self.clear_error(user_id, "sync")
        batch = await self.sync_engine.detect_and_sync_external_changes(user_id)
        if batch.failed:
            self._fail(user_id, "sync", "; ".join(r.error or r.entity_id for r in batch.failed))
        return batch

    # ------------------------------------------------------------------
    # Deadline status
    # ------------------------------------------------------------------

    async def mark_deadline_complete(self, deadline_id: str, user_id: str) -> Deadline:
        return await self._set_deadline_status(deadline_id, user_id, DeadlineStatus.COMPLETED)

    async def mark_deadline_pending(self, deadline_id: str, user_id: str) -> Deadline:
        return await self._set_deadline_status(deadline_id, user_id, DeadlineStatus.PENDING)

    async def _set_deadline_status(
        self, deadline_id: str, user_id: str, status: DeadlineStatus
    ) -> Deadline:
        deadline = self.deadline_repo.get(deadline_id)
        if deadline is None:
            raise NotFoundError(f"Deadline {deadline_id} not found")
        if deadline.user_id != user_id and not self.participant_repo.is_participant(
            deadline.conversation_id, user_id
        ):
            raise AccessDeniedError()

        now = datetime.now(timezone.utc)
        completed = status == DeadlineStatus.COMPLETED
        self.deadline_repo.update(
            deadline.model_copy(
                update={
                    "status": status,
                    "completed_at": now if completed else None,
                    "updated_at": now,
                }
            )
        )
        self.deadlines[deadline.conversation_id] = self.deadline_repo.list_for_conversation(
            deadline.conversation_id
        )

        if deadline.external_ids:
            self.clear_error(user_id, "sync")
            try:
                # Reminders live in the owner's apps.
                await self.sync_engine.sync_deadline_to_reminders(deadline_id, deadline.user_id)
            except SyncError as exc:
                self._fail(user_id, "sync", exc.message)
        return self.deadline_repo.get(deadline_id)
