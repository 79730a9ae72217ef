"""In-memory repositories for messages, insights and sync state."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from insights.domain.models import (
    CalendarEvent,
    CalendarSyncSettings,
    Deadline,
    Decision,
    Message,
    PriorityMessage,
    QueueStatus,
    RSVPStatus,
    RSVPTracking,
    SchedulingConflict,
    SyncEntityType,
    SyncQueueEntry,
    UsageRecord,
)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class MessageRepository:
    """Dict-backed store for Message instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Message] = {}

    def add(self, message: Message) -> None:
        self._store[message.id] = message

    def get(self, message_id: str) -> Message | None:
        return self._store.get(message_id)

    def list_recent(
        self, conversation_id: str, since: datetime, limit: int
    ) -> list[Message]:
        """Return the newest *limit* messages since *since*, oldest first."""
        matching = sorted(
            (
                m
                for m in self._store.values()
                if m.conversation_id == conversation_id and m.created_at >= since
            ),
            key=lambda m: m.created_at,
            reverse=True,
        )
        return list(reversed(matching[:limit]))

    def list_context(
        self, conversation_id: str, exclude_id: str, limit: int
    ) -> list[Message]:
        """Return up to *limit* messages preceding the excluded one, oldest first."""
        excluded = self._store.get(exclude_id)
        matching = sorted(
            (
                m
                for m in self._store.values()
                if m.conversation_id == conversation_id
                and m.id != exclude_id
                and (excluded is None or m.created_at <= excluded.created_at)
            ),
            key=lambda m: m.created_at,
            reverse=True,
        )
        return list(reversed(matching[:limit]))

    def count_processed_since(self, sender_id: str, since: datetime) -> int:
        return sum(
            1
            for m in self._store.values()
            if m.sender_id == sender_id
            and m.ai_last_processed is not None
            and m.ai_last_processed >= since
        )

    def mark_processed(self, message_id: str, processed_at: datetime) -> None:
        message = self._store.get(message_id)
        if message is not None:
            message.ai_last_processed = processed_at


class ParticipantRepository:
    """Conversation membership, used for access checks."""

    def __init__(self) -> None:
        self._members: dict[str, set[str]] = {}

    def add(self, conversation_id: str, user_id: str) -> None:
        self._members.setdefault(conversation_id, set()).add(user_id)

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        return user_id in self._members.get(conversation_id, set())

    def conversations_for(self, user_id: str) -> list[str]:
        return sorted(cid for cid, users in self._members.items() if user_id in users)


class CalendarEventRepository:
    """Dict-backed store for CalendarEvent instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, CalendarEvent] = {}

    def add(self, event: CalendarEvent) -> None:
        self._store[event.id] = event

    def get(self, event_id: str) -> CalendarEvent | None:
        return self._store.get(event_id)

    def update(self, event: CalendarEvent) -> None:
        if event.id not in self._store:
            raise KeyError(event.id)
        self._store[event.id] = event

    def delete(self, event_id: str) -> None:
        self._store.pop(event_id, None)

    def list_for_conversation(self, conversation_id: str) -> list[CalendarEvent]:
        return sorted(
            [e for e in self._store.values() if e.conversation_id == conversation_id],
            key=lambda e: e.start,
        )

    def list_pending_sync(self, conversation_ids: list[str]) -> list[CalendarEvent]:
        return [
            e
            for e in self._store.values()
            if e.conversation_id in conversation_ids and e.is_pending_sync
        ]

    def list_synced(self, conversation_ids: list[str]) -> list[CalendarEvent]:
        return [
            e
            for e in self._store.values()
            if e.conversation_id in conversation_ids and not e.is_pending_sync
        ]


class RSVPRepository:
    """Dict-backed store for RSVPTracking instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, RSVPTracking] = {}

    def add(self, rsvp: RSVPTracking) -> None:
        self._store[rsvp.id] = rsvp

    def get(self, rsvp_id: str) -> RSVPTracking | None:
        return self._store.get(rsvp_id)

    def update(self, rsvp: RSVPTracking) -> None:
        if rsvp.id not in self._store:
            raise KeyError(rsvp.id)
        self._store[rsvp.id] = rsvp

    def find_by_origin(
        self, message_id: str, conversation_id: str
    ) -> RSVPTracking | None:
        for rsvp in self._store.values():
            if rsvp.message_id == message_id and rsvp.conversation_id == conversation_id:
                return rsvp
        return None

    def list_for_conversation(self, conversation_id: str) -> list[RSVPTracking]:
        """All RSVPs of the conversation, newest first."""
        return sorted(
            [r for r in self._store.values() if r.conversation_id == conversation_id],
            key=lambda r: r.created_at,
            reverse=True,
        )

    def list_pending(self, conversation_id: str) -> list[RSVPTracking]:
        """Pending RSVPs ordered by response deadline, undated ones last."""
        return sorted(
            [
                r
                for r in self._store.values()
                if r.conversation_id == conversation_id
                and r.status == RSVPStatus.PENDING
            ],
            key=lambda r: r.deadline or _FAR_FUTURE,
        )


class DeadlineRepository:
    """Dict-backed store for Deadline instances, keyed by id."""

    def __init__(self) -> None:
        self._store: dict[str, Deadline] = {}

    def add(self, deadline: Deadline) -> None:
        self._store[deadline.id] = deadline

    def get(self, deadline_id: str) -> Deadline | None:
        return self._store.get(deadline_id)

    def update(self, deadline: Deadline) -> None:
        if deadline.id not in self._store:
            raise KeyError(deadline.id)
        self._store[deadline.id] = deadline

    def find_by_origin(self, message_id: str, conversation_id: str) -> Deadline | None:
        for deadline in self._store.values():
            if (
                deadline.message_id == message_id
                and deadline.conversation_id == conversation_id
            ):
                return deadline
        return None

    def list_for_conversation(self, conversation_id: str) -> list[Deadline]:
        return sorted(
            [d for d in self._store.values() if d.conversation_id == conversation_id],
            key=lambda d: d.due,
        )

    def list_pending_sync(self, user_id: str) -> list[Deadline]:
        return [
            d for d in self._store.values() if d.user_id == user_id and d.is_pending_sync
        ]

    def list_synced(self, user_id: str) -> list[Deadline]:
        return [
            d
            for d in self._store.values()
            if d.user_id == user_id and not d.is_pending_sync
        ]


class DecisionRepository:
    """List-backed store for Decision instances."""

    def __init__(self) -> None:
        self._items: list[Decision] = []

    def add(self, decision: Decision) -> None:
        self._items.append(decision)

    def list_for_conversation(self, conversation_id: str) -> list[Decision]:
        return sorted(
            [d for d in self._items if d.conversation_id == conversation_id],
            key=lambda d: d.created_at,
            reverse=True,
        )


class PriorityMessageRepository:
    """Priority flags, one per message id."""

    def __init__(self) -> None:
        self._store: dict[str, PriorityMessage] = {}

    def upsert(self, flag: PriorityMessage) -> None:
        self._store[flag.message_id] = flag

    def get(self, message_id: str) -> PriorityMessage | None:
        return self._store.get(message_id)

    def list_for_conversation(self, conversation_id: str) -> list[PriorityMessage]:
        return sorted(
            [
                p
                for p in self._store.values()
                if p.conversation_id == conversation_id and not p.dismissed
            ],
            key=lambda p: p.created_at,
            reverse=True,
        )


class ConflictRepository:
    """Derived conflict sets, replaced per conversation on every detection run."""

    def __init__(self) -> None:
        self._by_conversation: dict[str, dict[str, SchedulingConflict]] = {}

    def replace_for_conversation(
        self, conversation_id: str, conflicts: list[SchedulingConflict]
    ) -> None:
        self._by_conversation[conversation_id] = {c.id: c for c in conflicts}

    def list_for_conversation(self, conversation_id: str) -> list[SchedulingConflict]:
        return list(self._by_conversation.get(conversation_id, {}).values())

    def get(self, conflict_id: str) -> SchedulingConflict | None:
        for conflicts in self._by_conversation.values():
            if conflict_id in conflicts:
                return conflicts[conflict_id]
        return None

    def update(self, conflict: SchedulingConflict) -> None:
        self._by_conversation.setdefault(conflict.conversation_id, {})[
            conflict.id
        ] = conflict


class SyncQueueRepository:
    """Retry queue for failed outbound syncs, one entry per entity."""

    def __init__(self) -> None:
        self._store: dict[tuple[SyncEntityType, str], SyncQueueEntry] = {}

    def get_for_entity(
        self, entity_type: SyncEntityType, entity_id: str
    ) -> SyncQueueEntry | None:
        return self._store.get((entity_type, entity_id))

    def upsert(self, entry: SyncQueueEntry) -> None:
        self._store[(entry.entity_type, entry.entity_id)] = entry

    def remove(self, entity_type: SyncEntityType, entity_id: str) -> None:
        self._store.pop((entity_type, entity_id), None)

    def list_due(self, user_id: str, now: datetime) -> list[SyncQueueEntry]:
        return sorted(
            [
                e
                for e in self._store.values()
                if e.user_id == user_id
                and e.status == QueueStatus.QUEUED
                and e.next_attempt_at <= now
            ],
            key=lambda e: e.next_attempt_at,
        )

    def list_for_user(self, user_id: str) -> list[SyncQueueEntry]:
        return [e for e in self._store.values() if e.user_id == user_id]


class SyncSettingsRepository:
    """Per-user calendar sync settings."""

    def __init__(self) -> None:
        self._store: dict[str, CalendarSyncSettings] = {}

    def get(self, user_id: str) -> CalendarSyncSettings | None:
        return self._store.get(user_id)

    def save(self, settings: CalendarSyncSettings) -> None:
        self._store[settings.user_id] = settings


class UsageRepository:
    """Append-only usage log backing the per-user rate limits."""

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []

    def add(self, record: UsageRecord) -> None:
        self._records.append(record)

    def count_since(self, user_id: str, operation: str, since: datetime) -> int:
        return sum(
            1
            for r in self._records
            if r.user_id == user_id and r.operation == operation and r.created_at >= since
        )


# ---------------------------------------------------------------------------
# Seed data – a small conversation useful for local runs against the mock model
# ---------------------------------------------------------------------------


def seed_conversation(
    messages: MessageRepository,
    participants: ParticipantRepository,
    conversation_id: str = "demo-conversation",
    user_ids: tuple[str, ...] = ("demo-parent", "demo-coach"),
) -> list[Message]:
    now = datetime.now(timezone.utc)
    for user_id in user_ids:
        participants.add(conversation_id, user_id)

    texts = [
        (user_ids[1], "Soccer practice moves to Thursday 4pm at Sunset Field."),
        (user_ids[1], "Can everyone RSVP for the team party on Saturday by Wednesday?"),
        (user_ids[0], "Got it. The permission slip is due Friday, I'll sign it tonight."),
        (user_ids[1], "We decided to carpool from the school parking lot."),
    ]
    seeded: list[Message] = []
    for offset, (sender, text) in enumerate(texts):
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender,
            content=text,
            created_at=now - timedelta(hours=len(texts) - offset),
        )
        messages.add(message)
        seeded.append(message)
    return seeded
