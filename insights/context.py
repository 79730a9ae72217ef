"""Explicit service container: settings, repositories, bus and services."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from insights.config import Settings
from insights.domain.bus import EventBus
from insights.domain.handlers import HandlerRegistry
from insights.repos.memory import (
    CalendarEventRepository,
    ConflictRepository,
    DeadlineRepository,
    DecisionRepository,
    MessageRepository,
    ParticipantRepository,
    PriorityMessageRepository,
    RSVPRepository,
    SyncQueueRepository,
    SyncSettingsRepository,
    UsageRepository,
    seed_conversation,
)
from insights.services.assistant import ProactiveAssistant
from insights.services.calendar import CalendarIntegration, build_integrations
from insights.services.conflicts import ConflictDetector
from insights.services.coordinator import InsightsCoordinator
from insights.services.extraction import ExtractionService
from insights.services.llm import LanguageModel, build_model
from insights.services.persistence import InsightPersistence
from insights.services.ratelimit import RateLimiter
from insights.services.rsvp import RSVPService
from insights.services.sync import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class InsightsContext:
    settings: Settings
    bus: EventBus
    model: LanguageModel
    integrations: dict[str, CalendarIntegration]

    messages: MessageRepository
    participants: ParticipantRepository
    events: CalendarEventRepository
    rsvps: RSVPRepository
    deadlines: DeadlineRepository
    decisions: DecisionRepository
    priority: PriorityMessageRepository
    conflicts: ConflictRepository
    sync_queue: SyncQueueRepository
    sync_settings: SyncSettingsRepository
    usage: UsageRepository

    extraction: ExtractionService
    persistence: InsightPersistence
    rsvp_service: RSVPService
    conflict_detector: ConflictDetector
    sync_engine: SyncEngine
    assistant: ProactiveAssistant
    coordinator: InsightsCoordinator
    handlers: HandlerRegistry


def build_context(
    settings: Settings,
    model: LanguageModel | None = None,
    integrations: dict[str, CalendarIntegration] | None = None,
) -> InsightsContext:
    """Create every repository and service for one application instance."""
    bus = EventBus()
    model = model if model is not None else build_model(settings)
    integrations = integrations if integrations is not None else build_integrations(settings)

    messages = MessageRepository()
    participants = ParticipantRepository()
    events = CalendarEventRepository()
    rsvps = RSVPRepository()
    deadlines = DeadlineRepository()
    decisions = DecisionRepository()
    priority = PriorityMessageRepository()
    conflicts = ConflictRepository()
    sync_queue = SyncQueueRepository()
    sync_settings = SyncSettingsRepository()
    usage = UsageRepository()

    persistence = InsightPersistence(events, rsvps, deadlines, decisions, priority, messages)
    limiter = RateLimiter(
        usage,
        messages,
        request_limit=settings.request_limit,
        window=timedelta(minutes=settings.request_window_minutes),
        daily_message_limit=settings.daily_message_limit,
    )
    extraction = ExtractionService(
        settings, model, messages, participants, rsvps, persistence, limiter, bus
    )
    sync_engine = SyncEngine(
        settings, events, deadlines, participants, sync_queue, sync_settings, integrations
    )
    conflict_detector = ConflictDetector(
        conflicts,
        events,
        deadlines,
        horizon_days=settings.conflict_horizon_days,
        default_event_minutes=settings.default_event_minutes,
    )
    rsvp_service = RSVPService(rsvps, events, participants, bus)
    assistant = ProactiveAssistant(
        model,
        events,
        rsvps,
        deadlines,
        participants,
        conflict_detector,
        horizon_days=settings.conflict_horizon_days,
        timeout=settings.model_timeout_seconds,
    )
    coordinator = InsightsCoordinator(
        extraction,
        conflict_detector,
        sync_engine,
        participants,
        events,
        decisions,
        priority,
        rsvps,
        deadlines,
        conflicts,
    )
    handlers = HandlerRegistry(bus, rsvps, events, sync_engine)
    if settings.seed_demo_data:
        seeded = seed_conversation(messages, participants)
        logger.info("Seeded %d demo messages", len(seeded))
    logger.info("Insights context ready (model backend: %s)", settings.model_backend)

    return InsightsContext(
        settings=settings,
        bus=bus,
        model=model,
        integrations=integrations,
        messages=messages,
        participants=participants,
        events=events,
        rsvps=rsvps,
        deadlines=deadlines,
        decisions=decisions,
        priority=priority,
        conflicts=conflicts,
        sync_queue=sync_queue,
        sync_settings=sync_settings,
        usage=usage,
        extraction=extraction,
        persistence=persistence,
        rsvp_service=rsvp_service,
        conflict_detector=conflict_detector,
        sync_engine=sync_engine,
        assistant=assistant,
        coordinator=coordinator,
        handlers=handlers,
    )
