"""FastAPI application: entry point for the conversation insights service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from insights.config import Settings, configure_logging
from insights.context import InsightsContext, build_context
from insights.dependencies import (
    get_assistant,
    get_caller_id,
    get_conflict_detector,
    get_context,
    get_coordinator,
    get_extraction,
    get_rsvp_service,
    get_sync_engine,
    require_caller_id,
)
from insights.domain.errors import AccessDeniedError, InsightsError, InvalidRequestError
from insights.domain.models import (
    AssistantRequest,
    AssistantResponse,
    CalendarEvent,
    CalendarSyncSettings,
    ConflictReport,
    ConversationInsights,
    ConversationRequest,
    Deadline,
    Decision,
    ParseMessageRequest,
    ParseMessageResult,
    PriorityMessage,
    RSVPResponseRequest,
    RSVPResponseResult,
    RSVPSummary,
    RSVPTracking,
    SchedulingConflict,
    SyncBatchResult,
    SyncEntityRequest,
    SyncItemResult,
    TrackRSVPsResult,
    UserConversationRequest,
)
from insights.services.assistant import ProactiveAssistant
from insights.services.conflicts import ConflictDetector
from insights.services.coordinator import InsightsCoordinator
from insights.services.extraction import ExtractionService
from insights.services.rsvp import RSVPService
from insights.services.sync import SyncEngine

logger = logging.getLogger(__name__)


def _resolve_caller(header_user: str | None, body_user: str | None = None) -> str:
    """The X-User-Id header wins; a body userId must agree with it."""
    caller = header_user or body_user
    if not caller:
        raise InvalidRequestError("userId is required")
    if header_user and body_user and header_user != body_user:
        raise AccessDeniedError("userId does not match the caller")
    return caller


def _require_participant(ctx: InsightsContext, conversation_id: str, user_id: str) -> None:
    if not ctx.participants.is_participant(conversation_id, user_id):
        raise AccessDeniedError()


def create_app(
    settings: Settings | None = None, context: InsightsContext | None = None
) -> FastAPI:
    settings = settings or (context.settings if context else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        logger.info("Conversation insights service starting")
        yield

    app = FastAPI(title="Conversation Insights Service", lifespan=lifespan)
    app.state.context = context or build_context(settings)

    @app.exception_handler(InsightsError)
    async def _insights_error(request: Request, exc: InsightsError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ── Extraction ────────────────────────────────────────────────────

    @app.post("/extract-calendar-events", response_model=list[CalendarEvent])
    async def extract_calendar_events(
        body: ConversationRequest,
        caller: str = Depends(require_caller_id),
        extraction: ExtractionService = Depends(get_extraction),
    ) -> list[CalendarEvent]:
        """Extract candidate calendar events from recent messages."""
        return await extraction.extract_calendar_events(
            body.conversation_id, caller, body.days_back
        )

    @app.post("/track-decisions", response_model=list[Decision])
    async def track_decisions(
        body: ConversationRequest,
        caller: str = Depends(require_caller_id),
        extraction: ExtractionService = Depends(get_extraction),
    ) -> list[Decision]:
        return await extraction.track_decisions(body.conversation_id, caller, body.days_back)

    @app.post("/detect-priority", response_model=list[PriorityMessage])
    async def detect_priority(
        body: ConversationRequest,
        caller: str = Depends(require_caller_id),
        extraction: ExtractionService = Depends(get_extraction),
    ) -> list[PriorityMessage]:
        return await extraction.detect_priority(body.conversation_id, caller, body.days_back)

    @app.post("/track-rsvps", response_model=TrackRSVPsResult)
    async def track_rsvps(
        body: UserConversationRequest,
        header_user: str | None = Depends(get_caller_id),
        extraction: ExtractionService = Depends(get_extraction),
    ) -> TrackRSVPsResult:
        """Extract RSVP requests, store the new ones and summarise what is pending."""
        caller = _resolve_caller(header_user, body.user_id)
        return await extraction.track_rsvps(body.conversation_id, caller, body.days_back)

    @app.post("/extract-deadlines", response_model=list[Deadline])
    async def extract_deadlines(
        body: UserConversationRequest,
        header_user: str | None = Depends(get_caller_id),
        extraction: ExtractionService = Depends(get_extraction),
    ) -> list[Deadline]:
        caller = _resolve_caller(header_user, body.user_id)
        return await extraction.extract_deadlines(body.conversation_id, caller, body.days_back)

    @app.post("/parse-message-ai", response_model=ParseMessageResult)
    async def parse_message_ai(
        body: ParseMessageRequest,
        extraction: ExtractionService = Depends(get_extraction),
    ) -> ParseMessageResult:
        """Single-pass extraction of every insight kind from one new message."""
        return await extraction.parse_message(body.message_id)

    @app.post("/conversations/{conversation_id}/analyze", response_model=ConversationInsights)
    async def analyze_conversation(
        conversation_id: str,
        caller: str = Depends(require_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> ConversationInsights:
        return await coordinator.analyze_all(conversation_id, caller)

    # ── Assistant ─────────────────────────────────────────────────────

    @app.post("/proactive-assistant", response_model=AssistantResponse)
    async def proactive_assistant(
        body: AssistantRequest,
        header_user: str | None = Depends(get_caller_id),
        assistant: ProactiveAssistant = Depends(get_assistant),
    ) -> AssistantResponse:
        caller = _resolve_caller(header_user, body.user_id)
        return await assistant.ask(body.conversation_id, caller, body.query)

    # ── RSVPs ─────────────────────────────────────────────────────────

    @app.post("/rsvps/{rsvp_id}/respond", response_model=RSVPResponseResult)
    async def respond_to_rsvp(
        rsvp_id: str,
        body: RSVPResponseRequest,
        header_user: str | None = Depends(get_caller_id),
        rsvp_service: RSVPService = Depends(get_rsvp_service),
    ) -> RSVPResponseResult:
        caller = _resolve_caller(header_user, body.user_id)
        return await rsvp_service.respond(rsvp_id, body.status, caller)

    @app.get("/conversations/{conversation_id}/rsvps", response_model=list[RSVPTracking])
    async def list_rsvps(
        conversation_id: str,
        caller: str = Depends(require_caller_id),
        ctx: InsightsContext = Depends(get_context),
    ) -> list[RSVPTracking]:
        _require_participant(ctx, conversation_id, caller)
        return ctx.rsvp_service.list_for_conversation(conversation_id)

    @app.get("/conversations/{conversation_id}/rsvps/pending", response_model=RSVPSummary)
    async def pending_rsvps(
        conversation_id: str,
        caller: str = Depends(require_caller_id),
        ctx: InsightsContext = Depends(get_context),
    ) -> RSVPSummary:
        _require_participant(ctx, conversation_id, caller)
        return ctx.rsvp_service.pending_summary(conversation_id)

    # ── Conflicts ─────────────────────────────────────────────────────

    @app.post(
        "/conversations/{conversation_id}/conflicts/detect", response_model=ConflictReport
    )
    async def detect_conflicts(
        conversation_id: str,
        caller: str = Depends(require_caller_id),
        ctx: InsightsContext = Depends(get_context),
    ) -> ConflictReport:
        """Re-derive the conversation's conflicts, replacing the previous set."""
        _require_participant(ctx, conversation_id, caller)
        report = ctx.conflict_detector.detect_conflicts(conversation_id)
        ctx.coordinator.conflicts[conversation_id] = report.conflicts
        return report

    @app.get("/conversations/{conversation_id}/conflicts", response_model=ConflictReport)
    async def list_conflicts(
        conversation_id: str,
        caller: str = Depends(require_caller_id),
        ctx: InsightsContext = Depends(get_context),
    ) -> ConflictReport:
        _require_participant(ctx, conversation_id, caller)
        return ctx.conflict_detector.list_for_conversation(conversation_id)

    @app.post("/conflicts/{conflict_id}/resolve", response_model=SchedulingConflict)
    async def resolve_conflict(
        conflict_id: str,
        caller: str = Depends(require_caller_id),
        ctx: InsightsContext = Depends(get_context),
        detector: ConflictDetector = Depends(get_conflict_detector),
    ) -> SchedulingConflict:
        conflict = ctx.conflicts.get(conflict_id)
        if conflict is not None:
            _require_participant(ctx, conflict.conversation_id, caller)
        return detector.resolve(conflict_id)

    # ── Sync ──────────────────────────────────────────────────────────

    @app.post("/sync/events/{event_id}", response_model=SyncItemResult)
    async def sync_event(
        event_id: str,
        body: SyncEntityRequest,
        header_user: str | None = Depends(get_caller_id),
        sync_engine: SyncEngine = Depends(get_sync_engine),
    ) -> SyncItemResult:
        caller = _resolve_caller(header_user, body.user_id)
        return await sync_engine.sync_calendar_event(event_id, caller)

    @app.post("/sync/deadlines/{deadline_id}", response_model=SyncItemResult)
    async def sync_deadline(
        deadline_id: str,
        body: SyncEntityRequest,
        header_user: str | None = Depends(get_caller_id),
        sync_engine: SyncEngine = Depends(get_sync_engine),
    ) -> SyncItemResult:
        caller = _resolve_caller(header_user, body.user_id)
        return await sync_engine.sync_deadline_to_reminders(deadline_id, caller)

    @app.post("/sync/pending", response_model=SyncBatchResult)
    async def sync_pending(
        body: SyncEntityRequest,
        header_user: str | None = Depends(get_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> SyncBatchResult:
        caller = _resolve_caller(header_user, body.user_id)
        return await coordinator.sync_all_pending(caller)

    @app.post("/sync/queue/process", response_model=SyncBatchResult)
    async def process_sync_queue(
        body: SyncEntityRequest,
        header_user: str | None = Depends(get_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> SyncBatchResult:
        caller = _resolve_caller(header_user, body.user_id)
        return await coordinator.process_retry_queue(caller)

    @app.post("/sync/external-changes", response_model=SyncBatchResult)
    async def sync_external_changes(
        body: SyncEntityRequest,
        header_user: str | None = Depends(get_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> SyncBatchResult:
        caller = _resolve_caller(header_user, body.user_id)
        return await coordinator.detect_external_changes(caller)

    @app.get("/sync/settings", response_model=CalendarSyncSettings)
    async def get_sync_settings(
        caller: str = Depends(require_caller_id),
        sync_engine: SyncEngine = Depends(get_sync_engine),
    ) -> CalendarSyncSettings:
        return sync_engine.get_settings(caller)

    @app.put("/sync/settings", response_model=CalendarSyncSettings)
    async def update_sync_settings(
        body: CalendarSyncSettings,
        header_user: str | None = Depends(get_caller_id),
        sync_engine: SyncEngine = Depends(get_sync_engine),
    ) -> CalendarSyncSettings:
        _resolve_caller(header_user, body.user_id)
        return sync_engine.update_settings(body)

    # ── Insights, deadlines and error slots ───────────────────────────

    @app.get("/conversations/{conversation_id}/insights", response_model=ConversationInsights)
    async def conversation_insights(
        conversation_id: str,
        caller: str = Depends(require_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> ConversationInsights:
        loaded = await coordinator.load_all_insights([conversation_id], caller)
        return loaded[conversation_id]

    @app.post("/deadlines/{deadline_id}/complete", response_model=Deadline)
    async def complete_deadline(
        deadline_id: str,
        caller: str = Depends(require_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> Deadline:
        return await coordinator.mark_deadline_complete(deadline_id, caller)

    @app.post("/deadlines/{deadline_id}/reopen", response_model=Deadline)
    async def reopen_deadline(
        deadline_id: str,
        caller: str = Depends(require_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> Deadline:
        return await coordinator.mark_deadline_pending(deadline_id, caller)

    @app.get("/errors")
    async def list_errors(
        caller: str = Depends(require_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> dict:
        return coordinator.errors(caller)

    @app.delete("/errors/{slot}")
    async def clear_error(
        slot: str,
        caller: str = Depends(require_caller_id),
        coordinator: InsightsCoordinator = Depends(get_coordinator),
    ) -> dict:
        coordinator.clear_error(caller, slot)
        return coordinator.errors(caller)

    return app


app = create_app()
