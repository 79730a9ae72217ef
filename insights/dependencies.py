"""FastAPI dependencies: services from ``app.state`` and the caller from ``X-User-Id``."""

from fastapi import Header, Request

from insights.context import InsightsContext
from insights.domain.errors import InvalidRequestError
from insights.services.assistant import ProactiveAssistant
from insights.services.conflicts import ConflictDetector
from insights.services.coordinator import InsightsCoordinator
from insights.services.extraction import ExtractionService
from insights.services.rsvp import RSVPService
from insights.services.sync import SyncEngine


def get_context(request: Request) -> InsightsContext:
    return request.app.state.context


def get_extraction(request: Request) -> ExtractionService:
    return request.app.state.context.extraction


def get_rsvp_service(request: Request) -> RSVPService:
    return request.app.state.context.rsvp_service


def get_conflict_detector(request: Request) -> ConflictDetector:
    return request.app.state.context.conflict_detector


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.context.sync_engine


def get_assistant(request: Request) -> ProactiveAssistant:
    return request.app.state.context.assistant


def get_coordinator(request: Request) -> InsightsCoordinator:
    return request.app.state.context.coordinator


def get_caller_id(x_user_id: str | None = Header(default=None)) -> str | None:
    return x_user_id or None


def require_caller_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id:
        raise InvalidRequestError("X-User-Id header is required")
    return x_user_id
