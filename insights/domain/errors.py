"""Error taxonomy surfaced by the insights services and mapped to HTTP responses."""

from __future__ import annotations


class InsightsError(Exception):
    """Base class for errors the service reports to its caller."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class InvalidRequestError(InsightsError):
    status_code = 400
    code = "invalid_request"


class NotFoundError(InsightsError):
    status_code = 404
    code = "not_found"


class AccessDeniedError(InsightsError):
    status_code = 403
    code = "access_denied"

    def __init__(self, message: str = "Access denied to conversation") -> None:
        super().__init__(message)


class RateLimitedError(InsightsError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, count: int, limit: int) -> None:
        super().__init__("Rate limit exceeded")
        self.count = count
        self.limit = limit

    def to_dict(self) -> dict:
        return {**super().to_dict(), "count": self.count, "limit": self.limit}


class UpstreamModelError(InsightsError):
    status_code = 502
    code = "upstream_model_error"


class DataFormatError(UpstreamModelError):
    """The model answered, but its output did not match the expected schema."""

    code = "data_format_error"

    def __init__(self, field_path: str, detail: str) -> None:
        super().__init__(f"Data format error at '{field_path}': {detail}")
        self.field_path = field_path

    def to_dict(self) -> dict:
        return {**super().to_dict(), "field": self.field_path}


class PersistenceError(InsightsError):
    code = "persistence_error"


class SyncError(InsightsError):
    status_code = 502
    code = "sync_error"


class ExternalTimeoutError(InsightsError):
    status_code = 504
    code = "timeout"
