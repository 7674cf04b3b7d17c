"""
Engine Exceptions
=================

Custom exception types for the attribution and reconciliation engine.

WHY THIS FILE EXISTS
--------------------
The engine has distinct failure modes that callers handle differently:
- Malformed input (no side effects, 4xx)
- Authorization failures (401/403)
- Invalid state transitions (e.g. cancelling a completed backfill)
- Upstream dependency failures (isolated to one chunk / organization)
- Attribution write failures (one unit skipped, reported)

RELATED FILES
-------------
- donorlink/main.py: Maps EngineError to `{"success": false, "error": ...}`
- donorlink/routers/*.py: Map subclasses to HTTP status codes
- donorlink/services/processor_export_client.py: Raises UpstreamError subclasses
- donorlink/services/rate_limiter.py: Raises OrganizationRateLimitError
"""

from typing import Optional


class EngineError(Exception):
    """
    Base exception for all engine errors.

    WHAT:
        Parent class for every error raised by the engine's services.

    WHY:
        Allows catching all engine failures with a single except clause
        while still being able to handle specific error types.
    """

    status_code = 500

    def __init__(self, message: str, organization_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.organization_id = organization_id

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message}


class ValidationFailure(EngineError):
    """Request passed schema validation but is semantically invalid."""

    status_code = 400


class AuthorizationFailure(EngineError):
    """Caller is authenticated but may not act on this organization or job."""

    status_code = 403


class NotFoundError(EngineError):
    status_code = 404


class InvalidStateTransition(EngineError):
    """
    Requested state change is not allowed.

    WHAT:
        Raised when e.g. cancelling a job that already completed.

    ATTRIBUTES:
        current_status: The status the entity is in
    """

    status_code = 400

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class AttributionWriteError(EngineError):
    """One attribution record could not be written; nothing was persisted for it."""

    def __init__(self, message: str, attribution_key: Optional[str] = None):
        super().__init__(message)
        self.attribution_key = attribution_key


class UpstreamError(EngineError):
    """
    External dependency failed (processor export API, ad-platform graph API).

    RECOVERY:
        Isolated to the unit of work being processed. Callers mark that unit
        failed/errored and continue with the next one.
    """

    status_code = 502


class OrganizationRateLimitError(EngineError):
    """
    Advisory per-organization rate limit exceeded.

    ATTRIBUTES:
        retry_after: Seconds until a slot opens up
        operation: Which operation was throttled
    """

    status_code = 429

    def __init__(self, retry_after: int, organization_id: str, operation: str):
        self.retry_after = retry_after
        self.operation = operation
        super().__init__(
            f"Rate limit exceeded for {operation}. Try again in {retry_after} seconds.",
            organization_id=organization_id,
        )
