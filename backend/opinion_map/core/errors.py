"""Error taxonomy shared by the request handlers and the pipeline worker.

Every error carries an HTTP status and a structured ``detail`` payload so the
API layer can surface counts and thresholds without string parsing.
"""

from __future__ import annotations

from typing import Any


class OpinionMapError(Exception):
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.message, **self.detail}


class ValidationError(OpinionMapError):
    status_code = 400


class AuthorizationError(OpinionMapError):
    status_code = 403


class NotFoundError(OpinionMapError):
    status_code = 404


class NoDataError(NotFoundError):
    """No posts matched the requested zone and period."""

    def __init__(self, message: str = "No posts found in selected period") -> None:
        super().__init__(message, total_available=0)


class InsufficientDataError(OpinionMapError):
    status_code = 400

    def __init__(self, found: int, minimum: int) -> None:
        super().__init__(
            f"Found {found} posts, at least {minimum} are required to build clusters",
            found=found,
            minimum=minimum,
        )
        self.found = found
        self.minimum = minimum


class ExternalServiceError(OpinionMapError):
    status_code = 502
    retryable = True


class SchedulingError(OpinionMapError):
    status_code = 503
    retryable = True


class PipelineError(OpinionMapError):
    status_code = 500


class InvalidTransitionError(PipelineError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move session from '{current}' to '{target}'",
            current=current,
            target=target,
        )


class SessionCancelled(Exception):
    """Raised at a phase boundary once the session has been cancelled."""
