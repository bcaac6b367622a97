"""Error taxonomy for the orchestration layer.

Every user-visible failure is rendered from one of these classes so callers
can branch on the stable ``type`` string instead of parsing messages.
"""

from __future__ import annotations

from typing import Any

from hybrid_brain.schemas import BackendKind, ErrorBody


class BrainError(Exception):
    error_type: str = "internal_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self, correlation_id: str = "") -> dict[str, Any]:
        error = ErrorBody(
            type=self.error_type,
            message=self.message,
            retryable=self.retryable,
            correlation_id=correlation_id,
            details=self.details,
        )
        return {"success": False, "error": error.model_dump(mode="json", by_alias=True)}


class ValidationError(BrainError):
    """Request rejected before orchestration. Never retried."""

    error_type = "validation_error"
    status_code = 400


class ClassificationError(BrainError):
    """Internal to the classifier; recovered with a conservative default."""

    error_type = "classification_error"


class BackendExecutionError(BrainError):
    error_type = "backend_execution_error"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        backend: BackendKind,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.backend = backend


class BackendTimeoutError(BackendExecutionError):
    error_type = "backend_timeout"
    status_code = 504


class DualBackendFailure(BrainError):
    """Both the primary attempt and the single fallback failed."""

    error_type = "dual_backend_failure"
    status_code = 500
    retryable = True

    def __init__(
        self,
        primary: BackendExecutionError,
        fallback: BackendExecutionError,
    ) -> None:
        super().__init__(
            f"{primary.backend} failed ({primary.message}); "
            f"fallback {fallback.backend} failed ({fallback.message})",
            details={
                "attempts": [
                    {"backend": str(primary.backend), "type": primary.error_type},
                    {"backend": str(fallback.backend), "type": fallback.error_type},
                ]
            },
        )
        self.primary = primary
        self.fallback = fallback


class StreamingError(BrainError):
    """Failure after deltas reached the caller. Surfaced as a terminal chunk."""

    error_type = "streaming_error"
    status_code = 500
    retryable = True


class RequestCancelled(BrainError):
    error_type = "request_cancelled"
    status_code = 499
