"""Error taxonomy shared by the pipeline and the HTTP layer."""

from __future__ import annotations

import traceback
from typing import Any


class InsightError(Exception):
    """Base class for failures that cross a component boundary.

    Every subclass carries a stable ``kind`` tag and the HTTP status the API
    layer should answer with.
    """

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self, *, include_traceback: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if include_traceback:
            payload["traceback"] = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
        return payload


class TransientServiceError(InsightError):
    """Network failure, 5xx or 429 from the completion service."""

    kind = "transient_service_error"
    status_code = 503

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ServiceUnavailableError(InsightError):
    """Completion service still failing after the retry budget was spent."""

    kind = "service_unavailable"
    status_code = 503

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuthenticationError(InsightError):
    """Completion service rejected our credentials (401/403)."""

    kind = "authentication_error"
    status_code = 502


class InvalidRequestError(InsightError):
    """Completion service rejected the request itself (non-429 4xx)."""

    kind = "invalid_request"
    status_code = 502

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedOutputError(InsightError):
    """Structured completion was not valid JSON or failed its shape checks."""

    kind = "malformed_output"
    status_code = 502


class SubjectNotFoundError(InsightError):
    kind = "subject_not_found"
    status_code = 404

    def __init__(self, subject_id: int | str) -> None:
        super().__init__(f"Subject not found: {subject_id}")
        self.subject_id = subject_id


class PersistenceError(InsightError):
    kind = "persistence_error"
    status_code = 500
