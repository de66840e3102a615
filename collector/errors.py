"""Exceptions raised by the metering-data pipeline.

Every error carries the HTTP status the API layer should answer with and a
JSON-ready payload. ``NotFoundAsEmpty`` is an internal signal: callers turn it
into an empty result and it never reaches the HTTP layer.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(PipelineError):
    """Missing or malformed request fields. Never retried."""

    status_code = 400

    def __init__(self, message: str, required: Optional[list] = None, details: Any = None):
        super().__init__(message, details=details)
        self.required = required

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.required:
            payload["required"] = self.required
        return payload


class CredentialError(PipelineError):
    """No usable bearer token: cache empty or expired and the exchange failed."""


class CreationError(PipelineError):
    """An upstream order or token creation was rejected."""

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: Any = None):
        super().__init__(message, details=body, status_code=upstream_status or 500)
        self.upstream_status = upstream_status
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.upstream_status is not None:
            payload["status"] = self.upstream_status
        return payload


class TransientFetchError(PipelineError):
    """Network failure, timeout or HTTP error left after the retry budget."""

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: Any = None):
        super().__init__(message, details=body, status_code=upstream_status or 500)
        self.upstream_status = upstream_status


class NotFoundAsEmpty(PipelineError):
    """Upstream answered 404: no data for this meter and period."""

    status_code = 404


class RequestFailedError(PipelineError):
    """The broker reported the request as FAILED."""

    status_code = 502


class PollTimeoutError(PipelineError, TimeoutError):
    """The broker request did not leave PENDING within the poll budget."""

    status_code = 504


class PersistenceError(PipelineError):
    """An upsert or query against the store failed."""

    def __init__(
        self,
        message: str,
        details: Any = None,
        hint: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, details=details)
        self.hint = hint
        self.code = code

    def diagnostics(self) -> Dict[str, Any]:
        """Fields logged when a write is dropped."""
        return {
            "message": self.message or "No message",
            "details": self.details or "No details",
            "hint": self.hint or "No hint",
            "code": self.code or "No code",
        }
