"""Exception hierarchy for the SCORM runtime core.

Routers never translate these by hand: ``app.main`` registers one handler per
class that renders the usual ``{"success": false, "error": ...}`` envelope
with the status code carried by the exception class.
"""
from __future__ import annotations


class ScormRuntimeError(Exception):
    """Base class for all domain errors raised by the runtime core."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__doc__ or ""
        super().__init__(self.message)


class NotFoundError(ScormRuntimeError):
    """Unknown session or package identifier."""

    status_code = 404


class ValidationError(ScormRuntimeError):
    """Malformed path, commit payload or upload batch."""

    status_code = 400


class SinkError(ScormRuntimeError):
    """External sync sink rejected the action or timed out."""

    status_code = 502

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.upstream_status = status_code
        self.endpoint = endpoint
        super().__init__(message)


class CapacityError(ScormRuntimeError):
    """Payload, batch or package exceeds a configured limit."""

    status_code = 413
