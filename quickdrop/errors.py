from typing import Any, Dict, Optional


class QuickDropError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict:
        payload: Dict[str, Any] = {"error": self.message}
        if self.detail:
            payload.update(self.detail)
        return payload


class ValidationError(QuickDropError):
    """Raised when a request violates an input constraint."""

    status_code = 400


class PayloadTooLargeError(ValidationError):
    """Raised when a request body exceeds a configured limit."""

    status_code = 413


class FileTooLargeError(PayloadTooLargeError):
    """Raised when an uploaded part exceeds the configured size limit."""

    def __init__(self, max_bytes: int, message: str):
        super().__init__(message, detail={"max_bytes": max_bytes})
        self.max_bytes = max_bytes


class NotFoundError(QuickDropError):
    """Absent, expired and storage-divergent files all look the same."""

    status_code = 404

    def __init__(self, message: str = "File not found"):
        super().__init__(message)


class ForbiddenError(QuickDropError):
    status_code = 403


class StorageError(QuickDropError):
    """Internal failure while reading or writing content storage."""

    status_code = 500
