"""Error taxonomy shared by the chat services and the transport layer."""
from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base exception for the chat core."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.error_code, "message": self.message, "details": self.details}


class ValidationError(ChatError):
    """Raised for empty or oversized content and missing fields."""

    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class Unauthenticated(ChatError):
    """Raised when no authenticated user id accompanies a request."""

    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, "UNAUTHENTICATED")


class Unauthorized(ChatError):
    """Raised when a user acts on a conversation they do not take part in."""

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "UNAUTHORIZED", details)


class NotFoundError(ChatError):
    """Raised when a conversation or item is not found."""

    status_code = 404

    def __init__(self, resource: str, identifier: str):
        message = f"{resource} with identifier '{identifier}' not found"
        super().__init__(message, "NOT_FOUND", {"resource": resource, "identifier": identifier})


class ConflictError(ChatError):
    """Raised when a concurrent insert lost against the uniqueness constraint."""

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFLICT", details)


class UnavailableError(ChatError):
    """Raised on transient store or channel failures."""

    status_code = 503

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "UNAVAILABLE", details)
