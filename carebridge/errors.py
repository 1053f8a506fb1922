"""Domain error hierarchy shared by the services and the HTTP layer."""

from __future__ import annotations


class CareBridgeError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An error occurred") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(CareBridgeError):
    """Raised when a referenced record does not exist."""

    status_code = 404
    code = "not_found"


class InvalidInputError(CareBridgeError):
    """Raised for missing required fields or malformed identifiers."""

    status_code = 400
    code = "invalid_input"


class ConflictError(CareBridgeError):
    """Raised for duplicate links and lost conditional writes."""

    status_code = 409
    code = "conflict"


class ForbiddenError(CareBridgeError):
    """Raised when the caller's role may not perform the operation."""

    status_code = 403
    code = "forbidden"


class UpstreamError(CareBridgeError):
    """Raised when an external collaborator (the AI model) fails."""

    status_code = 502
    code = "upstream_error"


__all__ = [
    "CareBridgeError",
    "ConflictError",
    "ForbiddenError",
    "InvalidInputError",
    "NotFoundError",
    "UpstreamError",
]
