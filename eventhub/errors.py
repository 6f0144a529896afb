"""Domain errors raised by the EventHub services.

Every error subclasses ``ValueError`` so callers that only care about
"the request was rejected" can keep catching that. The API maps each class to
an HTTP status through ``status_code``.
"""

from __future__ import annotations


class EventHubError(ValueError):
    """Base class for user-facing service errors."""

    status_code: int = 400
    default_message: str = "Request could not be completed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAuthenticatedError(EventHubError):
    status_code = 401
    default_message = "Not authenticated"


class PermissionDeniedError(EventHubError):
    status_code = 403
    default_message = "Insufficient permissions"


class ValidationFailedError(EventHubError):
    status_code = 400
    default_message = "Validation failed"


class NotFoundError(EventHubError):
    status_code = 404
    default_message = "Not found"


class ConflictError(EventHubError):
    status_code = 409
    default_message = "Conflict"


class EventFullError(ConflictError):
    """Raised when an event has no seats left."""

    default_message = "This event has reached maximum capacity"


class InvitationExpiredError(ValidationFailedError):
    """Raised after an invitation has been flagged as expired."""

    default_message = "Invitation has expired"
