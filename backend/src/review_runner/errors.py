from __future__ import annotations


class ReviewRunnerError(Exception):
    """Base class for errors surfaced to callers of the scheduling API."""

    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ReviewRunnerError):
    """Raised when create or reschedule input is malformed."""

    code = "validation_error"


class NotFoundError(ReviewRunnerError):
    """Raised when a request, customer or business id is unknown to the tenant."""

    code = "not_found"


class InvalidStateError(ReviewRunnerError):
    """Raised when an operation targets a request outside its required status."""

    code = "invalid_state"

    def __init__(self, message: str, *, current_status: str | None = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class QueueInconsistencyError(ReviewRunnerError):
    """Raised when the paired queue mutation failed and the store change was rolled back.

    Callers may retry the operation.
    """

    code = "queue_error"
    retryable = True
