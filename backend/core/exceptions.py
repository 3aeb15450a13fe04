"""Custom exceptions for the workflow scheduler."""

from typing import Optional


class SchedulerError(Exception):
    """Base exception for the workflow scheduler."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(SchedulerError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ValidationError(SchedulerError):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed", status_code: int = 422):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, status_code)


class ConflictError(SchedulerError):
    """Resource was changed by another request; retrying may succeed."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class InvalidCronExpressionError(ValidationError):
    """Cron expression (or its time zone) failed validation.

    Surfaced to clients as a bad request; never retried.
    """

    def __init__(self, detail: str, expression: Optional[str] = None):
        self.detail = detail
        self.expression = expression
        super().__init__(f"Invalid cron expression: {detail}", 400)


class ExecutionDispatchError(SchedulerError):
    """The workflow execution engine could not accept a run.

    The dispatch loop retries these with backoff; manual triggers surface
    them to the caller.
    """

    def __init__(self, message: str = "Workflow execution dispatch failed"):
        super().__init__(message, 502)
