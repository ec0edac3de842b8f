"""Shared exceptions for the application.

This module contains exception classes used across multiple services
to avoid cross-domain dependencies between services.

ServiceError subclasses carry everything the HTTP layer needs to render a
caller-facing error: status code, machine-readable reason, optional detail
and optional response headers. Services raise them; app.main renders them as
``{"status": "error", "reason": ...}`` with the detail keys merged in.
"""

from typing import Any


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents an operation
    from proceeding (e.g., settlement provider key not set, or admin token
    not configured).
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid status transition on a model.

    Only transitions listed in the model's VALID_TRANSITIONS are allowed.
    Services check preconditions first and raise StateConflict with a caller
    facing reason; this error is the last line of defence at the ORM level.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current status before the attempted transition.
        to_status: The status that was attempted but is not valid.

    Example:
        >>> task.status = TaskStatus.COMPLETED
        >>> task.status = TaskStatus.OPEN
        InvalidStateTransitionError: Invalid transition: completed → open
    """

    def __init__(self, message: str, from_status: Any, to_status: Any):
        """Initialize InvalidStateTransitionError with transition details.

        Args:
            message: Human-readable error message.
            from_status: Current status before transition attempt.
            to_status: Target status that was attempted.
        """
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        """Return detailed error message with transition context."""
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class ServiceError(Exception):
    """Base class for errors that map to a caller-visible HTTP response.

    Attributes:
        status_code: HTTP status code for the response.
        reason: Machine-readable reason code (snake_case).
        detail: Optional extra payload merged into the response body.
        headers: Optional response headers (e.g., rate-limit metadata).
    """

    status_code = 500
    default_reason = "internal_error"

    def __init__(
        self,
        reason: str | None = None,
        detail: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        message: str | None = None,
    ):
        self.reason = reason or self.default_reason
        self.detail = detail
        self.headers = headers
        super().__init__(message or self.reason)

    def to_body(self) -> dict[str, Any]:
        """Render the JSON body returned to the caller."""
        body: dict[str, Any] = {"status": "error", "reason": self.reason}
        if self.detail:
            body.update(self.detail)
        return body


class RequestValidationFailed(ServiceError):
    """400: malformed or semantically invalid input. Never retried."""

    status_code = 400
    default_reason = "invalid_request"


class AuthenticationFailed(ServiceError):
    """401: credentials missing or wrong."""

    status_code = 401
    default_reason = "invalid_credentials"


class AccessDenied(ServiceError):
    """403: authenticated but not allowed."""

    status_code = 403
    default_reason = "forbidden"


class ResourceNotFound(ServiceError):
    status_code = 404
    default_reason = "not_found"


class StateConflict(ServiceError):
    """409: the resource is not in a state that allows the operation."""

    status_code = 409
    default_reason = "conflict"


class QuotaExceeded(ServiceError):
    """429: a quota window is exhausted. Headers carry reset metadata."""

    status_code = 429
    default_reason = "rate_limited"


class UpstreamProviderError(ServiceError):
    """502: the settlement provider rejected or failed a call.

    The provider message is preserved in ``detail["message"]``. This is the
    only error class callers are expected to retry; provider mutations carry
    idempotency tokens so a retry cannot double-charge.
    """

    status_code = 502
    default_reason = "stripe_error"


class ProviderOutcomeUnknown(UpstreamProviderError):
    """502: the provider call timed out, lost its connection or failed server side.

    The provider may or may not have applied the mutation. Only a retry with
    the same idempotency token is safe.
    """
