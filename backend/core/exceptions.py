"""Custom exceptions for the workflow automation engine.

Every error carries a ``retryable`` flag. The execution queue consults it
after a failed attempt: validation problems and missing credentials are
final, everything raised while talking to an external system is retried.
"""

from typing import Any, Optional


class AutomationError(Exception):
    """Base exception for the workflow automation engine."""

    retryable = False

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(AutomationError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class UnauthorizedError(AutomationError):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize UnauthorizedError with 401 status code."""
        super().__init__(message, 401)


class ValidationError(AutomationError):
    """Build-time validation failure.

    ``issues`` lists every problem found; ``changes`` lists the
    auto-corrections that were applied before the problems were found, so
    the caller can see what was rewritten.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        issues: Optional[list[str]] = None,
        changes: Optional[list[str]] = None,
    ):
        """Initialize ValidationError with 422 status code."""
        self.issues = issues or []
        self.changes = changes or []
        if self.issues and message == "Validation failed":
            message = f"Validation failed: {'; '.join(self.issues)}"
        super().__init__(message, 422)


class ConflictError(AutomationError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class CredentialNotFoundError(NotFoundError):
    """A credential required by a workflow is not stored for its owner."""

    def __init__(self, keys: list[str]):
        self.keys = keys
        super().__init__(f"Missing credentials: {', '.join(sorted(keys))}")


class UnresolvedReferenceError(AutomationError):
    """An interpolation path could not be resolved at run time."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Cannot resolve '{{{{{expression}}}}}': {reason}", 422)


class CircuitOpenError(AutomationError):
    """Raised without calling the capability while its circuit is open."""

    def __init__(self, capability: str, retry_after: float):
        self.capability = capability
        self.retry_after = retry_after
        super().__init__(
            f"Circuit open for {capability}, retry in {retry_after:.0f}s", 503
        )


class RateLimitExceeded(AutomationError):
    """The rate limiter could not grant a slot within the allowed wait."""

    retryable = True

    def __init__(self, capability: str, retry_after: float):
        self.capability = capability
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {capability}, retry in {retry_after:.1f}s", 429
        )


class CapabilityTimeoutError(AutomationError):
    """A capability call exceeded its timeout."""

    retryable = True

    def __init__(self, capability: str, timeout: float):
        self.capability = capability
        self.timeout = timeout
        super().__init__(f"{capability} timed out after {timeout}s", 504)


class StepExecutionError(AutomationError):
    """A step failed; wraps the underlying error with step id and attempt."""

    def __init__(
        self,
        step_id: str,
        message: str,
        attempt: int = 1,
        cause: Optional[BaseException] = None,
        result: Any = None,
    ):
        self.step_id = step_id
        self.attempt = attempt
        self.cause = cause
        self.result = result
        super().__init__(
            f"Workflow execution failed: {message} (step: {step_id})", 500
        )

    @property
    def retryable(self) -> bool:
        if self.cause is None:
            return True
        return getattr(self.cause, "retryable", True)

    @property
    def circuit_open(self) -> bool:
        return isinstance(self.cause, CircuitOpenError)


class InfrastructureError(AutomationError):
    """Queue or storage backend unreachable."""

    retryable = True

    def __init__(self, message: str = "Backend unavailable"):
        super().__init__(message, 503)
