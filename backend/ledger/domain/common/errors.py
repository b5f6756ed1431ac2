"""Domain error types."""
from typing import Any, Optional


class DomainError(Exception):
    """Base domain error."""
    pass


class NotFoundError(DomainError):
    """Resource not found."""
    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} with id {identifier} not found")


class ValidationError(DomainError):
    """Validation error."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthorizationError(DomainError):
    """Authorization error."""
    def __init__(self, message: str = "Not authorized"):
        self.message = message
        super().__init__(message)


class ConflictError(DomainError):
    """Resource conflict error (illegal state transition, payout in flight)."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProviderError(DomainError):
    """Payment provider or network failure.

    ``retryable`` is True for timeouts, connection errors, 429 and 5xx responses.
    The provider's error payload is kept on ``payload``.
    """
    def __init__(
        self,
        code: str,
        message: str,
        payload: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        self.code = code
        self.message = message
        self.payload = payload or {}
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(f"{code}: {message}")


class InvariantViolationError(DomainError):
    """A ledger invariant was broken. Always a bug."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class WebhookSignatureError(DomainError):
    """Webhook signature missing or invalid."""
    def __init__(self, message: str = "Invalid webhook signature"):
        self.message = message
        super().__init__(message)


class WebhookProcessingError(DomainError):
    """A verified webhook could not be applied and should be redelivered."""
    def __init__(self, event_type: str, message: str):
        self.event_type = event_type
        self.message = message
        super().__init__(f"{event_type}: {message}")
