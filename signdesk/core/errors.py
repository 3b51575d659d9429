"""
Error taxonomy for the signing engine.

Validation, authorization and conflict errors are raised before any state
is mutated. Provider errors carry enough context to decide on retries.
"""

from typing import Any, Dict, Optional


class SigningError(Exception):
    """Base class for every error the signing engine surfaces."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SigningError):
    """Malformed create request or webhook payload."""


class NotFoundError(SigningError):
    """Referenced document, request or signatory does not exist."""


class ForbiddenError(SigningError):
    """Actor lacks permission for the requested action."""


class ConflictError(SigningError):
    """Action is invalid given the current state."""


class RateLimitError(SigningError):
    """Reminder refused by the configured reminder policy."""


class AuthenticationError(SigningError):
    """Webhook payload failed authenticity verification."""


class NotificationDeliveryError(SigningError):
    """Outbound notification could not be handed to the delivery channel."""


class ProviderError(SigningError):
    """Signing provider call failed (network or provider-side)."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.provider = provider
        self.provider_response = provider_response

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code in (0, 408, 429) or self.status_code >= 500


class ProviderRegistrationError(ProviderError):
    """Provider registration failed after the request was persisted."""

    def __init__(self, message: str, *, signing_request_id: str, cause: Optional[ProviderError] = None):
        super().__init__(
            message,
            error_code=cause.error_code if cause else "registration_failed",
            status_code=cause.status_code if cause else None,
            provider=cause.provider if cause else None,
        )
        self.signing_request_id = signing_request_id


class DuplicateEventError(SigningError):
    """Webhook event already present in the idempotency ledger. Treated as success."""

    def __init__(self, event_key: str):
        super().__init__(f"event {event_key} already processed")
        self.event_key = event_key


class ConcurrencyError(SigningError):
    """A transition kept losing the per-request race. Safe to retry later."""
