"""Exception hierarchy for payment initiation and callback reconciliation."""


class PaymentError(Exception):
    """Base exception for payment-related errors."""
    pass


class ValidationError(PaymentError):
    """Raised when caller input or a provider envelope fails validation."""
    pass


class CredentialError(PaymentError):
    """Raised when the merchant has no active credentials for a provider."""
    pass


class ProviderAuthError(PaymentError):
    """Raised when a provider access token cannot be obtained."""
    pass


class ProviderRejected(PaymentError):
    """Raised when a provider declines an initiation request."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class NotFoundError(PaymentError):
    """Raised when a callback references an unknown correlation id."""
    pass


class DuplicateCallback(PaymentError):
    """Raised when a callback targets a record that is already terminal."""
    pass


class LateSettlement(PaymentError):
    """Raised when a provider confirms payment for a record already expired locally."""
    pass


__all__ = [
    "PaymentError",
    "ValidationError",
    "CredentialError",
    "ProviderAuthError",
    "ProviderRejected",
    "NotFoundError",
    "DuplicateCallback",
    "LateSettlement",
]
