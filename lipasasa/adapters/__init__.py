"""Adapters for integrating external payment providers."""

from typing import Any, Dict, Type

from ..exceptions import ValidationError
from .base import CallbackOutcome, ProviderAcceptance, ProviderAdapter
from .mobile_money import MobileMoneyAdapter
from .order_capture import OrderCaptureAdapter

ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    MobileMoneyAdapter.name: MobileMoneyAdapter,
    OrderCaptureAdapter.name: OrderCaptureAdapter,
}

# Top-level key that identifies each provider's callback envelope.
ENVELOPE_TAGS = {
    "Body": MobileMoneyAdapter.name,
    "event_type": OrderCaptureAdapter.name,
}


def get_adapter_class(provider: str) -> Type[ProviderAdapter]:
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise ValidationError(f"Unsupported provider: {provider}") from None


def detect_provider(raw: Any) -> str:
    """Name the provider whose envelope shape ``raw`` carries."""
    if not isinstance(raw, dict):
        raise ValidationError("Callback payload must be a JSON object")
    matches = [provider for tag, provider in ENVELOPE_TAGS.items() if tag in raw]
    if len(matches) != 1:
        raise ValidationError("Unrecognized callback envelope")
    return matches[0]


__all__ = [
    "ADAPTERS",
    "CallbackOutcome",
    "MobileMoneyAdapter",
    "OrderCaptureAdapter",
    "ProviderAcceptance",
    "ProviderAdapter",
    "detect_provider",
    "get_adapter_class",
]
