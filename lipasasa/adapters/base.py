"""Base classes shared by payment provider adapters."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from ..exceptions import ProviderAuthError, ValidationError
from ..models import ProviderCredential
from ..token_cache import TokenCache

logger = logging.getLogger(__name__)


# ==================== Value objects ====================

@dataclass
class ProviderAcceptance:
    """A provider's acceptance of an initiation request."""

    correlation_id: str
    message: str
    secondary_id: Optional[str] = None
    approval_url: Optional[str] = None


@dataclass
class CallbackOutcome:
    """Provider-neutral reading of one callback delivery.

    ``kind`` is ``"success"``, ``"failure"`` or ``"ignored"`` (an event the
    reconciler acknowledges without touching any record).
    """

    provider: str
    correlation_id: str
    kind: str
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    receipt_or_capture_id: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    payer_reference: Optional[str] = None
    merchant_request_id: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind == "success"


# ==================== Validation helpers ====================

def parse_amount(raw: Any) -> Decimal:
    """Parse a caller-supplied amount into a positive, finite Decimal."""
    if isinstance(raw, bool):
        raise ValidationError(f"Invalid amount: {raw}")
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {raw}") from exc
    if not validate_amount(amount):
        raise ValidationError(f"Invalid amount: {raw}")
    return amount


def validate_amount(amount: Any) -> bool:
    return isinstance(amount, Decimal) and amount.is_finite() and amount > 0


def validate_currency_code(currency: Any) -> bool:
    return (
        isinstance(currency, str)
        and len(currency) == 3
        and currency.isalpha()
        and currency.isupper()
    )


# ==================== Base Adapter ====================

class ProviderAdapter(ABC):
    """Abstract base class for payment provider adapters."""

    name: str
    base_urls: Dict[str, str]

    def __init__(
        self,
        credential: ProviderCredential,
        http_client: httpx.AsyncClient,
        token_cache: Optional[TokenCache] = None,
        **options: Any,
    ) -> None:
        environment = (credential.environment or "sandbox").lower()
        if environment not in self.base_urls:
            raise ValidationError(
                f"{self.name}: unknown environment '{credential.environment}'"
            )
        self.credential = credential
        self.base_url = self.base_urls[environment]
        self._client = http_client
        self._token_cache = token_cache or TokenCache(None)
        self.options = options

    @classmethod
    def callback_url(cls, public_base_url: str) -> str:
        return f"{public_base_url.rstrip('/')}/callback/{cls.name}"

    async def acquire_token(self) -> str:
        """Return a provider access token, reusing a cached one when possible.

        Raises:
            ProviderAuthError: If the provider refuses or cannot be reached
        """
        cached = await self._token_cache.get(self.name, self.credential.id)
        if cached:
            return cached

        try:
            response = await self._request_token()
        except httpx.HTTPError as exc:
            raise ProviderAuthError(
                f"Failed to reach {self.name} for authentication: {exc}"
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "%s token request failed (%s): %s",
                self.name,
                response.status_code,
                response.text,
            )
            raise ProviderAuthError(
                f"Failed to authenticate with {self.name}. Please check your credentials."
            )

        try:
            body = response.json()
            token = body["access_token"]
            expires_in = int(body.get("expires_in") or 0)
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderAuthError(f"Malformed token response from {self.name}") from exc

        if expires_in > 0:
            await self._token_cache.set(self.name, self.credential.id, token, expires_in)
        return token

    @abstractmethod
    async def _request_token(self) -> httpx.Response:
        """Perform the provider's client-credentials grant."""
        pass

    @abstractmethod
    def build_initiation_request(
        self,
        amount: Decimal,
        payer_reference: Optional[str],
        reference: str,
        callback_url: str,
        description: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the provider payload that starts a payment.

        Args:
            amount: Validated positive amount
            payer_reference: Normalized phone number or payer id
            reference: Merchant-side reference shown to the payer
            callback_url: Where the provider reports the outcome
            description: Optional text shown to the payer
            currency: Three-letter ISO currency code

        Returns:
            JSON-serializable provider payload
        """
        pass

    @abstractmethod
    async def submit(self, token: str, payload: Dict[str, Any]) -> ProviderAcceptance:
        """Send an initiation payload to the provider.

        Raises:
            ProviderRejected: If the provider declines or does not respond
        """
        pass

    @classmethod
    @abstractmethod
    def parse_callback(cls, raw: Dict[str, Any]) -> CallbackOutcome:
        """Validate a callback envelope and read its outcome.

        Raises:
            ValidationError: If ``raw`` is not this provider's envelope
        """
        pass

    @classmethod
    def acknowledgement(cls) -> Dict[str, Any]:
        return {"received": True}

    async def initiate(
        self,
        amount: Decimal,
        payer_reference: Optional[str],
        reference: str,
        callback_url: str,
        description: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> ProviderAcceptance:
        """Acquire a token, build the payload and submit it in one call."""
        token = await self.acquire_token()
        payload = self.build_initiation_request(
            amount,
            payer_reference,
            reference,
            callback_url,
            description=description,
            currency=currency,
        )
        return await self.submit(token, payload)
