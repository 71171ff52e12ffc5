"""Card/wallet order-capture adapter (PayPal Orders v2)."""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as EnvelopeError

from ...exceptions import ProviderRejected, ValidationError
from ...models import Provider
from ..base import CallbackOutcome, ProviderAcceptance, ProviderAdapter

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = frozenset({"CHECKOUT.ORDER.APPROVED", "PAYMENT.CAPTURE.COMPLETED"})
FAILURE_EVENTS = frozenset({"PAYMENT.CAPTURE.DENIED", "CHECKOUT.ORDER.VOIDED"})


class OrderCaptureEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: str
    resource: Dict[str, Any]


def _order_id(resource: Dict[str, Any]) -> Optional[str]:
    # Capture events carry the capture id in ``id``; the order id sits in related_ids.
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    return related.get("order_id") or resource.get("id")


def _resource_amount(resource: Dict[str, Any]) -> Optional[Decimal]:
    amount = resource.get("amount")
    if amount is None:
        units = resource.get("purchase_units") or []
        amount = units[0].get("amount") if units else None
    if not amount or amount.get("value") is None:
        return None
    return Decimal(str(amount["value"]))


class OrderCaptureAdapter(ProviderAdapter):
    """Orders with capture intent; the payer approves on the provider's site."""

    name = Provider.CARD_ORDER.value
    base_urls = {
        "sandbox": "https://api-m.sandbox.paypal.com",
        "production": "https://api-m.paypal.com",
        "live": "https://api-m.paypal.com",
    }

    _EP_AUTH = "/v1/oauth2/token"
    _EP_ORDERS = "/v2/checkout/orders"

    async def _request_token(self) -> httpx.Response:
        return await self._client.post(
            f"{self.base_url}{self._EP_AUTH}",
            data={"grant_type": "client_credentials"},
            auth=(self.credential.client_id, self.credential.client_secret),
        )

    @staticmethod
    def format_amount(amount: Decimal) -> str:
        return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    def build_initiation_request(
        self,
        amount: Decimal,
        payer_reference: Optional[str],
        reference: str,
        callback_url: str,
        description: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        site_origin = self.options.get("site_origin", "").rstrip("/")
        return_path = self.options.get("return_path", "/dashboard/subscription")
        purchase_unit: Dict[str, Any] = {
            "reference_id": reference,
            "description": description or "Payment",
            "amount": {
                "currency_code": currency or "USD",
                "value": self.format_amount(amount),
            },
        }
        if payer_reference:
            purchase_unit["custom_id"] = payer_reference
        return {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "brand_name": self.options.get("brand_name", "LipaSasa"),
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
                "return_url": f"{site_origin}{return_path}?status=success",
                "cancel_url": f"{site_origin}{return_path}?status=cancelled",
            },
        }

    async def submit(self, token: str, payload: Dict[str, Any]) -> ProviderAcceptance:
        try:
            response = await self._client.post(
                f"{self.base_url}{self._EP_ORDERS}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.error("Order creation request failed: %s", exc)
            raise ProviderRejected("Card provider did not respond. Please try again.") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("id"):
            details = body.get("details") or [{}]
            message = (
                details[0].get("description")
                or body.get("message")
                or "Failed to create order"
            )
            logger.error("Order creation rejected (%s): %s", response.status_code, body)
            raise ProviderRejected(message, details=body)

        approval_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return ProviderAcceptance(
            correlation_id=body["id"],
            message="Order created. Redirect the payer to approve it.",
            approval_url=approval_url,
        )

    @classmethod
    def parse_callback(cls, raw: Dict[str, Any]) -> CallbackOutcome:
        try:
            envelope = OrderCaptureEnvelope.model_validate(raw)
        except EnvelopeError as exc:
            raise ValidationError(f"Invalid order capture webhook: {exc}") from exc

        event_type = envelope.event_type
        resource = envelope.resource
        order_id = _order_id(resource)
        if not order_id:
            raise ValidationError(f"No order id in {event_type} webhook")

        if event_type in SUCCESS_EVENTS:
            return CallbackOutcome(
                provider=cls.name,
                correlation_id=order_id,
                kind="success",
                result_code="0",
                result_desc=f"PayPal {event_type}",
                receipt_or_capture_id=resource.get("id"),
                amount_paid=_resource_amount(resource),
                event_type=event_type,
            )
        if event_type in FAILURE_EVENTS:
            return CallbackOutcome(
                provider=cls.name,
                correlation_id=order_id,
                kind="failure",
                result_code=event_type,
                result_desc=f"PayPal: {event_type}",
                event_type=event_type,
            )
        return CallbackOutcome(
            provider=cls.name,
            correlation_id=order_id,
            kind="ignored",
            event_type=event_type,
        )


__all__ = ["OrderCaptureAdapter", "OrderCaptureEnvelope"]
