"""Mobile-money push payment adapter (Daraja STK push)."""

import base64
import logging
import math
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as EnvelopeError

from ...exceptions import ProviderRejected, ValidationError
from ...models import Provider
from ..base import CallbackOutcome, ProviderAcceptance, ProviderAdapter

logger = logging.getLogger(__name__)


class MetadataItem(BaseModel):
    Name: str
    Value: Union[str, int, float, None] = None


class StkMetadata(BaseModel):
    Item: List[MetadataItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str
    CallbackMetadata: Optional[StkMetadata] = None


class StkBody(BaseModel):
    stkCallback: StkCallback


class PushPaymentEnvelope(BaseModel):
    Body: StkBody


def _metadata_value(items: List[MetadataItem], name: str) -> Any:
    for item in items:
        if item.Name == name:
            return item.Value
    return None


class MobileMoneyAdapter(ProviderAdapter):
    """Push payments: the payer authorizes a prompt on their phone.

    The provider only accepts whole currency units, so amounts are rounded up.
    """

    name = Provider.MOBILE_MONEY.value
    base_urls = {
        "sandbox": "https://sandbox.safaricom.co.ke",
        "production": "https://api.safaricom.co.ke",
    }

    _EP_AUTH = "/oauth/v1/generate"
    _EP_STK_PUSH = "/mpesa/stkpush/v1/processrequest"
    TRANSACTION_TYPE = "CustomerPayBillOnline"

    async def _request_token(self) -> httpx.Response:
        return await self._client.get(
            f"{self.base_url}{self._EP_AUTH}",
            params={"grant_type": "client_credentials"},
            auth=(self.credential.client_id, self.credential.client_secret),
        )

    @staticmethod
    def timestamp(now: Optional[datetime] = None) -> str:
        return (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")

    @staticmethod
    def password(shortcode: str, passkey: str, timestamp: str) -> str:
        return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()

    @staticmethod
    def whole_units(amount: Decimal) -> int:
        return int(math.ceil(amount))

    def build_initiation_request(
        self,
        amount: Decimal,
        payer_reference: Optional[str],
        reference: str,
        callback_url: str,
        description: Optional[str] = None,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if not payer_reference:
            raise ValidationError("Phone number is required for mobile money payments")
        shortcode = self.credential.shortcode
        passkey = self.credential.passkey
        if not shortcode or not passkey:
            raise ValidationError("Mobile money credentials are missing shortcode or passkey")

        timestamp = self.timestamp(now)
        return {
            "BusinessShortCode": shortcode,
            "Password": self.password(shortcode, passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.TRANSACTION_TYPE,
            "Amount": self.whole_units(amount),
            "PartyA": payer_reference,
            "PartyB": shortcode,
            "PhoneNumber": payer_reference,
            "CallBackURL": callback_url,
            "AccountReference": reference,
            "TransactionDesc": description or "Payment",
        }

    async def submit(self, token: str, payload: Dict[str, Any]) -> ProviderAcceptance:
        try:
            response = await self._client.post(
                f"{self.base_url}{self._EP_STK_PUSH}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            logger.error("STK push request failed: %s", exc)
            raise ProviderRejected("Mobile money provider did not respond. Please try again.") from exc

        try:
            body = response.json()
        except ValueError:
            logger.error("Non-JSON STK push response (%s): %s", response.status_code, response.text)
            raise ProviderRejected("STK Push request failed")

        if str(body.get("ResponseCode")) != "0" or not body.get("CheckoutRequestID"):
            message = (
                body.get("ResponseDescription")
                or body.get("errorMessage")
                or body.get("CustomerMessage")
                or "STK Push request failed"
            )
            raise ProviderRejected(message, details=body)

        return ProviderAcceptance(
            correlation_id=body["CheckoutRequestID"],
            secondary_id=body.get("MerchantRequestID"),
            message="STK Push sent successfully. Please check your phone.",
        )

    @classmethod
    def parse_callback(cls, raw: Dict[str, Any]) -> CallbackOutcome:
        try:
            envelope = PushPaymentEnvelope.model_validate(raw)
        except EnvelopeError as exc:
            raise ValidationError(f"Invalid push payment callback: {exc}") from exc

        callback = envelope.Body.stkCallback
        outcome = CallbackOutcome(
            provider=cls.name,
            correlation_id=callback.CheckoutRequestID,
            kind="success" if callback.ResultCode == 0 else "failure",
            result_code=str(callback.ResultCode),
            result_desc=callback.ResultDesc,
            merchant_request_id=callback.MerchantRequestID,
        )
        if outcome.succeeded and callback.CallbackMetadata is not None:
            items = callback.CallbackMetadata.Item
            receipt = _metadata_value(items, "MpesaReceiptNumber")
            amount = _metadata_value(items, "Amount")
            phone = _metadata_value(items, "PhoneNumber")
            outcome.receipt_or_capture_id = str(receipt) if receipt is not None else None
            outcome.amount_paid = Decimal(str(amount)) if amount is not None else None
            outcome.payer_reference = str(phone) if phone is not None else None
        return outcome

    @classmethod
    def acknowledgement(cls) -> Dict[str, Any]:
        return {"ResultCode": 0, "ResultDesc": "Accepted"}


__all__ = ["MobileMoneyAdapter", "PushPaymentEnvelope"]
