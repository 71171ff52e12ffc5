from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitiatePaymentRequest(_CamelModel):
    amount: Decimal
    payer_reference: Optional[str] = Field(default=None, alias="payerReference")
    provider: str = "mobile_money"
    invoice_id: Optional[str] = Field(default=None, alias="invoiceId")
    description: Optional[str] = None


class LinkPaymentRequest(_CamelModel):
    amount: Decimal
    payer_reference: Optional[str] = Field(default=None, alias="payerReference")
    provider: str = "mobile_money"


class InitiateSubscriptionRequest(_CamelModel):
    plan_name: str = Field(alias="planName")
    amount: Decimal
    currency: Optional[str] = None
    provider: str = "mobile_money"
    payer_reference: Optional[str] = Field(default=None, alias="payerReference")


class TransactionView(_CamelModel):
    id: str
    status: str
    amount: str
    currency: str
    provider: str
    correlation_id: str = Field(serialization_alias="correlationId")
    result_code: Optional[str] = Field(default=None, serialization_alias="resultCode")
    result_desc: Optional[str] = Field(default=None, serialization_alias="resultDesc")
    receipt_or_capture_id: Optional[str] = Field(
        default=None, serialization_alias="receiptOrCaptureId"
    )
    created_at: str = Field(serialization_alias="createdAt")
    updated_at: str = Field(serialization_alias="updatedAt")


class SubscriptionHistoryView(_CamelModel):
    id: str
    plan_name: str = Field(serialization_alias="planName")
    amount: str
    currency: str
    provider: str
    status: str
    transaction_ref: str = Field(serialization_alias="transactionRef")
    receipt_or_capture_id: Optional[str] = Field(
        default=None, serialization_alias="receiptOrCaptureId"
    )
    failure_reason: Optional[str] = Field(default=None, serialization_alias="failureReason")
    created_at: str = Field(serialization_alias="createdAt")
