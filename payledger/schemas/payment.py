"""Schemas for payment orders."""
from datetime import datetime
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from payledger.models.payment import PaymentMethod, PaymentStatus, RefundStatus, ServiceType


class PaymentCreate(BaseModel):
    amount: Decimal
    provider_id: str = Field(min_length=1, max_length=64)
    currency: str | None = Field(default=None, max_length=3)
    description: str | None = Field(default=None, max_length=500)
    service_type: ServiceType = ServiceType.CONSULTATION
    idempotency_key: str | None = Field(default=None, max_length=128)
    user_id: int | None = None


class PaymentCreateRead(BaseModel):
    order_id: str | None
    reference_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    key_id: str | None
    idempotency_key: str | None
    is_duplicate: bool
    message: str


class PaymentVerify(BaseModel):
    """Checkout callback fields; the gateway's ``razorpay_*`` names are accepted too."""

    reference_id: str | None = None
    order_id: str | None = Field(
        default=None, validation_alias=AliasChoices("order_id", "razorpay_order_id")
    )
    payment_id: str | None = Field(
        default=None, validation_alias=AliasChoices("payment_id", "razorpay_payment_id")
    )
    signature: str | None = Field(
        default=None, validation_alias=AliasChoices("signature", "razorpay_signature")
    )


class VerificationRead(BaseModel):
    verified: bool
    reference_id: str
    status: PaymentStatus
    payment_method: PaymentMethod


class StatusUpdate(BaseModel):
    status: str
    payment_method: str | None = None
    payment_id: str | None = Field(default=None, max_length=64)


class PaymentStatusEntryRead(BaseModel):
    status: PaymentStatus
    recorded_at: datetime


class PaymentRead(BaseModel):
    reference_id: str
    order_id: str | None
    user_id: int
    provider_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_gateway: str
    payment_method: PaymentMethod
    payment_id: str | None
    refund_status: RefundStatus
    service_type: ServiceType
    notes: str | None
    history: list[PaymentStatusEntryRead]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentHistoryItem(BaseModel):
    reference_id: str
    order_id: str | None
    provider_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    refund_status: RefundStatus
    service_type: ServiceType
    created_at: datetime
    history: list[PaymentStatusEntryRead]


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    outcome: str
    reference_id: str | None = None
    status: PaymentStatus | None = None
