"""Schema package exports."""
from .payment import (
    PaymentCreate,
    PaymentCreateRead,
    PaymentHistoryItem,
    PaymentRead,
    PaymentStatusEntryRead,
    PaymentVerify,
    StatusUpdate,
    VerificationRead,
    WebhookAck,
)
from .user import UserCreate, UserRead, UserUpdate

__all__ = [
    "PaymentCreate",
    "PaymentCreateRead",
    "PaymentHistoryItem",
    "PaymentRead",
    "PaymentStatusEntryRead",
    "PaymentVerify",
    "StatusUpdate",
    "VerificationRead",
    "WebhookAck",
    "UserCreate",
    "UserRead",
    "UserUpdate",
]
