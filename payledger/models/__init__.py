"""ORM models package."""
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .payment import (
    PAYMENT_GATEWAY,
    PaymentMethod,
    PaymentOrder,
    PaymentStatus,
    PaymentStatusEntry,
    RefundStatus,
    ServiceType,
)
from .scheduler_lock import SchedulerLock
from .user import User

__all__ = [
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "PAYMENT_GATEWAY",
    "PaymentMethod",
    "PaymentOrder",
    "PaymentStatus",
    "PaymentStatusEntry",
    "RefundStatus",
    "SchedulerLock",
    "ServiceType",
    "User",
]
