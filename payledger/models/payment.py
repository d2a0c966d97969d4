"""Payment order and status history models."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment order."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    """Payment instruments reported by the gateway."""

    CARD = "card"
    NETBANKING = "netbanking"
    UPI = "upi"
    WALLET = "wallet"
    EMANDATE = "emandate"
    UNSET = "unset"


class RefundStatus(str, enum.Enum):
    NOT_REQUESTED = "not_requested"
    REQUESTED = "requested"
    COMPLETED = "completed"


class ServiceType(str, enum.Enum):
    CONSULTATION = "CONSULTATION"


PAYMENT_GATEWAY = "razorpay"


class PaymentOrder(Base):
    """One payment attempt, tracked from reservation to settlement."""

    __tablename__ = "payment_orders"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_orders_positive_amount"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_payment_orders_user_idempotency_key"),
        Index("ix_payment_orders_user_created", "user_id", "created_at"),
        Index("ix_payment_orders_status", "status"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    signature: Mapped[str | None] = mapped_column(String(256), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus, native_enum=False), nullable=False, default=PaymentStatus.PENDING
    )
    payment_gateway: Mapped[str] = mapped_column(String(32), nullable=False, default=PAYMENT_GATEWAY)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SqlEnum(PaymentMethod, native_enum=False), nullable=False, default=PaymentMethod.UNSET
    )
    reference_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    service_type: Mapped[ServiceType] = mapped_column(SqlEnum(ServiceType, native_enum=False), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_status: Mapped[RefundStatus] = mapped_column(
        SqlEnum(RefundStatus, native_enum=False), nullable=False, default=RefundStatus.NOT_REQUESTED
    )
    version_id: Mapped[int] = mapped_column(nullable=False)

    history: Mapped[list["PaymentStatusEntry"]] = relationship(
        back_populates="payment_order",
        order_by="PaymentStatusEntry.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version_id}


class PaymentStatusEntry(Base):
    """Append-only status transition recorded for a payment order."""

    __tablename__ = "payment_status_history"

    payment_order_id: Mapped[int] = mapped_column(
        ForeignKey("payment_orders.id"), nullable=False, index=True
    )
    status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus, native_enum=False), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payment_order: Mapped[PaymentOrder] = relationship(back_populates="history")
