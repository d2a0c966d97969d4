"""Payment status state machine and gateway status mapping."""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from payledger.models.payment import PaymentMethod, PaymentStatus, RefundStatus

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PENDING, PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.REFUNDED}
    ),
    # The gateway may capture a later attempt on an order whose first attempt failed.
    PaymentStatus.FAILED: frozenset({PaymentStatus.FAILED, PaymentStatus.SUCCESS}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.SUCCESS, PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
}

REMOTE_STATUS_MAP: dict[str, tuple[PaymentStatus, RefundStatus | None]] = {
    "captured": (PaymentStatus.SUCCESS, None),
    "failed": (PaymentStatus.FAILED, None),
    "refunded": (PaymentStatus.REFUNDED, RefundStatus.COMPLETED),
}

# Higher wins when an order carries several payment attempts.
_REMOTE_STATUS_RANK = {"refunded": 3, "captured": 2, "failed": 1}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def map_remote_status(remote_status: Any) -> tuple[PaymentStatus, RefundStatus | None]:
    """Translate a gateway payment status; unknown values stay pending."""

    if not isinstance(remote_status, str):
        return PaymentStatus.PENDING, None
    return REMOTE_STATUS_MAP.get(remote_status.lower(), (PaymentStatus.PENDING, None))


def coerce_status(value: Any) -> PaymentStatus | None:
    if isinstance(value, PaymentStatus):
        return value
    if isinstance(value, str):
        try:
            return PaymentStatus(value.strip().lower())
        except ValueError:
            return None
    return None


def coerce_method(value: Any) -> PaymentMethod | None:
    """Return the known payment method for ``value``; ``None`` for anything else."""

    if isinstance(value, PaymentMethod):
        return None if value is PaymentMethod.UNSET else value
    if not isinstance(value, str):
        return None
    try:
        method = PaymentMethod(value.strip().lower())
    except ValueError:
        return None
    return None if method is PaymentMethod.UNSET else method


def pick_settling_payment(payments: Iterable[Mapping[str, Any]]) -> Mapping[str, Any] | None:
    """Return the most advanced payment attempt reported for an order."""

    best: Mapping[str, Any] | None = None
    best_rank = 0
    for payment in payments:
        rank = _REMOTE_STATUS_RANK.get(str(payment.get("status") or "").lower(), 0)
        if rank > best_rank:
            best, best_rank = payment, rank
    return best


__all__ = [
    "ALLOWED_TRANSITIONS",
    "REMOTE_STATUS_MAP",
    "can_transition",
    "coerce_method",
    "coerce_status",
    "map_remote_status",
    "pick_settling_payment",
]
