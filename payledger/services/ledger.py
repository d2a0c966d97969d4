"""Payment ledger: order creation, verification, status tracking and reconciliation."""
from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payledger.config import Settings
from payledger.models.audit import AuditLog
from payledger.models.payment import (
    PaymentMethod,
    PaymentOrder,
    PaymentStatus,
    PaymentStatusEntry,
    RefundStatus,
    ServiceType,
)
from payledger.models.user import User
from payledger.services.cache import CacheService, WebhookClaim
from payledger.services.gateway import GatewayClient, GatewayError, to_minor_units
from payledger.services.idempotency import get_existing_by_key, insert_or_get_existing
from payledger.services.results import ErrorKind, Result
from payledger.services.status import (
    can_transition,
    coerce_method,
    coerce_status,
    map_remote_status,
    pick_settling_payment,
)
from payledger.utils.audit import log_audit
from payledger.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_COUNT = 10
MAX_HISTORY_COUNT = 100
MAX_IDEMPOTENCY_KEY_LENGTH = 128
GATEWAY_ORDER_PAGE_SIZE = 100
GATEWAY_ORDER_MAX_PAGES = 50
# Numeric(18, 2) leaves sixteen integer digits.
MAX_PAYMENT_AMOUNT = Decimal("9999999999999999.99")
ORPHANED_ORDER_ACTION = "ORPHANED_GATEWAY_ORDER"


def generate_reference_id() -> str:
    """Return an unpredictable public handle for a payment order."""

    return f"PAY_{secrets.token_hex(10).upper()}"


def generate_idempotency_key(user_id: int) -> str:
    return f"idem_{user_id}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _parse_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


@dataclass(frozen=True)
class PaymentCreated:
    reference_id: str
    order_id: str | None
    amount: Decimal
    currency: str
    status: PaymentStatus
    key_id: str | None
    idempotency_key: str | None
    is_duplicate: bool = False

    @property
    def message(self) -> str:
        if self.is_duplicate:
            return "Payment order already exists for this idempotency key"
        return "Payment order created successfully"


@dataclass(frozen=True)
class VerificationOutcome:
    verified: bool
    reference_id: str
    status: PaymentStatus
    payment_method: PaymentMethod


class WebhookOutcomeStatus(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ORDER_NOT_FOUND = "order_not_found"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookOutcome:
    status: WebhookOutcomeStatus
    event_id: str
    reference_id: str | None = None
    payment_status: PaymentStatus | None = None


@dataclass
class ReconciliationReport:
    """Summary of one reconciliation sweep."""

    checked: int = 0
    updated: list[str] = field(default_factory=list)
    reattached: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    errors: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def project_payment(order: PaymentOrder) -> dict[str, Any]:
    """Public view of a payment order (no signature, key or locking counter)."""

    return {
        "reference_id": order.reference_id,
        "order_id": order.order_id,
        "user_id": order.user_id,
        "provider_id": order.provider_id,
        "amount": order.amount,
        "currency": order.currency,
        "status": order.status,
        "payment_gateway": order.payment_gateway,
        "payment_method": order.payment_method,
        "payment_id": order.payment_id,
        "refund_status": order.refund_status,
        "service_type": order.service_type,
        "notes": order.notes,
        "history": [
            {"status": entry.status, "recorded_at": ensure_utc(entry.recorded_at)}
            for entry in order.history
        ],
        "created_at": ensure_utc(order.created_at),
        "updated_at": ensure_utc(order.updated_at),
    }


def project_history_item(order: PaymentOrder) -> dict[str, Any]:
    """JSON-safe summary of an order, as stored in the history cache."""

    return {
        "reference_id": order.reference_id,
        "order_id": order.order_id,
        "provider_id": order.provider_id,
        "amount": str(order.amount),
        "currency": order.currency,
        "status": order.status.value,
        "payment_method": order.payment_method.value,
        "refund_status": order.refund_status.value,
        "service_type": order.service_type.value,
        "created_at": ensure_utc(order.created_at).isoformat(),
        "history": [
            {"status": entry.status.value, "recorded_at": ensure_utc(entry.recorded_at).isoformat()}
            for entry in order.history
        ],
    }


class PaymentLedgerService:
    """Coordinates the payment store, the gateway and the cache.

    Every operation returns a :class:`~payledger.services.results.Result`;
    callers decide how to surface failures.
    """

    def __init__(self, *, cache: CacheService, gateway: GatewayClient, settings: Settings) -> None:
        self.cache = cache
        self.gateway = gateway
        self.settings = settings

    # ------------------------------------------------------------------
    # Lookups and the shared update routine
    # ------------------------------------------------------------------
    @staticmethod
    def _get_by_reference(db: Session, reference_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.reference_id == reference_id)
        return db.scalars(stmt).first()

    @staticmethod
    def _get_by_order_id(db: Session, order_id: str) -> PaymentOrder | None:
        stmt = select(PaymentOrder).where(PaymentOrder.order_id == order_id)
        return db.scalars(stmt).first()

    @staticmethod
    def _append_history(order: PaymentOrder, status: PaymentStatus, source: str) -> None:
        recorded_at = utcnow()
        if order.history:
            last_recorded = ensure_utc(order.history[-1].recorded_at)
            if recorded_at < last_recorded:
                recorded_at = last_recorded
        order.history.append(PaymentStatusEntry(status=status, source=source, recorded_at=recorded_at))

    def _apply_update(
        self,
        db: Session,
        order: PaymentOrder,
        target: PaymentStatus,
        *,
        source: str,
        actor: str,
        method: Any = None,
        payment_id: str | None = None,
        signature: str | None = None,
        refund_status: RefundStatus | None = None,
        invalidate_cache: bool = True,
    ) -> Result[PaymentOrder]:
        previous = order.status
        reference_id = order.reference_id
        user_id = order.user_id
        if not can_transition(previous, target):
            return Result.failure(
                ErrorKind.CONFLICT,
                "INVALID_STATUS_TRANSITION",
                f"Cannot move payment from {previous.value} to {target.value}.",
                {"from": previous.value, "to": target.value},
            )

        order.status = target
        if payment_id:
            order.payment_id = payment_id
        if signature:
            order.signature = signature
        resolved_method = coerce_method(method)
        if resolved_method is not None:
            order.payment_method = resolved_method
        elif method:
            logger.warning(
                "Ignoring unknown payment method",
                extra={"reference_id": reference_id, "payment_method": str(method)},
            )
        if refund_status is not None:
            order.refund_status = refund_status
        self._append_history(order, target, source)
        log_audit(
            db,
            actor=actor,
            action="PAYMENT_STATUS_UPDATED",
            entity="PaymentOrder",
            entity_id=order.id,
            data={
                "reference_id": reference_id,
                "from": previous.value,
                "to": target.value,
                "source": source,
                "payment_id": payment_id,
            },
        )
        try:
            db.commit()
        except SQLAlchemyError as exc:
            # StaleDataError lands here when another writer bumped version_id first.
            db.rollback()
            logger.error(
                "Failed to persist payment status",
                extra={"reference_id": reference_id, "target_status": target.value, "error": str(exc)},
            )
            return Result.failure(
                ErrorKind.PERSISTENCE,
                "PAYMENT_UPDATE_FAILED",
                "Could not persist payment status.",
                {"reference_id": reference_id},
            )

        logger.info(
            "Payment status updated",
            extra={
                "reference_id": reference_id,
                "from_status": previous.value,
                "to_status": target.value,
                "source": source,
            },
        )
        if invalidate_cache:
            self.cache.invalidate_payment_history(user_id)
        return Result.success(order)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def _validate_create(
        self,
        *,
        amount: Any,
        user_id: int | None,
        provider_id: str | None,
        service_type: Any,
        currency: str | None,
        idempotency_key: str | None,
    ) -> Result[tuple[Decimal, str, ServiceType]]:
        if user_id is None:
            return Result.failure(ErrorKind.VALIDATION, "USER_ID_REQUIRED", "user_id is required.")
        if not provider_id or not str(provider_id).strip():
            return Result.failure(ErrorKind.VALIDATION, "PROVIDER_ID_REQUIRED", "provider_id is required.")

        parsed = _parse_amount(amount)
        if parsed is None:
            return Result.failure(ErrorKind.VALIDATION, "INVALID_AMOUNT", "Amount must be a number.")
        if parsed <= 0:
            return Result.failure(ErrorKind.VALIDATION, "INVALID_AMOUNT", "Amount must be positive.")
        if parsed > MAX_PAYMENT_AMOUNT:
            return Result.failure(
                ErrorKind.VALIDATION,
                "INVALID_AMOUNT",
                "Amount is too large.",
                {"max": str(MAX_PAYMENT_AMOUNT)},
            )
        if parsed.normalize().as_tuple().exponent < -2:
            return Result.failure(
                ErrorKind.VALIDATION, "INVALID_AMOUNT", "Amount supports at most two decimal places."
            )

        supported = self.settings.SUPPORTED_CURRENCY.upper()
        normalized_currency = (currency or supported).strip().upper()
        if normalized_currency != supported:
            return Result.failure(
                ErrorKind.VALIDATION,
                "CURRENCY_NOT_SUPPORTED",
                f"Only {supported} payments are supported.",
                {"currency": normalized_currency},
            )

        if service_type is None:
            return Result.failure(ErrorKind.VALIDATION, "SERVICE_TYPE_REQUIRED", "service_type is required.")
        try:
            normalized_service = ServiceType(service_type)
        except ValueError:
            return Result.failure(
                ErrorKind.VALIDATION,
                "INVALID_SERVICE_TYPE",
                "Unsupported service type.",
                {"allowed": [item.value for item in ServiceType]},
            )

        if idempotency_key is not None and len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            return Result.failure(
                ErrorKind.VALIDATION, "IDEMPOTENCY_KEY_TOO_LONG", "Idempotency key is too long."
            )

        return Result.success((parsed.quantize(Decimal("0.01")), normalized_currency, normalized_service))

    def _created(self, order: PaymentOrder, *, is_duplicate: bool) -> PaymentCreated:
        return PaymentCreated(
            reference_id=order.reference_id,
            order_id=order.order_id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            key_id=self.gateway.key_id,
            idempotency_key=order.idempotency_key,
            is_duplicate=is_duplicate,
        )

    def create_payment(
        self,
        db: Session,
        *,
        amount: Any,
        user_id: int,
        provider_id: str,
        service_type: Any = ServiceType.CONSULTATION,
        currency: str | None = None,
        description: str | None = None,
        idempotency_key: str | None = None,
    ) -> Result[PaymentCreated]:
        """Reserve a pending order, then open the matching gateway order.

        Replays with a known ``(user_id, idempotency_key)`` return the stored
        order flagged as duplicate without calling the gateway.
        """

        checked = self._validate_create(
            amount=amount,
            user_id=user_id,
            provider_id=provider_id,
            service_type=service_type,
            currency=currency,
            idempotency_key=idempotency_key,
        )
        if not checked.ok:
            return Result.from_error(checked.error)
        normalized_amount, normalized_currency, normalized_service = checked.value

        def _existing() -> PaymentOrder | None:
            return get_existing_by_key(db, PaymentOrder, idempotency_key, scope={"user_id": user_id})

        try:
            if idempotency_key:
                existing = _existing()
                if existing is not None:
                    logger.info(
                        "Idempotent payment replay",
                        extra={"reference_id": existing.reference_id, "user_id": user_id},
                    )
                    return Result.success(self._created(existing, is_duplicate=True))
            else:
                idempotency_key = generate_idempotency_key(user_id)

            if db.get(User, user_id) is None:
                return Result.failure(ErrorKind.NOT_FOUND, "USER_NOT_FOUND", "User not found.")

            reference_id = generate_reference_id()
            order = PaymentOrder(
                user_id=user_id,
                provider_id=str(provider_id).strip(),
                amount=normalized_amount,
                currency=normalized_currency,
                status=PaymentStatus.PENDING,
                payment_method=PaymentMethod.UNSET,
                reference_id=reference_id,
                service_type=normalized_service,
                notes=description or None,
                idempotency_key=idempotency_key,
                refund_status=RefundStatus.NOT_REQUESTED,
            )
            self._append_history(order, PaymentStatus.PENDING, "create")
            stored, created = insert_or_get_existing(db, order, _existing)
            if created:
                db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to reserve payment order", extra={"user_id": user_id, "error": str(exc)})
            return Result.failure(
                ErrorKind.PERSISTENCE, "PAYMENT_PERSIST_FAILED", "Could not store payment order."
            )

        if stored is None:
            logger.error("Reservation rejected without a matching order", extra={"user_id": user_id})
            return Result.failure(
                ErrorKind.PERSISTENCE, "PAYMENT_PERSIST_FAILED", "Could not store payment order."
            )
        if not created:
            logger.info(
                "Concurrent payment create resolved to existing order",
                extra={"reference_id": stored.reference_id, "user_id": user_id},
            )
            return Result.success(self._created(stored, is_duplicate=True))

        self.cache.invalidate_payment_history(user_id)

        notes = {
            "reference_id": reference_id,
            "idempotency_key": idempotency_key,
            "user_id": user_id,
            "provider_id": order.provider_id,
            "service_type": normalized_service.value,
            "description": description,
        }
        try:
            remote = self.gateway.create_order(
                to_minor_units(normalized_amount), normalized_currency, reference_id, notes
            )
        except GatewayError as exc:
            logger.error(
                "Gateway order creation failed",
                extra={"reference_id": reference_id, "error_code": exc.code},
            )
            marked = self._apply_update(
                db, order, PaymentStatus.FAILED, source="gateway_error", actor="system"
            )
            if not marked.ok:
                logger.error("Could not mark reservation as failed", extra={"reference_id": reference_id})
            return Result.failure(
                ErrorKind.UPSTREAM,
                exc.code,
                "Payment gateway could not create the order.",
                {"reference_id": reference_id},
            )

        remote_order_id = str(remote["id"])
        order.order_id = remote_order_id
        log_audit(
            db,
            actor=f"user:{user_id}",
            action="PAYMENT_ORDER_CREATED",
            entity="PaymentOrder",
            entity_id=order.id,
            data={
                "reference_id": reference_id,
                "order_id": remote_order_id,
                "amount": str(normalized_amount),
                "currency": normalized_currency,
            },
        )
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Gateway order not recorded; the reconciliation sweep will re-attach it",
                extra={"reference_id": reference_id, "order_id": remote_order_id, "error": str(exc)},
            )
            return Result.failure(
                ErrorKind.PERSISTENCE,
                "PAYMENT_PERSIST_FAILED",
                "Could not store gateway order.",
                {"reference_id": reference_id},
            )

        self.cache.invalidate_payment_history(user_id)
        logger.info(
            "Payment order created",
            extra={"reference_id": reference_id, "order_id": remote_order_id, "user_id": user_id},
        )
        return Result.success(self._created(order, is_duplicate=False))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def verify_payment_signature(
        self, order_id: str | None, payment_id: str | None, signature: str | None
    ) -> Result[bool]:
        """Check the checkout signature ``HMAC_SHA256(order_id|payment_id)``."""

        if not order_id or not payment_id or not signature:
            return Result.failure(
                ErrorKind.VALIDATION,
                "SIGNATURE_FIELDS_REQUIRED",
                "order_id, payment_id and signature are required.",
            )
        secret = self.settings.razorpay_key_secret
        if not secret:
            logger.error("Payment signature check requested without a key secret")
            return Result.failure(
                ErrorKind.UPSTREAM, "GATEWAY_NOT_CONFIGURED", "Gateway key secret is not configured."
            )

        expected = hmac.new(
            secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
        ).hexdigest()
        valid = hmac.compare_digest(expected.encode(), signature.encode())
        if not valid:
            logger.warning(
                "Payment signature mismatch", extra={"order_id": order_id, "payment_id": payment_id}
            )
        return Result.success(valid)

    def confirm_payment(
        self,
        db: Session,
        *,
        reference_id: str | None,
        order_id: str | None,
        payment_id: str | None,
        signature: str | None,
    ) -> Result[VerificationOutcome]:
        """Settle a payment from the checkout callback fields."""

        if not reference_id:
            return Result.failure(ErrorKind.VALIDATION, "REFERENCE_ID_REQUIRED", "reference_id is required.")
        verified = self.verify_payment_signature(order_id, payment_id, signature)
        if not verified.ok:
            return Result.from_error(verified.error)

        try:
            order = self._get_by_reference(db, reference_id)
        except SQLAlchemyError as exc:
            logger.error("Payment lookup failed", extra={"reference_id": reference_id, "error": str(exc)})
            return Result.failure(ErrorKind.PERSISTENCE, "PAYMENT_LOOKUP_FAILED", "Could not load payment.")
        if order is None:
            return Result.failure(ErrorKind.NOT_FOUND, "PAYMENT_NOT_FOUND", "Payment not found.")
        if order.order_id != order_id:
            logger.warning(
                "Verification order id does not match payment",
                extra={"reference_id": reference_id, "order_id": order_id},
            )
            return Result.failure(
                ErrorKind.VALIDATION, "ORDER_MISMATCH", "order_id does not belong to this payment."
            )

        is_valid = bool(verified.value)
        target = PaymentStatus.SUCCESS if is_valid else PaymentStatus.FAILED
        if not can_transition(order.status, target):
            logger.warning(
                "Verification leaves settled payment unchanged",
                extra={"reference_id": reference_id, "current_status": order.status.value},
            )
            return Result.success(
                VerificationOutcome(is_valid, reference_id, order.status, order.payment_method)
            )

        method = None
        if is_valid:
            try:
                method = (self.gateway.fetch_payment(payment_id) or {}).get("method")
            except GatewayError as exc:
                logger.warning(
                    "Could not fetch payment method",
                    extra={"reference_id": reference_id, "error_code": exc.code},
                )

        updated = self._apply_update(
            db,
            order,
            target,
            source="verify",
            actor=f"user:{order.user_id}",
            method=method,
            payment_id=payment_id if is_valid else None,
            signature=signature if is_valid else None,
        )
        if not updated.ok:
            return Result.from_error(updated.error)
        return Result.success(VerificationOutcome(is_valid, reference_id, order.status, order.payment_method))

    # ------------------------------------------------------------------
    # Status reads and manual updates
    # ------------------------------------------------------------------
    def update_payment_status(
        self,
        db: Session,
        reference_id: str | None,
        status: Any,
        *,
        method: Any = None,
        payment_id: str | None = None,
        signature: str | None = None,
        source: str = "manual",
        actor: str = "system",
    ) -> Result[PaymentOrder]:
        if not reference_id:
            return Result.failure(ErrorKind.VALIDATION, "REFERENCE_ID_REQUIRED", "reference_id is required.")
        target = coerce_status(status)
        if target is None:
            return Result.failure(
                ErrorKind.VALIDATION,
                "INVALID_STATUS",
                "Unknown payment status.",
                {"allowed": [item.value for item in PaymentStatus]},
            )
        try:
            order = self._get_by_reference(db, reference_id)
        except SQLAlchemyError as exc:
            logger.error("Payment lookup failed", extra={"reference_id": reference_id, "error": str(exc)})
            return Result.failure(ErrorKind.PERSISTENCE, "PAYMENT_LOOKUP_FAILED", "Could not load payment.")
        if order is None:
            return Result.failure(ErrorKind.NOT_FOUND, "PAYMENT_NOT_FOUND", "Payment not found.")

        return self._apply_update(
            db,
            order,
            target,
            source=source,
            actor=actor,
            method=method,
            payment_id=payment_id,
            signature=signature,
            refund_status=RefundStatus.COMPLETED if target is PaymentStatus.REFUNDED else None,
        )

    def get_payment_status(self, db: Session, reference_id: str | None) -> Result[dict[str, Any]]:
        if not reference_id:
            return Result.failure(ErrorKind.VALIDATION, "REFERENCE_ID_REQUIRED", "reference_id is required.")
        try:
            order = self._get_by_reference(db, reference_id)
        except SQLAlchemyError as exc:
            logger.error("Payment lookup failed", extra={"reference_id": reference_id, "error": str(exc)})
            return Result.failure(ErrorKind.PERSISTENCE, "PAYMENT_LOOKUP_FAILED", "Could not load payment.")
        if order is None:
            return Result.failure(ErrorKind.NOT_FOUND, "PAYMENT_NOT_FOUND", "Payment not found.")
        return Result.success(project_payment(order))

    def get_payment_history(
        self,
        db: Session,
        user_id: int | None,
        count: int = DEFAULT_HISTORY_COUNT,
        skip: int = 0,
    ) -> Result[list[dict[str, Any]]]:
        """Newest-first payment summaries for ``user_id``, served from cache when possible."""

        if user_id is None:
            return Result.failure(ErrorKind.VALIDATION, "USER_ID_REQUIRED", "user_id is required.")
        if count < 1 or count > MAX_HISTORY_COUNT or skip < 0:
            return Result.failure(
                ErrorKind.VALIDATION,
                "INVALID_PAGINATION",
                f"count must be between 1 and {MAX_HISTORY_COUNT} and skip must not be negative.",
            )

        cached = self.cache.get_payment_history(user_id)
        if cached is not None:
            logger.debug("Payment history cache hit", extra={"user_id": user_id})
            return Result.success(cached[skip : skip + count])

        # Captured before the query so a concurrent invalidation voids this write.
        generation = self.cache.payment_history_generation(user_id)
        try:
            orders = db.scalars(
                select(PaymentOrder)
                .where(PaymentOrder.user_id == user_id)
                .order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc())
            ).all()
        except SQLAlchemyError as exc:
            logger.error("Payment history query failed", extra={"user_id": user_id, "error": str(exc)})
            return Result.failure(
                ErrorKind.PERSISTENCE, "PAYMENT_HISTORY_FAILED", "Could not load payment history."
            )

        items = [project_history_item(order) for order in orders]
        if generation is not None:
            self.cache.set_payment_history(user_id, items, generation)
        return Result.success(items[skip : skip + count])

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def update_payment_from_webhook(
        self,
        db: Session,
        event_payload: Any,
        *,
        event_id: str | None = None,
    ) -> Result[WebhookOutcome]:
        """Apply a verified gateway event at most once."""

        if not isinstance(event_payload, Mapping) or not isinstance(event_payload.get("payload"), Mapping):
            return Result.failure(ErrorKind.VALIDATION, "WEBHOOK_PAYLOAD_INVALID", "Invalid webhook payload.")
        payment_section = event_payload["payload"].get("payment")
        entity = payment_section.get("entity") if isinstance(payment_section, Mapping) else None
        if not isinstance(entity, Mapping):
            return Result.failure(
                ErrorKind.VALIDATION, "PAYMENT_ENTITY_MISSING", "Payment entity missing in webhook payload."
            )
        resolved_event_id = event_payload.get("id") or event_id
        if not resolved_event_id:
            return Result.failure(ErrorKind.VALIDATION, "MISSING_EVENT_ID", "Webhook event id is required.")
        resolved_event_id = str(resolved_event_id)
        remote_order_id = entity.get("order_id")
        if not remote_order_id:
            return Result.failure(
                ErrorKind.VALIDATION, "ORDER_ID_MISSING", "order_id missing in webhook payment entity."
            )

        claim = self.cache.claim_webhook_event(resolved_event_id)
        if claim is WebhookClaim.DUPLICATE:
            return Result.success(WebhookOutcome(WebhookOutcomeStatus.DUPLICATE, resolved_event_id))
        if claim is WebhookClaim.UNAVAILABLE:
            logger.warning(
                "Dedup cache unavailable; applying webhook without claim",
                extra={"event_id": resolved_event_id},
            )

        target, refund_status = map_remote_status(entity.get("status"))
        try:
            order = self._get_by_order_id(db, str(remote_order_id))
        except SQLAlchemyError as exc:
            self.cache.release_webhook_event(resolved_event_id)
            logger.error(
                "Webhook payment lookup failed",
                extra={"event_id": resolved_event_id, "order_id": remote_order_id, "error": str(exc)},
            )
            return Result.failure(ErrorKind.PERSISTENCE, "PAYMENT_LOOKUP_FAILED", "Could not load payment.")

        if order is None:
            logger.error(
                "Webhook references unknown order",
                extra={"event_id": resolved_event_id, "order_id": remote_order_id},
            )
            self.cache.mark_webhook_event_processed(resolved_event_id)
            return Result.success(WebhookOutcome(WebhookOutcomeStatus.ORDER_NOT_FOUND, resolved_event_id))

        if not can_transition(order.status, target):
            logger.warning(
                "Ignoring regressive webhook transition",
                extra={
                    "event_id": resolved_event_id,
                    "reference_id": order.reference_id,
                    "current_status": order.status.value,
                    "remote_status": entity.get("status"),
                },
            )
            self.cache.mark_webhook_event_processed(resolved_event_id)
            return Result.success(
                WebhookOutcome(
                    WebhookOutcomeStatus.IGNORED, resolved_event_id, order.reference_id, order.status
                )
            )

        updated = self._apply_update(
            db,
            order,
            target,
            source="webhook",
            actor="gateway",
            method=entity.get("method"),
            payment_id=entity.get("id"),
            refund_status=refund_status,
            invalidate_cache=False,
        )
        if not updated.ok:
            self.cache.release_webhook_event(resolved_event_id)
            return Result.from_error(updated.error)

        self.cache.mark_webhook_event_processed(resolved_event_id)
        self.cache.invalidate_payment_history(order.user_id)
        logger.info(
            "Webhook applied",
            extra={
                "event_id": resolved_event_id,
                "reference_id": order.reference_id,
                "payment_status": order.status.value,
            },
        )
        return Result.success(
            WebhookOutcome(WebhookOutcomeStatus.APPLIED, resolved_event_id, order.reference_id, order.status)
        )

    # ------------------------------------------------------------------
    # Reconciliation sweep
    # ------------------------------------------------------------------
    def reconcile_pending_payments(
        self,
        db: Session,
        *,
        min_age_minutes: int | None = None,
        batch_size: int | None = None,
        lookback_hours: int | None = None,
    ) -> Result[ReconciliationReport]:
        """Bring stale pending orders in line with the gateway.

        Runs three passes: re-attach gateway orders whose id never reached the
        store, fail reservations that never got a gateway order, then settle
        pending orders from their gateway payments.
        """

        min_age = self.settings.RECONCILIATION_MIN_AGE_MINUTES if min_age_minutes is None else min_age_minutes
        limit = batch_size or self.settings.RECONCILIATION_BATCH_SIZE
        lookback = lookback_hours or self.settings.RECONCILIATION_LOOKBACK_HOURS
        report = ReconciliationReport()
        now = utcnow()
        cutoff = now - timedelta(minutes=min_age)

        try:
            listed = self._reattach_gateway_orders(
                db, report, now=now, cutoff=cutoff, lookback_hours=lookback
            )
            if listed:
                self._expire_unattached_reservations(db, report, cutoff=cutoff, limit=limit)
            pending = db.scalars(
                select(PaymentOrder)
                .where(
                    PaymentOrder.status == PaymentStatus.PENDING,
                    PaymentOrder.order_id.is_not(None),
                    PaymentOrder.created_at <= cutoff,
                )
                .order_by(PaymentOrder.created_at)
                .limit(limit)
            ).all()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Reconciliation query failed", extra={"error": str(exc)})
            return Result.failure(
                ErrorKind.PERSISTENCE, "RECONCILIATION_FAILED", "Could not load payments to reconcile."
            )

        for order in pending:
            report.checked += 1
            try:
                payments = self.gateway.fetch_order_payments(order.order_id)
            except GatewayError as exc:
                report.errors += 1
                logger.warning(
                    "Skipping reconciliation for order",
                    extra={"reference_id": order.reference_id, "error_code": exc.code},
                )
                continue

            settling = pick_settling_payment(payments)
            if settling is None:
                continue
            target, refund_status = map_remote_status(settling.get("status"))
            if target is order.status or not can_transition(order.status, target):
                continue
            updated = self._apply_update(
                db,
                order,
                target,
                source="reconciliation",
                actor="reconciler",
                method=settling.get("method"),
                payment_id=settling.get("id"),
                refund_status=refund_status,
            )
            if updated.ok:
                report.updated.append(order.reference_id)
            else:
                report.errors += 1

        logger.info("Reconciliation sweep finished", extra=report.as_dict())
        return Result.success(report)

    def _expire_unattached_reservations(
        self, db: Session, report: ReconciliationReport, *, cutoff, limit: int
    ) -> None:
        stale = db.scalars(
            select(PaymentOrder)
            .where(
                PaymentOrder.status == PaymentStatus.PENDING,
                PaymentOrder.order_id.is_(None),
                PaymentOrder.created_at <= cutoff,
            )
            .order_by(PaymentOrder.created_at)
            .limit(limit)
        ).all()
        for order in stale:
            expired = self._apply_update(
                db, order, PaymentStatus.FAILED, source="reconciliation", actor="reconciler"
            )
            if not expired.ok:
                report.errors += 1
                continue
            report.expired.append(order.reference_id)
            logger.warning(
                "Reservation never reached the gateway; marked failed",
                extra={"reference_id": order.reference_id, "user_id": order.user_id},
            )

    def _list_gateway_orders(self, *, from_ts: int, to_ts: int) -> tuple[list[dict[str, Any]], bool]:
        orders: list[dict[str, Any]] = []
        for page in range(GATEWAY_ORDER_MAX_PAGES):
            batch = self.gateway.list_orders(
                from_ts=from_ts,
                to_ts=to_ts,
                count=GATEWAY_ORDER_PAGE_SIZE,
                skip=page * GATEWAY_ORDER_PAGE_SIZE,
            )
            orders.extend(batch)
            if len(batch) < GATEWAY_ORDER_PAGE_SIZE:
                return orders, True
        logger.warning(
            "Gateway order listing truncated",
            extra={"pages": GATEWAY_ORDER_MAX_PAGES, "orders": len(orders)},
        )
        return orders, False

    def _reattach_gateway_orders(
        self, db: Session, report: ReconciliationReport, *, now, cutoff, lookback_hours: int
    ) -> bool:
        """Returns ``False`` unless every gateway order up to ``now`` was listed."""

        since = now - timedelta(hours=lookback_hours)
        try:
            remote_orders, complete = self._list_gateway_orders(
                from_ts=int(since.timestamp()), to_ts=int(now.timestamp())
            )
        except GatewayError as exc:
            report.errors += 1
            logger.warning("Could not list gateway orders", extra={"error_code": exc.code})
            return False

        candidates: dict[str, dict[str, Any]] = {}
        for remote in remote_orders:
            remote_id = remote.get("id")
            if remote_id:
                candidates[str(remote_id)] = remote
        if not candidates:
            return complete

        known = set(
            db.scalars(select(PaymentOrder.order_id).where(PaymentOrder.order_id.in_(list(candidates)))).all()
        )
        already_reported = {
            (entry.data_json or {}).get("order_id")
            for entry in db.scalars(
                select(AuditLog).where(AuditLog.action == ORPHANED_ORDER_ACTION, AuditLog.at >= since)
            ).all()
        }

        for remote_id, remote in candidates.items():
            if remote_id in known:
                continue
            notes = remote.get("notes") if isinstance(remote.get("notes"), Mapping) else {}
            reference_id = notes.get("reference_id") or remote.get("receipt")
            order = self._get_by_reference(db, reference_id) if reference_id else None
            if order is not None and order.order_id is None and ensure_utc(order.created_at) <= cutoff:
                order.order_id = remote_id
                log_audit(
                    db,
                    actor="reconciler",
                    action="PAYMENT_ORDER_REATTACHED",
                    entity="PaymentOrder",
                    entity_id=order.id,
                    data={"reference_id": order.reference_id, "order_id": remote_id},
                )
                db.commit()
                self.cache.invalidate_payment_history(order.user_id)
                report.reattached.append(order.reference_id)
                logger.info(
                    "Gateway order re-attached",
                    extra={"reference_id": order.reference_id, "order_id": remote_id},
                )
                continue
            if order is not None:
                continue

            report.orphaned.append(remote_id)
            logger.warning(
                "Gateway order has no local payment",
                extra={"order_id": remote_id, "receipt": remote.get("receipt")},
            )
            if remote_id not in already_reported:
                log_audit(
                    db,
                    actor="reconciler",
                    action=ORPHANED_ORDER_ACTION,
                    entity="GatewayOrder",
                    entity_id=None,
                    data={
                        "order_id": remote_id,
                        "receipt": remote.get("receipt"),
                        "amount": remote.get("amount"),
                        "currency": remote.get("currency"),
                    },
                )
                db.commit()
        return complete


__all__ = [
    "PaymentCreated",
    "PaymentLedgerService",
    "ReconciliationReport",
    "VerificationOutcome",
    "WebhookOutcome",
    "WebhookOutcomeStatus",
    "generate_idempotency_key",
    "generate_reference_id",
    "project_history_item",
    "project_payment",
]
