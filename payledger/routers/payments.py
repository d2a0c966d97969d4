"""Payment order endpoints."""
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from payledger.db import get_db
from payledger.dependencies import get_ledger_service
from payledger.models.api_key import ApiScope
from payledger.schemas.payment import (
    PaymentCreate,
    PaymentCreateRead,
    PaymentHistoryItem,
    PaymentRead,
    PaymentVerify,
    StatusUpdate,
    VerificationRead,
)
from payledger.security import Principal, ensure_self_or_staff, require_api_key, require_scope
from payledger.services.ledger import (
    DEFAULT_HISTORY_COUNT,
    MAX_HISTORY_COUNT,
    PaymentLedgerService,
    project_payment,
)
from payledger.utils.audit import actor_from_principal
from payledger.utils.errors import error_response, raise_for_error

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/create", response_model=PaymentCreateRead, status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: PaymentCreate,
    response: Response,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_scope({ApiScope.user, ApiScope.support})),
    ledger: PaymentLedgerService = Depends(get_ledger_service),
) -> PaymentCreateRead:
    """Open a payment order; replays with the same key answer 200 with the stored order."""

    user_id = principal.user_id
    if principal.is_staff and payload.user_id is not None:
        user_id = payload.user_id

    result = ledger.create_payment(
        db,
        amount=payload.amount,
        user_id=user_id,
        provider_id=payload.provider_id,
        service_type=payload.service_type,
        currency=payload.currency,
        description=payload.description,
        idempotency_key=payload.idempotency_key or idempotency_key,
    )
    if not result.ok:
        raise_for_error(result.error)

    created = result.value
    if created.is_duplicate:
        response.status_code = status.HTTP_200_OK
    return PaymentCreateRead(**asdict(created), message=created.message)


@router.post("/verify", response_model=VerificationRead)
def verify_payment(
    payload: PaymentVerify,
    db: Session = Depends(get_db),
    ledger: PaymentLedgerService = Depends(get_ledger_service),
) -> VerificationRead:
    """Confirm a checkout callback using the gateway signature."""

    result = ledger.confirm_payment(
        db,
        reference_id=payload.reference_id,
        order_id=payload.order_id,
        payment_id=payload.payment_id,
        signature=payload.signature,
    )
    if not result.ok:
        raise_for_error(result.error)
    return VerificationRead(**asdict(result.value))


@router.get("/status/{reference_id}", response_model=PaymentRead)
def get_payment_status(
    reference_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    ledger: PaymentLedgerService = Depends(get_ledger_service),
) -> dict:
    result = ledger.get_payment_status(db, reference_id)
    if not result.ok:
        raise_for_error(result.error)
    projection = result.value
    if not principal.is_staff and projection["user_id"] != principal.user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("PAYMENT_NOT_FOUND", "Payment not found."),
        )
    return projection


@router.get("/history/{user_id}", response_model=list[PaymentHistoryItem])
def get_payment_history(
    user_id: int,
    count: int = Query(default=DEFAULT_HISTORY_COUNT, ge=1, le=MAX_HISTORY_COUNT),
    skip: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_api_key),
    ledger: PaymentLedgerService = Depends(get_ledger_service),
) -> list[dict]:
    ensure_self_or_staff(principal, user_id)
    result = ledger.get_payment_history(db, user_id, count=count, skip=skip)
    if not result.ok:
        raise_for_error(result.error)
    return result.value


@router.post("/{reference_id}/status", response_model=PaymentRead)
def update_payment_status(
    reference_id: str,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_scope({ApiScope.support})),
    ledger: PaymentLedgerService = Depends(get_ledger_service),
) -> dict:
    """Manual status correction by support staff."""

    result = ledger.update_payment_status(
        db,
        reference_id,
        payload.status,
        method=payload.payment_method,
        payment_id=payload.payment_id,
        source="manual",
        actor=actor_from_principal(principal),
    )
    if not result.ok:
        raise_for_error(result.error)
    return project_payment(result.value)
