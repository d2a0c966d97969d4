"""Routes for gateway webhook handling."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from payledger.db import get_db
from payledger.dependencies import get_ledger_service
from payledger.schemas.payment import WebhookAck
from payledger.services import webhooks
from payledger.services.ledger import PaymentLedgerService
from payledger.utils.errors import error_response, raise_for_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["webhooks"])


@router.post("/webhook/razorpay", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def razorpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    ledger: PaymentLedgerService = Depends(get_ledger_service),
) -> WebhookAck:
    raw_body = await request.body()
    webhooks.verify_webhook_signature(raw_body, request.headers)

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Webhook body is not valid JSON."),
        )

    result = ledger.update_payment_from_webhook(
        db, payload, event_id=request.headers.get(webhooks.EVENT_ID_HEADER)
    )
    if not result.ok:
        raise_for_error(result.error)

    outcome = result.value
    logger.info(
        "Gateway webhook processed",
        extra={
            "event_id": outcome.event_id,
            "event_type": payload.get("event"),
            "outcome": outcome.status.value,
        },
    )
    return WebhookAck(
        event_id=outcome.event_id,
        outcome=outcome.status.value,
        reference_id=outcome.reference_id,
        status=outcome.payment_status,
    )


__all__ = ["router"]
