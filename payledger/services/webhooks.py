"""Gateway webhook signature checks."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Mapping

from fastapi import HTTPException, status

from payledger.config import get_settings
from payledger.utils.errors import error_response

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"
EVENT_ID_HEADER = "X-Razorpay-Event-Id"


def _current_secrets() -> tuple[str | None, str | None]:
    settings = get_settings()
    return settings.razorpay_webhook_secret, settings.razorpay_webhook_secret_next


def _masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue

        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def compute_webhook_signature(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of the raw request body, hex encoded."""

    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, headers: Mapping[str, str]) -> None:
    """Validate the gateway signature against the primary or rotated secret.

    Raises ``HTTPException`` (503 when no secret is configured, 400 when the
    signature is missing or does not match).
    """

    primary_secret, secondary_secret = _current_secrets()
    secrets = [s for s in (primary_secret, secondary_secret) if s]
    secrets_info = {"primary": primary_secret, "secondary": secondary_secret}
    if not secrets:
        logger.error(
            "Webhook secrets are not configured",
            extra={"webhook_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(
                "WEBHOOK_SECRET_NOT_CONFIGURED",
                "Webhook secret is not configured.",
            ),
        )

    provided_sig = get_header(headers, SIGNATURE_HEADER)
    if not provided_sig:
        logger.warning(
            "Missing webhook signature",
            extra={"webhook_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_SIGNATURE_MISSING", "Signature header missing."),
        )

    for secret in secrets:
        expected = compute_webhook_signature(secret, raw_body)
        if hmac.compare_digest(expected.encode(), provided_sig.strip().encode()):
            return

    logger.warning(
        "Webhook signature mismatch",
        extra={"webhook_secret_status": _masked_secret_status(secrets_info)},
    )
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=error_response("WEBHOOK_SIGNATURE_INVALID", "Invalid webhook signature."),
    )


__all__ = [
    "EVENT_ID_HEADER",
    "SIGNATURE_HEADER",
    "compute_webhook_signature",
    "get_header",
    "verify_webhook_signature",
]
