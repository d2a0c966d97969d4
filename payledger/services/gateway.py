"""Razorpay SDK wrapper for order and payment operations."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Protocol

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError as RazorpayGatewayError, ServerError

from payledger.config import Settings

logger = logging.getLogger(__name__)

_GATEWAY_FAILURES = (BadRequestError, RazorpayGatewayError, ServerError, requests.RequestException)


class GatewayError(Exception):
    """Raised when the payment gateway is unreachable, misconfigured or rejects a call."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR", retryable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to the smallest currency unit expected by the gateway."""

    normalized = Decimal(str(amount)).quantize(Decimal("0.01"))
    return int((normalized * 100).to_integral_value())


class GatewayClient(Protocol):
    """Operations the ledger needs from the remote gateway."""

    key_id: str | None

    def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: dict[str, Any]
    ) -> dict[str, Any]: ...

    def fetch_payment(self, payment_id: str) -> dict[str, Any]: ...

    def fetch_order_payments(self, order_id: str) -> list[dict[str, Any]]: ...

    def list_orders(
        self, *, from_ts: int, to_ts: int | None = None, count: int = 100, skip: int = 0
    ) -> list[dict[str, Any]]: ...


class RazorpayGateway:
    """Wrapper around the Razorpay Python SDK to isolate gateway concerns."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.key_id = settings.razorpay_key_id
        self._key_secret = settings.razorpay_key_secret
        self._timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self._client: razorpay.Client | None = None

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self._key_secret)

    def _ensure_client(self) -> razorpay.Client:
        if not self.configured:
            raise GatewayError(
                "Razorpay credentials are missing; configure RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET.",
                code="GATEWAY_NOT_CONFIGURED",
                retryable=False,
            )
        if self._client is None:
            self._client = razorpay.Client(auth=(self.key_id, self._key_secret))
        return self._client

    def _call(self, operation: str, func, *args: Any) -> Any:
        try:
            return func(*args, timeout=self._timeout)
        except BadRequestError as exc:
            logger.warning("Gateway rejected request", extra={"operation": operation, "error": str(exc)})
            raise GatewayError(str(exc), code="GATEWAY_REJECTED", retryable=False) from exc
        except _GATEWAY_FAILURES as exc:
            logger.error("Gateway call failed", extra={"operation": operation, "error": str(exc)})
            raise GatewayError(str(exc)) from exc

    def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: dict[str, Any]
    ) -> dict[str, Any]:
        """Create a remote order for ``amount_minor`` (paise for INR)."""

        client = self._ensure_client()
        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": {key: str(value) for key, value in notes.items() if value is not None},
        }
        order = self._call("order.create", client.order.create, payload)
        if not isinstance(order, dict) or not order.get("id"):
            raise GatewayError("Gateway returned an order without id", code="GATEWAY_INVALID_RESPONSE")
        return order

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        client = self._ensure_client()
        return self._call("payment.fetch", client.payment.fetch, payment_id)

    def fetch_order_payments(self, order_id: str) -> list[dict[str, Any]]:
        client = self._ensure_client()
        response = self._call("order.payments", client.order.payments, order_id)
        return list((response or {}).get("items") or [])

    def list_orders(
        self, *, from_ts: int, to_ts: int | None = None, count: int = 100, skip: int = 0
    ) -> list[dict[str, Any]]:
        """One page of orders created in ``[from_ts, to_ts]``, newest first."""

        client = self._ensure_client()
        params: dict[str, Any] = {"from": from_ts, "count": count, "skip": skip}
        if to_ts is not None:
            params["to"] = to_ts
        response = self._call("order.all", client.order.all, params)
        return list((response or {}).get("items") or [])


__all__ = ["GatewayClient", "GatewayError", "RazorpayGateway", "to_minor_units"]
