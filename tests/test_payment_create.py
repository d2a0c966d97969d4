"""Tests for payment order creation and idempotent replays."""
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

import payledger.services.idempotency as idempotency_mod
from payledger.models import AuditLog
from payledger.models.payment import PaymentMethod, PaymentOrder, PaymentStatus, RefundStatus
from payledger.services.gateway import GatewayError
from payledger.services.results import ErrorKind


def _orders_for(db_session, user_id: int) -> list[PaymentOrder]:
    return db_session.scalars(select(PaymentOrder).where(PaymentOrder.user_id == user_id)).all()


def test_create_payment_reserves_order_and_opens_gateway_order(db_session, ledger, gateway, customer):
    result = ledger.create_payment(
        db_session,
        amount="500.00",
        user_id=customer.id,
        provider_id="provider-1",
        description="Follow-up session",
        idempotency_key="checkout-1",
    )

    assert result.ok
    created = result.value
    assert created.is_duplicate is False
    assert created.status is PaymentStatus.PENDING
    assert created.reference_id.startswith("PAY_")
    assert created.order_id in gateway.orders
    assert created.key_id == gateway.key_id
    assert created.amount == Decimal("500.00")

    call = gateway.create_calls[0]
    assert call["amount"] == 50000
    assert call["currency"] == "INR"
    assert call["receipt"] == created.reference_id
    assert call["notes"]["reference_id"] == created.reference_id
    assert call["notes"]["idempotency_key"] == "checkout-1"

    order = db_session.scalars(
        select(PaymentOrder).where(PaymentOrder.reference_id == created.reference_id)
    ).one()
    assert order.payment_method is PaymentMethod.UNSET
    assert order.refund_status is RefundStatus.NOT_REQUESTED
    assert order.payment_gateway == "razorpay"
    assert order.notes == "Follow-up session"
    assert [entry.status for entry in order.history] == [PaymentStatus.PENDING]

    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "PAYMENT_ORDER_CREATED", AuditLog.entity_id == order.id)
    ).first()
    assert audit is not None
    assert audit.data_json["order_id"] == created.order_id


def test_create_payment_generates_idempotency_key_when_missing(db_session, ledger, customer):
    result = ledger.create_payment(db_session, amount=250, user_id=customer.id, provider_id="provider-1")

    assert result.ok
    assert result.value.idempotency_key.startswith(f"idem_{customer.id}_")


def test_replay_with_same_idempotency_key_returns_existing_order(db_session, ledger, gateway, customer):
    first = ledger.create_payment(
        db_session, amount="120.50", user_id=customer.id, provider_id="p-1", idempotency_key="same-key"
    )
    second = ledger.create_payment(
        db_session, amount="120.50", user_id=customer.id, provider_id="p-1", idempotency_key="same-key"
    )

    assert first.ok and second.ok
    assert second.value.is_duplicate is True
    assert second.value.reference_id == first.value.reference_id
    assert second.value.order_id == first.value.order_id
    assert "already exists" in second.value.message
    assert len(gateway.create_calls) == 1
    assert len(_orders_for(db_session, customer.id)) == 1


def test_idempotency_keys_are_scoped_per_user(db_session, ledger, make_user, customer):
    other = make_user()

    first = ledger.create_payment(
        db_session, amount="10", user_id=customer.id, provider_id="p-1", idempotency_key="shared"
    )
    second = ledger.create_payment(
        db_session, amount="10", user_id=other.id, provider_id="p-1", idempotency_key="shared"
    )

    assert second.value.is_duplicate is False
    assert second.value.reference_id != first.value.reference_id


def test_concurrent_create_resolves_to_single_order(monkeypatch, db_session, ledger, gateway, customer):
    first = ledger.create_payment(
        db_session, amount="75", user_id=customer.id, provider_id="p-1", idempotency_key="race-key"
    )
    assert first.ok

    # The second request misses the pre-check, as if it read before the first insert landed.
    real_lookup = idempotency_mod.get_existing_by_key
    calls = {"count": 0}

    def racing_lookup(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real_lookup(*args, **kwargs)

    monkeypatch.setattr("payledger.services.ledger.get_existing_by_key", racing_lookup)

    second = ledger.create_payment(
        db_session, amount="75", user_id=customer.id, provider_id="p-1", idempotency_key="race-key"
    )

    assert second.ok
    assert second.value.is_duplicate is True
    assert second.value.reference_id == first.value.reference_id
    assert len(gateway.create_calls) == 1
    assert db_session.scalar(
        select(func.count()).select_from(PaymentOrder).where(PaymentOrder.user_id == customer.id)
    ) == 1


@pytest.mark.parametrize("amount", [0, -5, "abc", "10.123", None, "NaN", "10000000000000000"])
def test_create_payment_rejects_invalid_amounts(db_session, ledger, gateway, customer, amount):
    result = ledger.create_payment(db_session, amount=amount, user_id=customer.id, provider_id="p-1")

    assert not result.ok
    assert result.error.kind is ErrorKind.VALIDATION
    assert result.error.code == "INVALID_AMOUNT"
    assert gateway.create_calls == []


def test_create_payment_rejects_unsupported_currency(db_session, ledger, customer):
    result = ledger.create_payment(
        db_session, amount="10", user_id=customer.id, provider_id="p-1", currency="usd"
    )

    assert result.error.code == "CURRENCY_NOT_SUPPORTED"
    assert result.error.details["currency"] == "USD"


def test_create_payment_rejects_unknown_service_type(db_session, ledger, customer):
    result = ledger.create_payment(
        db_session, amount="10", user_id=customer.id, provider_id="p-1", service_type="THERAPY"
    )

    assert result.error.kind is ErrorKind.VALIDATION
    assert result.error.code == "INVALID_SERVICE_TYPE"


def test_create_payment_requires_provider_and_user(db_session, ledger, customer):
    missing_provider = ledger.create_payment(db_session, amount="10", user_id=customer.id, provider_id="  ")
    missing_user = ledger.create_payment(db_session, amount="10", user_id=None, provider_id="p-1")

    assert missing_provider.error.code == "PROVIDER_ID_REQUIRED"
    assert missing_user.error.code == "USER_ID_REQUIRED"


def test_create_payment_for_unknown_user(db_session, ledger, gateway):
    result = ledger.create_payment(db_session, amount="10", user_id=987654, provider_id="p-1")

    assert result.error.kind is ErrorKind.NOT_FOUND
    assert result.error.code == "USER_NOT_FOUND"
    assert gateway.create_calls == []


def test_gateway_failure_marks_reservation_failed(db_session, ledger, gateway, customer):
    gateway.fail_with = GatewayError("connection reset", code="GATEWAY_ERROR")

    result = ledger.create_payment(
        db_session, amount="99", user_id=customer.id, provider_id="p-1", idempotency_key="flaky"
    )

    assert not result.ok
    assert result.error.kind is ErrorKind.UPSTREAM
    assert result.error.code == "GATEWAY_ERROR"

    (order,) = _orders_for(db_session, customer.id)
    assert order.status is PaymentStatus.FAILED
    assert order.order_id is None
    assert [entry.status for entry in order.history] == [PaymentStatus.PENDING, PaymentStatus.FAILED]

    gateway.fail_with = None
    replay = ledger.create_payment(
        db_session, amount="99", user_id=customer.id, provider_id="p-1", idempotency_key="flaky"
    )
    assert replay.value.is_duplicate is True
    assert replay.value.status is PaymentStatus.FAILED
    assert len(gateway.create_calls) == 1


def test_store_failure_after_gateway_order_is_reported(monkeypatch, db_session, ledger, gateway, customer):
    real_commit = db_session.commit
    commits = {"count": 0}

    def failing_second_commit():
        commits["count"] += 1
        if commits["count"] == 2:
            raise SQLAlchemyError("disk I/O error")
        real_commit()

    monkeypatch.setattr(db_session, "commit", failing_second_commit)

    result = ledger.create_payment(db_session, amount="42", user_id=customer.id, provider_id="p-1")

    assert result.error.kind is ErrorKind.PERSISTENCE
    assert result.error.code == "PAYMENT_PERSIST_FAILED"
    assert len(gateway.orders) == 1

    (order,) = _orders_for(db_session, customer.id)
    assert order.status is PaymentStatus.PENDING
    assert order.order_id is None


def test_create_payment_invalidates_cached_history(db_session, ledger, cache, customer, create_payment):
    create_payment()
    assert ledger.get_payment_history(db_session, customer.id).ok
    assert cache.get_payment_history(customer.id) is not None

    create_payment(amount="20")

    assert cache.get_payment_history(customer.id) is None
    assert len(ledger.get_payment_history(db_session, customer.id).value) == 2


@pytest.mark.anyio
async def test_create_endpoint_returns_201_then_200_on_replay(client, customer_headers, gateway):
    body = {"amount": "300.00", "provider_id": "provider-9"}
    headers = {**customer_headers, "Idempotency-Key": "http-key-1"}

    first = await client.post("/payments/create", json=body, headers=headers)
    second = await client.post("/payments/create", json=body, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["reference_id"] == second.json()["reference_id"]
    assert first.json()["is_duplicate"] is False
    assert second.json()["is_duplicate"] is True
    assert first.json()["key_id"] == gateway.key_id
    assert len(gateway.create_calls) == 1


@pytest.mark.anyio
async def test_create_endpoint_maps_gateway_errors_to_502(client, customer_headers, gateway):
    gateway.fail_with = GatewayError("timeout")

    response = await client.post(
        "/payments/create", json={"amount": "10", "provider_id": "p-1"}, headers=customer_headers
    )

    assert response.status_code == 502
    assert response.json()["error"] == {"code": "GATEWAY_ERROR", "message": "An unexpected error occurred."}


@pytest.mark.anyio
async def test_create_endpoint_rejects_negative_amount(client, customer_headers):
    response = await client.post(
        "/payments/create", json={"amount": "-1", "provider_id": "p-1"}, headers=customer_headers
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_AMOUNT"


@pytest.mark.anyio
async def test_create_endpoint_rejects_amount_beyond_column_precision(client, customer_headers, gateway):
    response = await client.post(
        "/payments/create",
        json={"amount": "12345678901234567.00", "provider_id": "p-1"},
        headers=customer_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_AMOUNT"
    assert response.json()["error"]["details"] == {"max": "9999999999999999.99"}
    assert gateway.create_calls == []


@pytest.mark.anyio
async def test_create_endpoint_requires_api_key(client):
    response = await client.post("/payments/create", json={"amount": "10", "provider_id": "p-1"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "NO_API_KEY"


@pytest.mark.anyio
async def test_support_may_create_on_behalf_of_user(client, support_headers, customer):
    response = await client.post(
        "/payments/create",
        json={"amount": "10", "provider_id": "p-1", "user_id": customer.id},
        headers=support_headers,
    )

    assert response.status_code == 201
