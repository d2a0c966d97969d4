"""Tests for the reconciliation sweep against the gateway."""
import time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from payledger.models import AuditLog
from payledger.models.payment import PaymentMethod, PaymentOrder, PaymentStatus
from payledger.services.gateway import GatewayError
from payledger.services.ledger import ORPHANED_ORDER_ACTION
from payledger.services.reconciliation import run_reconciliation_once


def _load(db_session, reference_id: str) -> PaymentOrder:
    return db_session.scalars(select(PaymentOrder).where(PaymentOrder.reference_id == reference_id)).one()


def test_pending_order_settled_from_gateway_payments(db_session, ledger, gateway, create_payment):
    created = create_payment()
    gateway.order_payments[created.order_id] = [
        {"id": "pay_first", "status": "failed", "method": "card"},
        {"id": "pay_second", "status": "captured", "method": "upi"},
    ]

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.checked == 1
    assert report.updated == [created.reference_id]
    order = _load(db_session, created.reference_id)
    assert order.status is PaymentStatus.SUCCESS
    assert order.payment_id == "pay_second"
    assert order.payment_method is PaymentMethod.UPI
    assert order.history[-1].source == "reconciliation"


def test_recent_and_unsettled_orders_are_left_alone(db_session, ledger, gateway, create_payment):
    fresh = create_payment()
    gateway.order_payments[fresh.order_id] = [{"id": "pay_x", "status": "captured"}]

    skipped = ledger.reconcile_pending_payments(db_session, min_age_minutes=60).value
    assert skipped.checked == 0

    gateway.order_payments[fresh.order_id] = [{"id": "pay_x", "status": "created"}]
    unsettled = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert unsettled.checked == 1
    assert unsettled.updated == []
    assert _load(db_session, fresh.reference_id).status is PaymentStatus.PENDING


def test_gateway_errors_are_counted_and_skipped(db_session, ledger, gateway, create_payment):
    create_payment()
    gateway.fetch_error = GatewayError("503 from gateway")

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.errors == 1
    assert report.updated == []


def _lose_gateway_order(monkeypatch, db_session, ledger, customer) -> str:
    real_commit = db_session.commit
    commits = {"count": 0}

    def failing_second_commit():
        commits["count"] += 1
        if commits["count"] == 2:
            raise SQLAlchemyError("connection dropped")
        real_commit()

    monkeypatch.setattr(db_session, "commit", failing_second_commit)
    failed = ledger.create_payment(db_session, amount="60", user_id=customer.id, provider_id="p-1")
    monkeypatch.setattr(db_session, "commit", real_commit)
    assert not failed.ok
    return failed.error.details["reference_id"]


def test_lost_gateway_order_is_reattached(monkeypatch, db_session, ledger, gateway, customer):
    reference_id = _lose_gateway_order(monkeypatch, db_session, ledger, customer)
    (remote_order_id,) = gateway.orders
    assert _load(db_session, reference_id).order_id is None

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.reattached == [reference_id]
    assert report.orphaned == []
    assert _load(db_session, reference_id).order_id == remote_order_id
    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "PAYMENT_ORDER_REATTACHED")
    ).first()
    assert audit.data_json == {"reference_id": reference_id, "order_id": remote_order_id}


def test_orphaned_gateway_order_is_audited_once(db_session, ledger, gateway):
    gateway.orders["order_stray"] = {
        "id": "order_stray",
        "amount": 1000,
        "currency": "INR",
        "receipt": "PAY_NOT_OURS",
        "notes": {},
        "created_at": int(time.time()),
    }

    first = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value
    second = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert first.orphaned == ["order_stray"]
    assert second.orphaned == ["order_stray"]
    audits = db_session.scalars(select(AuditLog).where(AuditLog.action == ORPHANED_ORDER_ACTION)).all()
    assert len(audits) == 1
    assert audits[0].data_json["order_id"] == "order_stray"


def test_known_orders_are_not_reported(db_session, ledger, create_payment):
    create_payment()

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.orphaned == []
    assert report.reattached == []


def test_listing_failure_does_not_stop_pending_sweep(monkeypatch, db_session, ledger, gateway, create_payment):
    created = create_payment()
    gateway.order_payments[created.order_id] = [{"id": "pay_ok", "status": "captured"}]

    def broken_listing(**kwargs):
        raise GatewayError("listing unavailable")

    monkeypatch.setattr(gateway, "list_orders", broken_listing)

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.errors == 1
    assert report.updated == [created.reference_id]


def test_scheduled_job_uses_configured_window(monkeypatch, db_session, ledger, gateway, create_payment):
    created = create_payment()
    gateway.order_payments[created.order_id] = [{"id": "pay_job", "status": "failed"}]
    monkeypatch.setattr(ledger.settings, "RECONCILIATION_MIN_AGE_MINUTES", 0)

    report = run_reconciliation_once(ledger, db_session=db_session)

    assert report is not None
    assert report.updated == [created.reference_id]
    assert _load(db_session, created.reference_id).status is PaymentStatus.FAILED


def test_lost_order_behind_a_full_page_is_reattached(monkeypatch, db_session, ledger, gateway, customer):
    reference_id = _lose_gateway_order(monkeypatch, db_session, ledger, customer)
    (remote_order_id,) = gateway.orders
    gateway.orders[remote_order_id]["created_at"] -= 60
    now = int(time.time())
    for index in range(120):
        gateway.orders[f"order_busy_{index}"] = {
            "id": f"order_busy_{index}",
            "amount": 500,
            "currency": "INR",
            "receipt": f"PAY_ELSEWHERE_{index}",
            "notes": {},
            "created_at": now,
        }

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.reattached == [reference_id]
    assert len(report.orphaned) == 120
    assert [call["skip"] for call in gateway.list_calls] == [0, 100]
    assert len({call["to"] for call in gateway.list_calls}) == 1
    assert _load(db_session, reference_id).order_id == remote_order_id


def test_reservation_that_never_reached_gateway_is_failed(db_session, ledger, gateway, customer):
    gateway.fail_with = RuntimeError("worker killed")
    with pytest.raises(RuntimeError):
        ledger.create_payment(
            db_session, amount="75", user_id=customer.id, provider_id="p-1", idempotency_key="K1"
        )
    gateway.fail_with = None

    stuck = ledger.create_payment(
        db_session, amount="75", user_id=customer.id, provider_id="p-1", idempotency_key="K1"
    ).value
    assert stuck.is_duplicate
    assert stuck.status is PaymentStatus.PENDING
    assert stuck.order_id is None

    report = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert report.expired == [stuck.reference_id]
    assert report.checked == 0
    order = _load(db_session, stuck.reference_id)
    assert order.status is PaymentStatus.FAILED
    assert order.history[-1].source == "reconciliation"

    replay = ledger.create_payment(
        db_session, amount="75", user_id=customer.id, provider_id="p-1", idempotency_key="K1"
    ).value
    assert replay.is_duplicate
    assert replay.status is PaymentStatus.FAILED
    assert len(gateway.create_calls) == 1


def test_young_or_unverifiable_reservations_are_kept(monkeypatch, db_session, ledger, gateway, customer):
    gateway.fail_with = RuntimeError("worker killed")
    with pytest.raises(RuntimeError):
        ledger.create_payment(db_session, amount="40", user_id=customer.id, provider_id="p-1")
    gateway.fail_with = None
    (reserved,) = db_session.scalars(select(PaymentOrder).where(PaymentOrder.user_id == customer.id)).all()

    young = ledger.reconcile_pending_payments(db_session, min_age_minutes=60).value
    assert young.expired == []

    def broken_listing(**kwargs):
        raise GatewayError("listing unavailable")

    monkeypatch.setattr(gateway, "list_orders", broken_listing)
    unverifiable = ledger.reconcile_pending_payments(db_session, min_age_minutes=0).value

    assert unverifiable.expired == []
    assert unverifiable.errors == 1
    assert _load(db_session, reserved.reference_id).status is PaymentStatus.PENDING
