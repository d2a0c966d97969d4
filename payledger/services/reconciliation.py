"""Background job wrapping the ledger reconciliation sweep."""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from payledger import db
from payledger.core.runtime_state import is_scheduler_active
from payledger.services.ledger import PaymentLedgerService, ReconciliationReport

logger = logging.getLogger(__name__)


def run_reconciliation_once(
    ledger: PaymentLedgerService, *, db_session: Session | None = None
) -> ReconciliationReport | None:
    """Run one sweep in its own session; returns ``None`` when the sweep failed."""

    session = db_session or db.get_sessionmaker()()
    try:
        result = ledger.reconcile_pending_payments(session)
    finally:
        if db_session is None:
            session.close()

    if not result.ok:
        logger.error(
            "Reconciliation sweep failed",
            extra={"error_code": result.error.code, "scheduler_active": is_scheduler_active()},
        )
        return None
    return result.value


__all__ = ["run_reconciliation_once"]
