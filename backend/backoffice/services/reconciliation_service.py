# Overview: Service-layer operations for reconciliation; issue records and projection checks.

"""
Reconciliation

Two kinds of drift are handled here:

1. Inconsistencies a saga could not repair itself (failed compensation,
   partial consignment delete). These are recorded as ReconciliationIssue
   rows for an operator; nothing is repaired automatically.

2. Cached projections drifting from their ledgers:
   - CashAccount.balance vs SUM(credit) - SUM(debit)
   - Product.stock      vs SUM(in) - SUM(out) over all branches
   The ledger always wins; --fix rewrites the cached value.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from ..errors import InvalidState, NotFound
from ..extensions import db
from ..models import CashAccount, Product, ReconciliationIssue
from ..numbers import ZERO
from ..time_utils import utcnow
from .ledger_service import derived_stock_all_branches, replayed_cash_balance


def record_issue(
    *,
    operation: str,
    failed_step: str,
    error: str,
    entity_type: str | None = None,
    entity_id: int | None = None,
    snapshot: dict | None = None,
    actor_id: int | None = None,
) -> ReconciliationIssue | None:
    """
    Persist an issue in its own commit.

    Returns None if even this write fails; the CRITICAL log line is then the
    only trace, and the caller still raises its own error.
    """
    issue = ReconciliationIssue(
        operation=operation,
        failed_step=failed_step,
        entity_type=entity_type,
        entity_id=entity_id,
        error=error,
        snapshot=snapshot,
        actor_id=actor_id,
    )
    try:
        db.session.add(issue)
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        current_app.logger.critical(
            "Could not record reconciliation issue op=%s step=%s %s=%s: %s (issue: %s)",
            operation, failed_step, entity_type, entity_id, exc, error,
        )
        return None
    current_app.logger.critical(
        "Reconciliation issue #%s recorded: op=%s step=%s %s=%s",
        issue.id, operation, failed_step, entity_type, entity_id,
    )
    return issue


def list_issues(*, include_resolved: bool = False) -> list[ReconciliationIssue]:
    q = db.session.query(ReconciliationIssue)
    if not include_resolved:
        q = q.filter(ReconciliationIssue.resolved.is_(False))
    return q.order_by(ReconciliationIssue.id.asc()).all()


def resolve_issue(issue_id: int) -> ReconciliationIssue:
    issue = db.session.get(ReconciliationIssue, issue_id)
    if issue is None:
        raise NotFound(f"Reconciliation issue {issue_id} not found")
    if issue.resolved:
        raise InvalidState(f"Reconciliation issue {issue_id} is already resolved")
    issue.resolved = True
    issue.resolved_at = utcnow()
    db.session.commit()
    return issue


# =============================================================================
# PROJECTION CHECKS
# =============================================================================

@dataclass
class Drift:
    entity_id: int
    label: str
    cached: Decimal
    derived: Decimal

    @property
    def difference(self) -> Decimal:
        return self.cached - self.derived


def check_cash_balances(*, fix: bool = False) -> list[Drift]:
    drifts = []
    for account in db.session.query(CashAccount).order_by(CashAccount.id).all():
        derived = replayed_cash_balance(account.id)
        cached = account.balance or ZERO
        if cached != derived:
            drifts.append(Drift(account.id, account.name, cached, derived))
            if fix:
                account.balance = derived
    if fix and drifts:
        db.session.commit()
        current_app.logger.warning("Rewrote %d cash balance(s) from the ledger", len(drifts))
    return drifts


def check_product_stock(*, fix: bool = False) -> list[Drift]:
    drifts = []
    for product in db.session.query(Product).order_by(Product.id).all():
        derived = derived_stock_all_branches(product.id)
        cached = product.stock or ZERO
        if cached != derived:
            drifts.append(Drift(product.id, product.name, cached, derived))
            if fix:
                product.stock = derived
    if fix and drifts:
        db.session.commit()
        current_app.logger.warning("Rewrote %d cached product stock value(s) from the ledger", len(drifts))
    return drifts
