# Overview: Service-layer operations for consignments; create, read, list, counters and hard delete.

"""
Consignment Service

================================================================================
PURPOSE: Consignment header + detail lines, and the hard-delete compensator
================================================================================

A consignment places goods with a third-party store. Each detail line tracks:

    committed_qty == sold_qty + remaining_qty + returned_qty   (all >= 0)

Sales and returns move quantity out of remaining_qty (see
consignment_sale_service / consignment_return_service). Stock only leaves the
principal's ledger when the consignment is completed (lifecycle_service).

DELETE (hard delete, legal in any status):
    1. If Completed, undo the completion postings with opposite entries
       (in sold_qty, out returned_qty).
    2. Delete sales -> returns -> details -> header.
    A failure part-way is NOT re-compensated. A snapshot taken before step 1
    is stored in a ReconciliationIssue and IncompleteDeletion names the step.
    Completion-undo postings are keyed, so re-running the delete after a
    repair never posts them twice.
================================================================================
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy import or_

from ..errors import IncompleteDeletion, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import (
    Branch,
    Consignment,
    ConsignmentDetail,
    ConsignmentReturn,
    ConsignmentSale,
    ConsignmentStatus,
    ConsignmentStore,
    Product,
)
from ..models.ledger import DIRECTION_IN, DIRECTION_OUT
from ..numbers import ZERO, money, non_negative, positive, qty as as_qty
from ..validation import parse_date
from . import audit_service
from .concurrency import lock_for_update, run_guarded
from .document_service import next_consignment_code
from .ledger_service import find_stock_entry, post_stock
from .reconciliation_service import record_issue

ENTITY = "consignment"


# =============================================================================
# QUERIES
# =============================================================================

def get_consignment(consignment_id: int) -> Consignment:
    consignment = db.session.get(Consignment, consignment_id)
    if consignment is None:
        raise NotFound(f"Consignment {consignment_id} not found")
    return consignment


def get_detail(detail_id: int, *, consignment_id: int | None = None) -> ConsignmentDetail:
    """Load a detail line; with consignment_id, it must belong to that consignment."""
    detail = db.session.get(ConsignmentDetail, detail_id)
    if detail is None or (consignment_id is not None and detail.consignment_id != consignment_id):
        raise NotFound(f"Consignment detail {detail_id} not found")
    return detail


def require_active(consignment: Consignment, action: str) -> None:
    if consignment.status != ConsignmentStatus.ACTIVE.value:
        raise InvalidState(
            f"Cannot {action}: consignment {consignment.code} is {consignment.status}",
            status=consignment.status,
        )


def list_consignments(
    *,
    branch_id: int | None = None,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Consignment], dict]:
    """Newest first; search matches the code or the store name."""
    q = db.session.query(Consignment).join(ConsignmentStore, Consignment.store_id == ConsignmentStore.id)
    if branch_id:
        q = q.filter(Consignment.branch_id == branch_id)
    if status:
        q = q.filter(Consignment.status == ConsignmentStatus.parse(status).value)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Consignment.code.ilike(pattern), ConsignmentStore.name.ilike(pattern)))

    total = q.count()
    items = (
        q.order_by(Consignment.consignment_date.desc(), Consignment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": (total + limit - 1) // limit if limit else 0,
    }
    return items, pagination


# =============================================================================
# CREATE
# =============================================================================

def create_consignment(
    *,
    consignment_date,
    store_id: int,
    branch_id: int,
    details: list[dict],
    employee_id: int | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> Consignment:
    """
    Create an Active consignment with its detail lines in one transaction.

    Every detail starts with remaining_qty = committed_qty.
    total_committed_value = SUM(committed_qty * unit_cost_to_principal).
    """
    consignment_date = parse_date(consignment_date, "date")
    if not store_id:
        raise ValidationError("store_id is required")
    if not branch_id:
        raise ValidationError("branch_id is required")
    if not details:
        raise ValidationError("At least one detail line is required")

    if db.session.get(ConsignmentStore, store_id) is None:
        raise NotFound(f"Store {store_id} not found")
    if db.session.get(Branch, branch_id) is None:
        raise NotFound(f"Branch {branch_id} not found")

    lines = []
    for idx, raw in enumerate(details, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Detail {idx} must be an object")
        product_id = raw.get("product_id")
        if not product_id:
            raise ValidationError(f"Detail {idx}: product_id is required")
        if db.session.get(Product, product_id) is None:
            raise NotFound(f"Product {product_id} not found")
        committed = as_qty(positive(raw.get("committed_qty"), f"Detail {idx}: committed_qty"))
        unit_cost = money(non_negative(raw.get("unit_cost_to_principal"), f"Detail {idx}: unit_cost_to_principal"))
        store_price = money(non_negative(raw.get("unit_price_at_store"), f"Detail {idx}: unit_price_at_store"))
        lines.append((product_id, committed, unit_cost, store_price))

    def _op() -> Consignment:
        code = next_consignment_code(consignment_date)
        consignment = Consignment(
            code=code,
            consignment_date=consignment_date,
            branch_id=branch_id,
            store_id=store_id,
            employee_id=employee_id,
            status=ConsignmentStatus.ACTIVE.value,
            note=note,
            created_by=actor_id,
        )
        db.session.add(consignment)
        db.session.flush()

        total = ZERO
        for product_id, committed, unit_cost, store_price in lines:
            value = money(committed * unit_cost)
            total += value
            db.session.add(ConsignmentDetail(
                consignment_id=consignment.id,
                product_id=product_id,
                committed_qty=committed,
                sold_qty=ZERO,
                returned_qty=ZERO,
                remaining_qty=committed,
                unit_cost_to_principal=unit_cost,
                unit_price_at_store=store_price,
                committed_value=value,
                accrued_margin=ZERO,
            ))
        consignment.total_committed_value = money(total)
        db.session.commit()
        return consignment

    consignment = run_guarded(_op, entity="consignment sequence")
    current_app.logger.info(
        "Created consignment %s (%d line(s), value %s)",
        consignment.code, len(lines), consignment.total_committed_value,
    )
    audit_service.append_event(
        event_type="consignment.created",
        entity_type=ENTITY,
        entity_id=consignment.id,
        actor_id=actor_id,
        note=consignment.code,
    )
    return consignment


# =============================================================================
# DETAIL COUNTERS
# =============================================================================

def apply_detail_delta(
    detail_id: int,
    *,
    sold: Decimal = ZERO,
    returned: Decimal = ZERO,
    remaining: Decimal = ZERO,
    margin: Decimal = ZERO,
    guard=None,
    active_only: bool = False,
) -> ConsignmentDetail:
    """
    Read-modify-write of a detail's counters under a row lock + version check.

    guard(detail) runs on the locked row before the change and may raise
    (e.g. InsufficientRemaining when a concurrent sale got there first).
    active_only locks the header first (same order as a status change) and
    rejects the write unless the consignment is still Active.
    The balance invariant is checked before commit.
    """
    def _op() -> ConsignmentDetail:
        if active_only:
            header_id = (
                db.session.query(ConsignmentDetail.consignment_id).filter_by(id=detail_id).scalar()
            )
            header = lock_for_update(db.session.query(Consignment).filter_by(id=header_id)).first()
            if header is None:
                raise NotFound(f"Consignment detail {detail_id} not found")
            if header.status != ConsignmentStatus.ACTIVE.value:
                db.session.rollback()
                raise InvalidState(
                    f"Consignment {header.code} is {header.status}; its counters are closed",
                    status=header.status,
                )
        detail = lock_for_update(db.session.query(ConsignmentDetail).filter_by(id=detail_id)).first()
        if detail is None:
            raise NotFound(f"Consignment detail {detail_id} not found")
        if guard is not None:
            guard(detail)
        detail.sold_qty = as_qty((detail.sold_qty or ZERO) + sold)
        detail.returned_qty = as_qty((detail.returned_qty or ZERO) + returned)
        detail.remaining_qty = as_qty((detail.remaining_qty or ZERO) + remaining)
        detail.accrued_margin = money((detail.accrued_margin or ZERO) + margin)
        try:
            detail.assert_balanced()
        except InvalidState:
            db.session.rollback()
            raise
        db.session.commit()
        return detail

    return run_guarded(_op, entity=f"Consignment detail {detail_id}")


def set_header_status(
    consignment_id: int,
    *,
    expected: ConsignmentStatus,
    target: ConsignmentStatus,
    guard=None,
    **fields,
) -> Consignment:
    """
    Move the header status under a row lock, only from the expected status.

    guard(consignment) runs while the header is locked, before the write.
    """
    def _op() -> Consignment:
        consignment = lock_for_update(db.session.query(Consignment).filter_by(id=consignment_id)).first()
        if consignment is None:
            raise NotFound(f"Consignment {consignment_id} not found")
        if consignment.status != expected.value:
            raise InvalidState(
                f"Consignment {consignment.code} is {consignment.status}, expected {expected.value}",
                status=consignment.status,
            )
        if guard is not None:
            guard(consignment)
        consignment.status = target.value
        for key, value in fields.items():
            setattr(consignment, key, value)
        db.session.commit()
        return consignment

    return run_guarded(_op, entity=f"Consignment {consignment_id}")


# =============================================================================
# DELETE
# =============================================================================

def snapshot_consignment(consignment: Consignment) -> dict:
    data = consignment.to_dict(include_details=True)
    detail_ids = [d.id for d in consignment.details]
    if detail_ids:
        sales = db.session.query(ConsignmentSale).filter(ConsignmentSale.detail_id.in_(detail_ids)).all()
        returns = db.session.query(ConsignmentReturn).filter(ConsignmentReturn.detail_id.in_(detail_ids)).all()
    else:
        sales, returns = [], []
    data["sales"] = [s.to_dict() for s in sales]
    data["returns"] = [r.to_dict() for r in returns]
    return data


def _deletion_steps(consignment: Consignment) -> list[tuple]:
    steps = []
    code = consignment.code
    detail_ids = [d.id for d in consignment.details]

    if consignment.status == ConsignmentStatus.COMPLETED.value:
        for d in consignment.details:
            if d.sold_qty and d.sold_qty > 0:
                key = f"consignment:{consignment.id}:delete:in:{d.id}"
                steps.append((f"restore_sold_stock:{d.id}", _keyed_stock_posting(
                    key=key,
                    product_id=d.product_id,
                    branch_id=consignment.branch_id,
                    quantity=d.sold_qty,
                    direction=DIRECTION_IN,
                    marker=f"consignment deleted: {code}",
                    unit_cost=d.unit_cost_to_principal,
                    source_id=consignment.id,
                )))
            if d.returned_qty and d.returned_qty > 0:
                key = f"consignment:{consignment.id}:delete:out:{d.id}"
                steps.append((f"reverse_returned_stock:{d.id}", _keyed_stock_posting(
                    key=key,
                    product_id=d.product_id,
                    branch_id=consignment.branch_id,
                    quantity=d.returned_qty,
                    direction=DIRECTION_OUT,
                    marker=f"return reversed on delete: {code}",
                    unit_cost=d.unit_cost_to_principal,
                    source_id=consignment.id,
                )))

    def _bulk_delete(model, column):
        def _run():
            if detail_ids:
                db.session.query(model).filter(column.in_(detail_ids)).delete(synchronize_session=False)
            db.session.commit()
        return _run

    def _delete_header():
        db.session.query(Consignment).filter_by(id=consignment.id).delete(synchronize_session=False)
        db.session.commit()

    steps.append(("delete_sales", _bulk_delete(ConsignmentSale, ConsignmentSale.detail_id)))
    steps.append(("delete_returns", _bulk_delete(ConsignmentReturn, ConsignmentReturn.detail_id)))
    steps.append(("delete_details", _bulk_delete(ConsignmentDetail, ConsignmentDetail.id)))
    steps.append(("delete_header", _delete_header))
    return steps


def _keyed_stock_posting(*, key: str, **posting):
    def _run():
        if find_stock_entry(key) is not None:
            return
        post_stock(idempotency_key=key, source_type=ENTITY, **posting)
    return _run


def delete_consignment(consignment_id: int, *, actor_id: int | None = None) -> dict:
    """
    Hard-delete a consignment and everything under it.

    Returns the pre-delete snapshot.

    Raises:
        NotFound: unknown consignment
        IncompleteDeletion: a step failed after earlier steps were applied
    """
    consignment = get_consignment(consignment_id)
    code = consignment.code
    snapshot = snapshot_consignment(consignment)
    steps = _deletion_steps(consignment)

    done = []
    for name, run in steps:
        try:
            run()
        except Exception as exc:
            db.session.rollback()
            if not done:
                # nothing applied yet
                raise
            current_app.logger.critical(
                "Deletion of consignment %s (id=%s) stopped at step %s after %s: %s",
                code, consignment_id, name, ", ".join(done), exc,
            )
            issue = record_issue(
                operation="consignment_delete",
                failed_step=name,
                error=f"{type(exc).__name__}: {exc}",
                entity_type=ENTITY,
                entity_id=consignment_id,
                snapshot={"consignment": snapshot, "completed_steps": done},
                actor_id=actor_id,
            )
            raise IncompleteDeletion(
                f"Deletion of consignment {code} stopped at step '{name}': {exc}",
                failed_step=name,
                completed_steps=done,
                consignment_id=consignment_id,
                issue_id=issue.id if issue else None,
            ) from exc
        done.append(name)

    current_app.logger.info("Deleted consignment %s (id=%s)", code, consignment_id)
    audit_service.append_event(
        event_type="consignment.deleted",
        entity_type=ENTITY,
        entity_id=consignment_id,
        actor_id=actor_id,
        note=code,
        payload=snapshot,
    )
    return snapshot
