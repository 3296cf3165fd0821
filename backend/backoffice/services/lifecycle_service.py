# Overview: Service-layer operations for consignment lifecycle; transition table, completion and cancellation.

"""
Consignment Lifecycle Service

================================================================================
PURPOSE: Enforce Active -> Completed | Cancelled for consignments
================================================================================

STATE MACHINE:
    ACTIVE -> COMPLETED
    ACTIVE -> CANCELLED

    ACTIVE:    sales and returns may be recorded, no stock effect yet
    COMPLETED: terminal; sold goods left the principal's stock, returned
               goods came back in
    CANCELLED: terminal; nothing was sold, every unit is folded into returned

RULES (NON-NEGOTIABLE):
1. Every transition is checked against TRANSITIONS; anything else raises
   InvalidTransition (including X -> X and leaving a terminal state).
2. Completion validates ledger-derived stock for every sold product before
   posting anything (InsufficientStock).
3. Completion postings per detail:
       out sold_qty      "consignment completed: <code>"
       in  returned_qty  "return on completion: <code>"
4. Cancellation is rejected while any sale exists; the message states the
   quantity already sold and points to Completed instead.
5. The header status is written last, from the locked row, and only if it
   is still Active and every detail still shows the sold/returned figures
   that were posted. A concurrent transition, sale or return therefore makes
   this saga compensate its own postings.
6. Sale/return counter writes lock the header before the detail and refuse
   to run once it has left Active, so nothing lands after completion.
================================================================================
"""

from __future__ import annotations

from collections import defaultdict

from flask import current_app

from ..errors import InsufficientStock, InvalidState, InvalidTransition
from ..extensions import db
from ..models import Consignment, ConsignmentDetail, ConsignmentSale, ConsignmentStatus
from ..models.ledger import DIRECTION_IN, DIRECTION_OUT
from ..numbers import ZERO, dec_str
from ..time_utils import today
from ..validation import parse_date
from . import audit_service
from .concurrency import lock_for_update
from .consignment_service import apply_detail_delta, get_consignment, set_header_status
from .ledger_service import derived_stock, post_stock, retract_stock
from .saga import Saga

TRANSITIONS: dict[ConsignmentStatus, frozenset[ConsignmentStatus]] = {
    ConsignmentStatus.ACTIVE: frozenset({ConsignmentStatus.COMPLETED, ConsignmentStatus.CANCELLED}),
    ConsignmentStatus.COMPLETED: frozenset(),
    ConsignmentStatus.CANCELLED: frozenset(),
}


def can_transition(current: ConsignmentStatus, target: ConsignmentStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def assert_transition(current: ConsignmentStatus, target: ConsignmentStatus) -> None:
    if not can_transition(current, target):
        allowed = ", ".join(sorted(s.value for s in TRANSITIONS.get(current, ()))) or "none"
        raise InvalidTransition(
            f"Cannot change status from {current.value} to {target.value} (allowed: {allowed})",
            current=current.value,
            target=target.value,
        )


def change_status(
    consignment_id: int,
    status,
    *,
    reason: str | None = None,
    completed_date=None,
    actor_id: int | None = None,
) -> Consignment:
    """Single entry point for PUT /consignments/<id> {status}."""
    consignment = get_consignment(consignment_id)
    target = ConsignmentStatus.parse(status)
    assert_transition(consignment.status_enum, target)

    if target is ConsignmentStatus.COMPLETED:
        return complete_consignment(consignment_id, completed_date=completed_date, actor_id=actor_id)
    return cancel_consignment(consignment_id, reason=reason, actor_id=actor_id)


# =============================================================================
# COMPLETION
# =============================================================================

def _check_stock(consignment: Consignment) -> None:
    """Derived stock must cover the sold quantity of every product."""
    needed = defaultdict(lambda: ZERO)
    names = {}
    for d in consignment.details:
        if d.sold_qty and d.sold_qty > 0:
            needed[d.product_id] += d.sold_qty
            names[d.product_id] = d.product.name if d.product else f"product {d.product_id}"

    for product_id, qty in needed.items():
        available = derived_stock(product_id, consignment.branch_id)
        if available < qty:
            raise InsufficientStock(
                f"Insufficient stock for {names[product_id]}: need {dec_str(qty)}, "
                f"available {dec_str(available)}",
                requested=qty,
                available=available,
                product_id=product_id,
            )


def _posting_step(saga: Saga, name: str, **posting) -> None:
    def _post(ctx):
        return post_stock(**posting).id

    def _retract(ctx):
        retract_stock(ctx[name])

    saga.step(name, _post, _retract)


def complete_consignment(consignment_id: int, *, completed_date=None, actor_id: int | None = None) -> Consignment:
    consignment = get_consignment(consignment_id)
    assert_transition(consignment.status_enum, ConsignmentStatus.COMPLETED)
    completed_date = parse_date(completed_date, "completed_date", default=today())

    _check_stock(consignment)

    code = consignment.code
    saga = Saga("consignment_complete", entity_type="consignment", entity_id=consignment_id, actor_id=actor_id)
    for d in consignment.details:
        if d.sold_qty and d.sold_qty > 0:
            _posting_step(
                saga,
                f"stock_out:{d.id}",
                product_id=d.product_id,
                branch_id=consignment.branch_id,
                quantity=d.sold_qty,
                direction=DIRECTION_OUT,
                marker=f"consignment completed: {code}",
                entry_date=completed_date,
                unit_cost=d.unit_cost_to_principal,
                idempotency_key=f"consignment:{consignment_id}:complete:out:{d.id}",
                source_type="consignment",
                source_id=consignment_id,
            )
        if d.returned_qty and d.returned_qty > 0:
            _posting_step(
                saga,
                f"stock_in:{d.id}",
                product_id=d.product_id,
                branch_id=consignment.branch_id,
                quantity=d.returned_qty,
                direction=DIRECTION_IN,
                marker=f"return on completion: {code}",
                entry_date=completed_date,
                unit_cost=d.unit_cost_to_principal,
                idempotency_key=f"consignment:{consignment_id}:complete:in:{d.id}",
                source_type="consignment",
                source_id=consignment_id,
            )

    posted = {d.id: (d.sold_qty or ZERO, d.returned_qty or ZERO) for d in consignment.details}

    def _counters_unchanged(header):
        details = lock_for_update(
            db.session.query(ConsignmentDetail).filter_by(consignment_id=header.id)
        ).all()
        for d in details:
            sold, returned = d.sold_qty or ZERO, d.returned_qty or ZERO
            posted_sold, posted_returned = posted.get(d.id, (ZERO, ZERO))
            if (sold, returned) != (posted_sold, posted_returned):
                raise InvalidState(
                    f"Consignment {header.code} changed while completing: detail {d.id} is now "
                    f"sold {dec_str(sold)} / returned {dec_str(returned)}, "
                    f"posted {dec_str(posted_sold)} / {dec_str(posted_returned)}",
                    detail_id=d.id,
                )

    def mark_completed(ctx):
        set_header_status(
            consignment_id,
            expected=ConsignmentStatus.ACTIVE,
            target=ConsignmentStatus.COMPLETED,
            guard=_counters_unchanged,
            completed_date=completed_date,
        )

    saga.step("mark_completed", mark_completed)
    saga.run()

    consignment = get_consignment(consignment_id)
    current_app.logger.info("Consignment %s completed", code)
    audit_service.append_event(
        event_type="consignment.completed",
        entity_type="consignment",
        entity_id=consignment_id,
        actor_id=actor_id,
        note=code,
    )
    return consignment


# =============================================================================
# CANCELLATION
# =============================================================================

def total_sold(consignment_id: int):
    rows = (
        db.session.query(ConsignmentSale.qty)
        .join(ConsignmentDetail, ConsignmentSale.detail_id == ConsignmentDetail.id)
        .filter(ConsignmentDetail.consignment_id == consignment_id)
        .all()
    )
    return sum((q for (q,) in rows), ZERO)


def _has_sales(consignment_id: int) -> bool:
    return (
        db.session.query(ConsignmentSale.id)
        .join(ConsignmentDetail, ConsignmentSale.detail_id == ConsignmentDetail.id)
        .filter(ConsignmentDetail.consignment_id == consignment_id)
        .first()
        is not None
    )


def cancel_consignment(consignment_id: int, *, reason: str | None = None, actor_id: int | None = None) -> Consignment:
    consignment = get_consignment(consignment_id)
    assert_transition(consignment.status_enum, ConsignmentStatus.CANCELLED)

    if _has_sales(consignment_id):
        sold = dec_str(total_sold(consignment_id))
        raise InvalidState(
            f"Cannot cancel consignment {consignment.code}: {sold} unit(s) have already been sold. "
            f"Use status Completed instead.",
            sold_qty=sold,
        )

    code = consignment.code
    saga = Saga("consignment_cancel", entity_type="consignment", entity_id=consignment_id, actor_id=actor_id)

    for d in consignment.details:
        if not d.remaining_qty or d.remaining_qty <= 0:
            continue
        name = f"fold_remaining:{d.id}"

        def _fold(ctx, detail_id=d.id, moved=d.remaining_qty):
            def _guard(detail):
                if detail.remaining_qty != moved:
                    raise InvalidState(
                        f"Detail {detail_id} changed while cancelling (remaining {detail.remaining_qty}, expected {moved})"
                    )
            apply_detail_delta(detail_id, returned=moved, remaining=-moved, guard=_guard, active_only=True)
            return moved

        def _unfold(ctx, detail_id=d.id, step=name):
            moved = ctx[step]
            apply_detail_delta(detail_id, returned=-moved, remaining=moved)

        saga.step(name, _fold, _unfold)

    def mark_cancelled(ctx):
        set_header_status(
            consignment_id,
            expected=ConsignmentStatus.ACTIVE,
            target=ConsignmentStatus.CANCELLED,
            cancel_reason=(reason or "")[:255] or None,
        )

    saga.step("mark_cancelled", mark_cancelled)
    saga.run()

    consignment = get_consignment(consignment_id)
    current_app.logger.info("Consignment %s cancelled (%s)", code, reason or "no reason given")
    audit_service.append_event(
        event_type="consignment.cancelled",
        entity_type="consignment",
        entity_id=consignment_id,
        actor_id=actor_id,
        note=reason,
    )
    return consignment
