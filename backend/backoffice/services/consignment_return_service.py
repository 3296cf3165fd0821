# Overview: Service-layer operations for consignment returns; counter-only saga with a duplicate guard.

"""
Consignment Return Service

WHY: Stores hand unsold goods back before the consignment is closed. The
goods never left the principal's stock ledger (stock moves only at
completion), so a return touches the detail counters and nothing else.

RULES:
- Consignment must be Active (not Completed / Cancelled).
- max_returnable = committed_qty - sold_qty - returned_qty.
- A return identical in (detail, date, qty) to an existing one is rejected
  with DuplicateOperation. The check is an explicit idempotency key with a
  unique constraint, so two racing identical requests cannot both land.

STEPS:
    1. insert ConsignmentReturn            undo: delete it
    2. remaining -= qty, returned += qty   undo: inverse delta
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateOperation, InsufficientRemaining
from ..extensions import db
from ..models import ConsignmentDetail, ConsignmentReturn
from ..numbers import ZERO, dec_str, positive, qty as as_qty
from ..time_utils import today
from ..validation import parse_date
from . import audit_service
from .consignment_service import apply_detail_delta, get_detail, require_active
from .saga import Saga

RETURN_CONDITION_GOOD = "Good"
RETURN_KIND_NORMAL = "Normal"


def return_key(detail_id: int, return_date, qty: Decimal) -> str:
    """Identity of a return: "<detail_id>:<YYYY-MM-DD>:<qty>"."""
    return f"{detail_id}:{return_date.isoformat()}:{dec_str(qty)}"


def max_returnable(detail: ConsignmentDetail) -> Decimal:
    return (detail.committed_qty or ZERO) - (detail.sold_qty or ZERO) - (detail.returned_qty or ZERO)


def _returnable_guard(qty: Decimal, product_name: str):
    def _guard(detail: ConsignmentDetail) -> None:
        available = max_returnable(detail)
        if qty > available:
            raise InsufficientRemaining(
                f"Return quantity {qty} exceeds returnable quantity {available} for {product_name}",
                requested=qty,
                available=available,
            )
    return _guard


def list_returns(*, consignment_id: int) -> list[ConsignmentReturn]:
    return (
        db.session.query(ConsignmentReturn)
        .join(ConsignmentDetail, ConsignmentReturn.detail_id == ConsignmentDetail.id)
        .filter(ConsignmentDetail.consignment_id == consignment_id)
        .order_by(ConsignmentReturn.return_date.desc(), ConsignmentReturn.id.desc())
        .all()
    )


def record_return(
    *,
    detail_id: int,
    qty,
    return_date=None,
    condition: str | None = None,
    return_kind: str | None = None,
    note: str | None = None,
    consignment_id: int | None = None,
    actor_id: int | None = None,
) -> tuple[ConsignmentReturn, ConsignmentDetail]:
    """
    Record goods handed back by the store.

    Raises:
        ValidationError: qty <= 0 or bad date
        NotFound: detail missing (or not part of consignment_id)
        InvalidState: consignment Completed / Cancelled
        InsufficientRemaining: qty > committed - sold - returned
        DuplicateOperation: identical (detail, date, qty) already recorded
    """
    qty = as_qty(positive(qty, "qty"))
    return_date = parse_date(return_date, "date", default=today())
    detail = get_detail(detail_id, consignment_id=consignment_id)
    require_active(detail.consignment, "record a return")

    product_name = detail.product.name if detail.product else f"product {detail.product_id}"
    _returnable_guard(qty, product_name)(detail)

    key = return_key(detail_id, return_date, qty)
    if db.session.query(ConsignmentReturn.id).filter_by(idempotency_key=key).first() is not None:
        raise DuplicateOperation(
            f"A return of {dec_str(qty)} {product_name} on {return_date.isoformat()} was already recorded",
            idempotency_key=key,
        )

    def insert_return(ctx):
        row = ConsignmentReturn(
            detail_id=detail_id,
            return_date=return_date,
            qty=qty,
            condition=condition or RETURN_CONDITION_GOOD,
            return_kind=return_kind or RETURN_KIND_NORMAL,
            note=note,
            idempotency_key=key,
            created_by=actor_id,
        )
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise DuplicateOperation(
                f"A return of {dec_str(qty)} {product_name} on {return_date.isoformat()} was already recorded",
                idempotency_key=key,
            ) from exc
        return row.id

    def delete_return(ctx):
        db.session.query(ConsignmentReturn).filter_by(id=ctx["insert_return"]).delete()
        db.session.commit()

    def update_detail(ctx):
        apply_detail_delta(
            detail_id,
            returned=qty,
            remaining=-qty,
            guard=_returnable_guard(qty, product_name),
            active_only=True,
        )

    def restore_detail(ctx):
        apply_detail_delta(detail_id, returned=-qty, remaining=qty)

    saga = Saga("consignment_return", entity_type="consignment_detail", entity_id=detail_id, actor_id=actor_id)
    saga.step("insert_return", insert_return, delete_return)
    saga.step("update_detail", update_detail, restore_detail)
    ctx = saga.run()

    row = db.session.get(ConsignmentReturn, ctx["insert_return"])
    detail = db.session.get(ConsignmentDetail, detail_id)
    current_app.logger.info("Recorded consignment return %s: %s x %s", row.id, qty, product_name)
    audit_service.append_event(
        event_type="consignment.return_recorded",
        entity_type="consignment",
        entity_id=detail.consignment_id,
        actor_id=actor_id,
        payload={"return_id": row.id, "detail_id": detail_id, "qty": str(qty)},
    )
    return row, detail
