# Overview: Service-layer operations for consignment sales; record/edit/delete sagas.

"""
Consignment Sale Sagas

RECORD (store reports a sale against a detail line):
    1. insert ConsignmentSale                 undo: delete it
    2. detail: sold += qty, remaining -= qty,
       accrued_margin += margin               undo: inverse delta
    3. credit cash by principal_value         undo: reverse the posting
    4. link sale.cash_entry_id

EDIT (delta against the stored sale):
    1. detail counters += (new - old)         undo: inverse delta
    2. reverse the old cash posting           undo: re-post it
    3. post the replacement credit            undo: reverse it
    4. rewrite the sale row

DELETE:
    1. detail counters -= sale values         undo: inverse delta
    2. reverse the cash posting               undo: re-post it
    3. delete the sale row

All three require the consignment to be Active. The cash posting for a sale
always uses the key "consignment_sale:<sale_id>:credit"; an edit frees the
key (reverse) before re-using it (replacement post).
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..errors import InsufficientRemaining, NotFound
from ..extensions import db
from ..models import ConsignmentDetail, ConsignmentSale
from ..models.ledger import CASH_CREDIT
from ..numbers import ZERO, money, non_negative, positive, qty as as_qty
from ..time_utils import today
from ..validation import parse_date
from . import audit_service
from .consignment_service import apply_detail_delta, get_detail, require_active
from .ledger_service import find_cash_entry, get_cash_account, post_cash, reverse_cash
from .saga import Saga

SOURCE = "consignment_sale"


def _cash_key(sale_id: int) -> str:
    return f"{SOURCE}:{sale_id}:credit"


def _marker(detail: ConsignmentDetail) -> str:
    product = detail.product.name if detail.product else f"product {detail.product_id}"
    return f"consignment sale {detail.consignment.code} - {product}"


def _values(detail: ConsignmentDetail, qty: Decimal, store_price: Decimal) -> dict:
    principal_value = money(qty * detail.unit_cost_to_principal)
    store_value = money(qty * store_price)
    return {
        "qty": qty,
        "store_price": store_price,
        "store_value": store_value,
        "principal_value": principal_value,
        "margin": money(store_value - principal_value),
    }


def _remaining_guard(needed: Decimal, product_name: str):
    """Re-check remaining_qty on the locked detail row."""
    def _guard(detail: ConsignmentDetail) -> None:
        if needed > 0 and needed > detail.remaining_qty:
            raise InsufficientRemaining(
                f"Quantity {needed} exceeds remaining quantity {detail.remaining_qty} for {product_name}",
                requested=needed,
                available=detail.remaining_qty,
            )
    return _guard


def _sale_cash_entry_id(sale: ConsignmentSale) -> int | None:
    if sale.cash_entry_id is not None:
        return sale.cash_entry_id
    entry = find_cash_entry(_cash_key(sale.id))
    return entry.id if entry else None


def _set_sale_cash_entry(sale_id: int, entry_id: int | None) -> None:
    sale = db.session.get(ConsignmentSale, sale_id)
    sale.cash_entry_id = entry_id
    db.session.commit()


def _repost(posting: dict, sale_id: int) -> None:
    entry = post_cash(**posting)
    _set_sale_cash_entry(sale_id, entry.id)


def get_sale(sale_id: int, *, consignment_id: int | None = None) -> ConsignmentSale:
    sale = db.session.get(ConsignmentSale, sale_id)
    if sale is None or (consignment_id is not None and sale.detail.consignment_id != consignment_id):
        raise NotFound(f"Consignment sale {sale_id} not found")
    return sale


def list_sales(*, consignment_id: int, page: int = 1, limit: int = 50) -> tuple[list[ConsignmentSale], dict]:
    q = (
        db.session.query(ConsignmentSale)
        .join(ConsignmentDetail, ConsignmentSale.detail_id == ConsignmentDetail.id)
        .filter(ConsignmentDetail.consignment_id == consignment_id)
    )
    total = q.count()
    items = (
        q.order_by(ConsignmentSale.sale_date.desc(), ConsignmentSale.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, {"page": page, "limit": limit, "total": total}


# =============================================================================
# RECORD
# =============================================================================

def record_sale(
    *,
    detail_id: int,
    qty,
    cash_account_id: int,
    sale_date=None,
    store_price=None,
    payment_date=None,
    note: str | None = None,
    consignment_id: int | None = None,
    actor_id: int | None = None,
) -> tuple[ConsignmentSale, ConsignmentDetail]:
    """
    Record a store-reported sale.

    Raises:
        ValidationError: qty <= 0, bad price/date
        NotFound: detail (or cash account) missing
        InvalidState: consignment not Active
        InsufficientRemaining: qty > remaining_qty
        Conflict: detail or cash account modified concurrently
        CompensationFailure: a later step failed and could not be undone
    """
    qty = as_qty(positive(qty, "qty"))
    detail = get_detail(detail_id, consignment_id=consignment_id)
    consignment = detail.consignment
    require_active(consignment, "record a sale")
    get_cash_account(cash_account_id)

    store_price = money(non_negative(store_price, "store_price", default=detail.unit_price_at_store))
    sale_date = parse_date(sale_date, "date", default=today())
    payment_date = parse_date(payment_date, "payment_date", required=False)

    product_name = detail.product.name if detail.product else f"product {detail.product_id}"
    _remaining_guard(qty, product_name)(detail)

    values = _values(detail, qty, store_price)
    marker = _marker(detail)

    def insert_sale(ctx):
        sale = ConsignmentSale(
            detail_id=detail_id,
            sale_date=sale_date,
            payment_date=payment_date,
            cash_account_id=cash_account_id,
            note=note,
            created_by=actor_id,
            **values,
        )
        db.session.add(sale)
        db.session.commit()
        return sale.id

    def delete_sale(ctx):
        db.session.query(ConsignmentSale).filter_by(id=ctx["insert_sale"]).delete()
        db.session.commit()

    def update_detail(ctx):
        apply_detail_delta(
            detail_id,
            sold=qty,
            remaining=-qty,
            margin=values["margin"],
            guard=_remaining_guard(qty, product_name),
            active_only=True,
        )

    def restore_detail(ctx):
        apply_detail_delta(detail_id, sold=-qty, remaining=qty, margin=-values["margin"])

    def credit_cash(ctx):
        sale_id = ctx["insert_sale"]
        entry = post_cash(
            account_id=cash_account_id,
            amount=values["principal_value"],
            direction=CASH_CREDIT,
            marker=marker,
            entry_date=payment_date or sale_date,
            idempotency_key=_cash_key(sale_id),
            source_type=SOURCE,
            source_id=sale_id,
        )
        return entry.id

    def reverse_credit(ctx):
        reverse_cash(ctx["credit_cash"])

    def link_cash_entry(ctx):
        _set_sale_cash_entry(ctx["insert_sale"], ctx["credit_cash"])

    saga = Saga(SOURCE, entity_type="consignment_detail", entity_id=detail_id, actor_id=actor_id)
    saga.step("insert_sale", insert_sale, delete_sale)
    saga.step("update_detail", update_detail, restore_detail)
    if values["principal_value"] > 0:
        saga.step("credit_cash", credit_cash, reverse_credit)
        saga.step("link_cash_entry", link_cash_entry)
    ctx = saga.run()

    sale = db.session.get(ConsignmentSale, ctx["insert_sale"])
    detail = db.session.get(ConsignmentDetail, detail_id)
    current_app.logger.info(
        "Recorded consignment sale %s: %s x %s on %s (principal %s)",
        sale.id, qty, product_name, consignment.code, values["principal_value"],
    )
    audit_service.append_event(
        event_type="consignment.sale_recorded",
        entity_type="consignment",
        entity_id=detail.consignment_id,
        actor_id=actor_id,
        note=marker,
        payload={"sale_id": sale.id, "detail_id": detail_id, "qty": str(qty)},
    )
    return sale, detail


# =============================================================================
# EDIT
# =============================================================================

def edit_sale(
    sale_id: int,
    *,
    qty=None,
    store_price=None,
    cash_account_id: int | None = None,
    sale_date=None,
    payment_date=None,
    note: str | None = None,
    consignment_id: int | None = None,
    actor_id: int | None = None,
) -> tuple[ConsignmentSale, ConsignmentDetail]:
    """
    Edit a sale by applying only the delta to the detail counters and
    replacing the cash posting (the cash account may change).

    new qty may not exceed remaining_qty + old qty.
    """
    sale = get_sale(sale_id, consignment_id=consignment_id)
    detail = sale.detail
    require_active(detail.consignment, "edit a sale")

    old = {
        "qty": sale.qty,
        "store_price": sale.store_price,
        "store_value": sale.store_value,
        "principal_value": sale.principal_value,
        "margin": sale.margin,
        "sale_date": sale.sale_date,
        "payment_date": sale.payment_date,
        "cash_account_id": sale.cash_account_id,
        "note": sale.note,
    }

    new_qty = as_qty(positive(qty, "qty")) if qty is not None else old["qty"]
    new_price = money(non_negative(store_price, "store_price", default=old["store_price"]))
    new_account = cash_account_id or old["cash_account_id"]
    get_cash_account(new_account)
    new_date = parse_date(sale_date, "date", default=old["sale_date"])
    new_payment_date = parse_date(payment_date, "payment_date", required=False) or old["payment_date"]

    product_name = detail.product.name if detail.product else f"product {detail.product_id}"
    available = detail.remaining_qty + old["qty"]
    if new_qty > available:
        raise InsufficientRemaining(
            f"Quantity {new_qty} exceeds available quantity {available} for {product_name}",
            requested=new_qty,
            available=available,
        )

    values = _values(detail, new_qty, new_price)
    d_qty = new_qty - old["qty"]
    d_margin = values["margin"] - old["margin"]
    marker = _marker(detail)
    old_entry_id = _sale_cash_entry_id(sale)

    def update_detail(ctx):
        apply_detail_delta(
            detail.id,
            sold=d_qty,
            remaining=-d_qty,
            margin=d_margin,
            guard=_remaining_guard(d_qty, product_name),
            active_only=True,
        )

    def restore_detail(ctx):
        apply_detail_delta(detail.id, sold=-d_qty, remaining=d_qty, margin=-d_margin)

    def reverse_old_cash(ctx):
        return reverse_cash(old_entry_id)

    def restore_old_cash(ctx):
        _repost(ctx["reverse_old_cash"], sale_id)

    def post_new_cash(ctx):
        entry = post_cash(
            account_id=new_account,
            amount=values["principal_value"],
            direction=CASH_CREDIT,
            marker=marker,
            entry_date=new_payment_date or new_date,
            idempotency_key=_cash_key(sale_id),
            source_type=SOURCE,
            source_id=sale_id,
        )
        return entry.id

    def reverse_new_cash(ctx):
        reverse_cash(ctx["post_new_cash"])

    def rewrite_sale(ctx):
        row = db.session.get(ConsignmentSale, sale_id)
        for key, value in values.items():
            setattr(row, key, value)
        row.sale_date = new_date
        row.payment_date = new_payment_date
        row.cash_account_id = new_account
        row.cash_entry_id = ctx.get("post_new_cash")
        if note is not None:
            row.note = note
        db.session.commit()

    saga = Saga("consignment_sale_edit", entity_type="consignment_sale", entity_id=sale_id, actor_id=actor_id)
    saga.step("update_detail", update_detail, restore_detail)
    if old_entry_id is not None:
        saga.step("reverse_old_cash", reverse_old_cash, restore_old_cash)
    if values["principal_value"] > 0:
        saga.step("post_new_cash", post_new_cash, reverse_new_cash)
    saga.step("rewrite_sale", rewrite_sale)
    saga.run()

    sale = db.session.get(ConsignmentSale, sale_id)
    detail = db.session.get(ConsignmentDetail, detail.id)
    current_app.logger.info(
        "Edited consignment sale %s: qty %s -> %s, principal %s -> %s",
        sale_id, old["qty"], new_qty, old["principal_value"], values["principal_value"],
    )
    audit_service.append_event(
        event_type="consignment.sale_edited",
        entity_type="consignment",
        entity_id=detail.consignment_id,
        actor_id=actor_id,
        note=marker,
        payload={"sale_id": sale_id, "old_qty": str(old["qty"]), "new_qty": str(new_qty)},
    )
    return sale, detail


# =============================================================================
# DELETE
# =============================================================================

def delete_sale(
    sale_id: int,
    *,
    consignment_id: int | None = None,
    actor_id: int | None = None,
) -> ConsignmentDetail:
    """Delete a sale: give its qty back to remaining_qty and reverse its cash."""
    sale = get_sale(sale_id, consignment_id=consignment_id)
    detail = sale.detail
    require_active(detail.consignment, "delete a sale")

    qty = sale.qty
    margin = sale.margin or ZERO
    detail_id = detail.id
    entry_id = _sale_cash_entry_id(sale)

    def restore_detail(ctx):
        apply_detail_delta(detail_id, sold=-qty, remaining=qty, margin=-margin, active_only=True)

    def reapply_detail(ctx):
        apply_detail_delta(detail_id, sold=qty, remaining=-qty, margin=margin)

    def reverse_sale_cash(ctx):
        return reverse_cash(entry_id)

    def repost_sale_cash(ctx):
        _repost(ctx["reverse_sale_cash"], sale_id)

    def delete_row(ctx):
        db.session.query(ConsignmentSale).filter_by(id=sale_id).delete()
        db.session.commit()

    saga = Saga("consignment_sale_delete", entity_type="consignment_sale", entity_id=sale_id, actor_id=actor_id)
    saga.step("restore_detail", restore_detail, reapply_detail)
    if entry_id is not None:
        saga.step("reverse_sale_cash", reverse_sale_cash, repost_sale_cash)
    saga.step("delete_row", delete_row)
    saga.run()

    detail = db.session.get(ConsignmentDetail, detail_id)
    current_app.logger.info("Deleted consignment sale %s (qty %s)", sale_id, qty)
    audit_service.append_event(
        event_type="consignment.sale_deleted",
        entity_type="consignment",
        entity_id=detail.consignment_id,
        actor_id=actor_id,
        payload={"sale_id": sale_id, "detail_id": detail_id, "qty": str(qty)},
    )
    return detail
