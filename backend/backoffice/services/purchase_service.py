# Overview: Service-layer operations for supplier purchases; create, bill and pay off.

"""
Purchase Billing / Payoff

BILL (safe to call repeatedly):
- Per line: stock in (marker "purchase #<id>") unless its key
  "purchase:<id>:line:<line_id>" is already in the stock ledger.
- Down payment: cash out once, key "purchase:<id>:down_payment". The
  account balance is checked before anything is posted.
- Payable upserted: total = total + shipping_cost, paid = SUM(payments),
  remaining = total - paid, status Unpaid / Partial / Paid.

PAYOFF:
- Only after billing (a payable exists).
- A second payoff is a DuplicateOperation; nothing left to pay is
  InvalidState; the account must cover the remaining amount
  (InsufficientFunds).
- cash out = remaining ("purchase payoff #<id>"), payable -> remaining 0,
  status Paid, purchase payment_status Paid.

Both run as sagas over the shared ledger service.
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..errors import DuplicateOperation, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import Branch, Payable, Product, Purchase, PurchaseLine, PurchasePayment, Supplier
from ..models.ledger import CASH_DEBIT, DIRECTION_IN
from ..models.purchasing import (
    PAYMENT_KIND_DOWN_PAYMENT,
    PAYMENT_KIND_PAYOFF,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_UNPAID,
)
from ..numbers import ZERO, money, non_negative, positive, qty as as_qty
from ..time_utils import today, utcnow
from ..validation import parse_date
from . import audit_service
from .concurrency import lock_for_update, run_guarded
from .ledger_service import (
    ensure_funds,
    find_cash_entry,
    find_stock_entry,
    get_cash_account,
    post_cash,
    post_stock,
    retract_stock,
    reverse_cash,
)
from .saga import Saga

ENTITY = "purchase"


def line_stock_key(purchase_id: int, line_id: int) -> str:
    return f"purchase:{purchase_id}:line:{line_id}"


def down_payment_key(purchase_id: int) -> str:
    return f"purchase:{purchase_id}:down_payment"


def payoff_key(purchase_id: int) -> str:
    return f"purchase:{purchase_id}:payoff"


# =============================================================================
# QUERIES
# =============================================================================

def get_purchase(purchase_id: int) -> Purchase:
    purchase = db.session.get(Purchase, purchase_id)
    if purchase is None:
        raise NotFound(f"Purchase {purchase_id} not found")
    return purchase


def get_payable(purchase_id: int) -> Payable | None:
    return db.session.query(Payable).filter_by(purchase_id=purchase_id).first()


def require_payable(purchase: Purchase) -> Payable:
    payable = get_payable(purchase.id)
    if payable is None:
        raise InvalidState(f"Purchase {purchase.id} has not been billed yet")
    return payable


def _payments(purchase_id: int, kind: str | None = None) -> list[PurchasePayment]:
    q = db.session.query(PurchasePayment).filter_by(purchase_id=purchase_id)
    if kind:
        q = q.filter_by(kind=kind)
    return q.order_by(PurchasePayment.id.asc()).all()


def payment_status_for(owed: Decimal, paid: Decimal) -> str:
    if paid >= owed:
        return PAYMENT_STATUS_PAID
    if paid > 0:
        return PAYMENT_STATUS_PARTIAL
    return PAYMENT_STATUS_UNPAID


# =============================================================================
# CREATE
# =============================================================================

def create_purchase(
    *,
    branch_id: int,
    supplier_id: int,
    lines: list[dict],
    purchase_date=None,
    due_date=None,
    shipping_cost=None,
    down_payment=None,
    down_payment_account_id: int | None = None,
    note: str | None = None,
    actor_id: int | None = None,
) -> Purchase:
    """Record a purchase and its lines. Nothing is posted until billing."""
    if not branch_id:
        raise ValidationError("branch_id is required")
    if not supplier_id:
        raise ValidationError("supplier_id is required")
    if not lines:
        raise ValidationError("At least one purchase line is required")
    if db.session.get(Branch, branch_id) is None:
        raise NotFound(f"Branch {branch_id} not found")
    if db.session.get(Supplier, supplier_id) is None:
        raise NotFound(f"Supplier {supplier_id} not found")

    purchase_date = parse_date(purchase_date, "date", default=today())
    due_date = parse_date(due_date, "due_date", required=False)
    shipping_cost = money(non_negative(shipping_cost, "shipping_cost", default=ZERO))
    down_payment = money(non_negative(down_payment, "down_payment", default=ZERO))

    parsed = []
    total = ZERO
    for idx, raw in enumerate(lines, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Line {idx} must be an object")
        product_id = raw.get("product_id")
        if not product_id:
            raise ValidationError(f"Line {idx}: product_id is required")
        if db.session.get(Product, product_id) is None:
            raise NotFound(f"Product {product_id} not found")
        line_qty = as_qty(positive(raw.get("qty"), f"Line {idx}: qty"))
        unit_cost = money(non_negative(raw.get("unit_cost"), f"Line {idx}: unit_cost"))
        subtotal = money(line_qty * unit_cost)
        total += subtotal
        parsed.append((product_id, line_qty, unit_cost, subtotal))

    if down_payment > total + shipping_cost:
        raise ValidationError(
            f"down_payment {down_payment} exceeds the amount owed {total + shipping_cost}"
        )
    if down_payment > 0:
        if not down_payment_account_id:
            raise ValidationError("down_payment_account_id is required when down_payment > 0")
        get_cash_account(down_payment_account_id)

    purchase = Purchase(
        branch_id=branch_id,
        supplier_id=supplier_id,
        purchase_date=purchase_date,
        due_date=due_date,
        total=money(total),
        shipping_cost=shipping_cost,
        down_payment=down_payment,
        down_payment_account_id=down_payment_account_id if down_payment > 0 else None,
        paid=ZERO,
        payment_status=PAYMENT_STATUS_UNPAID,
        note=note,
        created_by=actor_id,
    )
    db.session.add(purchase)
    db.session.flush()
    for product_id, line_qty, unit_cost, subtotal in parsed:
        db.session.add(PurchaseLine(
            purchase_id=purchase.id,
            product_id=product_id,
            qty=line_qty,
            unit_cost=unit_cost,
            subtotal=subtotal,
        ))
    db.session.commit()

    current_app.logger.info("Created purchase %s (total %s)", purchase.id, purchase.total)
    return purchase


# =============================================================================
# PAYABLE
# =============================================================================

def refresh_payable(purchase_id: int) -> Payable:
    """
    Upsert the payable from the recorded payments and mirror paid/status onto
    the purchase. Locked + versioned like every other balance row.
    """
    def _op() -> Payable:
        purchase = get_purchase(purchase_id)
        owed = money(purchase.amount_owed)
        paid = money(sum((p.amount for p in _payments(purchase_id)), ZERO))

        payable = lock_for_update(db.session.query(Payable).filter_by(purchase_id=purchase_id)).first()
        if payable is None:
            payable = Payable(purchase_id=purchase_id, supplier_id=purchase.supplier_id)
            db.session.add(payable)
        payable.total = owed
        payable.paid = paid
        payable.remaining = money(max(owed - paid, ZERO))
        payable.status = payment_status_for(owed, paid)
        payable.due_date = purchase.due_date

        purchase.paid = paid
        purchase.payment_status = payable.status
        db.session.commit()
        return payable

    return run_guarded(_op, entity=f"Payable of purchase {purchase_id}")


def restore_payable(purchase_id: int, previous: dict | None) -> None:
    """Compensation: put the payable (and purchase mirror) back as it was."""
    def _op():
        payable = lock_for_update(db.session.query(Payable).filter_by(purchase_id=purchase_id)).first()
        purchase = get_purchase(purchase_id)
        if previous is None:
            if payable is not None:
                db.session.delete(payable)
            purchase.paid = ZERO
            purchase.payment_status = PAYMENT_STATUS_UNPAID
        else:
            for key, value in previous.items():
                setattr(payable, key, value)
            purchase.paid = previous["paid"]
            purchase.payment_status = previous["status"]
        db.session.commit()

    run_guarded(_op, entity=f"Payable of purchase {purchase_id}")


def payable_snapshot(purchase_id: int) -> dict | None:
    payable = get_payable(purchase_id)
    return payable.snapshot() if payable else None


def _payable_steps(saga: Saga, purchase_id: int) -> None:
    def upsert_payable(ctx):
        return refresh_payable(purchase_id).id

    def undo_payable(ctx):
        restore_payable(purchase_id, ctx["_payable_before"])

    saga.context["_payable_before"] = payable_snapshot(purchase_id)
    saga.step("upsert_payable", upsert_payable, undo_payable)


def _delete_payment(payment_id: int) -> None:
    db.session.query(PurchasePayment).filter_by(id=payment_id).delete()
    db.session.commit()


def cash_payment_steps(
    saga: Saga,
    *,
    purchase_id: int,
    kind: str,
    amount: Decimal,
    account_id: int,
    payment_date,
    marker: str,
    idempotency_key: str,
    note: str | None = None,
    actor_id: int | None = None,
) -> None:
    """cash out -> PurchasePayment row, each with its undo."""
    def debit_cash(ctx):
        entry = post_cash(
            account_id=account_id,
            amount=amount,
            direction=CASH_DEBIT,
            marker=marker,
            entry_date=payment_date,
            idempotency_key=idempotency_key,
            source_type=ENTITY,
            source_id=purchase_id,
            require_funds=True,
        )
        return entry.id

    def undo_debit(ctx):
        reverse_cash(ctx["debit_cash"])

    def record_payment(ctx):
        payment = PurchasePayment(
            purchase_id=purchase_id,
            payment_date=payment_date,
            amount=amount,
            kind=kind,
            cash_account_id=account_id,
            cash_entry_id=ctx["debit_cash"],
            note=note,
            created_by=actor_id,
        )
        db.session.add(payment)
        db.session.commit()
        return payment.id

    def undo_payment(ctx):
        _delete_payment(ctx["record_payment"])

    saga.step("debit_cash", debit_cash, undo_debit)
    saga.step("record_payment", record_payment, undo_payment)


# =============================================================================
# BILL
# =============================================================================

def bill_purchase(
    purchase_id: int,
    *,
    cash_account_id: int | None = None,
    entry_date=None,
    actor_id: int | None = None,
) -> dict:
    """
    Receive the goods and open the payable. Calling it again posts nothing
    new: each line and the down payment are guarded by their keys.

    Returns {"purchase", "payable", "stock_entries_posted", "down_payment_posted"}.
    """
    purchase = get_purchase(purchase_id)
    if not purchase.lines:
        raise InvalidState(f"Purchase {purchase_id} has no lines to bill")
    entry_date = parse_date(entry_date, "date", default=purchase.purchase_date)

    marker = f"purchase #{purchase_id}"
    pending_lines = [
        line for line in purchase.lines
        if find_stock_entry(line_stock_key(purchase_id, line.id)) is None
    ]

    down_payment = money(purchase.down_payment or ZERO)
    post_down_payment = (
        down_payment > 0
        and not _payments(purchase_id, PAYMENT_KIND_DOWN_PAYMENT)
        and find_cash_entry(down_payment_key(purchase_id)) is None
    )
    account_id = cash_account_id or purchase.down_payment_account_id
    if post_down_payment:
        if not account_id:
            raise ValidationError("cash_account_id is required to post the down payment")
        ensure_funds(account_id, down_payment, purpose=f"down payment of purchase #{purchase_id}")

    saga = Saga("purchase_bill", entity_type=ENTITY, entity_id=purchase_id, actor_id=actor_id)
    for line in pending_lines:
        name = f"stock_in:{line.id}"

        def _post(ctx, line_id=line.id, product_id=line.product_id, line_qty=line.qty, unit_cost=line.unit_cost):
            return post_stock(
                product_id=product_id,
                branch_id=purchase.branch_id,
                quantity=line_qty,
                direction=DIRECTION_IN,
                marker=marker,
                entry_date=entry_date,
                unit_cost=unit_cost,
                idempotency_key=line_stock_key(purchase_id, line_id),
                source_type=ENTITY,
                source_id=purchase_id,
            ).id

        def _retract(ctx, step=name):
            retract_stock(ctx[step])

        saga.step(name, _post, _retract)

    if post_down_payment:
        cash_payment_steps(
            saga,
            purchase_id=purchase_id,
            kind=PAYMENT_KIND_DOWN_PAYMENT,
            amount=down_payment,
            account_id=account_id,
            payment_date=entry_date,
            marker=f"purchase down payment #{purchase_id}",
            idempotency_key=down_payment_key(purchase_id),
            actor_id=actor_id,
        )

    _payable_steps(saga, purchase_id)

    def mark_billed(ctx):
        row = get_purchase(purchase_id)
        if row.billed_at is None:
            row.billed_at = utcnow()
        db.session.commit()

    saga.step("mark_billed", mark_billed)
    saga.run()

    purchase = get_purchase(purchase_id)
    payable = get_payable(purchase_id)
    current_app.logger.info(
        "Billed purchase %s: %d stock entr(ies) posted, down payment %s",
        purchase_id, len(pending_lines), "posted" if post_down_payment else "not posted",
    )
    if pending_lines or post_down_payment:
        audit_service.append_event(
            event_type="purchase.billed",
            entity_type=ENTITY,
            entity_id=purchase_id,
            actor_id=actor_id,
            note=marker,
            payload={"stock_entries": len(pending_lines), "down_payment": str(down_payment) if post_down_payment else None},
        )
    return {
        "purchase": purchase,
        "payable": payable,
        "stock_entries_posted": len(pending_lines),
        "down_payment_posted": post_down_payment,
    }


# =============================================================================
# PAYOFF
# =============================================================================

def pay_off_purchase(
    purchase_id: int,
    *,
    cash_account_id: int,
    payment_date=None,
    note: str | None = None,
    actor_id: int | None = None,
) -> dict:
    """
    Pay the whole remaining payable in one cash-out.

    Raises:
        InvalidState: not billed yet, or nothing remaining
        DuplicateOperation: payoff already recorded
        InsufficientFunds: account balance < remaining
    """
    purchase = get_purchase(purchase_id)
    if not cash_account_id:
        raise ValidationError("cash_account_id is required")
    get_cash_account(cash_account_id)
    payable = require_payable(purchase)

    if _payments(purchase_id, PAYMENT_KIND_PAYOFF) or find_cash_entry(payoff_key(purchase_id)) is not None:
        raise DuplicateOperation(f"Purchase {purchase_id} has already been paid off")

    remaining = money(payable.remaining or ZERO)
    if remaining <= 0:
        raise InvalidState(f"Purchase {purchase_id} has nothing left to pay")

    ensure_funds(cash_account_id, remaining, purpose=f"payoff of purchase #{purchase_id}")
    payment_date = parse_date(payment_date, "date", default=today())

    saga = Saga("purchase_payoff", entity_type=ENTITY, entity_id=purchase_id, actor_id=actor_id)
    cash_payment_steps(
        saga,
        purchase_id=purchase_id,
        kind=PAYMENT_KIND_PAYOFF,
        amount=remaining,
        account_id=cash_account_id,
        payment_date=payment_date,
        marker=f"purchase payoff #{purchase_id}",
        idempotency_key=payoff_key(purchase_id),
        note=note or f"Payoff of purchase {purchase_id}",
        actor_id=actor_id,
    )
    _payable_steps(saga, purchase_id)
    ctx = saga.run()

    payment = db.session.get(PurchasePayment, ctx["record_payment"])
    current_app.logger.info("Paid off purchase %s: %s from account %s", purchase_id, remaining, cash_account_id)
    audit_service.append_event(
        event_type="purchase.paid_off",
        entity_type=ENTITY,
        entity_id=purchase_id,
        actor_id=actor_id,
        payload={"amount": str(remaining), "cash_account_id": cash_account_id},
    )
    return {
        "purchase": get_purchase(purchase_id),
        "payable": get_payable(purchase_id),
        "payment": payment,
    }
