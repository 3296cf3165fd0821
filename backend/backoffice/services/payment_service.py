# Overview: Service-layer operations for purchase installments; pay, edit and delete against the payable.

"""
Purchase installments (cicilan)

Each installment is a cash-out against a billed purchase. The payable is
always recomputed from the payment rows afterwards, so its status moves
between Unpaid / Partial / Paid on its own.

EDIT is delta based: the old cash posting is reversed and a replacement is
posted (optionally on another account). The new amount may not exceed
remaining + old amount, and the paying account must cover it:
    same account:  balance + old amount >= new amount
    other account: balance >= new amount
"""

from __future__ import annotations

from flask import current_app

from ..errors import InsufficientFunds, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import PurchasePayment
from ..models.ledger import CASH_DEBIT
from ..models.purchasing import PAYMENT_KIND_INSTALLMENT
from ..numbers import ZERO, money, positive
from ..time_utils import today
from ..validation import parse_date
from . import audit_service
from .ledger_service import ensure_funds, get_cash_account, post_cash, reverse_cash
from .purchase_service import (
    ENTITY,
    _payable_steps,
    get_purchase,
    require_payable,
)
from .saga import Saga


def installment_key(payment_id: int) -> str:
    return f"purchase_payment:{payment_id}:debit"


def get_installment(payment_id: int, *, purchase_id: int | None = None) -> PurchasePayment:
    payment = db.session.get(PurchasePayment, payment_id)
    if payment is None or (purchase_id is not None and payment.purchase_id != purchase_id):
        raise NotFound(f"Purchase payment {payment_id} not found")
    if payment.kind != PAYMENT_KIND_INSTALLMENT:
        raise InvalidState(f"Payment {payment_id} is a {payment.kind}, not an installment")
    return payment


def list_payments(purchase_id: int) -> list[PurchasePayment]:
    get_purchase(purchase_id)
    return (
        db.session.query(PurchasePayment)
        .filter_by(purchase_id=purchase_id)
        .order_by(PurchasePayment.payment_date.asc(), PurchasePayment.id.asc())
        .all()
    )


def _set_cash_entry(payment_id: int, entry_id: int | None) -> None:
    payment = db.session.get(PurchasePayment, payment_id)
    payment.cash_entry_id = entry_id
    db.session.commit()


def pay_installment(
    purchase_id: int,
    *,
    amount,
    cash_account_id: int,
    payment_date=None,
    note: str | None = None,
    actor_id: int | None = None,
) -> dict:
    purchase = get_purchase(purchase_id)
    amount = money(positive(amount, "amount"))
    if not cash_account_id:
        raise ValidationError("cash_account_id is required")
    get_cash_account(cash_account_id)
    payable = require_payable(purchase)

    remaining = payable.remaining or ZERO
    if amount > remaining:
        raise ValidationError(
            f"Installment {amount} exceeds the remaining payable {remaining}",
            requested=amount,
            available=remaining,
        )
    ensure_funds(cash_account_id, amount, purpose=f"installment of purchase #{purchase_id}")
    payment_date = parse_date(payment_date, "date", default=today())

    # The key needs the payment id, so the row is written first and the
    # cash-out keyed from it.
    def insert_payment(ctx):
        payment = PurchasePayment(
            purchase_id=purchase_id,
            payment_date=payment_date,
            amount=amount,
            kind=PAYMENT_KIND_INSTALLMENT,
            cash_account_id=cash_account_id,
            note=note,
            created_by=actor_id,
        )
        db.session.add(payment)
        db.session.commit()
        return payment.id

    def delete_payment(ctx):
        db.session.query(PurchasePayment).filter_by(id=ctx["insert_payment"]).delete()
        db.session.commit()

    def debit_cash(ctx):
        payment_id = ctx["insert_payment"]
        entry = post_cash(
            account_id=cash_account_id,
            amount=amount,
            direction=CASH_DEBIT,
            marker=f"purchase installment #{purchase_id}",
            entry_date=payment_date,
            idempotency_key=installment_key(payment_id),
            source_type=ENTITY,
            source_id=purchase_id,
            require_funds=True,
        )
        return entry.id

    def undo_debit(ctx):
        reverse_cash(ctx["debit_cash"])

    saga = Saga("purchase_installment", entity_type=ENTITY, entity_id=purchase_id, actor_id=actor_id)
    saga.step("insert_payment", insert_payment, delete_payment)
    saga.step("debit_cash", debit_cash, undo_debit)
    saga.step("link_cash_entry", lambda ctx: _set_cash_entry(ctx["insert_payment"], ctx["debit_cash"]))
    _payable_steps(saga, purchase_id)
    ctx = saga.run()

    payment = db.session.get(PurchasePayment, ctx["insert_payment"])
    current_app.logger.info("Installment %s on purchase %s: %s", payment.id, purchase_id, amount)
    audit_service.append_event(
        event_type="purchase.installment_paid",
        entity_type=ENTITY,
        entity_id=purchase_id,
        actor_id=actor_id,
        payload={"payment_id": payment.id, "amount": str(amount)},
    )
    return {"payment": payment, "payable": require_payable(get_purchase(purchase_id))}


def edit_installment(
    payment_id: int,
    *,
    amount=None,
    cash_account_id: int | None = None,
    payment_date=None,
    note: str | None = None,
    purchase_id: int | None = None,
    actor_id: int | None = None,
) -> dict:
    payment = get_installment(payment_id, purchase_id=purchase_id)
    purchase_id = payment.purchase_id
    payable = require_payable(get_purchase(purchase_id))

    old_amount = payment.amount
    old_account = payment.cash_account_id
    old_entry_id = payment.cash_entry_id
    new_amount = money(positive(amount, "amount")) if amount is not None else old_amount
    new_account = cash_account_id or old_account
    new_date = parse_date(payment_date, "date", default=payment.payment_date)

    available = (payable.remaining or ZERO) + old_amount
    if new_amount > available:
        raise ValidationError(
            f"Installment {new_amount} exceeds the remaining payable {available}",
            requested=new_amount,
            available=available,
        )

    account = get_cash_account(new_account)
    spendable = (account.balance or ZERO) + (old_amount if new_account == old_account else ZERO)
    if spendable < new_amount:
        raise InsufficientFunds(
            f"Insufficient balance in {account.name} for installment. "
            f"Requested: {new_amount}, available: {spendable}",
            requested=new_amount,
            available=spendable,
        )

    snapshot = {
        "amount": old_amount,
        "cash_account_id": old_account,
        "payment_date": payment.payment_date,
        "note": payment.note,
    }

    def reverse_old(ctx):
        return reverse_cash(old_entry_id)

    def repost_old(ctx):
        entry = post_cash(**ctx["reverse_old"])
        _set_cash_entry(payment_id, entry.id)

    def post_new(ctx):
        entry = post_cash(
            account_id=new_account,
            amount=new_amount,
            direction=CASH_DEBIT,
            marker=f"purchase installment #{purchase_id}",
            entry_date=new_date,
            idempotency_key=installment_key(payment_id),
            source_type=ENTITY,
            source_id=purchase_id,
            require_funds=True,
        )
        return entry.id

    def undo_new(ctx):
        reverse_cash(ctx["post_new"])

    def rewrite_payment(ctx):
        row = db.session.get(PurchasePayment, payment_id)
        row.amount = new_amount
        row.cash_account_id = new_account
        row.payment_date = new_date
        row.cash_entry_id = ctx["post_new"]
        if note is not None:
            row.note = note
        db.session.commit()

    def restore_payment(ctx):
        row = db.session.get(PurchasePayment, payment_id)
        for key, value in snapshot.items():
            setattr(row, key, value)
        db.session.commit()

    saga = Saga("purchase_installment_edit", entity_type="purchase_payment", entity_id=payment_id, actor_id=actor_id)
    if old_entry_id is not None:
        saga.step("reverse_old", reverse_old, repost_old)
    saga.step("post_new", post_new, undo_new)
    saga.step("rewrite_payment", rewrite_payment, restore_payment)
    _payable_steps(saga, purchase_id)
    saga.run()

    current_app.logger.info(
        "Edited installment %s: %s on account %s -> %s on account %s",
        payment_id, old_amount, old_account, new_amount, new_account,
    )
    audit_service.append_event(
        event_type="purchase.installment_edited",
        entity_type=ENTITY,
        entity_id=purchase_id,
        actor_id=actor_id,
        payload={"payment_id": payment_id, "old_amount": str(old_amount), "new_amount": str(new_amount)},
    )
    return {
        "payment": db.session.get(PurchasePayment, payment_id),
        "payable": require_payable(get_purchase(purchase_id)),
    }


def delete_installment(payment_id: int, *, purchase_id: int | None = None, actor_id: int | None = None) -> dict:
    payment = get_installment(payment_id, purchase_id=purchase_id)
    purchase_id = payment.purchase_id
    require_payable(get_purchase(purchase_id))
    entry_id = payment.cash_entry_id
    amount = payment.amount
    row_values = {
        "id": payment.id,
        "purchase_id": purchase_id,
        "payment_date": payment.payment_date,
        "amount": payment.amount,
        "kind": payment.kind,
        "cash_account_id": payment.cash_account_id,
        "note": payment.note,
        "created_by": payment.created_by,
    }

    def reverse_payment_cash(ctx):
        return reverse_cash(entry_id)

    def repost_payment_cash(ctx):
        entry = post_cash(**ctx["reverse_payment_cash"])
        _set_cash_entry(payment_id, entry.id)

    def delete_row(ctx):
        db.session.query(PurchasePayment).filter_by(id=payment_id).delete()
        db.session.commit()

    def reinsert_row(ctx):
        db.session.add(PurchasePayment(**row_values))
        db.session.commit()

    saga = Saga("purchase_installment_delete", entity_type="purchase_payment", entity_id=payment_id, actor_id=actor_id)
    if entry_id is not None:
        saga.step("reverse_payment_cash", reverse_payment_cash, repost_payment_cash)
    saga.step("delete_row", delete_row, reinsert_row)
    _payable_steps(saga, purchase_id)
    saga.run()

    current_app.logger.info("Deleted installment %s of purchase %s (%s)", payment_id, purchase_id, amount)
    audit_service.append_event(
        event_type="purchase.installment_deleted",
        entity_type=ENTITY,
        entity_id=purchase_id,
        actor_id=actor_id,
        payload={"payment_id": payment_id, "amount": str(amount)},
    )
    return {"payable": require_payable(get_purchase(purchase_id))}
