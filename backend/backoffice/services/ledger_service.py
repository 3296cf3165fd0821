# Overview: Service-layer operations for the cash and stock ledgers and their balance store.

"""
Ledger & Balance Store Invariants (authoritative)

Cash:
- CashAccount.balance == SUM(credit) - SUM(debit) of its CashLedgerEntry rows.
- post_cash writes the ledger row first, then moves the balance. If the
  balance write fails the ledger row is deleted before the error surfaces,
  so no entry is ever left without its balance effect.
- reverse_cash is the delete half of a delete/insert pair: it removes the
  entry and its balance effect together (same two-write discipline).

Stock:
- Stock for (product, branch) is ledger-derived: SUM(in) - SUM(out).
- Product.stock is a fast-path cache moved by every posting. Nothing in the
  consignment/purchase core trusts it for validation; derived_stock()
  rescans the ledger instead.
- Business reversals are new opposite-direction entries. retract_stock
  (physical delete) is for saga compensation only.

Idempotency:
- idempotency_key is unique per ledger. Posting an existing key raises
  DuplicateOperation; callers that need "post once" semantics look the key
  up first with find_cash_entry / find_stock_entry.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CompensationFailure,
    DuplicateOperation,
    InsufficientFunds,
    NotFound,
    ValidationError,
)
from ..extensions import db
from ..models import CashAccount, CashLedgerEntry, Product, StockLedgerEntry, Branch
from ..models.ledger import (
    CASH_CREDIT,
    CASH_DEBIT,
    CASH_DIRECTIONS,
    DIRECTION_IN,
    DIRECTION_OUT,
    STOCK_DIRECTIONS,
)
from ..numbers import ZERO, money, qty as as_qty
from ..time_utils import today
from .concurrency import lock_for_update, run_guarded


# =============================================================================
# LOOKUPS
# =============================================================================

def get_cash_account(account_id: int) -> CashAccount:
    account = db.session.get(CashAccount, account_id)
    if account is None:
        raise NotFound(f"Cash account {account_id} not found")
    return account


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found")
    return product


def find_cash_entry(idempotency_key: str) -> CashLedgerEntry | None:
    return db.session.query(CashLedgerEntry).filter_by(idempotency_key=idempotency_key).first()


def find_stock_entry(idempotency_key: str) -> StockLedgerEntry | None:
    return db.session.query(StockLedgerEntry).filter_by(idempotency_key=idempotency_key).first()


def list_cash_entries(account_id: int, *, limit: int = 200) -> list[CashLedgerEntry]:
    get_cash_account(account_id)
    return (
        db.session.query(CashLedgerEntry)
        .filter_by(account_id=account_id)
        .order_by(CashLedgerEntry.entry_date.desc(), CashLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


def list_stock_entries(product_id: int, branch_id: int, *, limit: int = 200) -> list[StockLedgerEntry]:
    return (
        db.session.query(StockLedgerEntry)
        .filter_by(product_id=product_id, branch_id=branch_id)
        .order_by(StockLedgerEntry.entry_date.desc(), StockLedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# DERIVED BALANCES
# =============================================================================

def derived_stock(product_id: int, branch_id: int) -> Decimal:
    """
    Current stock for (product, branch) from a full scan of the stock ledger.

    WHY a scan and not Product.stock: warehouse and production flows outside
    this core also move stock, so the cached counter is not trusted at
    checkpoints (consignment completion).
    """
    rows = (
        db.session.query(StockLedgerEntry.quantity, StockLedgerEntry.direction)
        .filter(
            StockLedgerEntry.product_id == product_id,
            StockLedgerEntry.branch_id == branch_id,
        )
        .all()
    )
    total = ZERO
    for quantity, direction in rows:
        if direction == DIRECTION_IN:
            total += quantity
        elif direction == DIRECTION_OUT:
            total -= quantity
    return as_qty(total)


def derived_stock_all_branches(product_id: int) -> Decimal:
    rows = (
        db.session.query(StockLedgerEntry.quantity, StockLedgerEntry.direction)
        .filter(StockLedgerEntry.product_id == product_id)
        .all()
    )
    total = ZERO
    for quantity, direction in rows:
        total += quantity if direction == DIRECTION_IN else -quantity
    return as_qty(total)


def replayed_cash_balance(account_id: int) -> Decimal:
    """Replay SUM(credit) - SUM(debit) for an account."""
    rows = (
        db.session.query(CashLedgerEntry.debit, CashLedgerEntry.credit)
        .filter(CashLedgerEntry.account_id == account_id)
        .all()
    )
    total = ZERO
    for debit, credit in rows:
        total += (credit or ZERO) - (debit or ZERO)
    return money(total)


# =============================================================================
# CASH POSTINGS
# =============================================================================

def _signed_cash(amount: Decimal, direction: str) -> Decimal:
    return amount if direction == CASH_CREDIT else -amount


def _insufficient_funds(account: CashAccount, amount: Decimal, balance: Decimal, purpose: str) -> InsufficientFunds:
    return InsufficientFunds(
        f"Insufficient balance in {account.name} for {purpose}. "
        f"Requested: {amount}, available: {balance}",
        requested=amount,
        available=balance,
    )


def _move_cash_balance(
    account_id: int,
    delta: Decimal,
    *,
    require_funds: bool = False,
    purpose: str = "payment",
) -> CashAccount:
    """
    Move the cached balance under the row lock.

    With require_funds a debit that would take the balance below zero raises
    InsufficientFunds; the check reads the locked row, so two concurrent
    debits cannot both pass it.
    """
    def _op():
        account = lock_for_update(db.session.query(CashAccount).filter_by(id=account_id)).first()
        if account is None:
            raise NotFound(f"Cash account {account_id} not found")
        balance = account.balance or ZERO
        if require_funds and delta < 0 and balance + delta < 0:
            db.session.rollback()
            raise _insufficient_funds(account, -delta, balance, purpose)
        account.balance = money(balance + delta)
        db.session.commit()
        return account

    return run_guarded(_op, entity=f"Cash account {account_id}")


def _delete_orphan(model, entry_id: int, *, reason: Exception) -> None:
    """Remove a ledger row whose balance write failed."""
    try:
        db.session.query(model).filter_by(id=entry_id).delete()
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        current_app.logger.critical(
            "Orphaned %s id=%s left without balance effect: %s (original error: %s)",
            model.__tablename__, entry_id, exc, reason,
        )
        raise CompensationFailure(
            f"{model.__tablename__} row {entry_id} could not be removed after a failed balance update",
            entry_id=entry_id,
        ) from exc


def post_cash(
    *,
    account_id: int,
    amount,
    direction: str,
    marker: str,
    entry_date: date | None = None,
    idempotency_key: str | None = None,
    source_type: str | None = None,
    source_id: int | None = None,
    require_funds: bool = False,
) -> CashLedgerEntry:
    """
    Append a cash movement and move the account balance.

    credit: balance += amount (money in)
    debit:  balance -= amount (money out)

    require_funds=True makes a debit fail instead of overdrawing the account.
    ensure_funds() is only an early check; this one runs on the locked row.

    Raises:
        ValidationError: amount <= 0 or unknown direction
        NotFound: account missing
        DuplicateOperation: idempotency_key already posted
        InsufficientFunds: require_funds and the locked balance is short
        Conflict: the balance row is locked or was modified concurrently
    """
    if direction not in CASH_DIRECTIONS:
        raise ValidationError(f"Invalid cash direction '{direction}'")
    amount = money(Decimal(amount))
    if amount <= 0:
        raise ValidationError("Cash posting amount must be greater than 0")

    get_cash_account(account_id)

    if idempotency_key and find_cash_entry(idempotency_key) is not None:
        raise DuplicateOperation(f"Cash posting '{idempotency_key}' was already recorded")

    entry = CashLedgerEntry(
        account_id=account_id,
        entry_date=entry_date or today(),
        debit=amount if direction == CASH_DEBIT else ZERO,
        credit=amount if direction == CASH_CREDIT else ZERO,
        description=marker[:255],
        source_type=source_type,
        source_id=source_id,
        idempotency_key=idempotency_key,
    )
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise DuplicateOperation(f"Cash posting '{idempotency_key}' was already recorded") from exc

    entry_id = entry.id
    try:
        _move_cash_balance(
            account_id,
            _signed_cash(amount, direction),
            require_funds=require_funds,
            purpose=marker,
        )
    except Exception as exc:
        db.session.rollback()
        _delete_orphan(CashLedgerEntry, entry_id, reason=exc)
        raise

    current_app.logger.info(
        "Cash %s %s on account %s (%s) entry=%s", direction, amount, account_id, marker, entry_id
    )
    return db.session.get(CashLedgerEntry, entry_id)


def reverse_cash(entry_id: int) -> dict:
    """
    Remove a cash entry together with its balance effect.

    Returns the removed posting as keyword arguments for post_cash, so a
    compensating step can put it back.
    """
    entry = db.session.get(CashLedgerEntry, entry_id)
    if entry is None:
        raise NotFound(f"Cash ledger entry {entry_id} not found")

    posting = {
        "account_id": entry.account_id,
        "amount": entry.amount,
        "direction": entry.direction,
        "marker": entry.description,
        "entry_date": entry.entry_date,
        "idempotency_key": entry.idempotency_key,
        "source_type": entry.source_type,
        "source_id": entry.source_id,
    }

    db.session.delete(entry)
    db.session.commit()

    try:
        _move_cash_balance(posting["account_id"], -_signed_cash(posting["amount"], posting["direction"]))
    except Exception as exc:
        db.session.rollback()
        # put the row back so ledger and balance still agree
        try:
            restored = CashLedgerEntry(
                account_id=posting["account_id"],
                entry_date=posting["entry_date"],
                debit=posting["amount"] if posting["direction"] == CASH_DEBIT else ZERO,
                credit=posting["amount"] if posting["direction"] == CASH_CREDIT else ZERO,
                description=posting["marker"],
                source_type=posting["source_type"],
                source_id=posting["source_id"],
                idempotency_key=posting["idempotency_key"],
            )
            db.session.add(restored)
            db.session.commit()
        except Exception as restore_exc:
            db.session.rollback()
            current_app.logger.critical(
                "Cash entry %s deleted but balance of account %s not reversed: %s",
                entry_id, posting["account_id"], restore_exc,
            )
            raise CompensationFailure(
                f"Cash entry {entry_id} was removed but the balance could not be reversed",
                entry_id=entry_id,
                account_id=posting["account_id"],
            ) from exc
        raise

    current_app.logger.info(
        "Reversed cash entry %s (%s %s on account %s)",
        entry_id, posting["direction"], posting["amount"], posting["account_id"],
    )
    return posting


def ensure_funds(account_id: int, amount: Decimal, *, purpose: str) -> CashAccount:
    """Raise InsufficientFunds unless the account balance covers amount (unlocked read)."""
    account = get_cash_account(account_id)
    balance = account.balance or ZERO
    if balance < amount:
        raise _insufficient_funds(account, amount, balance, purpose)
    return account


# =============================================================================
# STOCK POSTINGS
# =============================================================================

def _move_cached_stock(product_id: int, delta: Decimal) -> Product:
    def _op():
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        product.stock = as_qty((product.stock or ZERO) + delta)
        db.session.commit()
        return product

    return run_guarded(_op, entity=f"Product {product_id}")


def post_stock(
    *,
    product_id: int,
    branch_id: int,
    quantity,
    direction: str,
    marker: str,
    entry_date: date | None = None,
    unit_cost=None,
    idempotency_key: str | None = None,
    source_type: str | None = None,
    source_id: int | None = None,
) -> StockLedgerEntry:
    """
    Append a stock movement and move the product's cached stock.

    Same two-write discipline as post_cash: if the cached counter cannot be
    moved the new ledger row is deleted before re-raising.
    """
    if direction not in STOCK_DIRECTIONS:
        raise ValidationError(f"Invalid stock direction '{direction}'")
    quantity = as_qty(Decimal(quantity))
    if quantity <= 0:
        raise ValidationError("Stock posting quantity must be greater than 0")

    product = get_product(product_id)
    if db.session.get(Branch, branch_id) is None:
        raise NotFound(f"Branch {branch_id} not found")

    if idempotency_key and find_stock_entry(idempotency_key) is not None:
        raise DuplicateOperation(f"Stock posting '{idempotency_key}' was already recorded")

    entry = StockLedgerEntry(
        product_id=product_id,
        branch_id=branch_id,
        quantity=quantity,
        direction=direction,
        entry_date=entry_date or today(),
        description=marker[:255],
        unit_cost=money(Decimal(unit_cost)) if unit_cost is not None else None,
        product_name=product.name,
        product_code=product.code or "",
        unit=product.unit or current_app.config.get("DEFAULT_UNIT", "Kg"),
        source_type=source_type,
        source_id=source_id,
        idempotency_key=idempotency_key,
    )
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise DuplicateOperation(f"Stock posting '{idempotency_key}' was already recorded") from exc

    entry_id = entry.id
    try:
        _move_cached_stock(product_id, quantity if direction == DIRECTION_IN else -quantity)
    except Exception as exc:
        db.session.rollback()
        _delete_orphan(StockLedgerEntry, entry_id, reason=exc)
        raise

    current_app.logger.info(
        "Stock %s %s of product %s at branch %s (%s) entry=%s",
        direction, quantity, product_id, branch_id, marker, entry_id,
    )
    return db.session.get(StockLedgerEntry, entry_id)


def retract_stock(entry_id: int) -> None:
    """
    Compensation only: remove a stock entry written earlier in the same saga
    and undo its effect on the cached counter.
    """
    entry = db.session.get(StockLedgerEntry, entry_id)
    if entry is None:
        return
    product_id = entry.product_id
    delta = -entry.signed_quantity

    db.session.delete(entry)
    db.session.commit()
    _move_cached_stock(product_id, delta)
    current_app.logger.warning("Retracted stock entry %s of product %s", entry_id, product_id)
