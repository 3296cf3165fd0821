from __future__ import annotations

from ..extensions import db
from ..numbers import dec_str
from ..time_utils import to_iso_date, to_utc_z
from .master import MONEY, QUANTITY

DIRECTION_IN = "in"
DIRECTION_OUT = "out"
STOCK_DIRECTIONS = (DIRECTION_IN, DIRECTION_OUT)

CASH_DEBIT = "debit"
CASH_CREDIT = "credit"
CASH_DIRECTIONS = (CASH_DEBIT, CASH_CREDIT)


class CashLedgerEntry(db.Model):
    """
    One cash movement (transaksi kas).

    - Exactly one of debit / credit is non-zero.
    - description carries a human-readable correlation marker
      (consignment code, purchase id, ...).
    - idempotency_key, when set, is unique: the same source operation can
      never be posted twice.
    - Rows are only removed as the delete half of an explicit reversal.
    """
    __tablename__ = "cash_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_cash_ledger_idempotency_key"),
        db.Index("ix_cash_ledger_account_date", "account_id", "entry_date"),
        db.Index("ix_cash_ledger_source", "source_type", "source_id"),
        db.CheckConstraint(
            "(debit > 0 AND credit = 0) OR (credit > 0 AND debit = 0)",
            name="ck_cash_ledger_one_side",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("cash_accounts.id"), nullable=False, index=True)
    entry_date = db.Column(db.Date, nullable=False)

    debit = db.Column(MONEY, nullable=False, default=0)
    credit = db.Column(MONEY, nullable=False, default=0)

    description = db.Column(db.String(255), nullable=False)

    source_type = db.Column(db.String(32), nullable=True)
    source_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    account = db.relationship("CashAccount", backref=db.backref("ledger_entries", lazy=True))

    @property
    def direction(self) -> str:
        return CASH_CREDIT if self.credit and self.credit > 0 else CASH_DEBIT

    @property
    def amount(self):
        return self.credit if self.direction == CASH_CREDIT else self.debit

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "date": to_iso_date(self.entry_date),
            "debit": dec_str(self.debit),
            "credit": dec_str(self.credit),
            "description": self.description,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }


class StockLedgerEntry(db.Model):
    """
    One stock movement (stock barang) for a product at a branch.

    Current stock for (product, branch) = SUM(in) - SUM(out).
    History is never mutated; a business reversal is a new entry in the
    opposite direction with its own marker.
    """
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_stock_ledger_idempotency_key"),
        db.Index("ix_stock_ledger_product_branch", "product_id", "branch_id"),
        db.Index("ix_stock_ledger_source", "source_type", "source_id"),
        db.CheckConstraint("quantity > 0", name="ck_stock_ledger_positive_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    quantity = db.Column(QUANTITY, nullable=False)
    direction = db.Column(db.String(8), nullable=False)
    entry_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(255), nullable=False)
    unit_cost = db.Column(MONEY, nullable=True)

    # Denormalized product attributes, as shown on the stock card
    product_name = db.Column(db.String(255), nullable=True)
    product_code = db.Column(db.String(64), nullable=True)
    unit = db.Column(db.String(16), nullable=True)

    source_type = db.Column(db.String(32), nullable=True)
    source_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock_entries", lazy=True))

    @property
    def signed_quantity(self):
        return self.quantity if self.direction == DIRECTION_IN else -self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "quantity": dec_str(self.quantity),
            "direction": self.direction,
            "date": to_iso_date(self.entry_date),
            "description": self.description,
            "unit_cost": dec_str(self.unit_cost),
            "unit": self.unit,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }
