from __future__ import annotations

from ..extensions import db
from ..numbers import dec_str
from ..time_utils import to_iso_date, to_utc_z
from .master import MONEY, QUANTITY

PAYMENT_STATUS_UNPAID = "Unpaid"
PAYMENT_STATUS_PARTIAL = "Partial"
PAYMENT_STATUS_PAID = "Paid"

PAYMENT_KIND_DOWN_PAYMENT = "down_payment"
PAYMENT_KIND_INSTALLMENT = "installment"
PAYMENT_KIND_PAYOFF = "payoff"
PAYMENT_KINDS = (PAYMENT_KIND_DOWN_PAYMENT, PAYMENT_KIND_INSTALLMENT, PAYMENT_KIND_PAYOFF)


class Purchase(db.Model):
    """
    Supplier purchase (transaksi pembelian).

    amount owed = total + shipping_cost. Billing receives the goods into the
    branch stock ledger and opens the Payable.
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.Index("ix_purchases_branch_date", "branch_id", "purchase_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    purchase_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=True)

    total = db.Column(MONEY, nullable=False, default=0)
    shipping_cost = db.Column(MONEY, nullable=False, default=0)
    down_payment = db.Column(MONEY, nullable=False, default=0)
    down_payment_account_id = db.Column(db.Integer, db.ForeignKey("cash_accounts.id"), nullable=True)
    paid = db.Column(MONEY, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_UNPAID)

    billed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    supplier = db.relationship("Supplier")
    lines = db.relationship("PurchaseLine", backref="purchase", order_by="PurchaseLine.id", lazy=True)

    @property
    def amount_owed(self):
        return (self.total or 0) + (self.shipping_cost or 0)

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "branch_id": self.branch_id,
            "supplier_id": self.supplier_id,
            "date": to_iso_date(self.purchase_date),
            "due_date": to_iso_date(self.due_date),
            "total": dec_str(self.total),
            "shipping_cost": dec_str(self.shipping_cost),
            "down_payment": dec_str(self.down_payment),
            "down_payment_account_id": self.down_payment_account_id,
            "paid": dec_str(self.paid),
            "payment_status": self.payment_status,
            "billed_at": to_utc_z(self.billed_at),
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class PurchaseLine(db.Model):
    __tablename__ = "purchase_lines"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    qty = db.Column(QUANTITY, nullable=False)
    unit_cost = db.Column(MONEY, nullable=False)
    subtotal = db.Column(MONEY, nullable=False)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "product_id": self.product_id,
            "qty": dec_str(self.qty),
            "unit_cost": dec_str(self.unit_cost),
            "subtotal": dec_str(self.subtotal),
        }


class Payable(db.Model):
    """Amount owed to a supplier for one purchase (hutang pembelian)."""
    __tablename__ = "payables"
    __table_args__ = (
        db.UniqueConstraint("purchase_id", name="uq_payables_purchase"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    total = db.Column(MONEY, nullable=False)
    paid = db.Column(MONEY, nullable=False, default=0)
    remaining = db.Column(MONEY, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_UNPAID)
    due_date = db.Column(db.Date, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    purchase = db.relationship("Purchase", backref=db.backref("payable", uselist=False))
    __mapper_args__ = {"version_id_col": version_id}

    def snapshot(self) -> dict:
        return {"total": self.total, "paid": self.paid, "remaining": self.remaining, "status": self.status}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "supplier_id": self.supplier_id,
            "total": dec_str(self.total),
            "paid": dec_str(self.paid),
            "remaining": dec_str(self.remaining),
            "status": self.status,
            "due_date": to_iso_date(self.due_date),
        }


class PurchasePayment(db.Model):
    """Down payment, installment or payoff against a purchase (cicilan pembelian)."""
    __tablename__ = "purchase_payments"
    __table_args__ = (
        db.Index("ix_purchase_payments_purchase_kind", "purchase_id", "kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False)
    payment_date = db.Column(db.Date, nullable=False)
    amount = db.Column(MONEY, nullable=False)
    kind = db.Column(db.String(16), nullable=False)
    cash_account_id = db.Column(db.Integer, db.ForeignKey("cash_accounts.id"), nullable=False)
    cash_entry_id = db.Column(
        db.Integer,
        db.ForeignKey("cash_ledger_entries.id", ondelete="SET NULL"),
        nullable=True,
    )
    note = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_id": self.purchase_id,
            "date": to_iso_date(self.payment_date),
            "amount": dec_str(self.amount),
            "kind": self.kind,
            "cash_account_id": self.cash_account_id,
            "cash_entry_id": self.cash_entry_id,
            "note": self.note,
        }
