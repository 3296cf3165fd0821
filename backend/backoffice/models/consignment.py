from __future__ import annotations

import enum

from ..extensions import db
from ..errors import InvalidState
from ..numbers import ZERO, dec_str
from ..time_utils import to_iso_date, to_utc_z
from .master import MONEY, QUANTITY


class ConsignmentStatus(str, enum.Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value) -> "ConsignmentStatus":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise InvalidState(f"Invalid status '{value}'. Must be one of: {valid}")


class Consignment(db.Model):
    """
    Consignment header (transaksi konsinyasi).

    Status only moves forward: Active -> Completed | Cancelled.
    Stock leaves the principal's inventory only on completion.
    """
    __tablename__ = "consignments"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_consignments_code"),
        db.Index("ix_consignments_branch_date", "branch_id", "consignment_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False)
    consignment_date = db.Column(db.Date, nullable=False)

    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("consignment_stores.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=ConsignmentStatus.ACTIVE.value, index=True)
    total_committed_value = db.Column(MONEY, nullable=False, default=0)

    completed_date = db.Column(db.Date, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    note = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    branch = db.relationship("Branch")
    store = db.relationship("ConsignmentStore")
    details = db.relationship(
        "ConsignmentDetail",
        back_populates="consignment",
        order_by="ConsignmentDetail.id",
        lazy=True,
    )

    @property
    def status_enum(self) -> ConsignmentStatus:
        return ConsignmentStatus(self.status)

    def to_dict(self, include_details: bool = False) -> dict:
        data = {
            "id": self.id,
            "code": self.code,
            "date": to_iso_date(self.consignment_date),
            "branch_id": self.branch_id,
            "store_id": self.store_id,
            "store_name": self.store.name if self.store else None,
            "employee_id": self.employee_id,
            "status": self.status,
            "total_committed_value": dec_str(self.total_committed_value),
            "total_sold_value": dec_str(
                sum(((d.sold_qty or ZERO) * (d.unit_cost_to_principal or ZERO) for d in self.details), ZERO)
            ),
            "completed_date": to_iso_date(self.completed_date),
            "cancel_reason": self.cancel_reason,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
        if include_details:
            data["details"] = [d.to_dict() for d in self.details]
        return data


class ConsignmentDetail(db.Model):
    """
    One product line within a consignment.

    INVARIANT (checked before every write):
        committed_qty == sold_qty + remaining_qty + returned_qty, all >= 0

    version_id guards read-modify-write of the counters: two sagas touching
    the same line cannot both win.
    """
    __tablename__ = "consignment_details"
    __table_args__ = (
        db.Index("ix_consignment_details_consignment", "consignment_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    consignment_id = db.Column(db.Integer, db.ForeignKey("consignments.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    committed_qty = db.Column(QUANTITY, nullable=False)
    sold_qty = db.Column(QUANTITY, nullable=False, default=0)
    returned_qty = db.Column(QUANTITY, nullable=False, default=0)
    remaining_qty = db.Column(QUANTITY, nullable=False)

    unit_cost_to_principal = db.Column(MONEY, nullable=False)
    unit_price_at_store = db.Column(MONEY, nullable=False)
    committed_value = db.Column(MONEY, nullable=False, default=0)
    accrued_margin = db.Column(MONEY, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    consignment = db.relationship("Consignment", back_populates="details")
    product = db.relationship("Product")

    __mapper_args__ = {"version_id_col": version_id}

    def assert_balanced(self) -> None:
        sold = self.sold_qty or ZERO
        returned = self.returned_qty or ZERO
        remaining = self.remaining_qty or ZERO
        if min(sold, returned, remaining) < 0:
            raise InvalidState(
                f"Detail {self.id} counters cannot be negative "
                f"(sold={sold}, returned={returned}, remaining={remaining})"
            )
        if self.committed_qty != sold + remaining + returned:
            raise InvalidState(
                f"Detail {self.id} is out of balance: committed {self.committed_qty} != "
                f"sold {sold} + remaining {remaining} + returned {returned}"
            )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "consignment_id": self.consignment_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "committed_qty": dec_str(self.committed_qty),
            "sold_qty": dec_str(self.sold_qty),
            "returned_qty": dec_str(self.returned_qty),
            "remaining_qty": dec_str(self.remaining_qty),
            "unit_cost_to_principal": dec_str(self.unit_cost_to_principal),
            "unit_price_at_store": dec_str(self.unit_price_at_store),
            "committed_value": dec_str(self.committed_value),
            "accrued_margin": dec_str(self.accrued_margin),
        }


class ConsignmentSale(db.Model):
    """
    Store-reported sale against a detail line (penjualan konsinyasi).

    principal_value = qty * unit_cost_to_principal  (what the principal is paid)
    store_value     = qty * store_price
    margin          = store_value - principal_value (the store's cut)
    """
    __tablename__ = "consignment_sales"
    __table_args__ = (
        db.Index("ix_consignment_sales_detail", "detail_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    detail_id = db.Column(db.Integer, db.ForeignKey("consignment_details.id"), nullable=False)
    sale_date = db.Column(db.Date, nullable=False)
    payment_date = db.Column(db.Date, nullable=True)

    qty = db.Column(QUANTITY, nullable=False)
    store_price = db.Column(MONEY, nullable=False)
    store_value = db.Column(MONEY, nullable=False)
    principal_value = db.Column(MONEY, nullable=False)
    margin = db.Column(MONEY, nullable=False)

    cash_account_id = db.Column(db.Integer, db.ForeignKey("cash_accounts.id"), nullable=False)
    cash_entry_id = db.Column(
        db.Integer,
        db.ForeignKey("cash_ledger_entries.id", ondelete="SET NULL"),
        nullable=True,
    )
    note = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    detail = db.relationship("ConsignmentDetail", backref=db.backref("sales", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "detail_id": self.detail_id,
            "date": to_iso_date(self.sale_date),
            "payment_date": to_iso_date(self.payment_date),
            "qty": dec_str(self.qty),
            "store_price": dec_str(self.store_price),
            "store_value": dec_str(self.store_value),
            "principal_value": dec_str(self.principal_value),
            "margin": dec_str(self.margin),
            "cash_account_id": self.cash_account_id,
            "cash_entry_id": self.cash_entry_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


class ConsignmentReturn(db.Model):
    """
    Goods handed back by the store (retur konsinyasi).

    idempotency_key = "<detail_id>:<date>:<qty>" is unique, so an identical
    return can only ever be recorded once.
    """
    __tablename__ = "consignment_returns"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_consignment_returns_idempotency_key"),
        db.Index("ix_consignment_returns_detail", "detail_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    detail_id = db.Column(db.Integer, db.ForeignKey("consignment_details.id"), nullable=False)
    return_date = db.Column(db.Date, nullable=False)
    qty = db.Column(QUANTITY, nullable=False)
    condition = db.Column(db.String(32), nullable=False, default="Good")
    return_kind = db.Column(db.String(32), nullable=False, default="Normal")
    note = db.Column(db.Text, nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=False)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    detail = db.relationship("ConsignmentDetail", backref=db.backref("returns", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "detail_id": self.detail_id,
            "date": to_iso_date(self.return_date),
            "qty": dec_str(self.qty),
            "condition": self.condition,
            "return_kind": self.return_kind,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
