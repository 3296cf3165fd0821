from __future__ import annotations

from ..extensions import db
from ..numbers import dec_str
from ..time_utils import to_utc_z

# Column types shared by every money/quantity field
MONEY = db.Numeric(18, 2)
QUANTITY = db.Numeric(14, 3)


class Branch(db.Model):
    """
    Branch (cabang) master data.

    Owned by master-data CRUD outside this service; the ledger core only reads
    it to scope stock and cash accounts.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_branches_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class ConsignmentStore(db.Model):
    """Third-party store (toko) that holds goods on consignment."""
    __tablename__ = "consignment_stores"
    __table_args__ = (
        db.Index("ix_consignment_stores_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=True)
    name = db.Column(db.String(160), nullable=False)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "branch_id": self.branch_id,
        }


class Supplier(db.Model):
    __tablename__ = "suppliers"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    phone = db.Column(db.String(40), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "phone": self.phone}


class Product(db.Model):
    """
    Product master data.

    STOCK FIELD:
    Product.stock is a cached, branch-agnostic counter mutated on the fast
    path of every stock posting. It is a materialized projection only: the
    authoritative per-branch figure is always derived from
    StockLedgerEntry (see ledger_service.derived_stock), and the
    `flask ledger check-stock` command reconciles the two.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_products_code"),
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=True)

    stock = db.Column(QUANTITY, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "unit": self.unit,
            "current_stock": dec_str(self.stock),
        }


class CashAccount(db.Model):
    """
    Cash / bank account (kas).

    `balance` is only written by ledger_service postings, never by CRUD.
    Invariant: balance == SUM(credit) - SUM(debit) over its CashLedgerEntry rows.
    """
    __tablename__ = "cash_accounts"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "name", name="uq_cash_accounts_branch_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    balance = db.Column(MONEY, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    branch = db.relationship("Branch", backref=db.backref("cash_accounts", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CashAccount id={self.id} name={self.name!r} balance={self.balance}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "name": self.name,
            "balance": dec_str(self.balance),
            "updated_at": to_utc_z(self.updated_at),
        }
