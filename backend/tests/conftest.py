"""
Pytest fixtures for back-office ledger tests.

Provides test database setup, master data (branch, store, supplier,
products, cash account) and a test client.
"""

from contextlib import contextmanager
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import event, text

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Branch, CashAccount, ConsignmentStore, Product, Supplier
from backoffice.models.ledger import CASH_CREDIT, DIRECTION_IN
from backoffice.services import consignment_service, ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def branch(db_session):
    branch = Branch(code="PST", name="Pusat")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def store(db_session, branch):
    store = ConsignmentStore(code="TK-001", name="Toko Makmur", branch_id=branch.id)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="CV Sumber Tani")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(code="BRS-01", name="Beras Premium", unit="Kg", stock=0)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def other_product(db_session):
    product = Product(code="GLA-01", name="Gula Pasir", unit="Kg", stock=0)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def cash_account(db_session, branch):
    account = CashAccount(branch_id=branch.id, name="Kas Utama", balance=0)
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture(scope='function')
def other_account(db_session, branch):
    account = CashAccount(branch_id=branch.id, name="Bank BCA", balance=0)
    db_session.add(account)
    db_session.commit()
    return account


def opening_stock(product_id: int, branch_id: int, quantity) -> None:
    """Put stock on the ledger the way a warehouse receipt would."""
    ledger_service.post_stock(
        product_id=product_id,
        branch_id=branch_id,
        quantity=Decimal(str(quantity)),
        direction=DIRECTION_IN,
        marker="opening stock",
        entry_date=date(2026, 1, 1),
    )


def opening_cash(account_id: int, amount) -> None:
    ledger_service.post_cash(
        account_id=account_id,
        amount=Decimal(str(amount)),
        direction=CASH_CREDIT,
        marker="opening balance",
        entry_date=date(2026, 1, 1),
    )


def make_consignment(store, branch, lines, *, consignment_date="2026-01-18"):
    """lines: [(product, committed_qty, unit_cost, store_price), ...]"""
    return consignment_service.create_consignment(
        consignment_date=consignment_date,
        store_id=store.id,
        branch_id=branch.id,
        details=[
            {
                "product_id": p.id,
                "committed_qty": str(q),
                "unit_cost_to_principal": str(cost),
                "unit_price_at_store": str(price),
            }
            for p, q, cost, price in lines
        ],
    )


@pytest.fixture(scope='function')
def stocked_product(product, branch):
    """Product with 200 units on the branch stock ledger."""
    opening_stock(product.id, branch.id, 200)
    return product


@pytest.fixture(scope='function')
def consignment(store, branch, stocked_product):
    """Active consignment: 100 units at cost 40, store price 50."""
    return make_consignment(store, branch, [(stocked_product, 100, 40, 50)])


@pytest.fixture(scope='function')
def detail(consignment):
    return consignment.details[0]


@contextmanager
def concurrent_version_bump(model, row_id: int):
    """
    Simulate another writer committing to a versioned row between our locked
    read and our flush: the first flush that dirties the row bumps its
    version_id underneath the ORM, so the UPDATE ... WHERE version_id = ?
    matches nothing.
    """
    session = db.session()
    fired = []

    def _bump(sess, flush_context, instances):
        if fired:
            return
        if any(isinstance(obj, model) and obj.id == row_id for obj in sess.dirty):
            fired.append(row_id)
            sess.connection().execute(
                text(f"UPDATE {model.__tablename__} SET version_id = version_id + 1 WHERE id = :id"),
                {"id": row_id},
            )

    event.listen(session, "before_flush", _bump)
    try:
        yield fired
    finally:
        event.remove(session, "before_flush", _bump)
