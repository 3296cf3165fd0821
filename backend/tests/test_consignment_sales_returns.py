"""Consignment creation, sales and returns against the detail counters."""

from datetime import date
from decimal import Decimal

import pytest

from backoffice.errors import (
    Conflict,
    DuplicateOperation,
    InsufficientRemaining,
    InvalidState,
    NotFound,
    ValidationError,
)
from backoffice.models import CashLedgerEntry, ConsignmentReturn, ConsignmentSale
from backoffice.services import (
    consignment_return_service,
    consignment_sale_service,
    consignment_service,
    ledger_service,
    lifecycle_service,
)

from conftest import make_consignment, opening_cash


def _sell(detail, account, qty, *, price="50", sale_date="2026-01-20"):
    return consignment_sale_service.record_sale(
        detail_id=detail.id,
        qty=qty,
        cash_account_id=account.id,
        sale_date=sale_date,
        store_price=price,
    )


def _return(detail, qty, return_date="2026-01-25"):
    return consignment_return_service.record_return(detail_id=detail.id, qty=qty, return_date=return_date)


def _balanced(detail):
    return detail.committed_qty == detail.sold_qty + detail.remaining_qty + detail.returned_qty


class TestCreateConsignment:
    def test_code_and_initial_counters(self, db_session, consignment, detail):
        assert consignment.code == "KON-20260118-0001"
        assert consignment.status == "Active"
        assert consignment.total_committed_value == Decimal("4000")
        assert detail.committed_qty == Decimal("100")
        assert detail.remaining_qty == Decimal("100")
        assert detail.sold_qty == Decimal("0")
        assert detail.returned_qty == Decimal("0")

    def test_codes_are_numbered_per_day(self, db_session, store, branch, product):
        first = make_consignment(store, branch, [(product, 5, 10, 12)])
        second = make_consignment(store, branch, [(product, 5, 10, 12)])
        next_day = make_consignment(store, branch, [(product, 5, 10, 12)], consignment_date="2026-01-19")

        assert first.code == "KON-20260118-0001"
        assert second.code == "KON-20260118-0002"
        assert next_day.code == "KON-20260119-0001"

    def test_no_stock_moves_on_creation(self, db_session, consignment, stocked_product, branch):
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")

    def test_requires_details(self, db_session, store, branch):
        with pytest.raises(ValidationError):
            consignment_service.create_consignment(
                consignment_date="2026-01-18", store_id=store.id, branch_id=branch.id, details=[],
            )

    def test_rejects_non_positive_quantity(self, db_session, store, branch, product):
        with pytest.raises(ValidationError):
            make_consignment(store, branch, [(product, 0, 10, 12)])

    def test_unknown_product(self, db_session, store, branch):
        with pytest.raises(NotFound):
            consignment_service.create_consignment(
                consignment_date="2026-01-18",
                store_id=store.id,
                branch_id=branch.id,
                details=[{"product_id": 999, "committed_qty": "1",
                          "unit_cost_to_principal": "1", "unit_price_at_store": "1"}],
            )

    def test_list_filters(self, db_session, store, branch, product):
        make_consignment(store, branch, [(product, 5, 10, 12)])
        other = make_consignment(store, branch, [(product, 5, 10, 12)])
        lifecycle_service.change_status(other.id, "Cancelled")

        active, pagination = consignment_service.list_consignments(status="Active")
        assert [c.code for c in active] == ["KON-20260118-0001"]
        assert pagination["total"] == 1

        found, _ = consignment_service.list_consignments(search="makmur")
        assert len(found) == 2


class TestSales:
    def test_sale_moves_counters_and_credits_principal_value(self, db_session, detail, cash_account):
        sale, updated = _sell(detail, cash_account, "30")

        assert updated.sold_qty == Decimal("30")
        assert updated.remaining_qty == Decimal("70")
        assert updated.accrued_margin == Decimal("300")
        assert sale.principal_value == Decimal("1200")
        assert sale.store_value == Decimal("1500")
        assert sale.margin == Decimal("300")
        assert cash_account.balance == Decimal("1200")

        entry = db_session.get(CashLedgerEntry, sale.cash_entry_id)
        assert entry.credit == Decimal("1200")
        assert entry.idempotency_key == f"consignment_sale:{sale.id}:credit"
        assert entry.description == f"consignment sale {detail.consignment.code} - Beras Premium"

    def test_sale_does_not_touch_stock(self, db_session, detail, cash_account, stocked_product, branch):
        _sell(detail, cash_account, "30")
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")

    def test_selling_exactly_remaining(self, db_session, detail, cash_account):
        _, updated = _sell(detail, cash_account, "100")
        assert updated.remaining_qty == Decimal("0")
        assert updated.sold_qty == Decimal("100")

    def test_sale_beyond_remaining(self, db_session, detail, cash_account):
        _sell(detail, cash_account, "60")
        with pytest.raises(InsufficientRemaining) as exc_info:
            _sell(detail, cash_account, "41")

        assert exc_info.value.requested == Decimal("41")
        assert exc_info.value.available == Decimal("40")
        assert db_session.query(ConsignmentSale).count() == 1
        assert cash_account.balance == Decimal("2400")

    def test_zero_quantity_rejected(self, db_session, detail, cash_account):
        with pytest.raises(ValidationError):
            _sell(detail, cash_account, "0")

    def test_store_price_defaults_to_detail_price(self, db_session, detail, cash_account):
        sale, _ = consignment_sale_service.record_sale(
            detail_id=detail.id, qty="2", cash_account_id=cash_account.id, sale_date="2026-01-20",
        )
        assert sale.store_price == Decimal("50")

    def test_detail_must_belong_to_consignment(self, db_session, detail, cash_account, store, branch, product):
        other = make_consignment(store, branch, [(product, 5, 10, 12)])
        with pytest.raises(NotFound):
            consignment_sale_service.record_sale(
                detail_id=detail.id, qty="1", cash_account_id=cash_account.id, consignment_id=other.id,
            )

    def test_failed_cash_posting_is_compensated(self, db_session, detail, cash_account, monkeypatch):
        def locked(**kwargs):
            raise Conflict("Cash account was modified by another request")

        monkeypatch.setattr(consignment_sale_service, "post_cash", locked)

        with pytest.raises(Conflict):
            _sell(detail, cash_account, "30")

        assert db_session.query(ConsignmentSale).count() == 0
        assert detail.sold_qty == Decimal("0")
        assert detail.remaining_qty == Decimal("100")
        assert detail.accrued_margin == Decimal("0")
        assert cash_account.balance == Decimal("0")

    def test_edit_applies_delta_and_replaces_cash(self, db_session, detail, cash_account):
        sale, _ = _sell(detail, cash_account, "30")

        edited, updated = consignment_sale_service.edit_sale(sale.id, qty="40")

        assert updated.sold_qty == Decimal("40")
        assert updated.remaining_qty == Decimal("60")
        assert updated.accrued_margin == Decimal("400")
        assert edited.principal_value == Decimal("1600")
        assert cash_account.balance == Decimal("1600")
        entries = db_session.query(CashLedgerEntry).all()
        assert len(entries) == 1
        assert entries[0].idempotency_key == f"consignment_sale:{sale.id}:credit"
        assert edited.cash_entry_id == entries[0].id

    def test_edit_moves_cash_to_other_account(self, db_session, detail, cash_account, other_account):
        sale, _ = _sell(detail, cash_account, "10")

        consignment_sale_service.edit_sale(sale.id, cash_account_id=other_account.id)

        assert cash_account.balance == Decimal("0")
        assert other_account.balance == Decimal("400")

    def test_edit_limited_to_remaining_plus_old(self, db_session, detail, cash_account):
        sale, _ = _sell(detail, cash_account, "30")
        _sell(detail, cash_account, "50")

        # remaining 20 + old 30
        consignment_sale_service.edit_sale(sale.id, qty="50")
        with pytest.raises(InsufficientRemaining) as exc_info:
            consignment_sale_service.edit_sale(sale.id, qty="51")
        assert exc_info.value.available == Decimal("50")

    def test_delete_restores_counters_and_reverses_cash(self, db_session, detail, cash_account):
        sale, _ = _sell(detail, cash_account, "30")

        updated = consignment_sale_service.delete_sale(sale.id)

        assert updated.sold_qty == Decimal("0")
        assert updated.remaining_qty == Decimal("100")
        assert updated.accrued_margin == Decimal("0")
        assert cash_account.balance == Decimal("0")
        assert db_session.query(ConsignmentSale).count() == 0
        assert db_session.query(CashLedgerEntry).count() == 0

    def test_sale_edit_away_edit_back_delete_round_trip(self, db_session, detail, cash_account):
        opening_cash(cash_account.id, "500")
        before = (detail.sold_qty, detail.remaining_qty, detail.returned_qty, detail.accrued_margin)

        sale, _ = _sell(detail, cash_account, "30")
        consignment_sale_service.edit_sale(sale.id, qty="45", store_price="55")
        _, updated = consignment_sale_service.edit_sale(sale.id, qty="30", store_price="50")
        assert (updated.sold_qty, updated.accrued_margin) == (Decimal("30"), Decimal("300"))
        assert cash_account.balance == Decimal("1700")

        restored = consignment_sale_service.delete_sale(sale.id)

        assert (restored.sold_qty, restored.remaining_qty, restored.returned_qty, restored.accrued_margin) == before
        assert cash_account.balance == Decimal("500")
        assert ledger_service.replayed_cash_balance(cash_account.id) == Decimal("500")
        assert db_session.query(CashLedgerEntry).count() == 1

    def test_sales_require_active_consignment(self, db_session, consignment, detail, cash_account):
        sale, _ = _sell(detail, cash_account, "5")
        lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")

        with pytest.raises(InvalidState):
            _sell(detail, cash_account, "5")
        with pytest.raises(InvalidState):
            consignment_sale_service.edit_sale(sale.id, qty="6")
        with pytest.raises(InvalidState):
            consignment_sale_service.delete_sale(sale.id)


class TestReturns:
    def test_return_moves_remaining_to_returned(self, db_session, detail, cash_account):
        _sell(detail, cash_account, "30")
        row, updated = _return(detail, "20")

        assert updated.remaining_qty == Decimal("50")
        assert updated.returned_qty == Decimal("20")
        assert row.condition == "Good"
        assert row.return_kind == "Normal"
        assert _balanced(updated)

    def test_identical_return_is_duplicate(self, db_session, detail):
        _return(detail, "20")
        with pytest.raises(DuplicateOperation):
            _return(detail, "20")

        assert db_session.query(ConsignmentReturn).count() == 1
        assert detail.returned_qty == Decimal("20")

    def test_same_quantity_on_another_day_is_allowed(self, db_session, detail):
        _return(detail, "20", "2026-01-25")
        _, updated = _return(detail, "20", "2026-01-26")
        assert updated.returned_qty == Decimal("40")

    def test_return_limited_to_unsold_unreturned(self, db_session, detail, cash_account):
        _sell(detail, cash_account, "70")
        _return(detail, "10")
        with pytest.raises(InsufficientRemaining) as exc_info:
            _return(detail, "21")
        assert exc_info.value.available == Decimal("20")

    def test_return_key_format(self, db_session, detail):
        key = consignment_return_service.return_key(detail.id, date(2026, 1, 25), Decimal("20.000"))
        assert key == f"{detail.id}:2026-01-25:20"

    def test_returns_require_active_consignment(self, db_session, consignment, detail):
        lifecycle_service.change_status(consignment.id, "Cancelled")
        with pytest.raises(InvalidState):
            _return(detail, "1")


def test_counters_stay_balanced_through_mixed_operations(db_session, detail, cash_account):
    sale, _ = _sell(detail, cash_account, "30")
    _return(detail, "20")
    consignment_sale_service.edit_sale(sale.id, qty="25")
    _sell(detail, cash_account, "15", sale_date="2026-01-22")
    _return(detail, "5", "2026-01-27")

    assert detail.sold_qty == Decimal("40")
    assert detail.returned_qty == Decimal("25")
    assert detail.remaining_qty == Decimal("35")
    assert _balanced(detail)
    assert cash_account.balance == Decimal("1600")
    assert ledger_service.replayed_cash_balance(cash_account.id) == cash_account.balance
