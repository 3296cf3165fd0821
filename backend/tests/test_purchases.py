"""Purchase billing, payoff and installments against the cash and stock ledgers."""

from decimal import Decimal

import pytest

from backoffice.errors import (
    Conflict,
    DuplicateOperation,
    InsufficientFunds,
    InvalidState,
    ValidationError,
)
from backoffice.models import CashLedgerEntry, Payable, PurchasePayment, StockLedgerEntry
from backoffice.services import ledger_service, payment_service, purchase_service

from conftest import opening_cash


@pytest.fixture
def funded_account(cash_account):
    opening_cash(cash_account.id, "1000000")
    return cash_account


def _purchase(branch, supplier, product, other_product=None, *, down_payment=None, account=None,
              shipping="5000"):
    lines = [{"product_id": product.id, "qty": "50", "unit_cost": "9000"}]
    if other_product is not None:
        lines.append({"product_id": other_product.id, "qty": "10", "unit_cost": "15000"})
    return purchase_service.create_purchase(
        branch_id=branch.id,
        supplier_id=supplier.id,
        lines=lines,
        purchase_date="2026-01-18",
        due_date="2026-02-18",
        shipping_cost=shipping,
        down_payment=down_payment,
        down_payment_account_id=account.id if account else None,
    )


class TestCreate:
    def test_totals(self, db_session, branch, supplier, product, other_product):
        purchase = _purchase(branch, supplier, product, other_product)
        assert purchase.total == Decimal("600000")
        assert purchase.amount_owed == Decimal("605000")
        assert purchase.payment_status == "Unpaid"
        assert len(purchase.lines) == 2

    def test_nothing_posted_before_billing(self, db_session, branch, supplier, product):
        _purchase(branch, supplier, product)
        assert db_session.query(StockLedgerEntry).count() == 0
        assert db_session.query(Payable).count() == 0

    def test_down_payment_needs_account(self, db_session, branch, supplier, product):
        with pytest.raises(ValidationError):
            _purchase(branch, supplier, product, down_payment="1000")

    def test_down_payment_cannot_exceed_owed(self, db_session, branch, supplier, product, cash_account):
        with pytest.raises(ValidationError):
            _purchase(branch, supplier, product, down_payment="455001", account=cash_account)


class TestBill:
    def test_bill_posts_stock_down_payment_and_payable(self, db_session, branch, supplier, product,
                                                       other_product, funded_account):
        purchase = _purchase(branch, supplier, product, other_product,
                             down_payment="100000", account=funded_account)

        result = purchase_service.bill_purchase(purchase.id)

        assert result["stock_entries_posted"] == 2
        assert result["down_payment_posted"] is True
        assert ledger_service.derived_stock(product.id, branch.id) == Decimal("50")
        assert ledger_service.derived_stock(other_product.id, branch.id) == Decimal("10")

        line_entry = ledger_service.find_stock_entry(
            purchase_service.line_stock_key(purchase.id, purchase.lines[0].id)
        )
        assert line_entry.description == f"purchase #{purchase.id}"
        assert line_entry.unit_cost == Decimal("9000")

        dp_entry = ledger_service.find_cash_entry(purchase_service.down_payment_key(purchase.id))
        assert dp_entry.debit == Decimal("100000")
        assert dp_entry.description == f"purchase down payment #{purchase.id}"
        assert funded_account.balance == Decimal("900000")

        payable = result["payable"]
        assert payable.total == Decimal("605000")
        assert payable.paid == Decimal("100000")
        assert payable.remaining == Decimal("505000")
        assert payable.status == "Partial"
        assert result["purchase"].payment_status == "Partial"
        assert result["purchase"].billed_at is not None

    def test_billing_twice_posts_nothing_new(self, db_session, branch, supplier, product,
                                             other_product, funded_account):
        purchase = _purchase(branch, supplier, product, other_product,
                             down_payment="100000", account=funded_account)
        purchase_service.bill_purchase(purchase.id)

        again = purchase_service.bill_purchase(purchase.id)

        assert again["stock_entries_posted"] == 0
        assert again["down_payment_posted"] is False
        assert ledger_service.derived_stock(product.id, branch.id) == Decimal("50")
        assert funded_account.balance == Decimal("900000")
        assert db_session.query(PurchasePayment).count() == 1
        assert again["payable"].remaining == Decimal("505000")

    def test_bill_without_down_payment_is_unpaid(self, db_session, branch, supplier, product):
        purchase = _purchase(branch, supplier, product)
        result = purchase_service.bill_purchase(purchase.id)

        assert result["payable"].remaining == Decimal("455000")
        assert result["payable"].status == "Unpaid"
        assert db_session.query(CashLedgerEntry).count() == 0

    def test_down_payment_checked_before_posting(self, db_session, branch, supplier, product, cash_account):
        opening_cash(cash_account.id, "50000")
        purchase = _purchase(branch, supplier, product, down_payment="100000", account=cash_account)

        with pytest.raises(InsufficientFunds) as exc_info:
            purchase_service.bill_purchase(purchase.id)

        assert exc_info.value.available == Decimal("50000")
        assert db_session.query(StockLedgerEntry).count() == 0
        assert purchase_service.get_payable(purchase.id) is None
        assert cash_account.balance == Decimal("50000")

    def test_failed_payable_write_compensates_everything(self, db_session, branch, supplier, product,
                                                         funded_account, monkeypatch):
        purchase = _purchase(branch, supplier, product, down_payment="100000", account=funded_account)

        def locked(purchase_id):
            raise Conflict("Payable was modified by another request")

        monkeypatch.setattr(purchase_service, "refresh_payable", locked)

        with pytest.raises(Conflict):
            purchase_service.bill_purchase(purchase.id)

        assert ledger_service.derived_stock(product.id, branch.id) == Decimal("0")
        assert product.stock == Decimal("0")
        assert funded_account.balance == Decimal("1000000")
        assert db_session.query(PurchasePayment).count() == 0
        assert ledger_service.find_cash_entry(purchase_service.down_payment_key(purchase.id)) is None


class TestPayoff:
    def test_payoff_pays_remaining(self, db_session, branch, supplier, product, other_product, funded_account):
        purchase = _purchase(branch, supplier, product, other_product,
                             down_payment="100000", account=funded_account)
        purchase_service.bill_purchase(purchase.id)

        result = purchase_service.pay_off_purchase(purchase.id, cash_account_id=funded_account.id,
                                                   payment_date="2026-02-18")

        assert result["payable"].remaining == Decimal("0")
        assert result["payable"].paid == Decimal("605000")
        assert result["payable"].status == "Paid"
        assert result["purchase"].payment_status == "Paid"
        assert result["payment"].kind == "payoff"
        assert result["payment"].amount == Decimal("505000")
        assert funded_account.balance == Decimal("395000")

        entry = ledger_service.find_cash_entry(purchase_service.payoff_key(purchase.id))
        assert entry.description == f"purchase payoff #{purchase.id}"

    def test_second_payoff_is_duplicate(self, db_session, branch, supplier, product, funded_account):
        purchase = _purchase(branch, supplier, product)
        purchase_service.bill_purchase(purchase.id)
        purchase_service.pay_off_purchase(purchase.id, cash_account_id=funded_account.id)

        with pytest.raises(DuplicateOperation):
            purchase_service.pay_off_purchase(purchase.id, cash_account_id=funded_account.id)
        assert funded_account.balance == Decimal("545000")

    def test_payoff_requires_billing(self, db_session, branch, supplier, product, funded_account):
        purchase = _purchase(branch, supplier, product)
        with pytest.raises(InvalidState):
            purchase_service.pay_off_purchase(purchase.id, cash_account_id=funded_account.id)

    def test_payoff_insufficient_funds(self, db_session, branch, supplier, product, cash_account):
        opening_cash(cash_account.id, "1000")
        purchase = _purchase(branch, supplier, product)
        purchase_service.bill_purchase(purchase.id)

        with pytest.raises(InsufficientFunds) as exc_info:
            purchase_service.pay_off_purchase(purchase.id, cash_account_id=cash_account.id)

        assert exc_info.value.requested == Decimal("455000")
        assert cash_account.balance == Decimal("1000")
        assert purchase_service.get_payable(purchase.id).status == "Unpaid"

    def test_racing_payoffs_cannot_overdraw(self, db_session, branch, supplier, product, cash_account,
                                            monkeypatch):
        opening_cash(cash_account.id, "600000")
        first = _purchase(branch, supplier, product)
        second = _purchase(branch, supplier, product)
        purchase_service.bill_purchase(first.id)
        purchase_service.bill_purchase(second.id)

        real_post_cash = purchase_service.post_cash
        raced = []

        def other_payoff_first(**posting):
            # both payoffs passed the unlocked funds check; the other one debits first
            if not raced:
                raced.append(True)
                purchase_service.pay_off_purchase(second.id, cash_account_id=cash_account.id)
            return real_post_cash(**posting)

        monkeypatch.setattr(purchase_service, "post_cash", other_payoff_first)

        with pytest.raises(InsufficientFunds) as exc_info:
            purchase_service.pay_off_purchase(first.id, cash_account_id=cash_account.id)

        assert exc_info.value.requested == Decimal("455000")
        assert exc_info.value.available == Decimal("145000")
        assert cash_account.balance == Decimal("145000")
        assert ledger_service.replayed_cash_balance(cash_account.id) == Decimal("145000")
        assert ledger_service.find_cash_entry(purchase_service.payoff_key(first.id)) is None
        assert purchase_service.get_payable(first.id).remaining == Decimal("455000")
        assert purchase_service.get_payable(second.id).status == "Paid"


class TestInstallments:
    @pytest.fixture
    def billed(self, db_session, branch, supplier, product):
        purchase = _purchase(branch, supplier, product, shipping="0")
        purchase_service.bill_purchase(purchase.id)
        return purchase

    def test_installment_reduces_payable(self, db_session, billed, funded_account):
        result = payment_service.pay_installment(billed.id, amount="100000", cash_account_id=funded_account.id)

        payment = result["payment"]
        assert result["payable"].paid == Decimal("100000")
        assert result["payable"].remaining == Decimal("350000")
        assert result["payable"].status == "Partial"
        assert funded_account.balance == Decimal("900000")

        entry = db_session.get(CashLedgerEntry, payment.cash_entry_id)
        assert entry.idempotency_key == f"purchase_payment:{payment.id}:debit"
        assert entry.description == f"purchase installment #{billed.id}"

    def test_installment_cannot_exceed_remaining(self, db_session, billed, funded_account):
        with pytest.raises(ValidationError):
            payment_service.pay_installment(billed.id, amount="450001", cash_account_id=funded_account.id)
        assert funded_account.balance == Decimal("1000000")

    def test_installment_insufficient_funds(self, db_session, billed, other_account):
        with pytest.raises(InsufficientFunds):
            payment_service.pay_installment(billed.id, amount="1000", cash_account_id=other_account.id)
        assert db_session.query(PurchasePayment).count() == 0

    def test_installment_requires_billing(self, db_session, branch, supplier, product, funded_account):
        purchase = _purchase(branch, supplier, product)
        with pytest.raises(InvalidState):
            payment_service.pay_installment(purchase.id, amount="1000", cash_account_id=funded_account.id)

    def test_installments_reach_paid(self, db_session, billed, funded_account):
        payment_service.pay_installment(billed.id, amount="200000", cash_account_id=funded_account.id)
        result = payment_service.pay_installment(billed.id, amount="250000", cash_account_id=funded_account.id)

        assert result["payable"].status == "Paid"
        assert result["payable"].remaining == Decimal("0")
        with pytest.raises(InvalidState):
            purchase_service.pay_off_purchase(billed.id, cash_account_id=funded_account.id)

    def test_edit_amount(self, db_session, billed, funded_account):
        payment = payment_service.pay_installment(
            billed.id, amount="100000", cash_account_id=funded_account.id
        )["payment"]

        result = payment_service.edit_installment(payment.id, amount="150000")

        assert result["payment"].amount == Decimal("150000")
        assert result["payable"].paid == Decimal("150000")
        assert funded_account.balance == Decimal("850000")
        assert db_session.query(CashLedgerEntry).filter_by(
            idempotency_key=f"purchase_payment:{payment.id}:debit"
        ).count() == 1

    def test_edit_moves_to_other_account(self, db_session, billed, funded_account, other_account):
        opening_cash(other_account.id, "100000")
        payment = payment_service.pay_installment(
            billed.id, amount="30000", cash_account_id=funded_account.id
        )["payment"]

        payment_service.edit_installment(payment.id, cash_account_id=other_account.id)

        assert funded_account.balance == Decimal("1000000")
        assert other_account.balance == Decimal("70000")

    def test_edit_checks_new_account_funds(self, db_session, billed, funded_account, other_account):
        opening_cash(other_account.id, "10000")
        payment = payment_service.pay_installment(
            billed.id, amount="30000", cash_account_id=funded_account.id
        )["payment"]

        with pytest.raises(InsufficientFunds):
            payment_service.edit_installment(payment.id, cash_account_id=other_account.id)
        assert funded_account.balance == Decimal("970000")
        assert other_account.balance == Decimal("10000")

    def test_delete_installment(self, db_session, billed, funded_account):
        payment = payment_service.pay_installment(
            billed.id, amount="100000", cash_account_id=funded_account.id
        )["payment"]

        result = payment_service.delete_installment(payment.id, purchase_id=billed.id)

        assert result["payable"].paid == Decimal("0")
        assert result["payable"].status == "Unpaid"
        assert funded_account.balance == Decimal("1000000")
        assert db_session.query(PurchasePayment).count() == 0

    def test_payoff_row_is_not_an_installment(self, db_session, billed, funded_account):
        payoff = purchase_service.pay_off_purchase(billed.id, cash_account_id=funded_account.id)["payment"]
        with pytest.raises(InvalidState):
            payment_service.edit_installment(payoff.id, amount="1")

    def test_failed_cash_out_removes_payment(self, db_session, billed, funded_account, monkeypatch):
        def locked(**kwargs):
            raise Conflict("Cash account was modified by another request")

        monkeypatch.setattr(payment_service, "post_cash", locked)

        with pytest.raises(Conflict):
            payment_service.pay_installment(billed.id, amount="100000", cash_account_id=funded_account.id)

        assert db_session.query(PurchasePayment).count() == 0
        assert funded_account.balance == Decimal("1000000")
        assert purchase_service.get_payable(billed.id).paid == Decimal("0")
