"""Consignment state machine: completion, cancellation and hard delete."""

from decimal import Decimal

import pytest

from backoffice.errors import (
    IncompleteDeletion,
    InsufficientStock,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from backoffice.extensions import db
from backoffice.models import (
    Consignment,
    ConsignmentDetail,
    ConsignmentReturn,
    ConsignmentSale,
    ConsignmentStatus,
    StockLedgerEntry,
)
from backoffice.models.ledger import DIRECTION_IN, DIRECTION_OUT
from backoffice.services import (
    audit_service,
    consignment_return_service,
    consignment_sale_service,
    consignment_service,
    ledger_service,
    lifecycle_service,
    reconciliation_service,
)

from conftest import make_consignment, opening_stock


def _sell_and_return(detail, account, sold="30", returned="20"):
    consignment_sale_service.record_sale(
        detail_id=detail.id, qty=sold, cash_account_id=account.id,
        sale_date="2026-01-20", store_price="50",
    )
    consignment_return_service.record_return(detail_id=detail.id, qty=returned, return_date="2026-01-25")


def _entries(marker_prefix):
    return (
        db.session.query(StockLedgerEntry).filter(StockLedgerEntry.description.startswith(marker_prefix))
        .order_by(StockLedgerEntry.id)
        .all()
    )


class TestTransitionTable:
    def test_allowed_transitions(self):
        A, C, X = ConsignmentStatus.ACTIVE, ConsignmentStatus.COMPLETED, ConsignmentStatus.CANCELLED
        assert lifecycle_service.can_transition(A, C)
        assert lifecycle_service.can_transition(A, X)
        assert not lifecycle_service.can_transition(A, A)
        assert not lifecycle_service.can_transition(C, X)
        assert not lifecycle_service.can_transition(C, A)
        assert not lifecycle_service.can_transition(X, C)

    def test_terminal_states_reject_changes(self, db_session, consignment):
        lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")

        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle_service.change_status(consignment.id, "Cancelled")
        assert exc_info.value.details["current"] == "Completed"

        with pytest.raises(InvalidTransition):
            lifecycle_service.change_status(consignment.id, "Completed")

    def test_same_status_is_not_a_transition(self, db_session, consignment):
        with pytest.raises(InvalidTransition):
            lifecycle_service.change_status(consignment.id, "Active")

    def test_unknown_status(self, db_session, consignment):
        with pytest.raises(InvalidState):
            lifecycle_service.change_status(consignment.id, "Archived")


class TestCompletion:
    def test_completion_posts_sold_out_and_returned_in(self, db_session, consignment, detail,
                                                       cash_account, stocked_product, branch):
        _sell_and_return(detail, cash_account)

        completed = lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")

        assert completed.status == "Completed"
        assert completed.completed_date.isoformat() == "2026-02-01"

        out_entries = _entries("consignment completed:")
        in_entries = _entries("return on completion:")
        assert len(out_entries) == 1 and len(in_entries) == 1
        assert out_entries[0].direction == DIRECTION_OUT
        assert out_entries[0].quantity == Decimal("30")
        assert out_entries[0].description == f"consignment completed: {consignment.code}"
        assert in_entries[0].direction == DIRECTION_IN
        assert in_entries[0].quantity == Decimal("20")
        assert out_entries[0].idempotency_key == f"consignment:{consignment.id}:complete:out:{detail.id}"

        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("190")
        assert stocked_product.stock == Decimal("190")

    def test_completion_checks_ledger_stock(self, db_session, store, branch, product, cash_account):
        opening_stock(product.id, branch.id, 10)
        consignment = make_consignment(store, branch, [(product, 50, 40, 50)])
        detail = consignment.details[0]
        consignment_sale_service.record_sale(
            detail_id=detail.id, qty="30", cash_account_id=cash_account.id, sale_date="2026-01-20",
        )

        with pytest.raises(InsufficientStock) as exc_info:
            lifecycle_service.change_status(consignment.id, "Completed")

        assert exc_info.value.requested == Decimal("30")
        assert exc_info.value.available == Decimal("10")
        assert consignment.status == "Active"
        assert ledger_service.derived_stock(product.id, branch.id) == Decimal("10")

    def test_stock_check_sums_lines_of_the_same_product(self, db_session, store, branch, product, cash_account):
        opening_stock(product.id, branch.id, 25)
        consignment = make_consignment(store, branch, [(product, 20, 40, 50), (product, 20, 40, 50)])
        for d in consignment.details:
            consignment_sale_service.record_sale(
                detail_id=d.id, qty="15", cash_account_id=cash_account.id, sale_date="2026-01-20",
            )

        with pytest.raises(InsufficientStock) as exc_info:
            lifecycle_service.complete_consignment(consignment.id)
        assert exc_info.value.requested == Decimal("30")

    def test_failed_status_write_retracts_postings(self, db_session, consignment, detail,
                                                   cash_account, stocked_product, branch, monkeypatch):
        _sell_and_return(detail, cash_account)

        def concurrent_change(consignment_id, **kwargs):
            raise InvalidState("Consignment was completed by another request")

        monkeypatch.setattr(lifecycle_service, "set_header_status", concurrent_change)

        with pytest.raises(InvalidState):
            lifecycle_service.change_status(consignment.id, "Completed")

        assert _entries("consignment completed:") == []
        assert _entries("return on completion:") == []
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")
        assert stocked_product.stock == Decimal("200")
        assert consignment.status == "Active"

    def test_sale_landing_during_completion_is_compensated(self, db_session, consignment, detail,
                                                           cash_account, stocked_product, branch,
                                                           monkeypatch):
        consignment_sale_service.record_sale(
            detail_id=detail.id, qty="30", cash_account_id=cash_account.id, sale_date="2026-01-20",
        )
        real_post_stock = lifecycle_service.post_stock
        interleaved = []

        def post_then_sell(**posting):
            entry = real_post_stock(**posting)
            if not interleaved:
                interleaved.append(True)
                consignment_sale_service.record_sale(
                    detail_id=detail.id, qty="10", cash_account_id=cash_account.id, sale_date="2026-01-21",
                )
            return entry

        monkeypatch.setattr(lifecycle_service, "post_stock", post_then_sell)

        with pytest.raises(InvalidState) as exc_info:
            lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")

        assert "changed while completing" in exc_info.value.message
        assert consignment.status == "Active"
        assert detail.sold_qty == Decimal("40")
        assert _entries("consignment completed:") == []
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")

        monkeypatch.setattr(lifecycle_service, "post_stock", real_post_stock)
        lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")
        assert [e.quantity for e in _entries("consignment completed:")] == [Decimal("40")]
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("160")

        consignment_service.delete_consignment(consignment.id)
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")

    def test_counters_closed_once_completed(self, db_session, consignment, detail, cash_account, monkeypatch):
        lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")
        # a request that read the header while it was still Active
        monkeypatch.setattr(consignment_sale_service, "require_active", lambda *args, **kwargs: None)
        monkeypatch.setattr(consignment_return_service, "require_active", lambda *args, **kwargs: None)

        with pytest.raises(InvalidState):
            consignment_sale_service.record_sale(
                detail_id=detail.id, qty="5", cash_account_id=cash_account.id, sale_date="2026-02-02",
            )
        with pytest.raises(InvalidState):
            consignment_return_service.record_return(detail_id=detail.id, qty="5", return_date="2026-02-02")

        assert db_session.query(ConsignmentSale).count() == 0
        assert db_session.query(ConsignmentReturn).count() == 0
        assert detail.sold_qty == Decimal("0")
        assert detail.returned_qty == Decimal("0")
        assert cash_account.balance == Decimal("0")


class TestCancellation:
    def test_cancel_rejected_when_sales_exist(self, db_session, consignment, detail, cash_account):
        consignment_sale_service.record_sale(
            detail_id=detail.id, qty="30", cash_account_id=cash_account.id, sale_date="2026-01-20",
        )

        with pytest.raises(InvalidState) as exc_info:
            lifecycle_service.change_status(consignment.id, "Cancelled", reason="store closed")

        assert "30" in exc_info.value.message
        assert "Completed" in exc_info.value.message
        assert consignment.status == "Active"

    def test_cancel_folds_remaining_into_returned(self, db_session, consignment, detail,
                                                  stocked_product, branch):
        consignment_return_service.record_return(detail_id=detail.id, qty="20", return_date="2026-01-25")

        cancelled = lifecycle_service.change_status(consignment.id, "Cancelled", reason="store closed")

        assert cancelled.status == "Cancelled"
        assert cancelled.cancel_reason == "store closed"
        assert detail.returned_qty == Decimal("100")
        assert detail.remaining_qty == Decimal("0")
        assert detail.sold_qty == Decimal("0")
        # goods never left stock
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")


class TestDelete:
    def test_delete_completed_restores_pre_consignment_stock(self, db_session, consignment, detail,
                                                             cash_account, stocked_product, branch):
        _sell_and_return(detail, cash_account)
        lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")
        code = consignment.code
        consignment_id = consignment.id

        snapshot = consignment_service.delete_consignment(consignment_id)

        restored = _entries("consignment deleted:")
        reversed_returns = _entries("return reversed on delete:")
        assert [(e.direction, e.quantity) for e in restored] == [(DIRECTION_IN, Decimal("30"))]
        assert [(e.direction, e.quantity) for e in reversed_returns] == [(DIRECTION_OUT, Decimal("20"))]
        assert restored[0].description == f"consignment deleted: {code}"

        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")
        assert db.session.query(Consignment).filter_by(id=consignment_id).count() == 0
        assert db.session.query(ConsignmentDetail).count() == 0
        assert db.session.query(ConsignmentSale).count() == 0
        assert db.session.query(ConsignmentReturn).count() == 0

        assert snapshot["code"] == code
        assert snapshot["status"] == "Completed"
        assert len(snapshot["sales"]) == 1
        assert len(snapshot["returns"]) == 1

        events = audit_service.list_events(entity_type="consignment", entity_id=consignment_id)
        assert events[0].event_type == "consignment.created"
        assert events[-1].event_type == "consignment.deleted"
        assert events[-1].note == code
        assert events[-1].payload["code"] == code

    def test_delete_active_posts_no_stock(self, db_session, consignment, stocked_product, branch):
        consignment_id = consignment.id
        consignment_service.delete_consignment(consignment_id)

        assert db.session.query(Consignment).filter_by(id=consignment_id).count() == 0
        assert db.session.query(StockLedgerEntry).count() == 1  # opening stock only
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")

    def test_delete_unknown(self, db_session):
        with pytest.raises(NotFound):
            consignment_service.delete_consignment(404)

    def test_partial_delete_names_step_and_can_be_rerun(self, db_session, consignment, detail,
                                                        cash_account, stocked_product, branch, monkeypatch):
        _sell_and_return(detail, cash_account)
        lifecycle_service.change_status(consignment.id, "Completed", completed_date="2026-02-01")
        consignment_id = consignment.id
        detail_id = detail.id

        real_post_stock = consignment_service.post_stock
        calls = []

        def flaky_post_stock(**posting):
            calls.append(posting["direction"])
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return real_post_stock(**posting)

        monkeypatch.setattr(consignment_service, "post_stock", flaky_post_stock)

        with pytest.raises(IncompleteDeletion) as exc_info:
            consignment_service.delete_consignment(consignment_id, actor_id=9)

        err = exc_info.value
        assert err.details["failed_step"] == f"reverse_returned_stock:{detail_id}"
        assert err.details["completed_steps"] == [f"restore_sold_stock:{detail_id}"]
        assert err.status_code == 500
        assert db.session.query(Consignment).filter_by(id=consignment_id).count() == 1

        issues = reconciliation_service.list_issues()
        assert len(issues) == 1
        assert issues[0].id == err.details["issue_id"]
        assert issues[0].operation == "consignment_delete"
        assert issues[0].snapshot["consignment"]["id"] == consignment_id

        # after the repair, re-running does not post the restored stock twice
        monkeypatch.setattr(consignment_service, "post_stock", real_post_stock)
        consignment_service.delete_consignment(consignment_id)

        assert len(_entries("consignment deleted:")) == 1
        assert len(_entries("return reversed on delete:")) == 1
        assert ledger_service.derived_stock(stocked_product.id, branch.id) == Decimal("200")
        assert db.session.query(Consignment).filter_by(id=consignment_id).count() == 0
