"""flask system / flask ledger commands."""

from decimal import Decimal

from backoffice.models import Branch, CashAccount, Product, ReconciliationIssue
from backoffice.services import reconciliation_service

from conftest import opening_cash, opening_stock


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "seed-demo"])
    second = runner.invoke(args=["system", "seed-demo"])

    assert first.exit_code == 0, first.output
    assert second.exit_code == 0, second.output
    assert "Exists " in second.output
    assert db_session.query(Branch).count() == 1
    assert db_session.query(Product).count() == 2
    assert db_session.query(CashAccount).count() == 1


def test_check_cash_reports_and_fixes_drift(app, db_session, cash_account):
    opening_cash(cash_account.id, "500")
    cash_account.balance = Decimal("450")
    db_session.commit()
    runner = app.test_cli_runner()

    report = runner.invoke(args=["ledger", "check-cash"])
    assert "DRIFT" in report.output
    assert cash_account.balance == Decimal("450")

    fixed = runner.invoke(args=["ledger", "check-cash", "--fix"])
    assert "FIXED 1" in fixed.output
    db_session.expire_all()
    assert cash_account.balance == Decimal("500")

    clean = runner.invoke(args=["ledger", "check-cash"])
    assert "PASS" in clean.output


def test_check_stock_uses_all_branches(app, db_session, product, branch):
    opening_stock(product.id, branch.id, 12)
    product.stock = Decimal("3")
    db_session.commit()

    drifts = reconciliation_service.check_product_stock(fix=True)

    assert [(d.entity_id, d.cached, d.derived) for d in drifts] == [(product.id, Decimal("3"), Decimal("12"))]
    assert product.stock == Decimal("12")
    assert reconciliation_service.check_product_stock() == []


def test_issues_and_resolve(app, db_session):
    issue = reconciliation_service.record_issue(
        operation="consignment_delete", failed_step="delete_returns", error="RuntimeError: disk full",
        entity_type="consignment", entity_id=4, snapshot={"completed_steps": ["delete_sales"]},
    )
    runner = app.test_cli_runner()

    listed = runner.invoke(args=["ledger", "issues"])
    assert f"#{issue.id} [OPEN] consignment_delete step=delete_returns" in listed.output

    resolved = runner.invoke(args=["ledger", "resolve", str(issue.id)])
    assert resolved.exit_code == 0, resolved.output
    db_session.expire_all()
    assert db_session.get(ReconciliationIssue, issue.id).resolved is True
    assert "No reconciliation issues." in runner.invoke(args=["ledger", "issues"]).output

    twice = runner.invoke(args=["ledger", "resolve", str(issue.id)])
    assert twice.exit_code != 0
    assert "already resolved" in twice.output
