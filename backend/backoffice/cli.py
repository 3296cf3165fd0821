# Overview: Flask CLI command groups for bootstrap and ledger reconciliation.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP (PowerShell: $env:FLASK_APP="backoffice:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated databases).
# - python -m flask system seed-demo
#   Idempotent demo master data: branch, store, supplier, products, cash account.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger reconciliation:
# - python -m flask ledger check-cash [--fix]
#   Compare cached cash balances with the replayed ledger; --fix rewrites them.
# - python -m flask ledger check-stock [--fix]
#   Compare Product.stock with the ledger-derived stock; --fix rewrites it.
# - python -m flask ledger issues [--all]
#   List open (or all) reconciliation issues left by failed compensations.
# - python -m flask ledger resolve 12
#   Mark an issue resolved after the ledgers were repaired by hand.

import json

import click
from flask.cli import with_appcontext

from .errors import BackofficeError
from .extensions import db
from .models import Branch, CashAccount, ConsignmentStore, Product, Supplier
from .services import reconciliation_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for demo data.")


def _get_or_create(model, lookup: dict, **values):
    row = db.session.query(model).filter_by(**lookup).first()
    if row is not None:
        return row, False
    row = model(**lookup, **values)
    db.session.add(row)
    db.session.flush()
    return row, True


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo master data (safe to run repeatedly)."""
    branch, created = _get_or_create(Branch, {"code": "PST"}, name="Pusat")
    click.echo(f"{'Created' if created else 'Exists '} branch {branch.code} (id={branch.id})")

    store, created = _get_or_create(ConsignmentStore, {"code": "TK-001"}, name="Toko Makmur", branch_id=branch.id)
    click.echo(f"{'Created' if created else 'Exists '} store {store.name} (id={store.id})")

    supplier, created = _get_or_create(Supplier, {"name": "CV Sumber Tani"}, phone="0800000000")
    click.echo(f"{'Created' if created else 'Exists '} supplier {supplier.name} (id={supplier.id})")

    for code, name in (("BRS-01", "Beras Premium"), ("GLA-01", "Gula Pasir")):
        product, created = _get_or_create(Product, {"code": code}, name=name, unit="Kg", stock=0)
        click.echo(f"{'Created' if created else 'Exists '} product {product.code} (id={product.id})")

    account, created = _get_or_create(CashAccount, {"branch_id": branch.id, "name": "Kas Utama"}, balance=0)
    click.echo(f"{'Created' if created else 'Exists '} cash account {account.name} (id={account.id})")

    db.session.commit()
    click.echo("PASS Demo data ready.")


@click.group('ledger')
def ledger_group():
    """Ledger reconciliation commands."""


def _report(drifts, label: str, fix: bool) -> None:
    if not drifts:
        click.echo(f"PASS All {label} match their ledgers.")
        return
    for d in drifts:
        click.echo(
            f"DRIFT {label[:-1]} {d.entity_id} ({d.label}): cached={d.cached} "
            f"ledger={d.derived} diff={d.difference}"
        )
    if fix:
        click.echo(f"FIXED {len(drifts)} {label} rewritten from the ledger.")
    else:
        click.echo(f"WARN {len(drifts)} {label} drifted. Re-run with --fix to rewrite them.")


@ledger_group.command('check-cash')
@click.option('--fix', is_flag=True, help='Rewrite cached balances from the ledger')
@with_appcontext
def check_cash(fix):
    """Cached CashAccount.balance vs SUM(credit) - SUM(debit)."""
    _report(reconciliation_service.check_cash_balances(fix=fix), "cash balances", fix)


@ledger_group.command('check-stock')
@click.option('--fix', is_flag=True, help='Rewrite Product.stock from the ledger')
@with_appcontext
def check_stock(fix):
    """Cached Product.stock vs SUM(in) - SUM(out) over all branches."""
    _report(reconciliation_service.check_product_stock(fix=fix), "product stocks", fix)


@ledger_group.command('issues')
@click.option('--all', 'include_resolved', is_flag=True, help='Include resolved issues')
@with_appcontext
def list_issues(include_resolved):
    """List reconciliation issues."""
    issues = reconciliation_service.list_issues(include_resolved=include_resolved)
    if not issues:
        click.echo("No reconciliation issues.")
        return
    for issue in issues:
        state = "resolved" if issue.resolved else "OPEN"
        click.echo(
            f"#{issue.id} [{state}] {issue.operation} step={issue.failed_step} "
            f"{issue.entity_type}={issue.entity_id} at {issue.created_at}"
        )
        click.echo(f"    error: {issue.error}")
        if issue.snapshot:
            click.echo(f"    snapshot: {json.dumps(issue.snapshot, default=str)[:500]}")


@ledger_group.command('resolve')
@click.argument('issue_id', type=int)
@with_appcontext
def resolve_issue(issue_id):
    """Mark a reconciliation issue as resolved."""
    try:
        issue = reconciliation_service.resolve_issue(issue_id)
    except BackofficeError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS Issue #{issue.id} marked resolved.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
