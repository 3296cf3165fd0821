"""consignment, purchasing and ledger schema

Revision ID: c0a1b2c3d4e5
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the complete back-office schema from scratch:
- branches, consignment_stores, suppliers, products, cash_accounts: master data
- cash_ledger_entries, stock_ledger_entries: append-only ledgers with
  unique idempotency keys
- consignments, consignment_details, consignment_sales, consignment_returns
- purchases, purchase_lines, payables, purchase_payments
- document_sequences, audit_events, reconciliation_issues
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c0a1b2c3d4e5'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def _updated_at():
    return sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # Master data
    # ============================================================================
    op.create_table(
        'branches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_branches_code'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'consignment_stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_consignment_stores_name', 'consignment_stores', ['name'])
    op.create_index('ix_consignment_stores_branch_id', 'consignment_stores', ['branch_id'])

    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('phone', sa.String(length=40), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.Column('stock', sa.Numeric(14, 3), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_products_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_name', 'products', ['name'])

    op.create_table(
        'cash_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('balance', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('branch_id', 'name', name='uq_cash_accounts_branch_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cash_accounts_branch_id', 'cash_accounts', ['branch_id'])

    # ============================================================================
    # Ledgers
    # ============================================================================
    # idempotency_key is nullable but unique: one posting per source operation.
    op.create_table(
        'cash_ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('debit', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('credit', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('source_type', sa.String(length=32), nullable=True),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['account_id'], ['cash_accounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_cash_ledger_idempotency_key'),
        sa.CheckConstraint(
            '(debit > 0 AND credit = 0) OR (credit > 0 AND debit = 0)',
            name='ck_cash_ledger_one_side',
        ),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cash_ledger_entries_account_id', 'cash_ledger_entries', ['account_id'])
    op.create_index('ix_cash_ledger_account_date', 'cash_ledger_entries', ['account_id', 'entry_date'])
    op.create_index('ix_cash_ledger_source', 'cash_ledger_entries', ['source_type', 'source_id'])

    op.create_table(
        'stock_ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(14, 3), nullable=False),
        sa.Column('direction', sa.String(length=8), nullable=False),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('unit_cost', sa.Numeric(18, 2), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('product_code', sa.String(length=64), nullable=True),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.Column('source_type', sa.String(length=32), nullable=True),
        sa.Column('source_id', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_stock_ledger_idempotency_key'),
        sa.CheckConstraint('quantity > 0', name='ck_stock_ledger_positive_qty'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_ledger_entries_product_id', 'stock_ledger_entries', ['product_id'])
    op.create_index('ix_stock_ledger_entries_branch_id', 'stock_ledger_entries', ['branch_id'])
    op.create_index('ix_stock_ledger_product_branch', 'stock_ledger_entries', ['product_id', 'branch_id'])
    op.create_index('ix_stock_ledger_source', 'stock_ledger_entries', ['source_type', 'source_id'])

    # ============================================================================
    # Consignments
    # ============================================================================
    op.create_table(
        'consignments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('consignment_date', sa.Date(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('employee_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Active'),
        sa.Column('total_committed_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('completed_date', sa.Date(), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.ForeignKeyConstraint(['store_id'], ['consignment_stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_consignments_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_consignments_branch_id', 'consignments', ['branch_id'])
    op.create_index('ix_consignments_store_id', 'consignments', ['store_id'])
    op.create_index('ix_consignments_status', 'consignments', ['status'])
    op.create_index('ix_consignments_branch_date', 'consignments', ['branch_id', 'consignment_date'])

    op.create_table(
        'consignment_details',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('consignment_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('committed_qty', sa.Numeric(14, 3), nullable=False),
        sa.Column('sold_qty', sa.Numeric(14, 3), nullable=False, server_default='0'),
        sa.Column('returned_qty', sa.Numeric(14, 3), nullable=False, server_default='0'),
        sa.Column('remaining_qty', sa.Numeric(14, 3), nullable=False),
        sa.Column('unit_cost_to_principal', sa.Numeric(18, 2), nullable=False),
        sa.Column('unit_price_at_store', sa.Numeric(18, 2), nullable=False),
        sa.Column('committed_value', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('accrued_margin', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['consignment_id'], ['consignments.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_consignment_details_consignment', 'consignment_details', ['consignment_id'])
    op.create_index('ix_consignment_details_product_id', 'consignment_details', ['product_id'])

    op.create_table(
        'consignment_sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('detail_id', sa.Integer(), nullable=False),
        sa.Column('sale_date', sa.Date(), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=True),
        sa.Column('qty', sa.Numeric(14, 3), nullable=False),
        sa.Column('store_price', sa.Numeric(18, 2), nullable=False),
        sa.Column('store_value', sa.Numeric(18, 2), nullable=False),
        sa.Column('principal_value', sa.Numeric(18, 2), nullable=False),
        sa.Column('margin', sa.Numeric(18, 2), nullable=False),
        sa.Column('cash_account_id', sa.Integer(), nullable=False),
        sa.Column('cash_entry_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['detail_id'], ['consignment_details.id'], ),
        sa.ForeignKeyConstraint(['cash_account_id'], ['cash_accounts.id'], ),
        sa.ForeignKeyConstraint(['cash_entry_id'], ['cash_ledger_entries.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_consignment_sales_detail', 'consignment_sales', ['detail_id'])

    # WHY unique key: the same (detail, date, qty) return is recorded once.
    op.create_table(
        'consignment_returns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('detail_id', sa.Integer(), nullable=False),
        sa.Column('return_date', sa.Date(), nullable=False),
        sa.Column('qty', sa.Numeric(14, 3), nullable=False),
        sa.Column('condition', sa.String(length=32), nullable=False, server_default='Good'),
        sa.Column('return_kind', sa.String(length=32), nullable=False, server_default='Normal'),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['detail_id'], ['consignment_details.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', name='uq_consignment_returns_idempotency_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_consignment_returns_detail', 'consignment_returns', ['detail_id'])

    # ============================================================================
    # Purchasing
    # ============================================================================
    op.create_table(
        'purchases',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('purchase_date', sa.Date(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('total', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('shipping_cost', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('down_payment', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('down_payment_account_id', sa.Integer(), nullable=True),
        sa.Column('paid', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='Unpaid'),
        sa.Column('billed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['branch_id'], ['branches.id'], ),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], ),
        sa.ForeignKeyConstraint(['down_payment_account_id'], ['cash_accounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_purchases_branch_id', 'purchases', ['branch_id'])
    op.create_index('ix_purchases_supplier_id', 'purchases', ['supplier_id'])
    op.create_index('ix_purchases_branch_date', 'purchases', ['branch_id', 'purchase_date'])

    op.create_table(
        'purchase_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('qty', sa.Numeric(14, 3), nullable=False),
        sa.Column('unit_cost', sa.Numeric(18, 2), nullable=False),
        sa.Column('subtotal', sa.Numeric(18, 2), nullable=False),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_purchase_lines_purchase_id', 'purchase_lines', ['purchase_id'])

    op.create_table(
        'payables',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('total', sa.Numeric(18, 2), nullable=False),
        sa.Column('paid', sa.Numeric(18, 2), nullable=False, server_default='0'),
        sa.Column('remaining', sa.Numeric(18, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='Unpaid'),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _updated_at(),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id'], ),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id', name='uq_payables_purchase'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payables_supplier_id', 'payables', ['supplier_id'])

    op.create_table(
        'purchase_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('cash_account_id', sa.Integer(), nullable=False),
        sa.Column('cash_entry_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id'], ),
        sa.ForeignKeyConstraint(['cash_account_id'], ['cash_accounts.id'], ),
        sa.ForeignKeyConstraint(['cash_entry_id'], ['cash_ledger_entries.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_purchase_payments_purchase_kind', 'purchase_payments', ['purchase_id', 'kind'])

    # ============================================================================
    # Documents, audit and reconciliation
    # ============================================================================
    op.create_table(
        'document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('period', sa.String(length=16), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        _updated_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_type', 'period', name='uq_doc_sequences_type_period'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_document_sequences_document_type', 'document_sequences', ['document_type'])

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_events_event_type', 'audit_events', ['event_type'])
    op.create_index('ix_audit_events_entity', 'audit_events', ['entity_type', 'entity_id'])

    op.create_table(
        'reconciliation_issues',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation', sa.String(length=64), nullable=False),
        sa.Column('failed_step', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=True),
        sa.Column('entity_id', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=False),
        sa.Column('snapshot', sa.JSON(), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reconciliation_issues_resolved', 'reconciliation_issues', ['resolved'])


def downgrade():
    op.drop_table('reconciliation_issues')
    op.drop_table('audit_events')
    op.drop_table('document_sequences')
    op.drop_table('purchase_payments')
    op.drop_table('payables')
    op.drop_table('purchase_lines')
    op.drop_table('purchases')
    op.drop_table('consignment_returns')
    op.drop_table('consignment_sales')
    op.drop_table('consignment_details')
    op.drop_table('consignments')
    op.drop_table('stock_ledger_entries')
    op.drop_table('cash_ledger_entries')
    op.drop_table('cash_accounts')
    op.drop_table('products')
    op.drop_table('suppliers')
    op.drop_table('consignment_stores')
    op.drop_table('branches')
