"""initial engine schema

Revision ID: tb0001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates the complete TradeBooks schema:
- items, customers, suppliers, control_accounts: master data
- invoices, invoice_lines: documents and their lifecycle
- stock_movements: append-only inventory log (current_stock is a projection)
- ledger_postings, ledger_entries: append-only double-entry log
- audit_events, document_sequences: audit trail and atomic numbering
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'tb0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # Master data
    # ============================================================================
    op.create_table(
        'items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('unit', sa.String(length=16), nullable=True),
        sa.Column('sale_price_cents', sa.Integer(), nullable=True),
        sa.Column('purchase_price_cents', sa.Integer(), nullable=True),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_stock', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_items'),
        sa.UniqueConstraint('code', name='uq_items_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_items_active_name', 'items', ['is_active', 'name'])

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('credit_limit_cents', sa.Integer(), nullable=True),
        sa.Column('payment_terms_days', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_customers'),
        sa.UniqueConstraint('code', name='uq_customers_code'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('payment_terms_days', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_suppliers'),
        sa.UniqueConstraint('code', name='uq_suppliers_code'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'control_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('nature', sa.String(length=8), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_control_accounts'),
        sa.UniqueConstraint('code', name='uq_control_accounts_code'),
        sa.CheckConstraint("nature IN ('debit', 'credit')", name='ck_control_accounts_nature_valid'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # invoices: sales, purchase, and their returns
    # ============================================================================
    # WHY version_id: concurrent returns against one original bump its
    # version; the loser's flush fails and is retried against fresh state.
    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=32), nullable=False),
        sa.Column('invoice_type', sa.String(length=24), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('invoice_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('grand_total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_invoice_id', sa.Integer(), nullable=True),
        sa.Column('return_reason', sa.String(length=255), nullable=True),
        sa.Column('return_notes', sa.Text(), nullable=True),
        sa.Column('returned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_return_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('supplier_bill_no', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('transporter_name', sa.String(length=128), nullable=True),
        sa.Column('bilty_number', sa.String(length=64), nullable=True),
        sa.Column('bilty_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _timestamps(),
        sa.Column('confirmed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by_user_id', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], name='fk_invoices_customer_id_customers'),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], name='fk_invoices_supplier_id_suppliers'),
        sa.ForeignKeyConstraint(['original_invoice_id'], ['invoices.id'],
                                name='fk_invoices_original_invoice_id_invoices'),
        sa.PrimaryKeyConstraint('id', name='pk_invoices'),
        sa.UniqueConstraint('invoice_number', name='uq_invoices_invoice_number'),
        sa.CheckConstraint('(customer_id IS NULL) <> (supplier_id IS NULL)', name='ck_invoices_one_party'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoices_invoice_type', 'invoices', ['invoice_type'])
    op.create_index('ix_invoices_customer_id', 'invoices', ['customer_id'])
    op.create_index('ix_invoices_supplier_id', 'invoices', ['supplier_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_type_date', 'invoices', ['invoice_type', 'invoice_date'])
    op.create_index('ix_invoices_original_status', 'invoices', ['original_invoice_id', 'status'])
    # One live invoice per supplier bill; cancelled invoices free the number
    op.create_index(
        'uq_invoices_supplier_bill_live', 'invoices', ['supplier_id', 'supplier_bill_no'],
        unique=True,
        sqlite_where=sa.text("supplier_bill_no IS NOT NULL AND status != 'cancelled'"),
        postgresql_where=sa.text("supplier_bill_no IS NOT NULL AND status != 'cancelled'"),
    )

    op.create_table(
        'invoice_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('discount_bps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('gross_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('taxable_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('line_total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('batch_number', sa.String(length=64), nullable=True),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('manufacturing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_line_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], name='fk_invoice_lines_invoice_id_invoices'),
        sa.ForeignKeyConstraint(['item_id'], ['items.id'], name='fk_invoice_lines_item_id_items'),
        sa.ForeignKeyConstraint(['original_line_id'], ['invoice_lines.id'],
                                name='fk_invoice_lines_original_line_id_invoice_lines'),
        sa.PrimaryKeyConstraint('id', name='pk_invoice_lines'),
        sa.UniqueConstraint('invoice_id', 'position', name='uq_invoice_lines_invoice_position'),
        sa.CheckConstraint('quantity <> 0', name='ck_invoice_lines_quantity_nonzero'),
        sa.CheckConstraint('discount_bps >= 0 AND discount_bps <= 10000', name='ck_invoice_lines_discount_range'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoice_lines_invoice_id', 'invoice_lines', ['invoice_id'])
    op.create_index('ix_invoice_lines_item_id', 'invoice_lines', ['item_id'])
    op.create_index('ix_invoice_lines_original_line_id', 'invoice_lines', ['original_line_id'])

    # ============================================================================
    # stock_movements: append-only inventory log
    # ============================================================================
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=32), nullable=False),
        sa.Column('reference_type', sa.String(length=32), nullable=False),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('invoice_line_id', sa.Integer(), nullable=True),
        sa.Column('is_reversal', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('reverses_movement_id', sa.Integer(), nullable=True),
        sa.Column('batch_number', sa.String(length=64), nullable=True),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('manufacturing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamps(),
        sa.ForeignKeyConstraint(['item_id'], ['items.id'], name='fk_stock_movements_item_id_items'),
        sa.ForeignKeyConstraint(['invoice_line_id'], ['invoice_lines.id'],
                                name='fk_stock_movements_invoice_line_id_invoice_lines'),
        sa.ForeignKeyConstraint(['reverses_movement_id'], ['stock_movements.id'],
                                name='fk_stock_movements_reverses_movement_id_stock_movements'),
        sa.PrimaryKeyConstraint('id', name='pk_stock_movements'),
        sa.UniqueConstraint('reverses_movement_id', name='uq_stock_movements_reverses_movement_id'),
        sa.CheckConstraint('quantity <> 0', name='ck_stock_movements_quantity_nonzero'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_item_id', 'stock_movements', ['item_id'])
    op.create_index('ix_stock_movements_movement_type', 'stock_movements', ['movement_type'])
    op.create_index('ix_stock_movements_occurred_at', 'stock_movements', ['occurred_at'])
    op.create_index('ix_stock_movements_item_occurred', 'stock_movements', ['item_id', 'occurred_at'])
    op.create_index('ix_stock_movements_reference', 'stock_movements', ['reference_type', 'reference_id'])
    op.create_index('ix_stock_movements_item_batch', 'stock_movements', ['item_id', 'batch_number'])

    # ============================================================================
    # ledger_postings / ledger_entries: double-entry log
    # ============================================================================
    op.create_table(
        'ledger_postings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(length=32), nullable=False),
        sa.Column('reference_id', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('is_reversal', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('reverses_posting_id', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamps(),
        sa.ForeignKeyConstraint(['reverses_posting_id'], ['ledger_postings.id'],
                                name='fk_ledger_postings_reverses_posting_id_ledger_postings'),
        sa.PrimaryKeyConstraint('id', name='pk_ledger_postings'),
        sa.UniqueConstraint('reverses_posting_id', name='uq_ledger_postings_reverses_posting_id'),
        sa.CheckConstraint('amount_cents > 0', name='ck_ledger_postings_amount_positive'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ledger_postings_reference', 'ledger_postings', ['reference_type', 'reference_id'])
    op.create_index('ix_ledger_postings_occurred_at', 'ledger_postings', ['occurred_at'])

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('posting_id', sa.Integer(), nullable=False),
        sa.Column('account_type', sa.String(length=16), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=8), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(length=32), nullable=False),
        sa.Column('reference_id', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamps(),
        sa.ForeignKeyConstraint(['posting_id'], ['ledger_postings.id'],
                                name='fk_ledger_entries_posting_id_ledger_postings'),
        sa.PrimaryKeyConstraint('id', name='pk_ledger_entries'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_ledger_entries_amount_non_negative'),
        sa.CheckConstraint("transaction_type IN ('debit', 'credit')",
                           name='ck_ledger_entries_transaction_type_valid'),
        sa.CheckConstraint("account_type IN ('customer', 'supplier', 'control')",
                           name='ck_ledger_entries_account_type_valid'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ledger_entries_posting_id', 'ledger_entries', ['posting_id'])
    op.create_index('ix_ledger_entries_account_occurred', 'ledger_entries',
                    ['account_type', 'account_id', 'occurred_at'])
    op.create_index('ix_ledger_entries_reference', 'ledger_entries', ['reference_type', 'reference_id'])

    # ============================================================================
    # audit_events / document_sequences
    # ============================================================================
    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        _timestamps(),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_audit_events'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_events_event_type', 'audit_events', ['event_type'])
    op.create_index('ix_audit_events_invoice_id', 'audit_events', ['invoice_id'])
    op.create_index('ix_audit_events_actor_user_id', 'audit_events', ['actor_user_id'])
    op.create_index('ix_audit_events_entity', 'audit_events', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_events_occurred', 'audit_events', ['occurred_at'])

    op.create_table(
        'document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('period', sa.Integer(), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id', name='pk_document_sequences'),
        sa.UniqueConstraint('document_type', 'period', name='uq_document_sequences_type_period'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_document_sequences_document_type', 'document_sequences', ['document_type'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('document_sequences')
    op.drop_table('audit_events')
    op.drop_table('ledger_entries')
    op.drop_table('ledger_postings')
    op.drop_table('stock_movements')
    op.drop_table('invoice_lines')
    op.drop_table('invoices')
    op.drop_table('control_accounts')
    op.drop_table('suppliers')
    op.drop_table('customers')
    op.drop_table('items')
