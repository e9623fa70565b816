"""Trips, vouchers, booking sessions, receipts, tickets, GNPL ledger and audit log

Revision ID: 0001_initial
Revises:
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _pk_int():
    return sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def _money():
    return sa.Numeric(12, 2)


def _timestamps(with_updated=True):
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)]
    if with_updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True)))
    return cols


def upgrade() -> None:
    op.create_table(
        'trips',
        sa.Column('id', _pk_int(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('destination', sa.String(length=255)),
        sa.Column('departure_date', sa.Date()),
        sa.Column('price_per_ticket', _money(), nullable=False),
        sa.Column('total_seats', sa.Integer(), nullable=False),
        sa.Column('available_seats', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('allow_gnpl', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('available_seats >= 0', name='ck_trips_available_non_negative'),
        sa.CheckConstraint('available_seats <= total_seats', name='ck_trips_available_le_total'),
    )
    op.create_index('ix_trips_id', 'trips', ['id'])

    op.create_table(
        'discount_vouchers',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('max_uses', sa.Integer()),
        sa.Column('current_uses', sa.Integer(), nullable=False),
        sa.Column('trip_id', _pk_int(), sa.ForeignKey('trips.id')),
        sa.Column('customer_id', sa.BigInteger()),
        sa.Column('valid_from', sa.DateTime(timezone=True)),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_discount_vouchers_code', 'discount_vouchers', ['code'], unique=True)

    op.create_table(
        'booking_sessions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('customer_id', sa.BigInteger(), nullable=False),
        sa.Column('trip_id', _pk_int(), sa.ForeignKey('trips.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=30), nullable=False),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('customer_name', sa.String(length=255)),
        sa.Column('phone_number', sa.String(length=32)),
        sa.Column('unit_price', _money(), nullable=False),
        sa.Column('base_amount', _money(), nullable=False),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('discount_amount', _money(), nullable=False),
        sa.Column('final_amount', _money(), nullable=False),
        sa.Column('voucher_id', sa.String(length=36), sa.ForeignKey('discount_vouchers.id')),
        sa.Column('voucher_code', sa.String(length=64)),
        *_timestamps(),
    )
    op.create_index('ix_booking_sessions_customer_id', 'booking_sessions', ['customer_id'])
    op.create_index('ix_booking_sessions_status', 'booking_sessions', ['status'])

    op.create_table(
        'receipts',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('reference_number', sa.String(length=128), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128)),
        sa.Column('customer_id', sa.BigInteger(), nullable=False),
        sa.Column('customer_name', sa.String(length=255)),
        sa.Column('phone_number', sa.String(length=32)),
        sa.Column('trip_id', _pk_int(), sa.ForeignKey('trips.id'), nullable=False),
        sa.Column('booking_session_id', sa.String(length=36), sa.ForeignKey('booking_sessions.id')),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=30), nullable=False),
        sa.Column('amount_paid', _money(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('base_amount', _money(), nullable=False),
        sa.Column('discount_amount', _money(), nullable=False),
        sa.Column('final_amount', _money(), nullable=False),
        sa.Column('voucher_id', sa.String(length=36), sa.ForeignKey('discount_vouchers.id')),
        sa.Column('voucher_code', sa.String(length=64)),
        sa.Column('voucher_redeemed', sa.Boolean(), nullable=False),
        sa.Column('approval_status', sa.String(length=20), nullable=False),
        sa.Column('approval_notes', sa.Text()),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('approved_by', sa.String(length=64)),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index('ix_receipts_reference_number', 'receipts', ['reference_number'], unique=True)
    op.create_index('ix_receipts_idempotency_key', 'receipts', ['idempotency_key'], unique=True)
    op.create_index('ix_receipts_customer_id', 'receipts', ['customer_id'])
    op.create_index('ix_receipts_approval_status', 'receipts', ['approval_status'])

    op.create_table(
        'tickets',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('receipt_id', sa.String(length=36), sa.ForeignKey('receipts.id'), nullable=False),
        sa.Column('trip_id', _pk_int(), sa.ForeignKey('trips.id'), nullable=False),
        sa.Column('customer_id', sa.BigInteger(), nullable=False),
        sa.Column('serial_number', sa.String(length=64), nullable=False, unique=True),
        sa.Column('ticket_number', sa.String(length=64), nullable=False),
        sa.Column('purchase_price', _money(), nullable=False),
        sa.Column('ticket_status', sa.String(length=20), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True)),
        sa.Column('qr_code', sa.Text()),
        *_timestamps(),
    )
    op.create_index('ix_tickets_receipt_id', 'tickets', ['receipt_id'])
    op.create_index('ix_tickets_ticket_number', 'tickets', ['ticket_number'], unique=True)
    op.create_index('ix_tickets_ticket_status', 'tickets', ['ticket_status'])

    op.create_table(
        'gnpl_accounts',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('customer_id', sa.BigInteger(), nullable=False),
        sa.Column('trip_id', _pk_int(), sa.ForeignKey('trips.id'), nullable=False),
        sa.Column('booking_session_id', sa.String(length=36), sa.ForeignKey('booking_sessions.id')),
        sa.Column('receipt_id', sa.String(length=36), sa.ForeignKey('receipts.id')),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('customer_name', sa.String(length=255)),
        sa.Column('phone_number', sa.String(length=32)),
        sa.Column('id_number', sa.String(length=64)),
        sa.Column('id_card_file_name', sa.String(length=255)),
        sa.Column('id_card_mime_type', sa.String(length=64)),
        sa.Column('id_card_size', sa.Integer()),
        sa.Column('status', sa.String(length=30), nullable=False),
        sa.Column('base_amount', _money(), nullable=False),
        sa.Column('discount_amount', _money(), nullable=False),
        sa.Column('approved_amount', _money(), nullable=False),
        sa.Column('principal_paid', _money(), nullable=False),
        sa.Column('penalty_accrued', _money(), nullable=False),
        sa.Column('penalty_paid', _money(), nullable=False),
        sa.Column('penalty_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('penalty_period_days', sa.Integer(), nullable=False),
        sa.Column('voucher_id', sa.String(length=36), sa.ForeignKey('discount_vouchers.id')),
        sa.Column('due_date', sa.DateTime(timezone=True)),
        sa.Column('next_penalty_at', sa.DateTime(timezone=True)),
        sa.Column('last_penalty_applied_at', sa.DateTime(timezone=True)),
        sa.Column('reminder_last_sent_on', sa.Date()),
        sa.Column('approved_by', sa.String(length=64)),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        sa.Column('rejected_by', sa.String(length=64)),
        sa.Column('rejected_at', sa.DateTime(timezone=True)),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('admin_notes', sa.Text()),
        *_timestamps(),
    )
    op.create_index('ix_gnpl_accounts_customer_id', 'gnpl_accounts', ['customer_id'])
    op.create_index('ix_gnpl_accounts_status', 'gnpl_accounts', ['status'])

    op.create_table(
        'gnpl_payments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('account_id', sa.String(length=36), sa.ForeignKey('gnpl_accounts.id'), nullable=False),
        sa.Column('customer_id', sa.BigInteger(), nullable=False),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('payment_reference', sa.String(length=128), nullable=False),
        sa.Column('payment_method', sa.String(length=30), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('principal_component', _money()),
        sa.Column('penalty_component', _money()),
        sa.Column('unapplied_amount', _money()),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('reviewed_by', sa.String(length=64)),
        sa.Column('reviewed_at', sa.DateTime(timezone=True)),
        sa.Column('rejection_reason', sa.Text()),
        *_timestamps(with_updated=False),
    )
    op.create_index('ix_gnpl_payments_account_id', 'gnpl_payments', ['account_id'])
    op.create_index('ix_gnpl_payments_status', 'gnpl_payments', ['status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', _pk_int(), primary_key=True),
        sa.Column('admin_user_id', sa.String(length=64)),
        sa.Column('admin_username', sa.String(length=100)),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('resource_type', sa.String(length=50), nullable=False),
        sa.Column('resource_id', sa.String(length=64)),
        sa.Column('details', sa.JSON()),
        sa.Column('success', sa.Boolean()),
        sa.Column('error_message', sa.Text()),
        sa.Column('timestamp', sa.DateTime(timezone=True)),
    )
    for column in ('id', 'admin_user_id', 'action', 'resource_type', 'success', 'timestamp'):
        op.create_index(f'ix_audit_logs_{column}', 'audit_logs', [column])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('gnpl_payments')
    op.drop_table('gnpl_accounts')
    op.drop_table('tickets')
    op.drop_table('receipts')
    op.drop_table('booking_sessions')
    op.drop_table('discount_vouchers')
    op.drop_table('trips')
