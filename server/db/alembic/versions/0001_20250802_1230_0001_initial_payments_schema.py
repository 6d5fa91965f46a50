"""Initial payments schema

Revision ID: 0001
Revises:
Create Date: 2025-08-02 12:30:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create destinations table
    op.create_table('destinations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('citizen_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('resident_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('non_resident_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('citizen_price >= 0', name='ck_destination_citizen_price_non_negative'),
        sa.CheckConstraint('resident_price >= 0', name='ck_destination_resident_price_non_negative'),
        sa.CheckConstraint('non_resident_price >= 0', name='ck_destination_non_resident_price_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_destinations_title'), 'destinations', ['title'], unique=False)

    # Create bookings table
    op.create_table('bookings',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('destination_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=False),
        sa.Column('payer_msisdn', sa.String(length=16), nullable=True),
        sa.Column('participants', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('special_requests', sa.Text(), nullable=True),
        sa.Column('unit_price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('rate_class', sa.String(length=20), nullable=False),
        sa.Column('rate_class_fallback', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('gateway_tracking_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_reference', sa.String(length=128), nullable=True),
        sa.Column('review_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('participants > 0', name='ck_booking_participants_positive'),
        sa.CheckConstraint('total_amount >= 0', name='ck_booking_total_non_negative'),
        sa.CheckConstraint("status <> 'confirmed' OR payment_status = 'paid'", name='ck_booking_confirmed_requires_paid'),
        sa.ForeignKeyConstraint(['destination_id'], ['destinations.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_bookings_destination_id'), 'bookings', ['destination_id'], unique=False)
    op.create_index(op.f('ix_bookings_user_id'), 'bookings', ['user_id'], unique=False)
    op.create_index(op.f('ix_bookings_payer_msisdn'), 'bookings', ['payer_msisdn'], unique=False)
    op.create_index(op.f('ix_bookings_payment_method'), 'bookings', ['payment_method'], unique=False)
    op.create_index(op.f('ix_bookings_payment_status'), 'bookings', ['payment_status'], unique=False)
    op.create_index(op.f('ix_bookings_status'), 'bookings', ['status'], unique=False)
    op.create_index(op.f('ix_bookings_gateway_tracking_id'), 'bookings', ['gateway_tracking_id'], unique=True)

    # Create payment_transactions table
    op.create_table('payment_transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('booking_id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('tracking_id', sa.String(length=128), nullable=False),
        sa.Column('merchant_reference', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('status', sa.String(length=40), nullable=False),
        sa.Column('payment_method', sa.String(length=64), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payment_transactions_booking_id'), 'payment_transactions', ['booking_id'], unique=False)
    op.create_index(op.f('ix_payment_transactions_merchant_reference'), 'payment_transactions', ['merchant_reference'], unique=False)
    op.create_index(op.f('ix_payment_transactions_tracking_id'), 'payment_transactions', ['tracking_id'], unique=True)

    # Create idempotency_records table
    op.create_table('idempotency_records',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('method', sa.String(length=100), nullable=False),
        sa.Column('request_body_hash', sa.String(length=64), nullable=False),
        sa.Column('response_status_code', sa.Integer(), nullable=False),
        sa.Column('response_body', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('length(idempotency_key) > 0', name='ck_idempotency_key_not_empty'),
        sa.CheckConstraint('length(request_body_hash) = 64', name='ck_idempotency_hash_length'),
        sa.CheckConstraint('response_status_code >= 100', name='ck_idempotency_status_code_valid'),
        sa.CheckConstraint('response_status_code <= 599', name='ck_idempotency_status_code_max'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key', 'method', name='uq_idempotency_key_method')
    )
    op.create_index(op.f('ix_idempotency_records_expires_at'), 'idempotency_records', ['expires_at'], unique=False)
    op.create_index(op.f('ix_idempotency_records_idempotency_key'), 'idempotency_records', ['idempotency_key'], unique=False)
    op.create_index(op.f('ix_idempotency_records_method'), 'idempotency_records', ['method'], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('idempotency_records')
    op.drop_table('payment_transactions')
    op.drop_table('bookings')
    op.drop_table('destinations')
