"""create reservation, payment, booking and outbox tables

Revision ID: e4f5a6b7c8d9
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'e4f5a6b7c8d9'
down_revision = None
branch_labels = None
depends_on = None

IN_FLIGHT = "status IN ('HELD', 'PAYMENT_PENDING', 'PAYMENT_CONFIRMED')"
LIVE_BOOKING = "status != 'CANCELLED'"


def upgrade():
    op.create_table(
        'reservations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider_id', sa.String(length=64), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('time', sa.Time(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('payment_id', sa.String(length=255), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('reservations', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_reservations_provider_id'), ['provider_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_reservations_client_id'), ['client_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_reservations_order_id'), ['order_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_reservations_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_reservations_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_reservations_updated_at'), ['updated_at'], unique=False)

    op.create_index(
        'uq_reservation_slot_in_flight', 'reservations', ['provider_id', 'date', 'time'],
        unique=True,
        sqlite_where=sa.text(IN_FLIGHT),
        postgresql_where=sa.text(IN_FLIGHT),
    )

    op.create_table(
        'payment_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=255), nullable=True),
        sa.Column('reservation_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('booking_id', sa.Integer(), nullable=True),
        sa.Column('provider_id', sa.String(length=64), nullable=True),
        sa.Column('client_id', sa.String(length=64), nullable=True),
        sa.Column('date', sa.Date(), nullable=True),
        sa.Column('time', sa.Time(), nullable=True),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=False),
        sa.Column('review_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['reservation_id'], ['reservations.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('payment_attempts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_attempts_order_id'), ['order_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_payment_attempts_gateway_payment_id'), ['gateway_payment_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_payment_attempts_reservation_id'), ['reservation_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_attempts_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_attempts_booking_id'), ['booking_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_attempts_needs_review'), ['needs_review'], unique=False)

    op.create_table(
        'bookings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider_id', sa.String(length=64), nullable=False),
        sa.Column('client_id', sa.String(length=64), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('time', sa.Time(), nullable=False),
        sa.Column('payment_attempt_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('notification_sent_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['payment_attempt_id'], ['payment_attempts.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('bookings', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_bookings_provider_id'), ['provider_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_client_id'), ['client_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_bookings_payment_attempt_id'), ['payment_attempt_id'], unique=True)

    op.create_index(
        'uq_booking_slot_live', 'bookings', ['provider_id', 'date', 'time'],
        unique=True,
        sqlite_where=sa.text(LIVE_BOOKING),
        postgresql_where=sa.text(LIVE_BOOKING),
    )

    # payment_attempts <-> bookings reference each other; add this side once both exist
    with op.batch_alter_table('payment_attempts', schema=None) as batch_op:
        batch_op.create_foreign_key('fk_payment_attempts_booking_id', 'bookings', ['booking_id'], ['id'])

    op.create_table(
        'outbox_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=64), nullable=False),
        sa.Column('payload_json', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('available_at', sa.DateTime(), nullable=False),
        sa.Column('last_error', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('booking_id', 'kind', name='uq_outbox_booking_kind')
    )
    with op.batch_alter_table('outbox_tasks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_outbox_tasks_booking_id'), ['booking_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_outbox_tasks_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_outbox_tasks_available_at'), ['available_at'], unique=False)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=80), nullable=False),
        sa.Column('entity', sa.String(length=80), nullable=True),
        sa.Column('entity_id', sa.String(length=80), nullable=True),
        sa.Column('ip', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('audit_logs', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_audit_logs_action'), ['action'], unique=False)


def downgrade():
    with op.batch_alter_table('audit_logs', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_audit_logs_action'))
    op.drop_table('audit_logs')

    op.drop_table('outbox_tasks')

    with op.batch_alter_table('payment_attempts', schema=None) as batch_op:
        batch_op.drop_constraint('fk_payment_attempts_booking_id', type_='foreignkey')

    op.drop_index('uq_booking_slot_live', table_name='bookings')
    op.drop_table('bookings')
    op.drop_table('payment_attempts')

    op.drop_index('uq_reservation_slot_in_flight', table_name='reservations')
    op.drop_table('reservations')
