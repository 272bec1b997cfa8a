"""Columns and indexes added with Google sign-in, fare review and payouts.

Older databases predate these; on newer ones every step is a no-op.
"""
import sqlalchemy as sa

from apps.omw.app.schema import add_column_if_missing, create_index_if_missing, migration_schema

# revision identifiers, used by Alembic.
revision = '0003_payment_flow_columns'
down_revision = '0002_reference_data'
branch_labels = None
depends_on = None

COLUMNS = {
    "users": [
        sa.Column("google_id", sa.String(length=64), nullable=True),
        sa.Column("avatar_url", sa.String(length=512), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=True, server_default=sa.false()),
    ],
    "bookings": [
        sa.Column("payment_status", sa.String(length=20), nullable=True, server_default="unpaid"),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    ],
    "ride_fare_breakdowns": [
        sa.Column("actual_distance_km", sa.Float(), nullable=True),
        sa.Column("actual_duration_min", sa.Integer(), nullable=True),
        sa.Column("tip_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("waiting_charges_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("toll_charges_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("promo_discount_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("final_fare_cents", sa.BigInteger(), nullable=True),
        sa.Column("fare_deviation_percentage", sa.Float(), nullable=True),
    ],
    "payments": [
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("captured_at", sa.DateTime(), nullable=True),
    ],
    "provider_earnings": [
        sa.Column("payout_batch_id", sa.Integer(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
    ],
}

INDEXES = [
    ("ix_bookings_type_status_created", "bookings", ["booking_type", "service_status", "created_at"]),
    ("ix_chat_messages_session_created", "chat_messages", ["session_id", "created_at"]),
    ("ix_provider_earnings_payout_batch_id", "provider_earnings", ["payout_batch_id"]),
    ("ix_audit_logs_created_at", "audit_logs", ["created_at"]),
]


def upgrade() -> None:
    schema = migration_schema()
    for table, cols in COLUMNS.items():
        for col in cols:
            add_column_if_missing(table, col, schema=schema)
    for name, table, cols in INDEXES:
        create_index_if_missing(name, table, cols, schema=schema)


def downgrade() -> None:
    # the columns belong to the current models; 0001 downgrade drops the tables
    pass
