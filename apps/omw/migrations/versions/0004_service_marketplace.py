"""Service catalogue, cart, addresses, service bookings and cash collection.

New tables come from the models; new columns on existing tables are added
without foreign keys so sqlite can ALTER them in place.
"""
import sqlalchemy as sa

from apps.omw.app import models
from apps.omw.app.schema import (
    add_column_if_missing,
    create_index_if_missing,
    create_table_if_missing,
    migration_schema,
)

# revision identifiers, used by Alembic.
revision = '0004_service_marketplace'
down_revision = '0003_payment_flow_columns'
branch_labels = None
depends_on = None

TABLES = [
    models.CustomerType,
    models.CustomerAddress,
    models.ServiceCategory,
    models.ServiceSubcategory,
    models.CartItem,
    models.ProviderService,
    models.BookingRequest,
    models.CashPayment,
]

COLUMNS = {
    "users": [
        sa.Column("gender", sa.String(length=16), nullable=True),
    ],
    "customers": [
        sa.Column("customer_type_id", sa.Integer(), nullable=True),
    ],
    "bookings": [
        sa.Column("subcategory_id", sa.Integer(), nullable=True),
        sa.Column("scheduled_time", sa.DateTime(), nullable=True),
        sa.Column("service_unit_count", sa.Integer(), nullable=True, server_default="1"),
        sa.Column("base_item_price_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("night_charge_per_unit_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("night_charge_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("is_night_booking", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("discount_percentage", sa.Float(), nullable=True, server_default="0"),
        sa.Column("discount_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("subtotal_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("gst_cents", sa.BigInteger(), nullable=True, server_default="0"),
        sa.Column("total_amount_cents", sa.BigInteger(), nullable=True),
        sa.Column("service_address", sa.Text(), nullable=True),
        sa.Column("worker_preference", sa.String(length=10), nullable=True, server_default="any"),
        sa.Column("payment_method", sa.String(length=20), nullable=True, server_default="online"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("otp_code", sa.String(length=6), nullable=True),
        sa.Column("otp_expires_at", sa.DateTime(), nullable=True),
        sa.Column("arrived_at", sa.DateTime(), nullable=True),
    ],
}

INDEXES = [
    ("ix_bookings_subcategory_id", "bookings", ["subcategory_id"]),
    ("ix_bookings_scheduled_time", "bookings", ["scheduled_time"]),
]


def upgrade() -> None:
    schema = migration_schema()
    for model in TABLES:
        create_table_if_missing(model.__table__)
    for table, cols in COLUMNS.items():
        for col in cols:
            add_column_if_missing(table, col, schema=schema)
    for name, table, cols in INDEXES:
        create_index_if_missing(name, table, cols, schema=schema)


def downgrade() -> None:
    # the columns belong to the current models; 0001 downgrade drops the tables
    pass
