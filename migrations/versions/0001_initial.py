"""Initial schema: rides, payment_transactions"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rides",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("driver_id", sa.String, nullable=True),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(500), nullable=False),
        sa.Column("dest_lat", sa.Float, nullable=False),
        sa.Column("dest_lng", sa.Float, nullable=False),
        sa.Column("dest_address", sa.String(500), nullable=False),
        sa.Column("ride_option_id", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("passenger_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("surge_multiplier", sa.Numeric(4, 2), server_default="1.0"),
        sa.Column("base_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("distance_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("time_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("surge_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("tolls", sa.Numeric(10, 2), nullable=False),
        sa.Column("tip", sa.Numeric(10, 2), nullable=False),
        sa.Column("tax", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(5), server_default="USD"),
        sa.Column("estimated_duration_sec", sa.Float, nullable=False),
        sa.Column("estimated_distance_meters", sa.Float, nullable=False),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("cancelled_by", sa.String(30), nullable=True),
        sa.Column("cancellation_fee", sa.Numeric(10, 2), nullable=True),
        sa.Column("replaces_ride_id", sa.String, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arriving_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_created", "rides", ["created_at"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False, server_default="capture"),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(5), server_default="USD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.JSON, nullable=True),
        sa.Column("provider_transaction_id", sa.String(255), nullable=True),
        sa.Column("parent_transaction_id", sa.String, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("ride_id", "idempotency_key", name="uq_payment_transactions_ride_key"),
    )
    op.create_index("idx_payment_transactions_ride", "payment_transactions", ["ride_id"])
    op.create_index("idx_payment_transactions_status", "payment_transactions", ["status"])
    op.create_index("idx_payment_transactions_parent", "payment_transactions", ["parent_transaction_id"])


def downgrade() -> None:
    op.drop_table("payment_transactions")
    op.drop_table("rides")
