"""create payment orders and status history

Revision ID: 8d3e5b7a2c41
Revises: 4f2c1a9d7e10
Create Date: 2025-11-24 09:40:07.918342
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "8d3e5b7a2c41"
down_revision = "4f2c1a9d7e10"
branch_labels = None
depends_on = None

PAYMENT_STATUS = ("PENDING", "SUCCESS", "FAILED", "REFUNDED")


def upgrade() -> None:
    op.create_table(
        "payment_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider_id", sa.String(length=64), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=True, unique=True),
        sa.Column("payment_id", sa.String(length=64), nullable=True),
        sa.Column("signature", sa.String(length=256), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*PAYMENT_STATUS, name="paymentstatus", native_enum=False),
            nullable=False,
        ),
        sa.Column("payment_gateway", sa.String(length=32), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum(
                "CARD", "NETBANKING", "UPI", "WALLET", "EMANDATE", "UNSET",
                name="paymentmethod",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column("reference_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column(
            "service_type",
            sa.Enum("CONSULTATION", name="servicetype", native_enum=False),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column(
            "refund_status",
            sa.Enum("NOT_REQUESTED", "REQUESTED", "COMPLETED", name="refundstatus", native_enum=False),
            nullable=False,
        ),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_payment_orders_positive_amount"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_payment_orders_user_idempotency_key"),
    )
    op.create_index("ix_payment_orders_user_id", "payment_orders", ["user_id"])
    op.create_index("ix_payment_orders_provider_id", "payment_orders", ["provider_id"])
    op.create_index("ix_payment_orders_user_created", "payment_orders", ["user_id", "created_at"])
    op.create_index("ix_payment_orders_status", "payment_orders", ["status"])

    op.create_table(
        "payment_status_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "payment_order_id",
            sa.Integer(),
            sa.ForeignKey("payment_orders.id"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(*PAYMENT_STATUS, name="paymentstatus", native_enum=False),
            nullable=False,
        ),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_payment_status_history_payment_order_id", "payment_status_history", ["payment_order_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_payment_status_history_payment_order_id", table_name="payment_status_history")
    op.drop_table("payment_status_history")
    op.drop_index("ix_payment_orders_status", table_name="payment_orders")
    op.drop_index("ix_payment_orders_user_created", table_name="payment_orders")
    op.drop_index("ix_payment_orders_provider_id", table_name="payment_orders")
    op.drop_index("ix_payment_orders_user_id", table_name="payment_orders")
    op.drop_table("payment_orders")
