"""Create users, inventory, connections, orders, messages and audit tables.

Revision ID: 20261012_initial_schema
Revises:
Create Date: 2026-10-12
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.sql import func
from sqlalchemy.dialects import postgresql


revision = "20261012_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_type(bind):
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(36)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=func.now(), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())
    uuid_type = _uuid_type(bind)

    if "users" not in tables:
        op.create_table(
            "users",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("username", sa.String(length=64), nullable=False, unique=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="patient"),
            sa.Column("password_hash", sa.String(length=256), nullable=False),
            sa.Column("full_name", sa.String(length=128), nullable=True),
            sa.Column("pharmacy_name", sa.String(length=128), nullable=True),
            sa.Column("phone", sa.String(length=512), nullable=True),
            sa.Column("address", sa.String(length=512), nullable=True),
            sa.Column("force_password_change", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )

    if "inventory_items" not in tables:
        op.create_table(
            "inventory_items",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("pharmacy_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("price", sa.Numeric(10, 2), nullable=False),
            sa.Column("stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("low_stock_threshold", sa.Integer(), nullable=True),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            *_timestamps(),
        )

    if "pharmacy_connections" not in tables:
        op.create_table(
            "pharmacy_connections",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            sa.Column("pharmacy_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            *_timestamps(),
            sa.UniqueConstraint("patient_id", "pharmacy_id", name="uq_connection_pair"),
        )

    if "orders" not in tables:
        op.create_table(
            "orders",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("patient_id", uuid_type, sa.ForeignKey("users.id"), nullable=True, index=True),
            sa.Column("pharmacy_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            sa.Column(
                "status",
                sa.Enum("placed", "ready", "complete", "cancelled", name="orderstatus"),
                nullable=False,
                server_default="placed",
            ),
            sa.Column("total_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("fulfillment_status", sa.String(length=32), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
        )

    if "order_items" not in tables:
        op.create_table(
            "order_items",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("order_id", uuid_type, sa.ForeignKey("orders.id"), nullable=False, index=True),
            sa.Column("inventory_item_id", uuid_type, sa.ForeignKey("inventory_items.id"), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        )

    if "messages" not in tables:
        op.create_table(
            "messages",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("sender_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            sa.Column("receiver_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            sa.Column(
                "kind",
                sa.Enum("chat", "order_event", name="messagekind"),
                nullable=False,
                server_default="chat",
            ),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("order_id", uuid_type, sa.ForeignKey("orders.id"), nullable=True, index=True),
            sa.Column("event_type", sa.String(length=64), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )

    if "audit_events" not in tables:
        op.create_table(
            "audit_events",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column("actor", sa.String(length=64), nullable=False),
            sa.Column(
                "action",
                sa.Enum(
                    "CREATE",
                    "UPDATE",
                    "STATUS_CHANGE",
                    "PROPOSAL_RESPONSE",
                    "ORDER_EXPIRED",
                    "EXPIRY_SWEEP",
                    name="auditaction",
                ),
                nullable=False,
            ),
            sa.Column("entity_type", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=False, index=True),
            sa.Column("request_id", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("ip_address", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        )


def downgrade() -> None:
    tables = set(inspect(op.get_bind()).get_table_names())
    for table in (
        "audit_events",
        "messages",
        "order_items",
        "orders",
        "pharmacy_connections",
        "inventory_items",
        "users",
    ):
        if table in tables:
            op.drop_table(table)
