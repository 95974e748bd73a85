"""Add initiator and acceptance tracking to orders.

Existing orders were all placed by patients, so they backfill as
patient-initiated and already accepted.

Revision ID: 20261019_add_order_acceptance
Revises: 20261012_initial_schema
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261019_add_order_acceptance"
down_revision = "20261012_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    if "orders" not in set(inspector.get_table_names()):
        return

    cols = {col["name"] for col in inspector.get_columns("orders")}
    if "initiator_type" not in cols:
        op.add_column(
            "orders",
            sa.Column(
                "initiator_type",
                sa.Enum("patient", "pharmacy", name="initiatortype"),
                nullable=False,
                server_default="patient",
            ),
        )
    if "acceptance_status" not in cols:
        op.add_column(
            "orders",
            sa.Column(
                "acceptance_status",
                sa.Enum("pending", "accepted", "rejected", name="acceptancestatus"),
                nullable=False,
                server_default="accepted",
            ),
        )
    if "acceptance_deadline" not in cols:
        op.add_column(
            "orders",
            sa.Column("acceptance_deadline", sa.DateTime(timezone=True), nullable=True),
        )

    indexes = {index["name"] for index in inspector.get_indexes("orders")}
    if "ix_orders_pending_acceptance" not in indexes:
        op.create_index(
            "ix_orders_pending_acceptance",
            "orders",
            ["initiator_type", "acceptance_status", "acceptance_deadline"],
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    if "orders" not in set(inspector.get_table_names()):
        return

    indexes = {index["name"] for index in inspector.get_indexes("orders")}
    if "ix_orders_pending_acceptance" in indexes:
        op.drop_index("ix_orders_pending_acceptance", table_name="orders")

    cols = {col["name"] for col in inspector.get_columns("orders")}
    for column in ("acceptance_deadline", "acceptance_status", "initiator_type"):
        if column in cols:
            op.drop_column("orders", column)
