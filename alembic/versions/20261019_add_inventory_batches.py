"""Add inventory batches and batch movements.

Revision ID: 20261019_add_inventory_batches
Revises: 20261019_add_order_acceptance
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.sql import func
from sqlalchemy.dialects import postgresql


revision = "20261019_add_inventory_batches"
down_revision = "20261019_add_order_acceptance"
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

    if "inventory_batches" not in tables:
        op.create_table(
            "inventory_batches",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column(
                "inventory_id", uuid_type, sa.ForeignKey("inventory_items.id"), nullable=False, index=True
            ),
            sa.Column("pharmacy_id", uuid_type, sa.ForeignKey("users.id"), nullable=False, index=True),
            sa.Column("batch_code", sa.String(length=64), nullable=False),
            sa.Column("manufacturing_date", sa.Date(), nullable=True),
            sa.Column("expiry_date", sa.Date(), nullable=False, index=True),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("remaining_qty", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.UniqueConstraint("inventory_id", "batch_code", name="uq_batch_code_per_item"),
        )

    if "batch_movements" not in tables:
        op.create_table(
            "batch_movements",
            sa.Column("id", uuid_type, primary_key=True),
            sa.Column(
                "batch_id", uuid_type, sa.ForeignKey("inventory_batches.id"), nullable=False, index=True
            ),
            sa.Column("movement_type", sa.Enum("IN", "OUT", name="batchmovementtype"), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("actor", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
        )

    if bind.dialect.name == "postgresql":
        # Batch deletions are audited
        with op.get_context().autocommit_block():
            op.execute("ALTER TYPE auditaction ADD VALUE IF NOT EXISTS 'DELETE'")


def downgrade() -> None:
    tables = set(inspect(op.get_bind()).get_table_names())
    for table in ("batch_movements", "inventory_batches"):
        if table in tables:
            op.drop_table(table)
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TYPE IF EXISTS batchmovementtype")
