import enum

from sqlalchemy import Date, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import mapped_column, relationship

from .base import Base, UUIDMixin, TimestampMixin, enum_values


class BatchMovementType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"


class InventoryItem(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "inventory_items"

    pharmacy_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name = mapped_column(String(200), nullable=False)
    description = mapped_column(Text, nullable=True)
    category = mapped_column(String(100), nullable=True)
    price = mapped_column(Numeric(10, 2), nullable=False)
    stock = mapped_column(Integer, nullable=False, default=0)
    low_stock_threshold = mapped_column(Integer, nullable=True)
    expiry_date = mapped_column(Date, nullable=True)

    batches = relationship(
        "InventoryBatch",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="InventoryBatch.expiry_date",
    )


class InventoryBatch(Base, UUIDMixin, TimestampMixin):
    """A received lot of one inventory item; ``remaining_qty`` counts what is left of it."""

    __tablename__ = "inventory_batches"
    __table_args__ = (UniqueConstraint("inventory_id", "batch_code", name="uq_batch_code_per_item"),)

    inventory_id = mapped_column(ForeignKey("inventory_items.id"), nullable=False, index=True)
    pharmacy_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    batch_code = mapped_column(String(64), nullable=False)
    manufacturing_date = mapped_column(Date, nullable=True)
    expiry_date = mapped_column(Date, nullable=False, index=True)
    quantity = mapped_column(Integer, nullable=False, default=0)
    remaining_qty = mapped_column(Integer, nullable=False, default=0)

    item = relationship("InventoryItem", back_populates="batches")
    movements = relationship(
        "BatchMovement",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchMovement.created_at.desc()",
    )


class BatchMovement(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "batch_movements"

    batch_id = mapped_column(ForeignKey("inventory_batches.id"), nullable=False, index=True)
    movement_type = mapped_column(
        Enum(BatchMovementType, name="batchmovementtype", values_callable=enum_values), nullable=False
    )
    quantity = mapped_column(Integer, nullable=False)
    actor = mapped_column(String(64), nullable=True)
    notes = mapped_column(Text, nullable=True)

    batch = relationship("InventoryBatch", back_populates="movements")


class PharmacyConnection(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "pharmacy_connections"
    __table_args__ = (UniqueConstraint("patient_id", "pharmacy_id", name="uq_connection_pair"),)

    patient_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    pharmacy_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
