import enum

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import mapped_column, relationship

from .base import Base, UUIDMixin, TimestampMixin, enum_values


class OrderStatus(str, enum.Enum):
    PLACED = "placed"
    READY = "ready"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class InitiatorType(str, enum.Enum):
    PATIENT = "patient"
    PHARMACY = "pharmacy"


class AcceptanceStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class FulfillmentStatus(str, enum.Enum):
    READY_FOR_PICKUP = "ready_for_pickup"
    COLLECTED = "collected"


class Order(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_pending_acceptance", "initiator_type", "acceptance_status", "acceptance_deadline"),
    )

    # Walk-in orders have no patient account
    patient_id = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    pharmacy_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    status = mapped_column(
        Enum(OrderStatus, name="orderstatus", values_callable=enum_values),
        default=OrderStatus.PLACED,
        nullable=False,
    )
    initiator_type = mapped_column(
        Enum(InitiatorType, name="initiatortype", values_callable=enum_values),
        default=InitiatorType.PATIENT,
        nullable=False,
    )
    acceptance_status = mapped_column(
        Enum(AcceptanceStatus, name="acceptancestatus", values_callable=enum_values),
        default=AcceptanceStatus.ACCEPTED,
        nullable=False,
    )
    acceptance_deadline = mapped_column(DateTime(timezone=True), nullable=True)
    total_price = mapped_column(Numeric(10, 2), nullable=False, default=0)
    fulfillment_status = mapped_column(String(32), nullable=True)
    notes = mapped_column(Text, nullable=True)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    patient = relationship("User", foreign_keys=[patient_id])
    pharmacy = relationship("User", foreign_keys=[pharmacy_id])


class OrderItem(Base, UUIDMixin):
    __tablename__ = "order_items"

    order_id = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    inventory_item_id = mapped_column(ForeignKey("inventory_items.id"), nullable=False)
    name = mapped_column(String(200), nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    unit_price = mapped_column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    inventory_item = relationship("InventoryItem")
