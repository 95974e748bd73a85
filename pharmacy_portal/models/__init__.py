from .base import Base
from .user import User, UserRole
from .inventory import BatchMovement, BatchMovementType, InventoryBatch, InventoryItem, PharmacyConnection
from .order import (
    AcceptanceStatus,
    FulfillmentStatus,
    InitiatorType,
    Order,
    OrderItem,
    OrderStatus,
)
from .message import Message, MessageKind
from .audit import AuditAction, AuditEvent

__all__ = [
    "Base",
    "User",
    "UserRole",
    "InventoryItem",
    "InventoryBatch",
    "BatchMovement",
    "BatchMovementType",
    "PharmacyConnection",
    "AcceptanceStatus",
    "FulfillmentStatus",
    "InitiatorType",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Message",
    "MessageKind",
    "AuditAction",
    "AuditEvent",
]
