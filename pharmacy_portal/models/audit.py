import enum
from sqlalchemy import DateTime, Enum, String, JSON
from sqlalchemy.orm import mapped_column
from .base import Base, UUIDMixin


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"
    PROPOSAL_RESPONSE = "PROPOSAL_RESPONSE"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    EXPIRY_SWEEP = "EXPIRY_SWEEP"


class AuditEvent(Base, UUIDMixin):
    __tablename__ = "audit_events"

    actor = mapped_column(String(64), nullable=False)
    action = mapped_column(Enum(AuditAction, name="auditaction"), nullable=False)
    entity_type = mapped_column(String(64), nullable=False)
    entity_id = mapped_column(String(64), nullable=False, index=True)
    request_id = mapped_column(String(64), nullable=False, default="")
    ip_address = mapped_column(String(64), nullable=False, default="")
    details = mapped_column(JSON, nullable=True)
    timestamp = mapped_column(DateTime(timezone=True), nullable=False)
