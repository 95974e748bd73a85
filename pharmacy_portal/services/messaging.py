from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..models.base import utcnow
from ..models.inventory import PharmacyConnection
from ..models.message import Message, MessageKind
from ..models.user import User, UserRole
from .order_events import OrderEvent, parse_order_event

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000


class MessagingError(Exception):
    pass


class MessageService:
    def __init__(self, db: Session):
        self.db = db

    def are_connected(self, first: User, second: User) -> bool:
        roles = {first.role, second.role}
        if roles != {UserRole.PATIENT.value, UserRole.PHARMACIST.value}:
            return False
        patient, pharmacy = (first, second) if first.role == UserRole.PATIENT.value else (second, first)
        return (
            self.db.query(PharmacyConnection)
            .filter_by(patient_id=patient.id, pharmacy_id=pharmacy.id)
            .first()
            is not None
        )

    def send_chat(self, sender: User, receiver_id: UUID, content: str) -> Message:
        content = content.strip()
        if not content or len(content) > MAX_MESSAGE_LENGTH:
            raise MessagingError(f"Message must be between 1 and {MAX_MESSAGE_LENGTH} characters")
        receiver = self.db.get(User, receiver_id)
        if receiver is None:
            raise MessagingError("Recipient not found")
        if not self.are_connected(sender, receiver):
            raise MessagingError("You can only message pharmacies you are connected to")
        message = Message(
            sender_id=sender.id,
            receiver_id=receiver.id,
            kind=MessageKind.CHAT,
            content=content,
        )
        self.db.add(message)
        self.db.commit()
        return message

    def send_order_event(
        self,
        sender_id: UUID,
        receiver_id: UUID,
        event: OrderEvent,
        *,
        commit: bool = True,
    ) -> Message:
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            kind=MessageKind.ORDER_EVENT,
            content=event.render(),
            order_id=UUID(event.order_id),
            event_type=event.event_type.value,
            payload=event.to_payload(),
        )
        self.db.add(message)
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        logger.info(
            "Order event %s for order %s sent to %s",
            event.event_type.value,
            event.order_id,
            receiver_id,
        )
        return message

    def conversation(self, user_id: UUID, other_id: UUID, limit: int = 100) -> list[Message]:
        return (
            self.db.query(Message)
            .filter(
                or_(
                    and_(Message.sender_id == user_id, Message.receiver_id == other_id),
                    and_(Message.sender_id == other_id, Message.receiver_id == user_id),
                )
            )
            .order_by(Message.created_at.asc())
            .limit(min(limit, 500))
            .all()
        )

    def mark_read(self, user_id: UUID, other_id: UUID) -> int:
        result = self.db.execute(
            update(Message)
            .where(
                Message.sender_id == other_id,
                Message.receiver_id == user_id,
                Message.read_at.is_(None),
            )
            .values(read_at=utcnow())
        )
        self.db.commit()
        return result.rowcount or 0


def order_event_for(message: Message) -> OrderEvent | None:
    if message.kind == MessageKind.ORDER_EVENT and message.payload:
        return OrderEvent.from_payload(message.payload)
    # Rows written before events were stored structurally
    return parse_order_event(message.content)


def serialize_message(message: Message) -> dict:
    event = order_event_for(message)
    return {
        "id": str(message.id),
        "sender_id": str(message.sender_id),
        "receiver_id": str(message.receiver_id),
        "kind": message.kind.value,
        "content": message.content,
        "order_event": event.to_payload() if event else None,
        "created_at": message.created_at.isoformat() if message.created_at else None,
        "read_at": message.read_at.isoformat() if message.read_at else None,
    }
