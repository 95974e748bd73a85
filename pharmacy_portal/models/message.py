import enum

from sqlalchemy import DateTime, Enum, ForeignKey, JSON, String, Text
from sqlalchemy.orm import mapped_column

from .base import Base, UUIDMixin, TimestampMixin, enum_values


class MessageKind(str, enum.Enum):
    CHAT = "chat"
    ORDER_EVENT = "order_event"


class Message(Base, UUIDMixin, TimestampMixin):
    """A chat message or an order event addressed from one user to another.

    ``content`` is always human readable. For ``ORDER_EVENT`` rows the
    structured event lives in ``event_type``/``order_id``/``payload`` and
    ``content`` is only its rendered projection.
    """

    __tablename__ = "messages"

    sender_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    kind = mapped_column(
        Enum(MessageKind, name="messagekind", values_callable=enum_values),
        default=MessageKind.CHAT,
        nullable=False,
    )
    content = mapped_column(Text, nullable=False)
    order_id = mapped_column(ForeignKey("orders.id"), nullable=True, index=True)
    event_type = mapped_column(String(64), nullable=True)
    payload = mapped_column(JSON, nullable=True)
    read_at = mapped_column(DateTime(timezone=True), nullable=True)
