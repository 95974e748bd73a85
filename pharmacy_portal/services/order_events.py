"""Order lifecycle events exchanged between patients and pharmacies.

Events are stored structurally on ``Message`` rows; ``render`` produces the
newline-delimited ``KEY:value`` text kept in ``Message.content`` for display,
and ``parse_order_event`` recovers an event from that text for rows written
before events were stored structurally.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any

from ..models.order import OrderStatus
from . import order_status


class OrderEventType(str, enum.Enum):
    PHARMACY_ORDER_REQUEST = "PHARMACY_ORDER_REQUEST"
    ORDER_ACCEPTED = "ORDER_ACCEPTED"
    ORDER_REJECTED = "ORDER_REJECTED"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"


EXPIRY_REASON = "Order expired due to no customer response"

_LINE_RE = re.compile(r"^([A-Z_]+):(.*)$")
_ORDER_ID_RE = re.compile(r"^[0-9a-fA-F-]{36}$")


@dataclass(frozen=True)
class OrderEvent:
    event_type: OrderEventType
    order_id: str
    reason: str | None = None
    status_label: str | None = None
    details: dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        lines = [self.event_type.value, f"ORDER_ID:{self.order_id}"]
        for key, value in self.details.items():
            lines.append(f"{key.upper()}:{value}")
        if self.reason:
            lines.append(f"RESPONSE:{self.reason}")
        if self.status_label:
            lines.append(f"STATUS:{self.status_label}")
        return "\n".join(lines)

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "order_id": self.order_id,
            "reason": self.reason,
            "status": self.status_label,
            "details": dict(self.details),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderEvent":
        return cls(
            event_type=OrderEventType(payload["event_type"]),
            order_id=str(payload["order_id"]),
            reason=payload.get("reason"),
            status_label=payload.get("status"),
            details=dict(payload.get("details") or {}),
        )


def parse_order_event(content: str) -> OrderEvent | None:
    lines = [line.strip() for line in content.strip().splitlines() if line.strip()]
    if not lines:
        return None
    try:
        event_type = OrderEventType(lines[0])
    except ValueError:
        return None

    fields: dict[str, str] = {}
    for line in lines[1:]:
        match = _LINE_RE.match(line)
        if match:
            fields[match.group(1)] = match.group(2).strip()

    order_id = fields.pop("ORDER_ID", "")
    if not _ORDER_ID_RE.match(order_id):
        return None
    reason = fields.pop("RESPONSE", None)
    status_label = fields.pop("STATUS", None)
    return OrderEvent(
        event_type=event_type,
        order_id=order_id,
        reason=reason,
        status_label=status_label,
        details={key.lower(): value for key, value in fields.items()},
    )


def expired_event(order_id) -> OrderEvent:
    return OrderEvent(
        OrderEventType.ORDER_EXPIRED,
        str(order_id),
        reason=EXPIRY_REASON,
        status_label="Auto-cancelled",
    )


def accepted_event(order_id) -> OrderEvent:
    return OrderEvent(
        OrderEventType.ORDER_ACCEPTED,
        str(order_id),
        reason="Customer has accepted the order",
        status_label="Ready for fulfillment",
    )


def rejected_event(order_id) -> OrderEvent:
    return OrderEvent(
        OrderEventType.ORDER_REJECTED,
        str(order_id),
        reason="Customer has rejected the order",
        status_label="Cancelled",
    )


def proposal_event(order, item_names: list[str], patient_name: str | None = None) -> OrderEvent:
    details = {
        "patient": patient_name or "Walk-in",
        "total": order_status.format_price(order.total_price),
        "items": ", ".join(item_names) or "Items",
        "notes": order.notes or "None",
    }
    if order.acceptance_deadline is not None:
        details["deadline"] = order.acceptance_deadline.isoformat()
    return OrderEvent(
        OrderEventType.PHARMACY_ORDER_REQUEST,
        str(order.id),
        status_label="Pending Acceptance",
        details=details,
    )


def status_changed_event(order_id, status, initiator_type=None) -> OrderEvent:
    return OrderEvent(
        OrderEventType.ORDER_STATUS_CHANGED,
        str(order_id),
        status_label=order_status.display_text(status, initiator_type),
        details={"order_status": OrderStatus(status).value},
    )
