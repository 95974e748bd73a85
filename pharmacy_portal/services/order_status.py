"""Order lifecycle rules.

Single source of truth for which status changes a patient or a pharmacist may
make, plus the labels and styling derived from a status. Pure functions only:
nothing here touches the database or logs.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal

from ..models.order import InitiatorType, OrderStatus


class ActorRole(str, enum.Enum):
    PATIENT = "patient"
    PHARMACIST = "pharmacist"


class ForbiddenTransition(Exception):
    def __init__(self, current: OrderStatus, target: OrderStatus, role: ActorRole | str):
        self.current = current
        self.target = target
        self.role = role
        super().__init__(
            f"{_value(role)} may not move an order from {_value(current)} to {_value(target)}"
        )


_P = OrderStatus

TRANSITIONS: dict[ActorRole, dict[OrderStatus, frozenset[OrderStatus]]] = {
    ActorRole.PATIENT: {
        _P.PLACED: frozenset({_P.CANCELLED}),
        _P.READY: frozenset({_P.COMPLETE}),
        _P.COMPLETE: frozenset(),
        _P.CANCELLED: frozenset(),
    },
    ActorRole.PHARMACIST: {
        _P.PLACED: frozenset({_P.READY, _P.CANCELLED}),
        _P.READY: frozenset({_P.COMPLETE, _P.CANCELLED}),
        _P.COMPLETE: frozenset(),
        _P.CANCELLED: frozenset(),
    },
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({_P.COMPLETE, _P.CANCELLED})


@dataclass(frozen=True)
class StatusStyle:
    label: str
    badge: str
    color: str
    icon: str


STATUS_STYLES: dict[OrderStatus, StatusStyle] = {
    _P.PLACED: StatusStyle("Order Placed", "warning", "var(--info)", "Clock"),
    _P.READY: StatusStyle("Ready for Pickup", "default", "var(--warning)", "Package"),
    _P.COMPLETE: StatusStyle("Completed", "success", "var(--success)", "CheckCircle2"),
    _P.CANCELLED: StatusStyle("Cancelled", "destructive", "var(--error)", "XCircle"),
}

# Same stored status, different meaning when the pharmacy proposed the order
PHARMACY_INITIATED_LABELS: dict[OrderStatus, str] = {
    _P.PLACED: "Waiting for Patient",
    _P.CANCELLED: "Rejected",
}


def _value(item) -> str:
    return item.value if isinstance(item, enum.Enum) else str(item)


def _coerce_status(status) -> OrderStatus | None:
    try:
        return OrderStatus(_value(status))
    except ValueError:
        return None


def _coerce_role(role) -> ActorRole | None:
    try:
        return ActorRole(_value(role))
    except ValueError:
        return None


def available_transitions(current, role) -> frozenset[OrderStatus]:
    status = _coerce_status(current)
    actor = _coerce_role(role)
    if status is None or actor is None:
        return frozenset()
    return TRANSITIONS[actor].get(status, frozenset())


def can_transition(current, target, role) -> bool:
    target_status = _coerce_status(target)
    if target_status is None:
        return False
    return target_status in available_transitions(current, role)


def ensure_transition(current, target, role) -> OrderStatus:
    """Return the validated target status or raise ``ForbiddenTransition``."""
    if not can_transition(current, target, role):
        raise ForbiddenTransition(current, target, role)
    return OrderStatus(_value(target))


def is_terminal(status) -> bool:
    return _coerce_status(status) in TERMINAL_STATUSES


def display_text(status, initiator_type=None) -> str:
    order_status = _coerce_status(status)
    if order_status is None:
        return _value(status).upper()
    if initiator_type is not None and _value(initiator_type) == InitiatorType.PHARMACY.value:
        label = PHARMACY_INITIATED_LABELS.get(order_status)
        if label:
            return label
    return STATUS_STYLES[order_status].label


def badge_variant(status, initiator_type=None) -> str:
    order_status = _coerce_status(status)
    if order_status is None:
        return "secondary"
    if (
        order_status == _P.PLACED
        and initiator_type is not None
        and _value(initiator_type) == InitiatorType.PHARMACY.value
    ):
        return "secondary"
    return STATUS_STYLES[order_status].badge


def status_color(status) -> str:
    order_status = _coerce_status(status)
    return STATUS_STYLES[order_status].color if order_status else "var(--neutral)"


def status_icon(status) -> str:
    order_status = _coerce_status(status)
    return STATUS_STYLES[order_status].icon if order_status else "AlertCircle"


def timeline(status) -> list[dict]:
    current = _coerce_status(status)
    if current == _P.CANCELLED:
        return [
            {"status": _P.PLACED.value, "label": "Order Placed", "completed": True, "current": False},
            {"status": _P.CANCELLED.value, "label": "Cancelled", "completed": True, "current": True},
        ]
    steps = [_P.PLACED, _P.READY, _P.COMPLETE]
    reached = steps.index(current) if current in steps else 0
    return [
        {
            "status": step.value,
            "label": STATUS_STYLES[step].label,
            "completed": index <= reached,
            "current": index == reached,
        }
        for index, step in enumerate(steps)
    ]


def format_order_id(order_id, max_length: int = 8) -> str:
    return f"#{str(order_id)[:max_length]}"


def format_price(amount, currency: str = "₹") -> str:
    return f"{currency}{Decimal(str(amount)).quantize(Decimal('0.01'))}"
