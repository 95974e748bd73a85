from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.audit import AuditAction
from ..models.base import as_utc, utcnow
from ..models.inventory import InventoryItem, PharmacyConnection
from ..models.order import (
    AcceptanceStatus,
    FulfillmentStatus,
    InitiatorType,
    Order,
    OrderItem,
    OrderStatus,
)
from ..models.user import User, UserRole
from . import order_events, order_status
from .audit_logger import create_audit_event
from .messaging import MessageService
from .order_status import ActorRole

logger = logging.getLogger(__name__)


class OrderServiceError(ValueError):
    pass


class OrderNotFound(OrderServiceError):
    pass


class OrderConflict(OrderServiceError):
    pass


@dataclass(frozen=True)
class LineRequest:
    inventory_item_id: UUID
    quantity: int


_ACTOR_ROLES = {
    UserRole.PATIENT.value: ActorRole.PATIENT,
    UserRole.PHARMACIST.value: ActorRole.PHARMACIST,
}


def actor_role_for(user: User) -> ActorRole | None:
    return _ACTOR_ROLES.get(user.role)


def label_initiator(order: Order) -> InitiatorType | None:
    # Once accepted, a pharmacy proposal reads like any other order
    if order.acceptance_status == AcceptanceStatus.ACCEPTED:
        return None
    return order.initiator_type


class OrderService:
    def __init__(self, db: Session, clock=None):
        self.db = db
        self.settings = get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.messages = MessageService(db)

    # Creation

    def place_patient_order(
        self,
        patient: User,
        pharmacy_id: UUID,
        lines: Iterable[LineRequest],
        notes: str | None = None,
    ) -> Order:
        self._require_connection(patient.id, pharmacy_id)
        order = Order(
            patient_id=patient.id,
            pharmacy_id=pharmacy_id,
            status=OrderStatus.PLACED,
            initiator_type=InitiatorType.PATIENT,
            acceptance_status=AcceptanceStatus.ACCEPTED,
            notes=notes,
        )
        self._attach_items(order, pharmacy_id, lines)
        self._reserve_stock(order)
        self.db.add(order)
        self.db.flush()
        self._audit(patient, AuditAction.CREATE, order, {"initiator_type": "patient"})
        self.db.commit()
        logger.info("Patient order %s placed with pharmacy %s", order.id, pharmacy_id)
        return order

    def create_pharmacy_order(
        self,
        pharmacist: User,
        patient_id: UUID,
        lines: Iterable[LineRequest],
        notes: str | None = None,
    ) -> Order:
        self._require_connection(patient_id, pharmacist.id)
        patient = self.db.get(User, patient_id)
        deadline = self._clock() + timedelta(hours=self.settings.ORDER_ACCEPTANCE_WINDOW_HOURS)
        order = Order(
            patient_id=patient_id,
            pharmacy_id=pharmacist.id,
            status=OrderStatus.PLACED,
            initiator_type=InitiatorType.PHARMACY,
            acceptance_status=AcceptanceStatus.PENDING,
            acceptance_deadline=deadline,
            notes=notes,
        )
        items = self._attach_items(order, pharmacist.id, lines)
        self._check_stock(items)
        self.db.add(order)
        self.db.flush()

        event = order_events.proposal_event(
            order,
            [line.name for line in order.items],
            patient_name=patient.display_name if patient else None,
        )
        self.messages.send_order_event(pharmacist.id, patient_id, event, commit=False)
        self._audit(
            pharmacist,
            AuditAction.CREATE,
            order,
            {"initiator_type": "pharmacy", "acceptance_deadline": deadline.isoformat()},
        )
        self.db.commit()
        logger.info("Pharmacy order proposal %s sent to patient %s", order.id, patient_id)
        return order

    def record_walk_in_order(
        self,
        pharmacist: User,
        lines: Iterable[LineRequest],
        notes: str | None = None,
    ) -> Order:
        order = Order(
            patient_id=None,
            pharmacy_id=pharmacist.id,
            status=OrderStatus.PLACED,
            initiator_type=InitiatorType.PHARMACY,
            acceptance_status=AcceptanceStatus.ACCEPTED,
            notes=notes,
        )
        self._attach_items(order, pharmacist.id, lines)
        self._reserve_stock(order)
        self.db.add(order)
        self.db.flush()
        self._audit(pharmacist, AuditAction.CREATE, order, {"initiator_type": "walk_in"})
        self.db.commit()
        return order

    # Lifecycle

    def respond_to_proposal(self, patient: User, order_id: UUID, accept: bool) -> Order:
        order = self.get_order_for(patient, order_id)
        if (
            order.initiator_type != InitiatorType.PHARMACY
            or order.acceptance_status != AcceptanceStatus.PENDING
        ):
            raise OrderConflict("Order is not awaiting your response")
        deadline = as_utc(order.acceptance_deadline)
        if deadline is not None and deadline < self._clock():
            raise OrderConflict("Order proposal has expired")

        if accept:
            self._compare_and_set(order, AcceptanceStatus.PENDING, acceptance_status=AcceptanceStatus.ACCEPTED)
            self._reserve_stock(order)
            event = order_events.accepted_event(order.id)
        else:
            self._compare_and_set(
                order,
                AcceptanceStatus.PENDING,
                acceptance_status=AcceptanceStatus.REJECTED,
                status=OrderStatus.CANCELLED,
            )
            event = order_events.rejected_event(order.id)

        self.messages.send_order_event(patient.id, order.pharmacy_id, event, commit=False)
        self._audit(
            patient,
            AuditAction.PROPOSAL_RESPONSE,
            order,
            {"acceptance_status": order.acceptance_status.value},
        )
        self.db.commit()
        return order

    def update_status(self, actor: User, order_id: UUID, target: OrderStatus) -> Order:
        role = actor_role_for(actor)
        if role is None:
            raise OrderServiceError("Only patients and pharmacists can update orders")
        order = self.get_order_for(actor, order_id)
        previous = order.status

        awaiting_patient = (
            order.initiator_type == InitiatorType.PHARMACY
            and order.acceptance_status == AcceptanceStatus.PENDING
        )
        if awaiting_patient and role == ActorRole.PATIENT:
            if OrderStatus(target) == OrderStatus.CANCELLED:
                return self.respond_to_proposal(actor, order_id, accept=False)
            raise OrderConflict("Respond to the pharmacy's proposal first")
        if awaiting_patient and OrderStatus(target) != OrderStatus.CANCELLED:
            raise OrderConflict("Order is waiting for patient acceptance")

        new_status = order_status.ensure_transition(previous, target, role)

        changes = {"status": new_status}
        release = new_status == OrderStatus.CANCELLED and order.acceptance_status == AcceptanceStatus.ACCEPTED
        if new_status == OrderStatus.CANCELLED and awaiting_patient:
            changes["acceptance_status"] = AcceptanceStatus.REJECTED
        elif new_status == OrderStatus.READY:
            changes["fulfillment_status"] = FulfillmentStatus.READY_FOR_PICKUP.value
        elif new_status == OrderStatus.COMPLETE:
            changes["fulfillment_status"] = FulfillmentStatus.COLLECTED.value
        self._compare_and_set(order, order.acceptance_status, **changes)
        if release:
            self._release_stock(order)

        counterparty = order.pharmacy_id if role == ActorRole.PATIENT else order.patient_id
        if counterparty is not None:
            event = order_events.status_changed_event(order.id, new_status, label_initiator(order))
            self.messages.send_order_event(actor.id, counterparty, event, commit=False)
        self._audit(
            actor,
            AuditAction.STATUS_CHANGE,
            order,
            {"from": previous.value, "to": new_status.value},
        )
        self.db.commit()
        logger.info("Order %s moved %s -> %s by %s", order.id, previous.value, new_status.value, role.value)
        return order

    # Queries

    def get_order_for(self, user: User, order_id: UUID) -> Order:
        order = self.db.get(Order, order_id)
        if order is None or not self._can_view(user, order):
            raise OrderNotFound("Order not found")
        return order

    def list_orders(
        self,
        user: User,
        status: OrderStatus | None = None,
        initiator_type: InitiatorType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Order]:
        query = self.db.query(Order)
        if user.role == UserRole.PATIENT.value:
            query = query.filter(Order.patient_id == user.id)
        elif user.role == UserRole.PHARMACIST.value:
            query = query.filter(Order.pharmacy_id == user.id)
        if status:
            query = query.filter(Order.status == status)
        if initiator_type:
            query = query.filter(Order.initiator_type == initiator_type)
        return (
            query.order_by(Order.created_at.desc())
            .offset(offset)
            .limit(min(limit, 200))
            .all()
        )

    # Helpers

    def _can_view(self, user: User, order: Order) -> bool:
        if user.role == UserRole.PATIENT.value:
            return order.patient_id == user.id
        if user.role == UserRole.PHARMACIST.value:
            return order.pharmacy_id == user.id
        return user.role in {UserRole.ADMIN.value, UserRole.SYSTEM.value}

    def _require_connection(self, patient_id: UUID, pharmacy_id: UUID) -> None:
        connection = (
            self.db.query(PharmacyConnection)
            .filter_by(patient_id=patient_id, pharmacy_id=pharmacy_id)
            .first()
        )
        if connection is None:
            raise OrderServiceError("Patient is not connected to this pharmacy")

    def _attach_items(
        self, order: Order, pharmacy_id: UUID, lines: Iterable[LineRequest]
    ) -> list[tuple[InventoryItem, int]]:
        merged: dict[UUID, int] = {}
        for line in lines:
            if line.quantity <= 0:
                raise OrderServiceError("Quantity must be positive")
            merged[line.inventory_item_id] = merged.get(line.inventory_item_id, 0) + line.quantity
        if not merged:
            raise OrderServiceError("Order must contain at least one item")

        resolved: list[tuple[InventoryItem, int]] = []
        total = Decimal("0")
        for item_id, quantity in merged.items():
            item = self.db.get(InventoryItem, item_id)
            if item is None or item.pharmacy_id != pharmacy_id:
                raise OrderServiceError("Item is not stocked by this pharmacy")
            price = Decimal(str(item.price))
            order.items.append(
                OrderItem(
                    inventory_item_id=item.id,
                    name=item.name,
                    quantity=quantity,
                    unit_price=price,
                )
            )
            total += price * quantity
            resolved.append((item, quantity))
        order.total_price = total
        return resolved

    def _check_stock(self, items: list[tuple[InventoryItem, int]]) -> None:
        for item, quantity in items:
            if item.stock < quantity:
                raise OrderConflict(f"Insufficient stock for {item.name}")

    def _compare_and_set(self, order: Order, expected_acceptance: AcceptanceStatus, **changes) -> None:
        # Applies only if nobody (patient, pharmacist or the expiry sweep)
        # moved the order since it was read.
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == order.status,
                Order.acceptance_status == expected_acceptance,
            )
            .values(updated_at=utcnow(), **changes)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self.db.rollback()
            raise OrderConflict("Order was changed by another request")
        self.db.expire(order)

    def _reserve_stock(self, order: Order) -> None:
        # Decrement in the database so concurrent checkouts cannot both
        # take the last units.
        for line in order.items:
            result = self.db.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.id == line.inventory_item_id,
                    InventoryItem.stock >= line.quantity,
                )
                .values(stock=InventoryItem.stock - line.quantity)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                name = line.name
                self.db.rollback()
                raise OrderConflict(f"Insufficient stock for {name}")
            self._expire_stock(line.inventory_item_id)

    def _release_stock(self, order: Order) -> None:
        for line in order.items:
            self.db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == line.inventory_item_id)
                .values(stock=InventoryItem.stock + line.quantity)
                .execution_options(synchronize_session=False)
            )
            self._expire_stock(line.inventory_item_id)

    def _expire_stock(self, item_id: UUID) -> None:
        cached = self.db.identity_map.get(self.db.identity_key(InventoryItem, item_id))
        if cached is not None:
            self.db.expire(cached, ["stock"])

    def _audit(self, actor: User, action: AuditAction, order: Order, details: dict) -> None:
        create_audit_event(
            self.db,
            actor=actor.username,
            action=action,
            entity_type="Order",
            entity_id=str(order.id),
            details=details,
            commit=False,
        )


def serialize_order(order: Order, viewer: User | None = None) -> dict:
    role = actor_role_for(viewer) if viewer is not None else None
    transitions = order_status.available_transitions(order.status, role) if role else frozenset()
    if (
        order.initiator_type == InitiatorType.PHARMACY
        and order.acceptance_status == AcceptanceStatus.PENDING
    ):
        # Only cancelling (rejecting/withdrawing) applies until the patient answers
        transitions = transitions & {OrderStatus.CANCELLED}
    deadline = as_utc(order.acceptance_deadline)
    initiator = label_initiator(order)
    return {
        "id": str(order.id),
        "display_id": order_status.format_order_id(order.id),
        "patient_id": str(order.patient_id) if order.patient_id else None,
        "pharmacy_id": str(order.pharmacy_id),
        "status": order.status.value,
        "status_text": order_status.display_text(order.status, initiator),
        "badge_variant": order_status.badge_variant(order.status, initiator),
        "status_color": order_status.status_color(order.status),
        "status_icon": order_status.status_icon(order.status),
        "initiator_type": order.initiator_type.value,
        "acceptance_status": order.acceptance_status.value,
        "acceptance_deadline": deadline.isoformat() if deadline else None,
        "fulfillment_status": order.fulfillment_status,
        "total_price": str(Decimal(str(order.total_price)).quantize(Decimal("0.01"))),
        "total_display": order_status.format_price(order.total_price),
        "notes": order.notes,
        "is_terminal": order_status.is_terminal(order.status),
        "available_transitions": sorted(status.value for status in transitions),
        "timeline": order_status.timeline(order.status),
        "items": [
            {
                "inventory_item_id": str(line.inventory_item_id),
                "name": line.name,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
            }
            for line in order.items
        ],
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }
