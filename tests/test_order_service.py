from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from pharmacy_portal.models.audit import AuditAction, AuditEvent
from pharmacy_portal.models.inventory import InventoryItem
from pharmacy_portal.models.message import Message
from pharmacy_portal.models.order import AcceptanceStatus, InitiatorType, Order, OrderStatus
from pharmacy_portal.services.order_events import OrderEventType
from pharmacy_portal.services.order_service import (
    LineRequest,
    OrderConflict,
    OrderNotFound,
    OrderService,
    OrderServiceError,
    serialize_order,
)
from pharmacy_portal.services.order_status import ForbiddenTransition


def _stock(db, item):
    db.expire_all()
    return db.get(InventoryItem, item.id).stock


def _proposal(db, portal, quantity=2):
    return OrderService(db).create_pharmacy_order(
        portal.pharmacist,
        portal.patient.id,
        [LineRequest(portal.paracetamol.id, quantity)],
        notes="Monthly refill",
    )


def test_patient_checkout_decrements_stock(db_session, portal):
    order = OrderService(db_session).place_patient_order(
        portal.patient,
        portal.pharmacist.id,
        [LineRequest(portal.paracetamol.id, 2), LineRequest(portal.cetirizine.id, 1)],
    )

    assert order.initiator_type == InitiatorType.PATIENT
    assert order.acceptance_status == AcceptanceStatus.ACCEPTED
    assert order.status == OrderStatus.PLACED
    assert order.total_price == Decimal("62.50")
    assert _stock(db_session, portal.paracetamol) == 38
    assert _stock(db_session, portal.cetirizine) == 2


def test_checkout_requires_connection_and_stock(db_session, portal):
    service = OrderService(db_session)
    with pytest.raises(OrderServiceError):
        service.place_patient_order(portal.stranger, portal.pharmacist.id, [LineRequest(portal.paracetamol.id, 1)])
    with pytest.raises(OrderConflict):
        service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.cetirizine.id, 4)])
    db_session.rollback()
    assert _stock(db_session, portal.cetirizine) == 3


def test_proposal_is_pending_with_deadline_and_notifies_patient(db_session, portal):
    before = datetime.now(timezone.utc)
    order = _proposal(db_session, portal)

    assert order.initiator_type == InitiatorType.PHARMACY
    assert order.acceptance_status == AcceptanceStatus.PENDING
    deadline = order.acceptance_deadline.replace(tzinfo=timezone.utc)
    assert before + timedelta(hours=23, minutes=59) < deadline <= datetime.now(timezone.utc) + timedelta(hours=24)
    # Stock is only reserved on acceptance
    assert _stock(db_session, portal.paracetamol) == 40

    message = db_session.query(Message).filter_by(order_id=order.id).one()
    assert message.receiver_id == portal.patient.id
    assert message.event_type == OrderEventType.PHARMACY_ORDER_REQUEST.value
    assert message.payload["details"]["patient"] == "Asha Rao"


def test_accepting_proposal_reserves_stock(db_session, portal):
    order = _proposal(db_session, portal, quantity=5)

    accepted = OrderService(db_session).respond_to_proposal(portal.patient, order.id, accept=True)

    assert accepted.acceptance_status == AcceptanceStatus.ACCEPTED
    assert accepted.status == OrderStatus.PLACED
    assert _stock(db_session, portal.paracetamol) == 35
    events = {m.event_type for m in db_session.query(Message).filter_by(receiver_id=portal.pharmacist.id)}
    assert events == {OrderEventType.ORDER_ACCEPTED.value}


def test_rejecting_proposal_cancels(db_session, portal):
    order = _proposal(db_session, portal)

    rejected = OrderService(db_session).respond_to_proposal(portal.patient, order.id, accept=False)

    assert rejected.acceptance_status == AcceptanceStatus.REJECTED
    assert rejected.status == OrderStatus.CANCELLED
    with pytest.raises(OrderConflict):
        OrderService(db_session).respond_to_proposal(portal.patient, order.id, accept=True)


def test_cannot_respond_after_deadline(db_session, portal):
    order = _proposal(db_session, portal)
    late = datetime.now(timezone.utc) + timedelta(hours=25)

    with pytest.raises(OrderConflict, match="expired"):
        OrderService(db_session, clock=lambda: late).respond_to_proposal(portal.patient, order.id, accept=True)


def test_other_patients_cannot_see_order(db_session, portal):
    order = _proposal(db_session, portal)
    with pytest.raises(OrderNotFound):
        OrderService(db_session).respond_to_proposal(portal.stranger, order.id, accept=True)


def test_pharmacist_cannot_advance_pending_proposal(db_session, portal):
    order = _proposal(db_session, portal)
    service = OrderService(db_session)

    with pytest.raises(OrderConflict):
        service.update_status(portal.pharmacist, order.id, OrderStatus.READY)

    withdrawn = service.update_status(portal.pharmacist, order.id, OrderStatus.CANCELLED)
    assert withdrawn.status == OrderStatus.CANCELLED
    assert withdrawn.acceptance_status == AcceptanceStatus.REJECTED


def test_full_lifecycle_with_fulfillment(db_session, portal):
    service = OrderService(db_session)
    order = service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.paracetamol.id, 1)])

    with pytest.raises(ForbiddenTransition):
        service.update_status(portal.patient, order.id, OrderStatus.READY)

    order = service.update_status(portal.pharmacist, order.id, OrderStatus.READY)
    assert order.fulfillment_status == "ready_for_pickup"
    order = service.update_status(portal.patient, order.id, OrderStatus.COMPLETE)
    assert order.fulfillment_status == "collected"

    with pytest.raises(ForbiddenTransition):
        service.update_status(portal.pharmacist, order.id, OrderStatus.CANCELLED)

    changes = (
        db_session.query(AuditEvent)
        .filter_by(entity_id=str(order.id), action=AuditAction.STATUS_CHANGE)
        .count()
    )
    assert changes == 2
    notified = db_session.query(Message).filter_by(
        order_id=order.id, event_type=OrderEventType.ORDER_STATUS_CHANGED.value
    )
    assert {m.receiver_id for m in notified} == {portal.patient.id, portal.pharmacist.id}


def test_cancelling_accepted_order_restores_stock(db_session, portal):
    service = OrderService(db_session)
    order = service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.paracetamol.id, 4)])
    assert _stock(db_session, portal.paracetamol) == 36

    service.update_status(portal.patient, order.id, OrderStatus.CANCELLED)

    assert _stock(db_session, portal.paracetamol) == 40


def test_walk_in_order_has_no_patient(db_session, portal):
    order = OrderService(db_session).record_walk_in_order(portal.pharmacist, [LineRequest(portal.paracetamol.id, 1)])
    assert order.patient_id is None
    assert order.acceptance_status == AcceptanceStatus.ACCEPTED

    order = OrderService(db_session).update_status(portal.pharmacist, order.id, OrderStatus.READY)
    assert order.status == OrderStatus.READY
    assert db_session.query(Message).count() == 0


def test_list_orders_is_scoped_to_caller(db_session, portal):
    service = OrderService(db_session)
    service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.paracetamol.id, 1)])
    _proposal(db_session, portal)

    assert len(service.list_orders(portal.patient)) == 2
    assert len(service.list_orders(portal.pharmacist, initiator_type=InitiatorType.PHARMACY)) == 1
    assert service.list_orders(portal.stranger) == []
    assert len(service.list_orders(portal.admin)) == 2


def test_serialized_proposal_offers_only_cancellation(db_session, portal):
    order = _proposal(db_session, portal)

    as_patient = serialize_order(order, portal.patient)
    assert as_patient["status_text"] == "Waiting for Patient"
    assert as_patient["available_transitions"] == ["cancelled"]
    assert as_patient["badge_variant"] == "secondary"
    assert as_patient["acceptance_deadline"].endswith("+00:00")

    as_pharmacist = serialize_order(order, portal.pharmacist)
    assert as_pharmacist["available_transitions"] == ["cancelled"]
    assert [step["status"] for step in as_pharmacist["timeline"]] == ["placed", "ready", "complete"]


def _other_session():
    from pharmacy_portal.database import get_sessionmaker

    return get_sessionmaker()()


def test_checkout_does_not_oversell_when_stock_changed_underneath(db_session, portal):
    service = OrderService(db_session)
    assert db_session.get(InventoryItem, portal.cetirizine.id).stock == 3

    # Another checkout takes the last units after this session read the item
    other = _other_session()
    try:
        other.execute(update(InventoryItem).where(InventoryItem.id == portal.cetirizine.id).values(stock=0))
        other.commit()
    finally:
        other.close()

    with pytest.raises(OrderConflict, match="Insufficient stock"):
        service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.cetirizine.id, 3)])

    assert _stock(db_session, portal.cetirizine) == 0
    assert db_session.query(Order).count() == 0


def test_concurrent_checkouts_share_the_stock(db_session, portal):
    service = OrderService(db_session)
    service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.cetirizine.id, 2)])

    with pytest.raises(OrderConflict):
        service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.cetirizine.id, 2)])
    assert _stock(db_session, portal.cetirizine) == 1


def test_accept_loses_to_expiry_that_landed_first(db_session, portal):
    order = _proposal(db_session, portal, quantity=5)
    assert db_session.get(Order, order.id).acceptance_status == AcceptanceStatus.PENDING

    # The expiry sweep cancels the order after this session loaded it
    other = _other_session()
    try:
        other.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(acceptance_status=AcceptanceStatus.REJECTED, status=OrderStatus.CANCELLED)
        )
        other.commit()
    finally:
        other.close()

    with pytest.raises(OrderConflict):
        OrderService(db_session).respond_to_proposal(portal.patient, order.id, accept=True)

    db_session.expire_all()
    refreshed = db_session.get(Order, order.id)
    assert refreshed.status == OrderStatus.CANCELLED
    assert refreshed.acceptance_status == AcceptanceStatus.REJECTED
    assert _stock(db_session, portal.paracetamol) == 40


def test_stale_status_update_is_a_conflict(db_session, portal):
    service = OrderService(db_session)
    order = service.place_patient_order(portal.patient, portal.pharmacist.id, [LineRequest(portal.paracetamol.id, 1)])
    assert db_session.get(Order, order.id).status == OrderStatus.PLACED

    other = _other_session()
    try:
        other.execute(update(Order).where(Order.id == order.id).values(status=OrderStatus.CANCELLED))
        other.commit()
    finally:
        other.close()

    with pytest.raises(OrderConflict):
        service.update_status(portal.pharmacist, order.id, OrderStatus.READY)
