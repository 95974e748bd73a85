from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from pharmacy_portal.config import get_settings
from pharmacy_portal.models.audit import AuditAction, AuditEvent
from pharmacy_portal.models.message import Message, MessageKind
from pharmacy_portal.models.order import AcceptanceStatus, InitiatorType, Order, OrderStatus
from pharmacy_portal.services.expiry_sweep import (
    GENERIC_SWEEP_ERROR,
    ExpiryCandidate,
    ExpirySweep,
    OrderGateway,
    run_expiry_sweep,
)
from pharmacy_portal.services.order_events import EXPIRY_REASON, OrderEventType


class FakeGateway:
    """In-memory gateway; ``fail_on`` candidates raise on update."""

    def __init__(self, candidates, fail_on=(), notify_fail_on=(), ready=True, find_error=None):
        self.candidates = list(candidates)
        self.fail_on = set(fail_on)
        self.notify_fail_on = set(notify_fail_on)
        self.ready = ready
        self.find_error = find_error
        self.cancelled: list[UUID] = []
        self.notifications: list[tuple[UUID, UUID, str]] = []
        self.audited: list[UUID] = []

    def schema_ready(self):
        return self.ready

    def find_pending_expired_orders(self, now):
        if self.find_error:
            raise self.find_error
        return [c for c in self.candidates if c.id not in self.cancelled]

    def set_order_cancelled(self, order_id, expected_prior):
        assert expected_prior == AcceptanceStatus.PENDING
        if order_id in self.fail_on:
            raise RuntimeError("deadlock detected")
        if order_id in self.cancelled:
            return 0
        self.cancelled.append(order_id)
        return 1

    def insert_notification(self, sender_id, receiver_id, event):
        if receiver_id in self.notify_fail_on:
            raise RuntimeError("insert failed")
        self.notifications.append((sender_id, receiver_id, event.event_type.value))

    def record_expiry(self, order_id):
        self.audited.append(order_id)


def _candidate(patient=True):
    return ExpiryCandidate(id=uuid4(), patient_id=uuid4() if patient else None, pharmacy_id=uuid4())


def _expiry_messages(db, order_id):
    return (
        db.query(Message)
        .filter(Message.order_id == order_id, Message.event_type == OrderEventType.ORDER_EXPIRED.value)
        .all()
    )


def test_expired_proposal_is_cancelled_and_both_parties_notified(db_session, portal, make_order):
    order = make_order(portal.patient, portal.pharmacist)

    result = run_expiry_sweep(db_session)

    assert result.to_response() == {"cancelled": 1}
    db_session.expire_all()
    refreshed = db_session.get(Order, order.id)
    assert refreshed.status == OrderStatus.CANCELLED
    assert refreshed.acceptance_status == AcceptanceStatus.REJECTED

    messages = _expiry_messages(db_session, order.id)
    directions = {(m.sender_id, m.receiver_id) for m in messages}
    assert directions == {
        (portal.pharmacist.id, portal.patient.id),
        (portal.patient.id, portal.pharmacist.id),
    }
    for message in messages:
        assert message.kind == MessageKind.ORDER_EVENT
        assert message.payload["reason"] == EXPIRY_REASON
        assert message.payload["order_id"] == str(order.id)
        assert "ORDER_EXPIRED" in message.content

    audit = db_session.query(AuditEvent).filter_by(entity_id=str(order.id)).one()
    assert audit.action == AuditAction.ORDER_EXPIRED
    assert audit.actor == "SYSTEM"


def test_second_run_is_a_no_op(db_session, portal, make_order):
    order = make_order(portal.patient, portal.pharmacist)

    assert run_expiry_sweep(db_session).cancelled == 1
    assert run_expiry_sweep(db_session).to_response() == {"cancelled": 0}
    assert len(_expiry_messages(db_session, order.id)) == 2


def test_dry_run_counts_without_writing(db_session, portal, make_order):
    first = make_order(portal.patient, portal.pharmacist)
    make_order(portal.patient, portal.pharmacist)

    result = run_expiry_sweep(db_session, dry_run=True)

    assert result.to_response() == {"cancelled": 0, "found": 2, "dryRun": True}
    db_session.expire_all()
    assert db_session.get(Order, first.id).acceptance_status == AcceptanceStatus.PENDING
    assert db_session.query(Message).count() == 0

    assert run_expiry_sweep(db_session).to_response() == {"cancelled": 2}


def test_dry_run_with_nothing_to_do_still_reports_found(db_session, portal):
    assert run_expiry_sweep(db_session, dry_run=True).to_response() == {
        "cancelled": 0,
        "found": 0,
        "dryRun": True,
    }


def test_only_pending_pharmacy_orders_are_eligible(db_session, portal, make_order):
    past = datetime.now(timezone.utc) - timedelta(days=2)
    patient_order = make_order(
        portal.patient,
        portal.pharmacist,
        initiator=InitiatorType.PATIENT,
        acceptance=AcceptanceStatus.PENDING,
        deadline=past,
    )
    accepted = make_order(portal.patient, portal.pharmacist, acceptance=AcceptanceStatus.ACCEPTED, deadline=past)
    rejected = make_order(
        portal.patient,
        portal.pharmacist,
        acceptance=AcceptanceStatus.REJECTED,
        deadline=past,
        status=OrderStatus.CANCELLED,
    )
    future = make_order(
        portal.patient, portal.pharmacist, deadline=datetime.now(timezone.utc) + timedelta(hours=3)
    )
    no_deadline = make_order(
        portal.patient, portal.pharmacist, deadline=datetime.now(timezone.utc) + timedelta(hours=3)
    )
    no_deadline.acceptance_deadline = None
    db_session.commit()

    assert run_expiry_sweep(db_session).to_response() == {"cancelled": 0}
    db_session.expire_all()
    for order in (patient_order, accepted, future, no_deadline):
        assert db_session.get(Order, order.id).status == OrderStatus.PLACED
    assert db_session.get(Order, rejected.id).acceptance_status == AcceptanceStatus.REJECTED


def test_deadline_boundary_is_strict(db_session, portal, make_order):
    deadline = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)
    order = make_order(portal.patient, portal.pharmacist, deadline=deadline)

    at_deadline = ExpirySweep(OrderGateway(db_session), clock=lambda: deadline).run()
    assert at_deadline.cancelled == 0

    just_after = deadline + timedelta(microseconds=1)
    result = ExpirySweep(OrderGateway(db_session), clock=lambda: just_after).run()
    assert result.cancelled == 1
    db_session.expire_all()
    assert db_session.get(Order, order.id).status == OrderStatus.CANCELLED


def test_concurrently_handled_order_is_skipped(db_session, portal, make_order):
    order = make_order(portal.patient, portal.pharmacist)
    stale = OrderGateway(db_session).find_pending_expired_orders(datetime.now(timezone.utc))
    assert [c.id for c in stale] == [order.id]

    # Patient rejects between the selection and the update
    order.acceptance_status = AcceptanceStatus.REJECTED
    order.status = OrderStatus.CANCELLED
    db_session.commit()

    class StaleGateway(OrderGateway):
        def find_pending_expired_orders(self, now):
            return stale

    result = ExpirySweep(StaleGateway(db_session)).run()

    assert result.cancelled == 0
    assert result.skipped == 1
    assert _expiry_messages(db_session, order.id) == []


def test_walk_in_order_expires_without_notifications(db_session, portal, make_order):
    order = make_order(None, portal.pharmacist)

    result = run_expiry_sweep(db_session)

    assert result.cancelled == 1
    assert _expiry_messages(db_session, order.id) == []


def test_failure_on_one_order_does_not_stop_the_batch():
    candidates = [_candidate(), _candidate(), _candidate()]
    gateway = FakeGateway(candidates, fail_on={candidates[1].id})

    result = ExpirySweep(gateway).run()

    assert result.cancelled == 2
    assert result.failed == 1
    assert result.ok
    assert gateway.cancelled == [candidates[0].id, candidates[2].id]
    expired = OrderEventType.ORDER_EXPIRED.value
    assert gateway.notifications == [
        (c.pharmacy_id, c.patient_id, expired) if outbound else (c.patient_id, c.pharmacy_id, expired)
        for c in (candidates[0], candidates[2])
        for outbound in (True, False)
    ]
    assert gateway.audited == [candidates[0].id, candidates[2].id]
    assert result.to_response() == {"cancelled": 2}


def test_notification_failure_still_counts_the_cancellation():
    candidate = _candidate()
    gateway = FakeGateway([candidate], notify_fail_on={candidate.patient_id})

    result = ExpirySweep(gateway).run()

    assert result.cancelled == 1
    assert result.notification_failures == 1
    assert gateway.notifications == [
        (candidate.patient_id, candidate.pharmacy_id, OrderEventType.ORDER_EXPIRED.value)
    ]


def test_selection_failure_returns_generic_error():
    gateway = FakeGateway([], find_error=RuntimeError("connection reset by peer"))

    result = ExpirySweep(gateway).run()

    assert not result.ok
    body = result.to_response()
    assert body["cancelled"] == 0
    assert body["error"] == GENERIC_SWEEP_ERROR
    assert "connection reset" not in body["error"]
    UUID(body["requestId"])


def test_missing_schema_fails_fast_by_default():
    result = ExpirySweep(FakeGateway([_candidate()], ready=False)).run()

    assert result.error == GENERIC_SWEEP_ERROR
    assert result.request_id
    assert result.to_response()["cancelled"] == 0


def test_missing_schema_is_skipped_softly_when_not_strict(monkeypatch):
    monkeypatch.setenv("EXPIRY_SCHEMA_STRICT", "false")
    get_settings.cache_clear()
    gateway = FakeGateway([_candidate()], ready=False)
    try:
        result = ExpirySweep(gateway).run()
        dry = ExpirySweep(gateway).run(dry_run=True)
    finally:
        get_settings.cache_clear()

    assert result.to_response() == {"cancelled": 0}
    assert dry.to_response() == {"cancelled": 0, "found": 0, "dryRun": True}
    assert gateway.cancelled == []


def test_schema_check_against_real_table(db_session):
    assert OrderGateway(db_session).schema_ready()


@pytest.mark.parametrize("hours_late", [1, 24, 24 * 30])
def test_any_overdue_proposal_is_found(db_session, portal, make_order, hours_late):
    deadline = datetime.now(timezone.utc) - timedelta(hours=hours_late)
    order = make_order(portal.patient, portal.pharmacist, deadline=deadline)
    found = OrderGateway(db_session).find_pending_expired_orders(datetime.now(timezone.utc))
    assert [c.id for c in found] == [order.id]
