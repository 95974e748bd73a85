from decimal import Decimal
from itertools import product
from uuid import uuid4

import pytest
from hypothesis import given, strategies as st

from pharmacy_portal.models.order import InitiatorType, OrderStatus
from pharmacy_portal.services import order_status
from pharmacy_portal.services.order_status import ActorRole, ForbiddenTransition

ALLOWED = {
    (ActorRole.PATIENT, OrderStatus.PLACED, OrderStatus.CANCELLED),
    (ActorRole.PATIENT, OrderStatus.READY, OrderStatus.COMPLETE),
    (ActorRole.PHARMACIST, OrderStatus.PLACED, OrderStatus.READY),
    (ActorRole.PHARMACIST, OrderStatus.PLACED, OrderStatus.CANCELLED),
    (ActorRole.PHARMACIST, OrderStatus.READY, OrderStatus.COMPLETE),
    (ActorRole.PHARMACIST, OrderStatus.READY, OrderStatus.CANCELLED),
}


@pytest.mark.parametrize(
    "role,current,target",
    list(product(ActorRole, OrderStatus, OrderStatus)),
)
def test_transition_table_is_exhaustive(role, current, target):
    expected = (role, current, target) in ALLOWED
    assert order_status.can_transition(current, target, role) is expected
    assert (target in order_status.available_transitions(current, role)) is expected


@given(
    role=st.sampled_from(list(ActorRole)),
    current=st.sampled_from([OrderStatus.COMPLETE, OrderStatus.CANCELLED]),
    target=st.sampled_from(list(OrderStatus)),
)
def test_terminal_statuses_never_move(role, current, target):
    assert order_status.is_terminal(current)
    assert order_status.available_transitions(current, role) == frozenset()
    assert not order_status.can_transition(current, target, role)


@given(
    role=st.sampled_from(list(ActorRole)),
    current=st.sampled_from(list(OrderStatus)),
)
def test_no_self_transitions(role, current):
    assert current not in order_status.available_transitions(current, role)


@given(junk=st.text(min_size=1).filter(lambda s: s not in {r.value for r in ActorRole}))
def test_unknown_role_has_no_transitions(junk):
    for current in OrderStatus:
        assert order_status.available_transitions(current, junk) == frozenset()


def test_accepts_plain_strings():
    assert order_status.can_transition("placed", "ready", "pharmacist")
    assert not order_status.can_transition("placed", "ready", "patient")
    assert not order_status.can_transition("shipped", "ready", "pharmacist")
    assert not order_status.can_transition("placed", "shipped", "pharmacist")


def test_ensure_transition_raises_with_context():
    assert order_status.ensure_transition("ready", "complete", "patient") == OrderStatus.COMPLETE
    with pytest.raises(ForbiddenTransition) as excinfo:
        order_status.ensure_transition(OrderStatus.PLACED, OrderStatus.READY, ActorRole.PATIENT)
    assert excinfo.value.current == OrderStatus.PLACED
    assert excinfo.value.target == OrderStatus.READY
    assert "patient" in str(excinfo.value)


def test_display_text_depends_on_initiator():
    assert order_status.display_text(OrderStatus.PLACED) == "Order Placed"
    assert order_status.display_text(OrderStatus.PLACED, InitiatorType.PATIENT) == "Order Placed"
    assert order_status.display_text(OrderStatus.PLACED, InitiatorType.PHARMACY) == "Waiting for Patient"
    assert order_status.display_text(OrderStatus.CANCELLED, "pharmacy") == "Rejected"
    assert order_status.display_text(OrderStatus.READY, "pharmacy") == "Ready for Pickup"
    assert order_status.display_text("lost") == "LOST"


def test_badge_color_and_icon():
    assert order_status.badge_variant(OrderStatus.PLACED) == "warning"
    assert order_status.badge_variant(OrderStatus.PLACED, InitiatorType.PHARMACY) == "secondary"
    assert order_status.badge_variant(OrderStatus.CANCELLED) == "destructive"
    assert order_status.status_color(OrderStatus.COMPLETE) == "var(--success)"
    assert order_status.status_icon(OrderStatus.READY) == "Package"
    assert order_status.status_icon("unknown") == "AlertCircle"


def test_timeline_progress():
    steps = order_status.timeline(OrderStatus.READY)
    assert [s["status"] for s in steps] == ["placed", "ready", "complete"]
    assert [s["completed"] for s in steps] == [True, True, False]
    assert [s["current"] for s in steps] == [False, True, False]

    cancelled = order_status.timeline(OrderStatus.CANCELLED)
    assert [s["status"] for s in cancelled] == ["placed", "cancelled"]
    assert cancelled[-1]["current"]


def test_formatting_helpers():
    order_id = uuid4()
    assert order_status.format_order_id(order_id) == f"#{str(order_id)[:8]}"
    assert order_status.format_price(Decimal("12.5")) == "₹12.50"
    assert order_status.format_price(3, currency="$") == "$3.00"
