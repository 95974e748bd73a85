from sqlalchemy import text

from pharmacy_portal.auth import register_user, role_allows
from pharmacy_portal.jobs.order_expiry import cancel_expired_orders
from pharmacy_portal.models.order import Order, OrderStatus
from pharmacy_portal.models.user import User


def test_contact_details_are_encrypted_at_rest(db_session):
    user = register_user(
        db_session,
        username="meera",
        password="Meera_123!",
        role="patient",
        phone="+91 90000 11111",
        address="12 MG Road, Pune",
    )

    raw = db_session.execute(text("SELECT phone, address FROM users WHERE username = 'meera'")).one()
    assert "90000" not in raw.phone
    assert "MG Road" not in raw.address

    db_session.expire_all()
    assert db_session.get(User, user.id).phone == "+91 90000 11111"


def test_role_inheritance():
    assert role_allows("admin", "system")
    assert not role_allows("system", "admin")
    assert not role_allows("pharmacist", "patient")
    assert not role_allows("unknown", "patient")


def test_invalid_token_is_rejected(client):
    response = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_audit_trail_is_admin_only(client, portal, make_order, auth_headers):
    order = make_order(portal.patient, portal.pharmacist)
    client.post("/api/v1/admin/orders/cancel-expired", headers=auth_headers(portal.admin))

    forbidden = client.get("/api/v1/audit", headers=auth_headers(portal.pharmacist))
    assert forbidden.status_code == 403

    trail = client.get(
        "/api/v1/audit", params={"entity_id": str(order.id)}, headers=auth_headers(portal.admin)
    ).json()
    assert [event["action"] for event in trail["events"]] == ["ORDER_EXPIRED"]


def test_audit_export_writes_jsonl(db_session, portal, make_order, tmp_path, monkeypatch):
    from pharmacy_portal.config import get_settings
    from pharmacy_portal.services.expiry_sweep import run_expiry_sweep

    export = tmp_path / "audit" / "events.jsonl"
    monkeypatch.setenv("AUDIT_EXPORT_PATH", str(export))
    get_settings.cache_clear()
    make_order(portal.patient, portal.pharmacist)

    run_expiry_sweep(db_session)

    lines = export.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    assert '"ORDER_EXPIRED"' in lines[0]


def test_job_entry_point_runs_the_sweep(db_session, portal, make_order):
    order = make_order(portal.patient, portal.pharmacist)

    assert cancel_expired_orders(dry_run=True) == {"cancelled": 0, "found": 1, "dryRun": True}
    assert cancel_expired_orders() == {"cancelled": 1}

    db_session.expire_all()
    assert db_session.get(Order, order.id).status == OrderStatus.CANCELLED
