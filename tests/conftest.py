import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
import pytest
from cryptography.fernet import Fernet

# Ensure critical env vars are set before package imports
os.environ.setdefault("FIELD_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("AUTH_MODE", "dev_stub")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("SYSTEM_API_TOKEN", "test-system-token")


@pytest.fixture
def db_session(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")

    from pharmacy_portal.config import get_settings
    from pharmacy_portal.database import reset_engine, get_engine, get_sessionmaker
    from pharmacy_portal.models.base import Base

    get_settings.cache_clear()
    reset_engine()
    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        reset_engine()
        get_settings.cache_clear()


@pytest.fixture
def memory_store():
    from pharmacy_portal.services.security_store import (
        InMemoryStore,
        SecurityStore,
        reset_security_store,
    )

    store = SecurityStore(backend=InMemoryStore())
    reset_security_store(store)
    yield store
    reset_security_store()


@pytest.fixture
def client(db_session, memory_store):
    from fastapi.testclient import TestClient
    from pharmacy_portal.main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    from pharmacy_portal.auth import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _headers


def make_user(db, username, role, **fields):
    from pharmacy_portal.models.user import User

    user = User(username=username, role=role, password_hash="not-a-real-hash", **fields)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def portal(db_session):
    """A pharmacy with stock, a connected patient and an unconnected one."""
    from pharmacy_portal.models.inventory import InventoryItem, PharmacyConnection

    pharmacist = make_user(db_session, "greenleaf", "pharmacist", pharmacy_name="Greenleaf Pharmacy")
    patient = make_user(db_session, "asha", "patient", full_name="Asha Rao")
    stranger = make_user(db_session, "vikram", "patient", full_name="Vikram Shah")
    admin = make_user(db_session, "ops-admin", "admin")

    paracetamol = InventoryItem(
        pharmacy_id=pharmacist.id, name="Paracetamol 500mg", price=Decimal("25.00"), stock=40
    )
    cetirizine = InventoryItem(
        pharmacy_id=pharmacist.id,
        name="Cetirizine 10mg",
        price=Decimal("12.50"),
        stock=3,
        low_stock_threshold=5,
    )
    db_session.add_all([paracetamol, cetirizine])
    db_session.add(PharmacyConnection(patient_id=patient.id, pharmacy_id=pharmacist.id))
    db_session.commit()

    return SimpleNamespace(
        pharmacist=pharmacist,
        patient=patient,
        stranger=stranger,
        admin=admin,
        paracetamol=paracetamol,
        cetirizine=cetirizine,
    )


@pytest.fixture
def make_order(db_session):
    from pharmacy_portal.models.order import (
        AcceptanceStatus,
        InitiatorType,
        Order,
        OrderStatus,
    )

    def _make(
        patient,
        pharmacy,
        initiator=InitiatorType.PHARMACY,
        acceptance=AcceptanceStatus.PENDING,
        deadline=None,
        status=OrderStatus.PLACED,
    ):
        if deadline is None and initiator == InitiatorType.PHARMACY:
            deadline = datetime.now(timezone.utc) - timedelta(hours=1)
        order = Order(
            patient_id=patient.id if patient is not None else None,
            pharmacy_id=pharmacy.id,
            initiator_type=initiator,
            acceptance_status=acceptance,
            acceptance_deadline=deadline,
            status=status,
            total_price=Decimal("50.00"),
        )
        db_session.add(order)
        db_session.commit()
        return order

    return _make
