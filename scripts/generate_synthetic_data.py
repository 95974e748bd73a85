from datetime import datetime, timedelta, timezone
from decimal import Decimal
import random
from faker import Faker
from sqlalchemy.orm import Session

from pharmacy_portal.auth import hash_password
from pharmacy_portal.config import get_settings
from pharmacy_portal.database import get_sessionmaker, init_db
from pharmacy_portal.models.inventory import InventoryBatch, InventoryItem, PharmacyConnection
from pharmacy_portal.models.order import (
    AcceptanceStatus,
    InitiatorType,
    Order,
    OrderItem,
    OrderStatus,
)
from pharmacy_portal.models.user import User, UserRole

fake = Faker("en_IN")

PRODUCTS = {
    "Pain relief": ["Paracetamol 500mg", "Ibuprofen 400mg", "Diclofenac gel"],
    "Allergy": ["Cetirizine 10mg", "Loratadine 10mg", "Fexofenadine 120mg"],
    "Digestive": ["Omeprazole 20mg", "ORS sachets", "Antacid syrup"],
    "Vitamins": ["Vitamin D3 1000IU", "Vitamin B complex", "Zinc 50mg"],
    "First aid": ["Adhesive bandages", "Antiseptic liquid", "Cotton roll"],
}

DEFAULT_PASSWORD = "Synthetic_123!"


def _make_user(db: Session, role: UserRole, **fields) -> User:
    user = User(
        username=fake.unique.user_name(),
        role=role.value,
        password_hash=hash_password(DEFAULT_PASSWORD),
        phone=fake.phone_number(),
        address=fake.address().replace("\n", ", "),
        **fields,
    )
    db.add(user)
    db.flush()
    return user


def _stock_pharmacy(db: Session, pharmacy: User) -> list[InventoryItem]:
    items = []
    for category, names in PRODUCTS.items():
        for name in random.sample(names, k=random.randint(1, len(names))):
            item = InventoryItem(
                pharmacy_id=pharmacy.id,
                name=name,
                category=category,
                price=Decimal(random.randint(20, 900)) + Decimal("0.50"),
                stock=random.randint(0, 120),
                low_stock_threshold=random.choice([None, 5, 15]),
                expiry_date=fake.date_between(start_date="+30d", end_date="+2y"),
            )
            db.add(item)
            items.append(item)
    db.flush()
    for item in items:
        _receive_batches(db, pharmacy, item)
    return items


def _receive_batches(db: Session, pharmacy: User, item: InventoryItem) -> None:
    # Split the seeded stock into lots; some expire within the alert window
    remaining = item.stock
    for _ in range(random.randint(1, 3)):
        if remaining <= 0:
            break
        quantity = random.randint(1, remaining)
        remaining -= quantity
        db.add(
            InventoryBatch(
                inventory_id=item.id,
                pharmacy_id=pharmacy.id,
                batch_code=fake.unique.bothify(text="??-####").upper(),
                manufacturing_date=fake.date_between(start_date="-1y", end_date="-30d"),
                expiry_date=fake.date_between(start_date="-10d", end_date="+1y"),
                quantity=quantity,
                remaining_qty=quantity,
            )
        )


def _random_order(db: Session, patient: User, pharmacy: User, items: list[InventoryItem]) -> None:
    chosen = random.sample(items, k=min(len(items), random.randint(1, 3)))
    now = datetime.now(timezone.utc)
    pharmacy_initiated = random.random() < 0.4
    if pharmacy_initiated:
        # Some proposals are deliberately past their deadline for the expiry sweep
        order = Order(
            patient_id=patient.id,
            pharmacy_id=pharmacy.id,
            initiator_type=InitiatorType.PHARMACY,
            acceptance_status=AcceptanceStatus.PENDING,
            acceptance_deadline=now + timedelta(hours=random.randint(-48, 24)),
            status=OrderStatus.PLACED,
        )
    else:
        order = Order(
            patient_id=patient.id,
            pharmacy_id=pharmacy.id,
            initiator_type=InitiatorType.PATIENT,
            acceptance_status=AcceptanceStatus.ACCEPTED,
            status=random.choice(list(OrderStatus)),
        )
    total = Decimal("0")
    for item in chosen:
        quantity = random.randint(1, 3)
        order.items.append(
            OrderItem(inventory_item_id=item.id, name=item.name, quantity=quantity, unit_price=item.price)
        )
        total += item.price * quantity
    order.total_price = total
    db.add(order)


def generate_synthetic_portal(db: Session, pharmacies: int = 5, patients: int = 40) -> None:
    stocked = []
    for _ in range(pharmacies):
        pharmacy = _make_user(
            db,
            UserRole.PHARMACIST,
            full_name=fake.name(),
            pharmacy_name=f"{fake.last_name()} Pharmacy",
        )
        stocked.append((pharmacy, _stock_pharmacy(db, pharmacy)))

    for _ in range(patients):
        patient = _make_user(db, UserRole.PATIENT, full_name=fake.name())
        for pharmacy, items in random.sample(stocked, k=random.randint(1, min(2, len(stocked)))):
            db.add(PharmacyConnection(patient_id=patient.id, pharmacy_id=pharmacy.id))
            for _ in range(random.randint(0, 4)):
                _random_order(db, patient, pharmacy, items)

    db.commit()


if __name__ == "__main__":
    settings = get_settings()
    if settings.ENVIRONMENT != "dev" or not settings.SYNTHETIC_DATA_MODE:
        raise SystemExit("Synthetic data generation is only permitted in dev with SYNTHETIC_DATA_MODE=true")

    init_db()
    db = get_sessionmaker()()
    try:
        generate_synthetic_portal(db)
    finally:
        db.close()

    print(f"Synthetic data generation complete (password for all accounts: {DEFAULT_PASSWORD})")
