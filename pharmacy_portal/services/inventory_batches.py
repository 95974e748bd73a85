from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.audit import AuditAction
from ..models.inventory import BatchMovement, BatchMovementType, InventoryBatch, InventoryItem
from ..models.user import User
from .audit_logger import create_audit_event

logger = logging.getLogger(__name__)


class BatchError(ValueError):
    pass


class BatchNotFound(BatchError):
    pass


class BatchConflict(BatchError):
    pass


class BatchService:
    """Batch (lot) tracking for a pharmacist's own inventory.

    Item ``stock`` follows the batches: receiving stock into a batch adds to
    it, and writing a batch down or deleting it takes its remaining units
    back out (never below zero, since some may already be reserved by
    orders).
    """

    def __init__(self, db: Session, clock=None):
        self.db = db
        self.settings = get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def today(self) -> date:
        return self._clock().date()

    # Queries

    def get_item(self, pharmacist: User, item_id) -> InventoryItem:
        item = self.db.get(InventoryItem, item_id)
        if item is None or item.pharmacy_id != pharmacist.id:
            raise BatchNotFound("Item not found")
        return item

    def get_batch(self, pharmacist: User, batch_id) -> InventoryBatch:
        batch = self.db.get(InventoryBatch, batch_id)
        if batch is None or batch.pharmacy_id != pharmacist.id:
            raise BatchNotFound("Batch not found")
        return batch

    def list_batches(self, pharmacist: User, item_id) -> list[InventoryBatch]:
        return list(self.get_item(pharmacist, item_id).batches)

    def movements(self, pharmacist: User, batch_id) -> list[BatchMovement]:
        return list(self.get_batch(pharmacist, batch_id).movements)

    def expiring_batches(self, pharmacy_id, days: int | None = None) -> list[InventoryBatch]:
        """Batches with stock left that expire within ``days`` (today included)."""
        days = self.settings.BATCH_EXPIRY_ALERT_DAYS if days is None else days
        today = self.today()
        return (
            self.db.query(InventoryBatch)
            .filter(
                InventoryBatch.pharmacy_id == pharmacy_id,
                InventoryBatch.remaining_qty > 0,
                InventoryBatch.expiry_date >= today,
                InventoryBatch.expiry_date <= today + timedelta(days=days),
            )
            .order_by(InventoryBatch.expiry_date.asc())
            .all()
        )

    def expired_batches(self, pharmacy_id) -> list[InventoryBatch]:
        return (
            self.db.query(InventoryBatch)
            .filter(
                InventoryBatch.pharmacy_id == pharmacy_id,
                InventoryBatch.remaining_qty > 0,
                InventoryBatch.expiry_date < self.today(),
            )
            .order_by(InventoryBatch.expiry_date.asc())
            .all()
        )

    # Changes

    def add_batch(
        self,
        pharmacist: User,
        item_id,
        batch_code: str,
        expiry_date: date,
        quantity: int,
        manufacturing_date: date | None = None,
    ) -> InventoryBatch:
        item = self.get_item(pharmacist, item_id)
        if self._code_taken(item.id, batch_code):
            raise BatchConflict(f'Batch code "{batch_code}" already exists for this product')
        batch = InventoryBatch(
            inventory_id=item.id,
            pharmacy_id=pharmacist.id,
            batch_code=batch_code,
            manufacturing_date=manufacturing_date,
            expiry_date=expiry_date,
            quantity=quantity,
            remaining_qty=quantity,
        )
        self.db.add(batch)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise BatchConflict(f'Batch code "{batch_code}" already exists for this product') from exc
        self._log_movement(batch, BatchMovementType.IN, quantity, pharmacist, "Batch received")
        self._adjust_item_stock(item.id, quantity)
        self._audit(pharmacist, AuditAction.CREATE, batch, {"batch_code": batch_code, "quantity": quantity})
        self.db.commit()
        logger.info("Batch %s received for item %s", batch.id, item.id)
        return batch

    def add_stock(self, pharmacist: User, batch_id, quantity: int) -> InventoryBatch:
        batch = self.get_batch(pharmacist, batch_id)
        self.db.execute(
            update(InventoryBatch)
            .where(InventoryBatch.id == batch.id)
            .values(
                quantity=InventoryBatch.quantity + quantity,
                remaining_qty=InventoryBatch.remaining_qty + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        self._log_movement(batch, BatchMovementType.IN, quantity, pharmacist, "Stock added")
        self._adjust_item_stock(batch.inventory_id, quantity)
        self._audit(pharmacist, AuditAction.UPDATE, batch, {"added": quantity})
        self.db.commit()
        return batch

    def update_batch(self, pharmacist: User, batch_id, changes: dict) -> InventoryBatch:
        batch = self.get_batch(pharmacist, batch_id)
        code = changes.get("batch_code")
        if code is not None and code != batch.batch_code and self._code_taken(batch.inventory_id, code):
            raise BatchConflict(f'Batch code "{code}" already exists for this product')
        manufactured = changes.get("manufacturing_date", batch.manufacturing_date)
        expires = changes.get("expiry_date", batch.expiry_date)
        if manufactured is not None and manufactured > expires:
            raise BatchError("manufacturing_date must not be after expiry_date")

        remaining = changes.pop("remaining_qty", None)
        for key, value in changes.items():
            setattr(batch, key, value)
        if remaining is not None and remaining != batch.remaining_qty:
            delta = remaining - batch.remaining_qty
            movement = BatchMovementType.IN if delta > 0 else BatchMovementType.OUT
            self._log_movement(batch, movement, abs(delta), pharmacist, "Count adjusted")
            batch.remaining_qty = remaining
            self._adjust_item_stock(batch.inventory_id, delta)
            changes["remaining_qty"] = remaining
        self._audit(pharmacist, AuditAction.UPDATE, batch, {"fields": sorted(changes)})
        self.db.commit()
        return batch

    def delete_batch(self, pharmacist: User, batch_id) -> None:
        batch = self.get_batch(pharmacist, batch_id)
        self._adjust_item_stock(batch.inventory_id, -batch.remaining_qty)
        self._audit(
            pharmacist,
            AuditAction.DELETE,
            batch,
            {"batch_code": batch.batch_code, "remaining_qty": batch.remaining_qty},
        )
        self.db.delete(batch)
        self.db.commit()

    # Helpers

    def _code_taken(self, item_id, batch_code: str) -> bool:
        return (
            self.db.query(InventoryBatch.id)
            .filter(InventoryBatch.inventory_id == item_id, InventoryBatch.batch_code == batch_code)
            .first()
            is not None
        )

    def _adjust_item_stock(self, item_id, delta: int) -> None:
        if delta >= 0:
            value = InventoryItem.stock + delta
        else:
            value = case((InventoryItem.stock > -delta, InventoryItem.stock + delta), else_=0)
        self.db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == item_id)
            .values(stock=value)
            .execution_options(synchronize_session=False)
        )
        cached = self.db.identity_map.get(self.db.identity_key(InventoryItem, item_id))
        if cached is not None:
            self.db.expire(cached, ["stock"])

    def _log_movement(self, batch, movement_type, quantity, actor: User, notes: str) -> None:
        self.db.add(
            BatchMovement(
                batch_id=batch.id,
                movement_type=movement_type,
                quantity=quantity,
                actor=actor.username,
                notes=notes,
            )
        )

    def _audit(self, actor: User, action: AuditAction, batch: InventoryBatch, details: dict) -> None:
        create_audit_event(
            self.db,
            actor=actor.username,
            action=action,
            entity_type="InventoryBatch",
            entity_id=str(batch.id),
            details=details,
            commit=False,
        )


def serialize_batch(batch: InventoryBatch, today: date | None = None) -> dict:
    today = today or datetime.now(timezone.utc).date()
    return {
        "id": str(batch.id),
        "inventory_id": str(batch.inventory_id),
        "batch_code": batch.batch_code,
        "manufacturing_date": batch.manufacturing_date.isoformat() if batch.manufacturing_date else None,
        "expiry_date": batch.expiry_date.isoformat(),
        "quantity": batch.quantity,
        "remaining_qty": batch.remaining_qty,
        "is_expired": batch.expiry_date < today,
        "days_to_expiry": (batch.expiry_date - today).days,
    }


def serialize_movement(movement: BatchMovement) -> dict:
    return {
        "id": str(movement.id),
        "movement_type": movement.movement_type.value,
        "quantity": movement.quantity,
        "actor": movement.actor,
        "notes": movement.notes,
        "created_at": movement.created_at.isoformat() if movement.created_at else None,
    }
