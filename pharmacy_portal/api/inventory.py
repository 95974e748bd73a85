from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_role
from ..config import get_settings
from ..database import get_db
from ..models.audit import AuditAction
from ..models.inventory import InventoryItem, PharmacyConnection
from ..models.user import User, UserRole
from ..services.audit_logger import create_audit_event
from ..services.inventory_batches import (
    BatchConflict,
    BatchError,
    BatchNotFound,
    BatchService,
    serialize_batch,
    serialize_movement,
)
from ..services.order_status import format_price
from .schemas import (
    BatchPayload,
    BatchStockRequest,
    BatchUpdate,
    InventoryItemPayload,
    InventoryItemUpdate,
)

router = APIRouter(prefix="/inventory", tags=["inventory"])


def _raise_http(exc: Exception):
    if isinstance(exc, BatchNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, BatchConflict):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _serialize_item(item: InventoryItem) -> dict:
    threshold = _threshold(item)
    return {
        "id": str(item.id),
        "pharmacy_id": str(item.pharmacy_id),
        "name": item.name,
        "description": item.description,
        "category": item.category,
        "price": str(item.price),
        "price_display": format_price(item.price),
        "stock": item.stock,
        "low_stock_threshold": threshold,
        "low_stock": item.stock <= threshold,
        "expiry_date": item.expiry_date.isoformat() if item.expiry_date else None,
    }


def _threshold(item: InventoryItem) -> int:
    if item.low_stock_threshold is not None:
        return item.low_stock_threshold
    return get_settings().LOW_STOCK_THRESHOLD


@router.post("", status_code=status.HTTP_201_CREATED)
def create_item(
    payload: InventoryItemPayload,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    item = InventoryItem(pharmacy_id=current_user.id, **payload.model_dump())
    db.add(item)
    db.commit()

    create_audit_event(
        db,
        actor=current_user.username,
        action=AuditAction.CREATE,
        entity_type="InventoryItem",
        entity_id=str(item.id),
        details={"name": item.name, "stock": item.stock},
        request=request,
    )
    return _serialize_item(item)


@router.put("/{item_id}")
def update_item(
    item_id: UUID,
    payload: InventoryItemUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    item = db.get(InventoryItem, item_id)
    if not item or item.pharmacy_id != current_user.id:
        raise HTTPException(status_code=404, detail="Item not found")
    changes = payload.model_dump(exclude_unset=True)
    for key, value in changes.items():
        setattr(item, key, value)
    db.add(item)
    db.commit()

    create_audit_event(
        db,
        actor=current_user.username,
        action=AuditAction.UPDATE,
        entity_type="InventoryItem",
        entity_id=str(item.id),
        details={"fields": sorted(changes)},
        request=request,
    )
    return _serialize_item(item)


# Declared before /{pharmacy_id} so "alerts" is not parsed as an id
@router.get("/alerts")
def inventory_alerts(
    days: int | None = Query(default=None, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    default_threshold = get_settings().LOW_STOCK_THRESHOLD
    items = (
        db.query(InventoryItem)
        .filter(
            InventoryItem.pharmacy_id == current_user.id,
            or_(
                InventoryItem.stock <= InventoryItem.low_stock_threshold,
                (InventoryItem.low_stock_threshold.is_(None)) & (InventoryItem.stock <= default_threshold),
            ),
        )
        .order_by(InventoryItem.stock.asc(), func.lower(InventoryItem.name))
        .all()
    )
    batches = BatchService(db)
    today = batches.today()
    expiring = batches.expiring_batches(current_user.id, days)
    expired = batches.expired_batches(current_user.id)
    return {
        "count": len(items),
        "items": [_serialize_item(item) for item in items],
        "expiring_batches": [_serialize_alert_batch(batch, today) for batch in expiring],
        "expired_batches": [_serialize_alert_batch(batch, today) for batch in expired],
        "total_alerts": len(items) + len(expiring) + len(expired),
    }


def _serialize_alert_batch(batch, today: date) -> dict:
    body = serialize_batch(batch, today)
    body["item_name"] = batch.item.name
    return body


@router.get("/{item_id}/batches")
def list_batches(
    item_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    service = BatchService(db)
    try:
        batches = service.list_batches(current_user, item_id)
    except BatchError as exc:
        _raise_http(exc)
    today = service.today()
    return {
        "count": len(batches),
        "total_remaining": sum(batch.remaining_qty for batch in batches),
        "batches": [serialize_batch(batch, today) for batch in batches],
    }


@router.post("/{item_id}/batches", status_code=status.HTTP_201_CREATED)
def add_batch(
    item_id: UUID,
    payload: BatchPayload,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    service = BatchService(db)
    try:
        batch = service.add_batch(current_user, item_id, **payload.model_dump())
    except BatchError as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_batch(batch, service.today())


@router.post("/batches/{batch_id}/stock")
def add_batch_stock(
    batch_id: UUID,
    payload: BatchStockRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    service = BatchService(db)
    try:
        batch = service.add_stock(current_user, batch_id, payload.quantity)
    except BatchError as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_batch(batch, service.today())


@router.put("/batches/{batch_id}")
def update_batch(
    batch_id: UUID,
    payload: BatchUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    service = BatchService(db)
    try:
        batch = service.update_batch(current_user, batch_id, payload.model_dump(exclude_unset=True))
    except BatchError as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_batch(batch, service.today())


@router.delete("/batches/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_batch(
    batch_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    try:
        BatchService(db).delete_batch(current_user, batch_id)
    except BatchError as exc:
        db.rollback()
        _raise_http(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/batches/{batch_id}/movements")
def batch_movements(
    batch_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    try:
        movements = BatchService(db).movements(current_user, batch_id)
    except BatchError as exc:
        _raise_http(exc)
    return {"count": len(movements), "movements": [serialize_movement(m) for m in movements]}


@router.get("/{pharmacy_id}")
def list_items(
    pharmacy_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if current_user.id != pharmacy_id:
        connected = (
            current_user.role == UserRole.PATIENT.value
            and db.query(PharmacyConnection)
            .filter_by(patient_id=current_user.id, pharmacy_id=pharmacy_id)
            .first()
            is not None
        )
        if not connected:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not connected to this pharmacy")
    items = (
        db.query(InventoryItem)
        .filter(InventoryItem.pharmacy_id == pharmacy_id)
        .order_by(func.lower(InventoryItem.name))
        .all()
    )
    return {"count": len(items), "items": [_serialize_item(item) for item in items]}
