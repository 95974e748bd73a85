from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_role
from ..database import get_db
from ..models.order import InitiatorType, OrderStatus
from ..models.user import User
from ..services.order_service import (
    LineRequest,
    OrderConflict,
    OrderNotFound,
    OrderService,
    OrderServiceError,
    serialize_order,
)
from ..services.order_status import ForbiddenTransition
from .schemas import (
    PatientOrderRequest,
    PharmacyOrderRequest,
    ProposalResponseRequest,
    StatusUpdateRequest,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def _lines(payload) -> list[LineRequest]:
    return [LineRequest(line.inventory_item_id, line.quantity) for line in payload.items]


def _raise_http(exc: Exception):
    if isinstance(exc, OrderNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (OrderConflict, ForbiddenTransition)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("", status_code=status.HTTP_201_CREATED)
def place_order(
    payload: PatientOrderRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("patient")),
):
    try:
        order = OrderService(db).place_patient_order(
            current_user, payload.pharmacy_id, _lines(payload), payload.notes
        )
    except OrderServiceError as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_order(order, current_user)


@router.post("/proposals", status_code=status.HTTP_201_CREATED)
def create_proposal(
    payload: PharmacyOrderRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("pharmacist")),
):
    service = OrderService(db)
    try:
        if payload.patient_id is None:
            order = service.record_walk_in_order(current_user, _lines(payload), payload.notes)
        else:
            order = service.create_pharmacy_order(
                current_user, payload.patient_id, _lines(payload), payload.notes
            )
    except OrderServiceError as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_order(order, current_user)


@router.post("/{order_id}/respond")
def respond_to_proposal(
    order_id: UUID,
    payload: ProposalResponseRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("patient")),
):
    try:
        order = OrderService(db).respond_to_proposal(current_user, order_id, payload.accept)
    except OrderServiceError as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_order(order, current_user)


@router.post("/{order_id}/status")
def update_order_status(
    order_id: UUID,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        order = OrderService(db).update_status(current_user, order_id, payload.status)
    except (OrderServiceError, ForbiddenTransition) as exc:
        db.rollback()
        _raise_http(exc)
    return serialize_order(order, current_user)


@router.get("")
def list_orders(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    initiator_type: InitiatorType | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    orders = OrderService(db).list_orders(
        current_user,
        status=status_filter,
        initiator_type=initiator_type,
        limit=limit,
        offset=offset,
    )
    return {"count": len(orders), "orders": [serialize_order(o, current_user) for o in orders]}


@router.get("/{order_id}")
def get_order(
    order_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        order = OrderService(db).get_order_for(current_user, order_id)
    except OrderNotFound as exc:
        _raise_http(exc)
    return serialize_order(order, current_user)
