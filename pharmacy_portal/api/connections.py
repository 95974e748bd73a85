import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_role
from ..database import get_db
from ..models.inventory import PharmacyConnection
from ..models.user import User, UserRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


def _connection_row(connection: PharmacyConnection, other: User) -> dict:
    return {
        "id": str(connection.id),
        "patient_id": str(connection.patient_id),
        "pharmacy_id": str(connection.pharmacy_id),
        "other_id": str(other.id),
        "other_name": other.display_name,
        "connected_at": connection.created_at.isoformat() if connection.created_at else None,
    }


@router.post("/{pharmacy_id}")
def connect_to_pharmacy(
    pharmacy_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_role("patient")),
):
    pharmacy = db.get(User, pharmacy_id)
    if not pharmacy or pharmacy.role != UserRole.PHARMACIST.value:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pharmacy not found")

    existing = (
        db.query(PharmacyConnection)
        .filter_by(patient_id=current_user.id, pharmacy_id=pharmacy_id)
        .first()
    )
    if existing:
        return {"status": "already_connected", "connection": _connection_row(existing, pharmacy)}

    connection = PharmacyConnection(patient_id=current_user.id, pharmacy_id=pharmacy_id)
    db.add(connection)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent connect for the same pair
        db.rollback()
        connection = (
            db.query(PharmacyConnection)
            .filter_by(patient_id=current_user.id, pharmacy_id=pharmacy_id)
            .one()
        )
        return {"status": "already_connected", "connection": _connection_row(connection, pharmacy)}
    logger.info("Patient %s connected to pharmacy %s", current_user.id, pharmacy_id)
    return {"status": "connected", "connection": _connection_row(connection, pharmacy)}


@router.get("")
def list_connections(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if current_user.role == UserRole.PATIENT.value:
        rows = db.query(PharmacyConnection).filter_by(patient_id=current_user.id).all()
        pairs = [(row, db.get(User, row.pharmacy_id)) for row in rows]
    elif current_user.role == UserRole.PHARMACIST.value:
        rows = db.query(PharmacyConnection).filter_by(pharmacy_id=current_user.id).all()
        pairs = [(row, db.get(User, row.patient_id)) for row in rows]
    else:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
    return {"count": len(pairs), "connections": [_connection_row(row, other) for row, other in pairs]}
