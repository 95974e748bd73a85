import logging

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..auth import require_any_role
from ..database import get_db
from ..models.audit import AuditAction
from ..services.audit_logger import create_audit_event
from ..services.expiry_sweep import run_expiry_sweep
from ..services.rate_limit import rate_limited
from .schemas import CancelExpiredOrdersRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post(
    "/orders/cancel-expired",
    dependencies=[Depends(rate_limited("cancel-expired-orders"))],
)
def cancel_expired_orders(
    request: Request,
    payload: CancelExpiredOrdersRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    current_user=Depends(require_any_role("admin", "system")),
):
    """Cancel pharmacy proposals whose acceptance deadline has passed.

    If the orders table has no ``initiator_type`` column yet, this returns
    the generic 500 body by default. Older deployments skipped silently with
    ``{"cancelled": 0}``; set ``EXPIRY_SCHEMA_STRICT=false`` to keep that.
    """
    dry_run = payload.dry_run if payload else False
    result = run_expiry_sweep(db, dry_run=dry_run)
    if not result.ok:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=result.to_response(),
        )

    if not dry_run and result.cancelled:
        create_audit_event(
            db,
            actor=getattr(current_user, "username", "SYSTEM"),
            action=AuditAction.EXPIRY_SWEEP,
            entity_type="Order",
            entity_id="*",
            details={
                "cancelled": result.cancelled,
                "skipped": result.skipped,
                "failed": result.failed,
            },
            request=request,
        )
    return result.to_response()
