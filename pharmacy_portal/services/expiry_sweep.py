"""Force-cancel pharmacy order proposals the patient never answered.

A pharmacy-initiated order waits in ``acceptance_status=pending`` until its
``acceptance_deadline``. Once the deadline has passed the sweep rejects and
cancels it, then tells both parties. The sweep is a system actor: it bypasses
the patient/pharmacist transition table on purpose.

Per-order failures are logged and skipped; only a failure to select the
candidates aborts a run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol
from uuid import UUID

from sqlalchemy import inspect, select, update
from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.audit import AuditAction
from ..models.base import utcnow
from ..models.order import AcceptanceStatus, InitiatorType, Order, OrderStatus
from .audit_logger import create_audit_event
from .messaging import MessageService
from .order_events import OrderEvent, expired_event

logger = logging.getLogger(__name__)

GENERIC_SWEEP_ERROR = "Failed to process expired orders"


class SchemaNotReady(Exception):
    pass


@dataclass(frozen=True)
class ExpiryCandidate:
    id: UUID
    patient_id: UUID | None
    pharmacy_id: UUID


@dataclass
class SweepResult:
    cancelled: int = 0
    found: int | None = None
    dry_run: bool = False
    skipped: int = 0
    failed: int = 0
    notification_failures: int = 0
    error: str | None = None
    request_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_response(self) -> dict:
        if self.error is not None:
            return {"cancelled": 0, "error": self.error, "requestId": self.request_id}
        body: dict = {"cancelled": self.cancelled}
        if self.dry_run:
            body["found"] = self.found or 0
            body["dryRun"] = True
        return body


class PersistenceGateway(Protocol):
    def schema_ready(self) -> bool: ...

    def find_pending_expired_orders(self, now: datetime) -> list[ExpiryCandidate]: ...

    def set_order_cancelled(self, order_id: UUID, expected_prior: AcceptanceStatus) -> int: ...

    def insert_notification(self, sender_id: UUID, receiver_id: UUID, event: OrderEvent) -> None: ...

    def record_expiry(self, order_id: UUID) -> None: ...


class OrderGateway:
    """SQLAlchemy-backed gateway; every write commits on its own."""

    def __init__(self, db: Session):
        self.db = db

    def schema_ready(self) -> bool:
        columns = {col["name"] for col in inspect(self.db.get_bind()).get_columns("orders")}
        return "initiator_type" in columns

    def find_pending_expired_orders(self, now: datetime) -> list[ExpiryCandidate]:
        rows = self.db.execute(
            select(Order.id, Order.patient_id, Order.pharmacy_id).where(
                Order.initiator_type == InitiatorType.PHARMACY,
                Order.acceptance_status == AcceptanceStatus.PENDING,
                Order.acceptance_deadline < now,
            )
        ).all()
        return [ExpiryCandidate(id=row.id, patient_id=row.patient_id, pharmacy_id=row.pharmacy_id) for row in rows]

    def set_order_cancelled(self, order_id: UUID, expected_prior: AcceptanceStatus) -> int:
        # Conditional on the prior acceptance status so overlapping runs
        # cancel each order at most once.
        try:
            result = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.acceptance_status == expected_prior)
                .values(
                    acceptance_status=AcceptanceStatus.REJECTED,
                    status=OrderStatus.CANCELLED,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount or 0

    def insert_notification(self, sender_id: UUID, receiver_id: UUID, event: OrderEvent) -> None:
        try:
            MessageService(self.db).send_order_event(sender_id, receiver_id, event)
        except Exception:
            self.db.rollback()
            raise

    def record_expiry(self, order_id: UUID) -> None:
        try:
            create_audit_event(
                self.db,
                actor="SYSTEM",
                action=AuditAction.ORDER_EXPIRED,
                entity_type="Order",
                entity_id=str(order_id),
                details={"acceptance_status": AcceptanceStatus.REJECTED.value},
            )
        except Exception:
            self.db.rollback()
            raise


class ExpirySweep:
    def __init__(
        self,
        gateway: PersistenceGateway,
        clock: Callable[[], datetime] | None = None,
    ):
        self.gateway = gateway
        self.settings = get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self, dry_run: bool = False) -> SweepResult:
        try:
            if not self.gateway.schema_ready():
                if self.settings.EXPIRY_SCHEMA_STRICT:
                    raise SchemaNotReady("orders.initiator_type column is missing")
                logger.warning("Orders schema has no initiator_type column; skipping expiry sweep")
                return SweepResult(dry_run=dry_run, found=0 if dry_run else None)
            candidates = self.gateway.find_pending_expired_orders(self._clock())
        except Exception as exc:
            request_id = str(uuid.uuid4())
            logger.error(
                "Expiry sweep failed",
                exc_info=True,
                extra={
                    "request_id": request_id,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            return SweepResult(error=GENERIC_SWEEP_ERROR, request_id=request_id)

        if dry_run:
            logger.info("Dry run: found %s expired orders to cancel", len(candidates))
            return SweepResult(found=len(candidates), dry_run=True)

        result = SweepResult()
        if not candidates:
            return result

        logger.info("Found %s expired orders to cancel", len(candidates))
        for candidate in candidates:
            self._expire(candidate, result)

        logger.info(
            "Expiry sweep cancelled %s orders (%s skipped, %s failed, %s notification failures)",
            result.cancelled,
            result.skipped,
            result.failed,
            result.notification_failures,
        )
        return result

    def _expire(self, candidate: ExpiryCandidate, result: SweepResult) -> None:
        try:
            updated = self.gateway.set_order_cancelled(candidate.id, AcceptanceStatus.PENDING)
        except Exception:
            logger.exception("Error updating expired order %s", candidate.id)
            result.failed += 1
            return

        if updated == 0:
            logger.info("Order %s already handled by a concurrent sweep", candidate.id)
            result.skipped += 1
            return

        result.cancelled += 1
        try:
            self.gateway.record_expiry(candidate.id)
        except Exception:
            logger.exception("Error writing audit event for expired order %s", candidate.id)

        if candidate.patient_id is None:
            logger.info("Order %s has no patient account; no expiry notifications sent", candidate.id)
            return

        event = expired_event(candidate.id)
        directions = (
            ("patient", candidate.pharmacy_id, candidate.patient_id),
            ("pharmacy", candidate.patient_id, candidate.pharmacy_id),
        )
        for audience, sender_id, receiver_id in directions:
            try:
                self.gateway.insert_notification(sender_id, receiver_id, event)
            except Exception:
                logger.exception("Error sending %s notification for order %s", audience, candidate.id)
                result.notification_failures += 1


def run_expiry_sweep(db: Session, dry_run: bool = False) -> SweepResult:
    return ExpirySweep(OrderGateway(db)).run(dry_run=dry_run)
