from decimal import Decimal
from datetime import date
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models.order import OrderStatus


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterRequest(StrictModel):
    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=8, max_length=128)
    role: Literal["patient", "pharmacist"] = "patient"
    full_name: Optional[str] = None
    pharmacy_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class OrderLinePayload(StrictModel):
    inventory_item_id: UUID
    quantity: int = Field(gt=0, le=1000)


class PatientOrderRequest(StrictModel):
    pharmacy_id: UUID
    items: list[OrderLinePayload] = Field(min_length=1)
    notes: Optional[str] = Field(default=None, max_length=1000)


class PharmacyOrderRequest(StrictModel):
    # Omit patient_id to record a walk-in sale
    patient_id: Optional[UUID] = None
    items: list[OrderLinePayload] = Field(min_length=1)
    notes: Optional[str] = Field(default=None, max_length=1000)


class ProposalResponseRequest(StrictModel):
    accept: bool


class StatusUpdateRequest(StrictModel):
    status: OrderStatus


class SendMessageRequest(StrictModel):
    receiver_id: UUID
    content: str = Field(min_length=1, max_length=2000)


class InventoryItemPayload(StrictModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    stock: int = Field(ge=0)
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    expiry_date: Optional[date] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class InventoryItemUpdate(StrictModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    stock: Optional[int] = Field(default=None, ge=0)
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    expiry_date: Optional[date] = None

    @field_validator("name", "price", "stock")
    @classmethod
    def _not_null(cls, value):
        # May be omitted, but cannot be cleared
        if value is None:
            raise ValueError("field cannot be null")
        return value


class BatchPayload(StrictModel):
    batch_code: str = Field(min_length=1, max_length=64)
    manufacturing_date: Optional[date] = None
    expiry_date: date
    quantity: int = Field(gt=0, le=100000)

    @field_validator("batch_code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("batch_code must not be blank")
        return value

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.manufacturing_date and self.manufacturing_date > self.expiry_date:
            raise ValueError("manufacturing_date must not be after expiry_date")
        return self


class BatchStockRequest(StrictModel):
    quantity: int = Field(gt=0, le=100000)


class BatchUpdate(StrictModel):
    batch_code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    manufacturing_date: Optional[date] = None
    expiry_date: Optional[date] = None
    remaining_qty: Optional[int] = Field(default=None, ge=0, le=100000)

    @field_validator("batch_code", "expiry_date", "remaining_qty")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("field cannot be null")
        return value


class CancelExpiredOrdersRequest(StrictModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    dry_run: bool = Field(default=False, alias="dryRun")
