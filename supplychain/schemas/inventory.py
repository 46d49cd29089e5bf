from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field

from supplychain.models.inventory import MovementType
from supplychain.schemas.base import BaseCreateSchema, BaseResponseSchema


class StockLevelResponse(BaseResponseSchema):
    product_id: UUID
    warehouse_id: UUID
    quantity: int


class AvailabilityResponse(BaseResponseSchema):
    product_id: UUID
    total_quantity: int
    warehouses: list[StockLevelResponse]


class InventoryRecordCreate(BaseCreateSchema):
    """Pair a product with a warehouse."""
    product_id: UUID
    warehouse_id: UUID
    initial_quantity: int = Field(0, ge=0)


class StockSet(BaseCreateSchema):
    """Administrative override to an absolute quantity."""
    product_id: UUID
    warehouse_id: UUID
    quantity: int = Field(..., ge=0)
    note: Optional[str] = None


class StockReceive(BaseCreateSchema):
    """Inbound stock: receipts and manual additions."""
    product_id: UUID
    warehouse_id: UUID
    quantity: int = Field(..., gt=0)
    movement_type: MovementType = MovementType.IN
    reason: Optional[str] = None
    reference_type: Optional[str] = "receipt"
    reference_id: Optional[UUID] = None


class StockTransfer(BaseCreateSchema):
    product_id: UUID
    from_warehouse_id: UUID
    to_warehouse_id: UUID
    quantity: int = Field(..., gt=0)
    note: Optional[str] = None


class MovementResponse(BaseResponseSchema):
    id: UUID
    product_id: UUID
    warehouse_id: UUID
    movement_type: str
    quantity_delta: int
    balance_after: int
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None
    created_by: Optional[UUID] = None
    note: Optional[str] = None
    created_at: datetime


class ReservationResponse(BaseResponseSchema):
    product_id: UUID
    warehouse_id: UUID
    quantity: int
    balance_after: int
    movement_id: UUID


class DiscrepancyResponse(BaseResponseSchema):
    product_id: UUID
    warehouse_id: UUID
    quantity: int
    movement_total: int
    drift: int
