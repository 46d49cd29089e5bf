from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field

from supplychain.schemas.base import BaseCreateSchema, BaseResponseSchema


class ProductionOrderCreate(BaseCreateSchema):
    product_id: UUID
    warehouse_id: UUID
    quantity: int = Field(..., gt=0)
    purchase_order_id: Optional[UUID] = None
    notes: Optional[str] = None


class ProductionStatusUpdate(BaseCreateSchema):
    status: str
    note: Optional[str] = None


class ProductionOrderResponse(BaseResponseSchema):
    id: UUID
    product_id: UUID
    warehouse_id: UUID
    quantity: int
    purchase_order_id: Optional[UUID] = None
    status: str
    notes: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: Optional[UUID] = None
    created_at: datetime
