from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import Field

from supplychain.schemas.base import BaseCreateSchema, BaseResponseSchema


class PurchaseOrderCreate(BaseCreateSchema):
    supplier_id: UUID
    product_id: UUID
    warehouse_id: UUID
    quantity: int = Field(..., gt=0)
    unit_cost: Decimal = Field(..., ge=0, decimal_places=2)
    notes: Optional[str] = None


class PurchaseOrderStatusUpdate(BaseCreateSchema):
    status: str
    note: Optional[str] = None


class PurchaseOrderResponse(BaseResponseSchema):
    id: UUID
    po_number: str
    supplier_id: UUID
    product_id: UUID
    warehouse_id: UUID
    quantity: int
    unit_cost: Decimal
    total_amount: Decimal
    status: str
    notes: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime
    approved_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
