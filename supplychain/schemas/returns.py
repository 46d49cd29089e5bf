from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import Field

from supplychain.schemas.base import BaseCreateSchema, BaseResponseSchema


class ReturnCreate(BaseCreateSchema):
    order_id: UUID
    product_id: UUID
    quantity: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1)


class ReturnStatusUpdate(BaseCreateSchema):
    status: str
    note: Optional[str] = None


class ReturnResponse(BaseResponseSchema):
    id: UUID
    order_id: UUID
    product_id: UUID
    warehouse_id: Optional[UUID] = None
    quantity: int
    reason: str
    status: str
    requested_by: Optional[UUID] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
