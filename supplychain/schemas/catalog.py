from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import Field

from supplychain.schemas.base import BaseCreateSchema, BaseResponseSchema


class ProductCreate(BaseCreateSchema):
    sku: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)
    supplier_id: Optional[UUID] = None


class ProductPriceUpdate(BaseCreateSchema):
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)


class ProductResponse(BaseResponseSchema):
    id: UUID
    sku: str
    name: str
    unit_price: Decimal
    supplier_id: Optional[UUID] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class WarehouseCreate(BaseCreateSchema):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    location: Optional[str] = None


class WarehouseResponse(BaseResponseSchema):
    id: UUID
    code: str
    name: str
    location: Optional[str] = None
    is_active: bool
    created_at: datetime


class CarrierCreate(BaseCreateSchema):
    code: str = Field(..., min_length=1, max_length=30)
    name: str = Field(..., min_length=1, max_length=255)


class CarrierResponse(BaseResponseSchema):
    id: UUID
    code: str
    name: str
    is_active: bool
