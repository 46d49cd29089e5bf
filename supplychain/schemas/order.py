from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import Field

from supplychain.schemas.base import BaseCreateSchema, BaseResponseSchema


class OrderLineCreate(BaseCreateSchema):
    product_id: UUID
    quantity: int = Field(..., gt=0)
    warehouse_id: Optional[UUID] = None


class OrderCreate(BaseCreateSchema):
    """Create a pending order without reserving stock."""
    lines: list[OrderLineCreate] = Field(..., min_length=1)


class PlaceOrderRequest(BaseCreateSchema):
    """Checkout: reserve, create, ship-plan, pay and confirm in one call."""
    lines: list[OrderLineCreate] = Field(..., min_length=1)
    carrier_id: UUID
    payment_method: Optional[str] = None
    confirm: bool = True


class OrderStatusUpdate(BaseCreateSchema):
    status: str
    note: Optional[str] = None


class OrderCancel(BaseCreateSchema):
    note: Optional[str] = None


class PaymentRetry(BaseCreateSchema):
    method: Optional[str] = None


class OrderLineResponse(BaseResponseSchema):
    id: UUID
    product_id: UUID
    warehouse_id: Optional[UUID] = None
    product_name: str
    unit_price_at_order: Decimal
    quantity: int
    line_total: Decimal
    shipment_id: Optional[UUID] = None


class ShipmentResponse(BaseResponseSchema):
    id: UUID
    order_id: UUID
    warehouse_id: UUID
    carrier_id: UUID
    tracking_number: str
    status: str
    shipment_date: datetime
    delivered_at: Optional[datetime] = None


class PaymentResponse(BaseResponseSchema):
    id: UUID
    payer_type: str
    order_id: Optional[UUID] = None
    purchase_order_id: Optional[UUID] = None
    supplier_id: Optional[UUID] = None
    amount: Decimal
    method: str
    status: str
    gateway: Optional[str] = None
    gateway_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class OrderResponse(BaseResponseSchema):
    id: UUID
    order_number: str
    customer_id: UUID
    status: str
    payment_failed: bool
    order_date: datetime
    expected_delivery_date: Optional[datetime] = None
    total_amount: Decimal
    item_count: int
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class OrderDetailResponse(OrderResponse):
    lines: list[OrderLineResponse] = []
    shipments: list[ShipmentResponse] = []
    payments: list[PaymentResponse] = []


class OrderListResponse(BaseResponseSchema):
    items: list[OrderResponse]
    total: int
    page: int
    size: int
    pages: int


class PlaceOrderResponse(BaseResponseSchema):
    outcome: str
    order: Optional[OrderDetailResponse] = None
    errors: list[dict[str, Any]] = []


class SupplierPaymentCreate(BaseCreateSchema):
    purchase_order_id: UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    method: str = Field(..., min_length=1, max_length=50)


class PaymentStatusUpdate(BaseCreateSchema):
    status: str
    note: Optional[str] = None
