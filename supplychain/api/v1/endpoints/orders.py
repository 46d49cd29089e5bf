from typing import Optional
import uuid
from math import ceil

from fastapi import APIRouter, Depends, HTTPException, Query, status

from supplychain.api.deps import DB, Actor, CurrentActor, Role, conflict, require_roles
from supplychain.core.state_machine import OrderStatus
from supplychain.models.order import Order
from supplychain.schemas.history import StatusHistoryResponse
from supplychain.schemas.inventory import ReservationResponse
from supplychain.schemas.order import (
    OrderCancel,
    OrderCreate,
    OrderDetailResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    PaymentResponse,
    PaymentRetry,
    PlaceOrderRequest,
    PlaceOrderResponse,
)
from supplychain.services.fulfillment_service import FulfillmentOutcome, FulfillmentService
from supplychain.services.order_service import OrderLineInput, OrderService
from supplychain.services.status_history_service import StatusHistoryService


router = APIRouter(tags=["Orders"])


async def _get_visible_order(db, order_id: uuid.UUID, actor: Actor) -> Order:
    """Customers only see their own orders; everyone else sees all."""
    order = await OrderService(db).get(order_id)
    if order is None or (actor.role == Role.CUSTOMER and order.customer_id != actor.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )
    return order


def _lines(data) -> list[OrderLineInput]:
    return [
        OrderLineInput(product_id=line.product_id, quantity=line.quantity, warehouse_id=line.warehouse_id)
        for line in data.lines
    ]


@router.post(
    "/checkout",
    response_model=PlaceOrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def place_order(
    data: PlaceOrderRequest,
    db: DB,
    actor: Actor = Depends(require_roles(Role.CUSTOMER)),
):
    """
    Reserve stock, create the order with its shipments, charge it and confirm it.

    Insufficient stock for any line rejects the whole order with 409 and
    leaves inventory untouched. A declined payment still places the order
    (outcome `fulfilled_without_payment`).
    """
    service = FulfillmentService(db)
    result = await service.place_order(
        customer_id=actor.user_id,
        lines=_lines(data),
        carrier_id=data.carrier_id,
        created_by=actor.user_id,
        payment_method=data.payment_method,
        confirm=data.confirm,
    )
    if result.outcome == FulfillmentOutcome.REJECTED:
        raise conflict(result.errors)

    return PlaceOrderResponse(
        outcome=result.outcome,
        order=OrderDetailResponse.model_validate(result.order),
        errors=[error.to_dict() for error in result.errors],
    )


@router.post(
    "",
    response_model=OrderDetailResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    data: OrderCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.CUSTOMER)),
):
    """Create a pending order without reserving stock. Confirm it later."""
    order = await OrderService(db).create(actor.user_id, _lines(data), created_by=actor.user_id)
    return OrderDetailResponse.model_validate(order)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    db: DB,
    actor: CurrentActor,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    customer_id: Optional[uuid.UUID] = None,
):
    """Get paginated list of orders."""
    if actor.role == Role.CUSTOMER:
        customer_id = actor.user_id

    skip = (page - 1) * size
    orders, total = await OrderService(db).list(
        customer_id=customer_id,
        status=status_filter,
        skip=skip,
        limit=size,
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(order) for order in orders],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(order_id: uuid.UUID, db: DB, actor: CurrentActor):
    order = await _get_visible_order(db, order_id, actor)
    return OrderDetailResponse.model_validate(order)


@router.get("/{order_id}/history", response_model=list[StatusHistoryResponse])
async def get_order_history(order_id: uuid.UUID, db: DB, actor: CurrentActor):
    """Status transitions of an order, oldest first."""
    await _get_visible_order(db, order_id, actor)
    entries = await StatusHistoryService(db).history("order", order_id)
    return [StatusHistoryResponse.model_validate(entry) for entry in entries]


@router.post("/{order_id}/confirm", response_model=OrderDetailResponse)
async def confirm_order(
    order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Confirm a pending order, reserving any line that does not hold stock yet."""
    outcome = await FulfillmentService(db).confirm_fulfillment(order_id, actor.user_id)
    if not outcome.ok:
        raise conflict(outcome.error)
    return OrderDetailResponse.model_validate(outcome.value)


@router.post("/{order_id}/ship", response_model=OrderDetailResponse)
async def ship_order(
    order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Hand a confirmed order to its carrier."""
    outcome = await FulfillmentService(db).mark_shippable(order_id, actor.user_id)
    if not outcome.ok:
        raise conflict(outcome.error)
    return OrderDetailResponse.model_validate(outcome.value)


@router.post("/{order_id}/deliver", response_model=OrderDetailResponse)
async def deliver_order(
    order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.CARRIER)),
):
    outcome = await FulfillmentService(db).mark_delivered(order_id, actor.user_id)
    if not outcome.ok:
        raise conflict(outcome.error)
    return OrderDetailResponse.model_validate(outcome.value)


@router.post("/{order_id}/cancel", response_model=OrderDetailResponse)
async def cancel_order(
    order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.CUSTOMER, Role.WAREHOUSE)),
    data: Optional[OrderCancel] = None,
):
    """Cancel an order that has not shipped; held stock is released and payment refunded."""
    await _get_visible_order(db, order_id, actor)
    outcome = await FulfillmentService(db).cancel_order(
        order_id, actor.user_id, note=data.note if data else None
    )
    if not outcome.ok:
        raise conflict(outcome.error)
    return OrderDetailResponse.model_validate(outcome.value)


@router.post("/{order_id}/release-stock", response_model=list[ReservationResponse])
async def release_held_stock(
    order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Give back stock a cancelled order still holds. Safe to call again."""
    released = await FulfillmentService(db).release_held_stock(order_id, actor.user_id)
    return [ReservationResponse.model_validate(r) for r in released]


@router.post("/{order_id}/retry-payment", response_model=PaymentResponse)
async def retry_payment(
    order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.CUSTOMER)),
    data: Optional[PaymentRetry] = None,
):
    await _get_visible_order(db, order_id, actor)
    outcome = await FulfillmentService(db).retry_payment(
        order_id, actor.user_id, method=data.method if data else None
    )
    if not outcome.ok:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=outcome.error.message,
        )
    return PaymentResponse.model_validate(outcome.value)


@router.put("/{order_id}/status", response_model=OrderDetailResponse)
async def update_order_status(
    order_id: uuid.UUID,
    data: OrderStatusUpdate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
):
    """Apply a single order transition directly. Stock and shipments are not touched."""
    if data.status not in OrderStatus.all():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown order status '{data.status}'"
        )
    service = OrderService(db)
    outcome = await service.transition(order_id, data.status, actor.user_id, data.note)
    if not outcome.ok:
        raise conflict(outcome.error)
    return OrderDetailResponse.model_validate(await service.get(order_id))
