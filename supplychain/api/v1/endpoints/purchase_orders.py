from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from supplychain.api.deps import DB, Actor, Role, conflict, require_roles
from supplychain.core.state_machine import PurchaseOrderStatus
from supplychain.schemas.purchase_order import (
    PurchaseOrderCreate,
    PurchaseOrderResponse,
    PurchaseOrderStatusUpdate,
)
from supplychain.services.purchase_order_service import PurchaseOrderService


router = APIRouter(tags=["Purchase Orders"])

# Who may move a purchase order into each status (admin always may)
STATUS_ROLES = {
    PurchaseOrderStatus.APPROVED: Role.SUPPLIER,
    PurchaseOrderStatus.REJECTED: Role.SUPPLIER,
    PurchaseOrderStatus.DELIVERED: Role.WAREHOUSE,
}


def _visible(purchase_order, actor: Actor) -> bool:
    return actor.role != Role.SUPPLIER or purchase_order.supplier_id == actor.user_id


@router.post("", response_model=PurchaseOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_purchase_order(
    data: PurchaseOrderCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Request goods from a supplier for a warehouse."""
    purchase_order = await PurchaseOrderService(db).create(
        supplier_id=data.supplier_id,
        product_id=data.product_id,
        warehouse_id=data.warehouse_id,
        quantity=data.quantity,
        unit_cost=data.unit_cost,
        notes=data.notes,
        created_by=actor.user_id,
    )
    return PurchaseOrderResponse.model_validate(purchase_order)


@router.get("", response_model=list[PurchaseOrderResponse])
async def list_purchase_orders(
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER, Role.WAREHOUSE)),
    supplier_id: Optional[uuid.UUID] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
):
    """Suppliers only see their own purchase orders."""
    if actor.role == Role.SUPPLIER:
        supplier_id = actor.user_id
    purchase_orders = await PurchaseOrderService(db).list(supplier_id=supplier_id, status=status_filter)
    return [PurchaseOrderResponse.model_validate(po) for po in purchase_orders]


@router.get("/{purchase_order_id}", response_model=PurchaseOrderResponse)
async def get_purchase_order(
    purchase_order_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER, Role.WAREHOUSE)),
):
    purchase_order = await PurchaseOrderService(db).get(purchase_order_id)
    if purchase_order is None or not _visible(purchase_order, actor):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Purchase order not found"
        )
    return PurchaseOrderResponse.model_validate(purchase_order)


@router.put("/{purchase_order_id}/status", response_model=PurchaseOrderResponse)
async def update_purchase_order_status(
    purchase_order_id: uuid.UUID,
    data: PurchaseOrderStatusUpdate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER, Role.WAREHOUSE)),
):
    """
    The supplier approves or rejects; the warehouse marks an approved order
    delivered, which adds the goods to its stock.
    """
    service = PurchaseOrderService(db)
    purchase_order = await service.get(purchase_order_id)
    if purchase_order is None or not _visible(purchase_order, actor):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Purchase order not found"
        )

    required = STATUS_ROLES.get(data.status)
    if actor.role != Role.ADMIN and required is not None and actor.role != required:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{actor.role}' cannot mark a purchase order {data.status}"
        )

    outcome = await service.transition(purchase_order_id, data.status, actor.user_id, data.note)
    if not outcome.ok:
        raise conflict(outcome.error)
    return PurchaseOrderResponse.model_validate(outcome.value)
