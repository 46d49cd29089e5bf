from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from supplychain.api.deps import DB, Actor, CurrentActor, Role, conflict, require_roles
from supplychain.schemas.production import (
    ProductionOrderCreate,
    ProductionOrderResponse,
    ProductionStatusUpdate,
)
from supplychain.services.production_service import ProductionService


router = APIRouter(tags=["Production"])


@router.post("", response_model=ProductionOrderResponse, status_code=status.HTTP_201_CREATED)
async def create_production_order(
    data: ProductionOrderCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER)),
):
    production = await ProductionService(db).create(
        product_id=data.product_id,
        warehouse_id=data.warehouse_id,
        quantity=data.quantity,
        purchase_order_id=data.purchase_order_id,
        notes=data.notes,
        created_by=actor.user_id,
    )
    return ProductionOrderResponse.model_validate(production)


@router.get("", response_model=list[ProductionOrderResponse])
async def list_production_orders(
    db: DB,
    actor: CurrentActor,
    product_id: Optional[uuid.UUID] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
):
    orders = await ProductionService(db).list(product_id=product_id, status=status_filter)
    return [ProductionOrderResponse.model_validate(o) for o in orders]


@router.get("/{production_id}", response_model=ProductionOrderResponse)
async def get_production_order(production_id: uuid.UUID, db: DB, actor: CurrentActor):
    production = await ProductionService(db).get(production_id)
    if production is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Production order not found"
        )
    return ProductionOrderResponse.model_validate(production)


@router.put("/{production_id}/status", response_model=ProductionOrderResponse)
async def update_production_status(
    production_id: uuid.UUID,
    data: ProductionStatusUpdate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER)),
):
    """Start, complete or cancel a run. Completion adds the output to stock."""
    outcome = await ProductionService(db).transition(production_id, data.status, actor.user_id, data.note)
    if not outcome.ok:
        raise conflict(outcome.error)
    return ProductionOrderResponse.model_validate(outcome.value)
