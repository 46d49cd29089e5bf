from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from supplychain.api.deps import DB, Actor, CurrentActor, Role, conflict, require_roles
from supplychain.schemas.returns import ReturnCreate, ReturnResponse, ReturnStatusUpdate
from supplychain.services.order_service import OrderService
from supplychain.services.return_service import ReturnService


router = APIRouter(tags=["Returns"])


@router.post("", response_model=ReturnResponse, status_code=status.HTTP_201_CREATED)
async def create_return(
    data: ReturnCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.CUSTOMER)),
):
    """Request a return for part of a delivered order."""
    order = await OrderService(db).get(data.order_id)
    if order is None or (actor.role == Role.CUSTOMER and order.customer_id != actor.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )
    request = await ReturnService(db).create(
        data.order_id, data.product_id, data.quantity, data.reason, requested_by=actor.user_id
    )
    return ReturnResponse.model_validate(request)


@router.get("", response_model=list[ReturnResponse])
async def list_returns(
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
    order_id: Optional[uuid.UUID] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
):
    requests = await ReturnService(db).list(order_id=order_id, status=status_filter)
    return [ReturnResponse.model_validate(r) for r in requests]


@router.get("/{return_id}", response_model=ReturnResponse)
async def get_return(return_id: uuid.UUID, db: DB, actor: CurrentActor):
    request = await ReturnService(db).get(return_id)
    if request is None or (actor.role == Role.CUSTOMER and request.requested_by != actor.user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Return not found"
        )
    return ReturnResponse.model_validate(request)


@router.put("/{return_id}/status", response_model=ReturnResponse)
async def update_return_status(
    return_id: uuid.UUID,
    data: ReturnStatusUpdate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Approve, reject, process or complete a return. Completion restocks the units."""
    outcome = await ReturnService(db).transition(return_id, data.status, actor.user_id, data.note)
    if not outcome.ok:
        raise conflict(outcome.error)
    return ReturnResponse.model_validate(outcome.value)
