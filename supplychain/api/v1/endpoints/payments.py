from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from supplychain.api.deps import DB, Actor, Role, conflict, require_roles
from supplychain.schemas.order import PaymentResponse, PaymentStatusUpdate, SupplierPaymentCreate
from supplychain.services.payment_service import PaymentService


router = APIRouter(tags=["Payments"])


@router.get("", response_model=list[PaymentResponse])
async def list_payments(
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER)),
    order_id: Optional[uuid.UUID] = None,
    payer_type: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
):
    payments = await PaymentService(db).list(order_id=order_id, payer_type=payer_type, status=status_filter)
    if actor.role == Role.SUPPLIER:
        payments = [p for p in payments if p.supplier_id == actor.user_id]
    return [PaymentResponse.model_validate(p) for p in payments]


@router.post("/supplier", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def record_supplier_payment(
    data: SupplierPaymentCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
):
    """Record a payment owed to a supplier against a purchase order."""
    payment = await PaymentService(db).record_supplier_payment(
        purchase_order_id=data.purchase_order_id,
        amount=data.amount,
        method=data.method,
    )
    return PaymentResponse.model_validate(payment)


@router.put("/{payment_id}/status", response_model=PaymentResponse)
async def update_payment_status(
    payment_id: uuid.UUID,
    data: PaymentStatusUpdate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
):
    service = PaymentService(db)
    payment = await service.get(payment_id)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found"
        )
    outcome = await service.transition(payment_id, data.status, actor.user_id, data.note)
    if not outcome.ok:
        raise conflict(outcome.error)
    return PaymentResponse.model_validate(outcome.value)
