"""
Payment capture, refunds and supplier payments.

Card processing sits behind the PaymentGateway protocol. PAYMENT_GATEWAY
selects the built-in implementation: "offline" accepts every charge,
"decline" rejects every charge (useful for exercising the failure path).
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.config import settings
from supplychain.core.errors import (
    EntityNotFound,
    InvalidTransition,
    PaymentFailed,
    StorageUnavailable,
)
from supplychain.core.results import Outcome
from supplychain.core.state_machine import PAYMENT_MACHINE, PaymentStatus, PurchaseOrderStatus
from supplychain.models.order import Order
from supplychain.models.payment import PaymentRecord
from supplychain.models.purchase_order import PurchaseOrder
from supplychain.services.status_history_service import StatusHistoryService

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    """Result of a gateway call."""
    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: str

    async def charge(self, amount: Decimal, reference: str, method: str) -> GatewayResult:
        ...

    async def refund(self, gateway_reference: str, amount: Decimal) -> GatewayResult:
        ...


class OfflineGateway:
    """Accepts every charge. Stands in for a real processor in local setups."""
    name = "offline"

    async def charge(self, amount: Decimal, reference: str, method: str) -> GatewayResult:
        gateway_reference = f"OFF-{uuid.uuid4().hex[:12].upper()}"
        return GatewayResult(
            success=True,
            reference=gateway_reference,
            raw={"amount": str(amount), "reference": reference, "method": method},
        )

    async def refund(self, gateway_reference: str, amount: Decimal) -> GatewayResult:
        return GatewayResult(success=True, reference=gateway_reference, raw={"refunded": str(amount)})


class DecliningGateway:
    """Rejects every charge."""
    name = "decline"

    async def charge(self, amount: Decimal, reference: str, method: str) -> GatewayResult:
        return GatewayResult(success=False, reason="Card declined", raw={"reference": reference})

    async def refund(self, gateway_reference: str, amount: Decimal) -> GatewayResult:
        return GatewayResult(success=False, reason="Nothing to refund")


GATEWAYS = {
    OfflineGateway.name: OfflineGateway,
    DecliningGateway.name: DecliningGateway,
}


def get_payment_gateway(name: Optional[str] = None) -> PaymentGateway:
    name = name or settings.PAYMENT_GATEWAY
    if name not in GATEWAYS:
        raise ValueError(f"Unknown payment gateway '{name}'. Options: {', '.join(GATEWAYS)}")
    return GATEWAYS[name]()


class PaymentService:

    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.history = StatusHistoryService(db)

    async def get(self, payment_id: uuid.UUID) -> Optional[PaymentRecord]:
        return await self.db.get(PaymentRecord, payment_id)

    async def list(
        self,
        order_id: Optional[uuid.UUID] = None,
        payer_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[PaymentRecord]:
        stmt = select(PaymentRecord).order_by(PaymentRecord.created_at.desc())
        if order_id:
            stmt = stmt.where(PaymentRecord.order_id == order_id)
        if payer_type:
            stmt = stmt.where(PaymentRecord.payer_type == payer_type)
        if status:
            stmt = stmt.where(PaymentRecord.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ==================== Customer payments ====================

    async def create_for_order(self, order: Order, method: Optional[str] = None) -> PaymentRecord:
        """Pending payment for the order total. Flushes; does not commit."""
        payment = PaymentRecord(
            id=uuid.uuid4(),
            payer_type="customer",
            order_id=order.id,
            customer_id=order.customer_id,
            amount=order.total_amount,
            method=method or settings.DEFAULT_PAYMENT_METHOD,
            status=PaymentStatus.PENDING,
            gateway=self.gateway.name,
        )
        order.payments.append(payment)
        await self.db.flush()
        return payment

    async def capture(
        self,
        payment: PaymentRecord,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Optional[PaymentFailed]:
        """
        Charge a pending payment through the gateway and record the result.

        Returns PaymentFailed when the gateway declines. Does not commit.
        """
        result = await self.gateway.charge(
            Decimal(payment.amount),
            str(payment.order_id or payment.purchase_order_id),
            payment.method,
        )
        payment.gateway_response = result.raw

        if result.success:
            payment.gateway_reference = result.reference
            payment.completed_at = datetime.now(timezone.utc)
            payment.failure_reason = None
            await self.apply_transition(payment, PaymentStatus.COMPLETED, changed_by)
            return None

        reason = result.reason or "Payment declined"
        payment.failure_reason = reason
        await self.apply_transition(payment, PaymentStatus.FAILED, changed_by, note=reason)
        logger.warning(f"Payment {payment.id} for order {payment.order_id} failed: {reason}")
        return PaymentFailed(order_id=payment.order_id, reason=reason, payment_id=payment.id)

    async def refund(
        self,
        payment: PaymentRecord,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[PaymentRecord, InvalidTransition]:
        """Refund a completed payment. Does not commit."""
        error = PAYMENT_MACHINE.check(payment.status, PaymentStatus.REFUNDED, payment.id)
        if error:
            return Outcome.failure(error)

        if payment.gateway_reference:
            result = await self.gateway.refund(payment.gateway_reference, Decimal(payment.amount))
            if not result.success:
                logger.error(f"Gateway refused refund of payment {payment.id}: {result.reason}")
                raise ValueError(f"Refund of payment {payment.id} was refused: {result.reason}")

        payment.refunded_at = datetime.now(timezone.utc)
        return await self.apply_transition(payment, PaymentStatus.REFUNDED, changed_by, note)

    # ==================== Supplier payments ====================

    async def record_supplier_payment(
        self,
        purchase_order_id: uuid.UUID,
        amount: Decimal,
        method: str,
    ) -> PaymentRecord:
        """Record a pending payment owed to the supplier of an approved or delivered purchase order."""
        if amount is None or Decimal(amount) <= 0:
            raise ValueError("Payment amount must be positive")
        purchase_order = await self.db.get(PurchaseOrder, purchase_order_id)
        if purchase_order is None:
            raise EntityNotFound("purchase_order", purchase_order_id)
        if purchase_order.status not in (PurchaseOrderStatus.APPROVED, PurchaseOrderStatus.DELIVERED):
            raise ValueError(
                f"Purchase order {purchase_order.po_number} is {purchase_order.status} and cannot be paid"
            )

        payment = PaymentRecord(
            payer_type="supplier",
            purchase_order_id=purchase_order.id,
            supplier_id=purchase_order.supplier_id,
            amount=Decimal(amount),
            method=method,
            status=PaymentStatus.PENDING,
        )
        self.db.add(payment)
        await self._commit("record_supplier_payment")
        logger.info(f"Recorded supplier payment {payment.id} for {purchase_order.po_number}")
        return payment

    # ==================== Status ====================

    async def apply_transition(
        self,
        payment: PaymentRecord,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[PaymentRecord, InvalidTransition]:
        error = PAYMENT_MACHINE.check(payment.status, new_status, payment.id)
        if error:
            return Outcome.failure(error)

        old_status = payment.status
        payment.status = new_status
        if new_status == PaymentStatus.COMPLETED and payment.completed_at is None:
            payment.completed_at = datetime.now(timezone.utc)
        await self.history.record("payment", payment.id, old_status, new_status, changed_by, note)
        return Outcome.success(payment)

    async def transition(
        self,
        payment_id: uuid.UUID,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[PaymentRecord, InvalidTransition]:
        """Manually move a payment along its state machine (supplier settlement)."""
        payment = await self.get(payment_id)
        if payment is None:
            raise EntityNotFound("payment", payment_id)

        outcome = await self.apply_transition(payment, new_status, changed_by, note)
        if outcome.ok:
            await self._commit("payment_transition")
        return outcome

    async def _commit(self, step: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Payment {step} failed: {e}")
            raise StorageUnavailable(step) from e
