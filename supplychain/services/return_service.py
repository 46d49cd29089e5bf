"""
Customer returns.

A return is raised against a delivered order line and walks
pending -> approved -> processing -> completed (or pending -> rejected).
Completion puts the units back into the line's source warehouse.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.core.errors import EntityNotFound, InvalidTransition, StorageUnavailable
from supplychain.core.results import Outcome
from supplychain.core.state_machine import RETURN_MACHINE, OrderStatus, ReturnStatus
from supplychain.models.order import Order
from supplychain.models.return_request import ReturnRequest
from supplychain.services.event_publisher import EventPublisher
from supplychain.services.inventory_ledger import InventoryLedger
from supplychain.services.status_history_service import StatusHistoryService
from supplychain.services.status_writes import current_status, write_status

logger = logging.getLogger(__name__)


class ReturnService:

    def __init__(self, db: AsyncSession, events: Optional[EventPublisher] = None):
        self.db = db
        self.ledger = InventoryLedger(db, events)
        self.history = StatusHistoryService(db)

    async def get(self, return_id: uuid.UUID) -> Optional[ReturnRequest]:
        return await self.db.get(ReturnRequest, return_id)

    async def list(
        self,
        order_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
    ) -> List[ReturnRequest]:
        stmt = select(ReturnRequest).order_by(ReturnRequest.created_at.desc())
        if order_id:
            stmt = stmt.where(ReturnRequest.order_id == order_id)
        if status:
            stmt = stmt.where(ReturnRequest.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        order_id: uuid.UUID,
        product_id: uuid.UUID,
        quantity: int,
        reason: str,
        requested_by: Optional[uuid.UUID] = None,
    ) -> ReturnRequest:
        """Open a return for part of a delivered order line."""
        if quantity <= 0:
            raise ValueError("Return quantity must be positive")
        if not reason:
            raise ValueError("A return needs a reason")

        order = await self.db.get(Order, order_id)
        if order is None:
            raise EntityNotFound("order", order_id)
        if order.status != OrderStatus.DELIVERED:
            raise ValueError(f"Only delivered orders can be returned; order {order.order_number} is {order.status}")

        line = next((line for line in order.lines if line.product_id == product_id), None)
        if line is None:
            raise ValueError(f"Product {product_id} is not part of order {order.order_number}")

        already = await self.db.scalar(
            select(func.coalesce(func.sum(ReturnRequest.quantity), 0)).where(
                ReturnRequest.order_id == order_id,
                ReturnRequest.product_id == product_id,
                ReturnRequest.status != ReturnStatus.REJECTED,
            )
        )
        returnable = line.quantity - int(already or 0)
        if quantity > returnable:
            raise ValueError(
                f"Cannot return {quantity} of {line.product_name}; only {returnable} left to return"
            )

        request = ReturnRequest(
            order_id=order_id,
            product_id=product_id,
            warehouse_id=line.warehouse_id,
            quantity=quantity,
            reason=reason,
            status=ReturnStatus.PENDING,
            requested_by=requested_by,
        )
        self.db.add(request)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("create_return") from e

        logger.info(f"Return {request.id} opened for {quantity} x {line.product_name} on {order.order_number}")
        return request

    async def transition(
        self,
        return_id: uuid.UUID,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[ReturnRequest, InvalidTransition]:
        request = await self.get(return_id)
        if request is None:
            raise EntityNotFound("return", return_id)

        current = request.status
        error = RETURN_MACHINE.check(current, new_status, request.id)
        if error:
            return Outcome.failure(error)
        if new_status == ReturnStatus.COMPLETED and request.warehouse_id is None:
            raise ValueError(f"Return {request.id} has no warehouse to restock")

        values = {"status": new_status}
        if new_status == ReturnStatus.COMPLETED:
            values["completed_at"] = datetime.now(timezone.utc)

        try:
            if not await write_status(self.db, request, current, values):
                actual = await current_status(self.db, request)
                await self.db.commit()
                error = InvalidTransition("return", request.id, actual, new_status)
                logger.info(error.message)
                return Outcome.failure(error)

            await self.history.record("return", request.id, current, new_status, changed_by, note)
            if new_status == ReturnStatus.COMPLETED:
                # The ledger's commit also commits the status change above
                await self.ledger.release(
                    request.product_id,
                    request.warehouse_id,
                    request.quantity,
                    reason=request.reason,
                    reference_type="return",
                    reference_id=request.id,
                    created_by=changed_by,
                )
            else:
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("return_transition") from e
        except StorageUnavailable:
            await self.db.rollback()
            raise

        logger.info(f"Return {request.id} is now {new_status}")
        return Outcome.success(request)
