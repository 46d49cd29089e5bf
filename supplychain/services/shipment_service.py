"""Shipment creation and status changes."""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.core.errors import InvalidTransition
from supplychain.core.results import Outcome
from supplychain.core.state_machine import SHIPMENT_MACHINE, ShipmentStatus
from supplychain.models.order import Order
from supplychain.models.shipment import Shipment
from supplychain.services.status_history_service import StatusHistoryService

logger = logging.getLogger(__name__)


def generate_tracking_number() -> str:
    return f"TRK{uuid.uuid4().hex[:12].upper()}"


class ShipmentService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.history = StatusHistoryService(db)

    async def get(self, shipment_id: uuid.UUID) -> Optional[Shipment]:
        return await self.db.get(Shipment, shipment_id)

    async def list_for_order(self, order_id: uuid.UUID) -> List[Shipment]:
        result = await self.db.execute(
            select(Shipment)
            .where(Shipment.order_id == order_id)
            .order_by(Shipment.shipment_date)
        )
        return list(result.scalars().all())

    async def create(
        self,
        order: Order,
        warehouse_id: uuid.UUID,
        carrier_id: uuid.UUID,
    ) -> Shipment:
        """
        Open a pending shipment from one warehouse and attach the order's
        lines sourced there. Flushes; does not commit.
        """
        shipment = Shipment(
            id=uuid.uuid4(),
            order_id=order.id,
            warehouse_id=warehouse_id,
            carrier_id=carrier_id,
            tracking_number=generate_tracking_number(),
            status=ShipmentStatus.PENDING,
        )
        order.shipments.append(shipment)
        for line in order.lines:
            if line.shipment_id is None and line.warehouse_id in (warehouse_id, None):
                line.shipment_id = shipment.id
                if line.warehouse_id is None:
                    line.warehouse_id = warehouse_id
        await self.db.flush()
        return shipment

    async def apply_transition(
        self,
        shipment: Shipment,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[Shipment, InvalidTransition]:
        """Change shipment status with a history entry. Does not commit."""
        error = SHIPMENT_MACHINE.check(shipment.status, new_status, shipment.id)
        if error:
            return Outcome.failure(error)

        old_status = shipment.status
        shipment.status = new_status
        if new_status == ShipmentStatus.DELIVERED:
            shipment.delivered_at = datetime.now(timezone.utc)

        await self.history.record("shipment", shipment.id, old_status, new_status, changed_by, note)
        return Outcome.success(shipment)
