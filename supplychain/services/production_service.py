"""
Production orders.

Manufacturing runs against a product and a destination warehouse. Completing
a run adds its output to the warehouse through the inventory ledger, except
for runs that fulfil a purchase order: their goods enter stock when the
purchase order is delivered.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.core.errors import EntityNotFound, InvalidTransition, StorageUnavailable
from supplychain.core.results import Outcome
from supplychain.core.state_machine import PRODUCTION_MACHINE, ProductionStatus, PurchaseOrderStatus
from supplychain.models.product import Product
from supplychain.models.production import ProductionOrder
from supplychain.models.purchase_order import PurchaseOrder
from supplychain.models.warehouse import Warehouse
from supplychain.services.event_publisher import EventPublisher
from supplychain.services.inventory_ledger import InventoryLedger
from supplychain.services.status_history_service import StatusHistoryService
from supplychain.services.status_writes import current_status, write_status

logger = logging.getLogger(__name__)


class ProductionService:

    def __init__(self, db: AsyncSession, events: Optional[EventPublisher] = None):
        self.db = db
        self.ledger = InventoryLedger(db, events)
        self.history = StatusHistoryService(db)

    async def get(self, production_id: uuid.UUID) -> Optional[ProductionOrder]:
        return await self.db.get(ProductionOrder, production_id)

    async def list(
        self,
        product_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
    ) -> List[ProductionOrder]:
        stmt = select(ProductionOrder).order_by(ProductionOrder.created_at.desc())
        if product_id:
            stmt = stmt.where(ProductionOrder.product_id == product_id)
        if status:
            stmt = stmt.where(ProductionOrder.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        quantity: int,
        purchase_order_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> ProductionOrder:
        if quantity <= 0:
            raise ValueError("Production quantity must be positive")
        if await self.db.get(Product, product_id) is None:
            raise ValueError(f"Product {product_id} not found")
        if await self.db.get(Warehouse, warehouse_id) is None:
            raise ValueError(f"Warehouse {warehouse_id} not found")
        if purchase_order_id is not None:
            purchase_order = await self.db.get(PurchaseOrder, purchase_order_id)
            if purchase_order is None:
                raise ValueError(f"Purchase order {purchase_order_id} not found")
            if purchase_order.status != PurchaseOrderStatus.APPROVED:
                raise ValueError(
                    f"Production needs an approved purchase order; "
                    f"{purchase_order.po_number} is {purchase_order.status}"
                )
            if purchase_order.product_id != product_id:
                raise ValueError(f"Purchase order {purchase_order.po_number} is for a different product")

        production = ProductionOrder(
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            purchase_order_id=purchase_order_id,
            notes=notes,
            status=ProductionStatus.PENDING,
            created_by=created_by,
        )
        self.db.add(production)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("create_production_order") from e
        return production

    async def transition(
        self,
        production_id: uuid.UUID,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[ProductionOrder, InvalidTransition]:
        production = await self.get(production_id)
        if production is None:
            raise EntityNotFound("production_order", production_id)

        current = production.status
        error = PRODUCTION_MACHINE.check(current, new_status, production.id)
        if error:
            return Outcome.failure(error)

        now = datetime.now(timezone.utc)
        values = {"status": new_status}
        if new_status == ProductionStatus.IN_PROGRESS:
            values["start_date"] = now
        elif new_status in (ProductionStatus.COMPLETED, ProductionStatus.CANCELLED):
            values["end_date"] = now

        try:
            if not await write_status(self.db, production, current, values):
                actual = await current_status(self.db, production)
                await self.db.commit()
                error = InvalidTransition("production_order", production.id, actual, new_status)
                logger.info(error.message)
                return Outcome.failure(error)

            await self.history.record(
                "production_order", production.id, current, new_status, changed_by, note
            )
            # Output of a purchase-order run is received through the purchase order
            if new_status == ProductionStatus.COMPLETED and production.purchase_order_id is None:
                # Output and status change commit together
                await self.ledger.release(
                    production.product_id,
                    production.warehouse_id,
                    production.quantity,
                    reason=f"Production run {production.id}",
                    reference_type="production",
                    reference_id=production.id,
                    created_by=changed_by,
                )
            else:
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("production_transition") from e
        except StorageUnavailable:
            await self.db.rollback()
            raise

        logger.info(f"Production order {production.id} is now {new_status}")
        return Outcome.success(production)
