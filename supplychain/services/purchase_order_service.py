"""
Supplier purchase orders.

A warehouse raises a purchase order for one product; the supplier approves
or rejects it; delivery of an approved order is the warehouse receipt and
adds the quantity to stock with a `purchase_order` ledger movement.
"""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.core.errors import EntityNotFound, InvalidTransition, StorageUnavailable
from supplychain.core.results import Outcome
from supplychain.core.state_machine import PURCHASE_ORDER_MACHINE, PurchaseOrderStatus
from supplychain.models.product import Product
from supplychain.models.purchase_order import PurchaseOrder
from supplychain.models.warehouse import Warehouse
from supplychain.services.event_publisher import EventPublisher
from supplychain.services.inventory_ledger import InventoryLedger
from supplychain.services.status_history_service import StatusHistoryService
from supplychain.services.status_writes import current_status, write_status

logger = logging.getLogger(__name__)

RECEIPT_REFERENCE = "purchase_order"


def generate_po_number() -> str:
    """PO number: PO-YYYYMMDD-XXXXXX"""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"PO-{today}-{uuid.uuid4().hex[:6].upper()}"


class PurchaseOrderService:

    def __init__(self, db: AsyncSession, events: Optional[EventPublisher] = None):
        self.db = db
        self.ledger = InventoryLedger(db, events)
        self.history = StatusHistoryService(db)

    async def get(self, purchase_order_id: uuid.UUID) -> Optional[PurchaseOrder]:
        return await self.db.get(PurchaseOrder, purchase_order_id)

    async def get_or_raise(self, purchase_order_id: uuid.UUID) -> PurchaseOrder:
        purchase_order = await self.get(purchase_order_id)
        if purchase_order is None:
            raise EntityNotFound("purchase_order", purchase_order_id)
        return purchase_order

    async def list(
        self,
        supplier_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
    ) -> List[PurchaseOrder]:
        stmt = select(PurchaseOrder).order_by(PurchaseOrder.created_at.desc())
        if supplier_id:
            stmt = stmt.where(PurchaseOrder.supplier_id == supplier_id)
        if status:
            stmt = stmt.where(PurchaseOrder.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create(
        self,
        supplier_id: uuid.UUID,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        quantity: int,
        unit_cost: Decimal,
        notes: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> PurchaseOrder:
        """Raise a pending purchase order. Creation writes no history entry."""
        if quantity <= 0:
            raise ValueError("Purchase order quantity must be positive")
        if unit_cost is None or Decimal(unit_cost) < 0:
            raise ValueError("Unit cost cannot be negative")
        if await self.db.get(Product, product_id) is None:
            raise ValueError(f"Product {product_id} not found")
        if await self.db.get(Warehouse, warehouse_id) is None:
            raise ValueError(f"Warehouse {warehouse_id} not found")

        purchase_order = PurchaseOrder(
            po_number=generate_po_number(),
            supplier_id=supplier_id,
            product_id=product_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            unit_cost=Decimal(unit_cost),
            notes=notes,
            status=PurchaseOrderStatus.PENDING,
            created_by=created_by,
        )
        self.db.add(purchase_order)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("create_purchase_order") from e

        logger.info(f"Raised {purchase_order.po_number}: {quantity} x {product_id} from supplier {supplier_id}")
        return purchase_order

    async def transition(
        self,
        purchase_order_id: uuid.UUID,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[PurchaseOrder, InvalidTransition]:
        """
        Approve, reject or receive a purchase order.

        Receiving adds the ordered quantity to the warehouse in the same
        commit as the status change, and only the writer that moved the
        order out of `approved` does so.
        """
        purchase_order = await self.get_or_raise(purchase_order_id)
        current = purchase_order.status

        error = PURCHASE_ORDER_MACHINE.check(current, new_status, purchase_order.id)
        if error:
            return Outcome.failure(error)

        now = datetime.now(timezone.utc)
        values = {"status": new_status}
        if new_status == PurchaseOrderStatus.APPROVED:
            values["approved_at"] = now
        elif new_status == PurchaseOrderStatus.DELIVERED:
            values["delivered_at"] = now

        try:
            if not await write_status(self.db, purchase_order, current, values):
                actual = await current_status(self.db, purchase_order)
                await self.db.commit()
                error = InvalidTransition("purchase_order", purchase_order.id, actual, new_status)
                logger.info(error.message)
                return Outcome.failure(error)

            await self.history.record(
                "purchase_order", purchase_order.id, current, new_status, changed_by, note
            )
            if new_status == PurchaseOrderStatus.DELIVERED:
                await self.ledger.release(
                    purchase_order.product_id,
                    purchase_order.warehouse_id,
                    purchase_order.quantity,
                    reason=f"Received {purchase_order.po_number}",
                    reference_type=RECEIPT_REFERENCE,
                    reference_id=purchase_order.id,
                    created_by=changed_by,
                )
            else:
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("purchase_order_transition") from e
        except StorageUnavailable:
            await self.db.rollback()
            raise

        logger.info(f"Purchase order {purchase_order.po_number} is now {new_status}")
        return Outcome.success(purchase_order)
