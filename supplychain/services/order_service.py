"""
Order aggregate.

Owns order creation and every order status change. Status writes are
conditional on the status that was checked, so two concurrent transitions
out of the same state cannot both succeed.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.config import settings
from supplychain.core.errors import EntityNotFound, InvalidTransition, StorageUnavailable
from supplychain.core.results import Outcome
from supplychain.core.state_machine import ORDER_MACHINE, OrderStatus
from supplychain.models.order import Order, OrderLine
from supplychain.models.product import Product
from supplychain.services.event_publisher import (
    DomainEvent,
    EventPublisher,
    EventType,
    get_event_publisher,
)
from supplychain.services.status_history_service import StatusHistoryService
from supplychain.services.status_writes import current_status, write_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLineInput:
    """Requested line. warehouse_id pins the line to one warehouse."""
    product_id: uuid.UUID
    quantity: int
    warehouse_id: Optional[uuid.UUID] = None


# Timestamp column stamped when an order enters each status
STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

STATUS_EVENTS = {
    OrderStatus.CONFIRMED: EventType.ORDER_CONFIRMED,
    OrderStatus.SHIPPED: EventType.ORDER_SHIPPED,
    OrderStatus.DELIVERED: EventType.ORDER_DELIVERED,
    OrderStatus.CANCELLED: EventType.ORDER_CANCELLED,
}


def validate_lines(lines: List[OrderLineInput]) -> None:
    """Reject malformed line lists before anything is written."""
    if not lines:
        raise ValueError("Order must contain at least one line")
    seen = set()
    for line in lines:
        if line.quantity is None or line.quantity <= 0:
            raise ValueError(f"Quantity for product {line.product_id} must be positive")
        if line.product_id in seen:
            raise ValueError(f"Product {line.product_id} appears in more than one line")
        seen.add(line.product_id)


def generate_order_number() -> str:
    """Order number: ORD-YYYYMMDD-XXXXXXXX"""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"ORD-{today}-{uuid.uuid4().hex[:8].upper()}"


class OrderService:

    def __init__(self, db: AsyncSession, events: Optional[EventPublisher] = None):
        self.db = db
        self.events = events or get_event_publisher()
        self.history = StatusHistoryService(db)

    # ==================== Queries ====================

    async def get(self, order_id: uuid.UUID) -> Optional[Order]:
        """Load an order with lines, shipments and payments, refreshed from the database."""
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise EntityNotFound("order", order_id)
        return order

    async def list(
        self,
        customer_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """Paginated orders, newest first."""
        filters = []
        if customer_id:
            filters.append(Order.customer_id == customer_id)
        if status:
            filters.append(Order.status == status)

        count_stmt = select(func.count(Order.id))
        stmt = select(Order).order_by(Order.created_at.desc())
        if filters:
            count_stmt = count_stmt.where(*filters)
            stmt = stmt.where(*filters)

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    @staticmethod
    def total(order: Order) -> Decimal:
        """Order value at the prices frozen when it was placed."""
        return order.total_amount

    async def current_value(self, order: Order) -> Decimal:
        """What the same lines would cost at today's catalog prices."""
        product_ids = [line.product_id for line in order.lines]
        result = await self.db.execute(
            select(Product.id, Product.unit_price).where(Product.id.in_(product_ids))
        )
        prices = {row.id: Decimal(row.unit_price) for row in result.all()}
        return sum(
            (prices.get(line.product_id, Decimal(line.unit_price_at_order)) * line.quantity
             for line in order.lines),
            Decimal("0.00"),
        )

    # ==================== Creation ====================

    async def create(
        self,
        customer_id: uuid.UUID,
        lines: List[OrderLineInput],
        created_by: Optional[uuid.UUID] = None,
        order_id: Optional[uuid.UUID] = None,
        commit: bool = True,
    ) -> Order:
        """
        Create a pending order, snapshotting each product's current price.

        Creation is not a transition and writes no history entry.
        """
        validate_lines(lines)
        products = await self.load_products([line.product_id for line in lines])

        now = datetime.now(timezone.utc)
        order = Order(
            id=order_id or uuid.uuid4(),
            order_number=generate_order_number(),
            customer_id=customer_id,
            status=OrderStatus.PENDING,
            payment_failed=False,
            order_date=now,
            expected_delivery_date=now + timedelta(days=settings.DEFAULT_DELIVERY_DAYS),
            lines=[],
            shipments=[],
            payments=[],
        )
        for line in lines:
            product = products[line.product_id]
            order.lines.append(OrderLine(
                id=uuid.uuid4(),
                product_id=product.id,
                warehouse_id=line.warehouse_id,
                product_name=product.name,
                unit_price_at_order=product.unit_price,
                quantity=line.quantity,
            ))

        self.db.add(order)
        try:
            await self.db.flush()
            if commit:
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create order for customer {customer_id}: {e}")
            raise StorageUnavailable("create_order") from e

        logger.info(f"Created order {order.order_number} with {len(order.lines)} lines")
        return order

    async def load_products(self, product_ids: List[uuid.UUID]) -> Dict[uuid.UUID, Product]:
        result = await self.db.execute(
            select(Product).where(Product.id.in_(product_ids), Product.is_active == True)  # noqa: E712
        )
        products = {product.id: product for product in result.scalars().all()}
        missing = [str(pid) for pid in product_ids if pid not in products]
        if missing:
            raise ValueError(f"Unknown or inactive products: {', '.join(missing)}")
        return products

    # ==================== Transitions ====================

    async def apply_transition(
        self,
        order: Order,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[Order, InvalidTransition]:
        """
        Move an order along its state machine inside the current transaction.

        Does not commit. The status is re-read from the database and the write
        only matches that status, so a concurrent transition makes this one
        fail with InvalidTransition from the status actually found.
        """
        current = await current_status(self.db, order)
        if current is None:
            raise EntityNotFound("order", order.id)

        error = ORDER_MACHINE.check(current, new_status, order.id)
        if error:
            return Outcome.failure(error)

        now = datetime.now(timezone.utc)
        values = {"status": new_status, "updated_at": now}
        stamp = STATUS_TIMESTAMPS.get(new_status)
        if stamp:
            values[stamp] = now

        if not await write_status(self.db, order, current, values):
            actual = await current_status(self.db, order)
            return Outcome.failure(InvalidTransition("order", order.id, actual, new_status))

        await self.history.record("order", order.id, current, new_status, changed_by, note)
        return Outcome.success(order)

    async def transition(
        self,
        order_id: uuid.UUID,
        new_status: str,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[Order, InvalidTransition]:
        """Apply one transition as its own unit of work."""
        order = await self.get_or_raise(order_id)
        try:
            outcome = await self.apply_transition(order, new_status, changed_by, note)
            # A rejected transition wrote nothing; commit just ends the transaction
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Order {order_id} transition to {new_status} failed: {e}")
            raise StorageUnavailable("order_transition") from e
        except StorageUnavailable:
            await self.db.rollback()
            raise

        if not outcome.ok:
            logger.info(outcome.error.message)
            return outcome

        logger.info(f"Order {order.order_number} is now {new_status}")
        await self.publish_status(order)
        return outcome

    async def publish_status(self, order: Order) -> None:
        """Emit the domain event for the order's current status, if it has one."""
        event_name = STATUS_EVENTS.get(order.status)
        if event_name:
            await self.events.publish(DomainEvent(event_name, {
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "status": order.status,
            }))
