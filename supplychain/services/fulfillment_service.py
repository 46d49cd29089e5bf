"""
Fulfillment Orchestrator.

Turns a validated cart into a confirmed, paid order with shipments:

1. validate lines, products and carrier
2. reserve every line (fixed product order), compensating all on any shortfall
3. create the pending order with price snapshots
4. open one shipment per source warehouse
5. charge the order total
6. confirm

Steps 3-6 commit together. Reservations commit one by one ahead of them, so
any failure after step 2 releases them again with `order_rollback`
movements and refunds a charge that was already captured. What to release is
read back from the ledger, which also covers a reservation that committed
after its step had already timed out.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Awaitable, Dict, List, Optional, Tuple, TypeVar, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.config import settings
from supplychain.core.errors import (
    InsufficientStock,
    InvalidTransition,
    PaymentFailed,
    StorageUnavailable,
)
from supplychain.core.results import Outcome
from supplychain.core.state_machine import (
    ORDER_MACHINE,
    OrderStatus,
    PaymentStatus,
    ShipmentStatus,
)
from supplychain.models.order import Order
from supplychain.models.payment import PaymentRecord
from supplychain.models.shipment import Shipment
from supplychain.services.catalog_service import CatalogService
from supplychain.services.event_publisher import (
    DomainEvent,
    EventPublisher,
    EventType,
    get_event_publisher,
)
from supplychain.services.inventory_ledger import InventoryLedger, Reservation
from supplychain.services.order_service import OrderLineInput, OrderService, validate_lines
from supplychain.services.payment_service import PaymentGateway, PaymentService
from supplychain.services.shipment_service import ShipmentService

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLLBACK_REFERENCE = "order_rollback"
CANCEL_REFERENCE = "order_cancelled"


class FulfillmentOutcome:
    FULFILLED = "fulfilled"
    FULFILLED_WITHOUT_PAYMENT = "fulfilled_without_payment"
    REJECTED = "rejected"


@dataclass
class PlaceOrderResult:
    """Result of a checkout attempt."""
    outcome: str
    order: Optional[Order] = None
    shipments: List[Shipment] = field(default_factory=list)
    payment: Optional[PaymentRecord] = None
    errors: List[Union[InsufficientStock, PaymentFailed]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome != FulfillmentOutcome.REJECTED


class FulfillmentService:
    """
    Coordinates ledger, orders, shipments and payments for one checkout.

    Every external call and unit of work runs under a per-step timeout; a
    timeout is treated exactly like a storage failure.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        events: Optional[EventPublisher] = None,
        step_timeout: Optional[float] = None,
    ):
        self.db = db
        self.events = events or get_event_publisher()
        self.ledger = InventoryLedger(db, self.events)
        self.orders = OrderService(db, self.events)
        self.shipments = ShipmentService(db)
        self.payments = PaymentService(db, gateway)
        self.catalog = CatalogService(db)
        self.step_timeout = step_timeout or settings.FULFILLMENT_STEP_TIMEOUT_SECONDS

    async def _bounded(self, step: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.step_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Fulfillment step '{step}' timed out after {self.step_timeout}s")
            raise StorageUnavailable(step, f"Step '{step}' timed out after {self.step_timeout}s") from e

    # ==================== Checkout ====================

    async def place_order(
        self,
        customer_id: uuid.UUID,
        lines: List[OrderLineInput],
        carrier_id: uuid.UUID,
        created_by: Optional[uuid.UUID] = None,
        payment_method: Optional[str] = None,
        confirm: bool = True,
    ) -> PlaceOrderResult:
        # Step 1: validate
        validate_lines(lines)
        carrier = await self.catalog.get_carrier(carrier_id)
        if carrier is None or not carrier.is_active:
            raise ValueError(f"Unknown or inactive carrier {carrier_id}")
        products = await self.orders.load_products([line.product_id for line in lines])
        names = {pid: product.name for pid, product in products.items()}

        order_id = uuid.uuid4()
        actor = created_by or customer_id

        # Step 2: reserve in a fixed product order
        reserved: List[Reservation] = []
        shortages: List[InsufficientStock] = []
        try:
            for line in sorted(lines, key=lambda item: str(item.product_id)):
                outcome = await self._bounded("reserve", self.ledger.reserve_any(
                    line.product_id,
                    line.quantity,
                    reference_type="order",
                    reference_id=order_id,
                    created_by=actor,
                    warehouse_id=line.warehouse_id,
                ))
                if outcome.ok:
                    reserved.append(outcome.value)
                else:
                    shortages.append(replace(outcome.error, product_name=names[line.product_id]))
        except StorageUnavailable:
            await self.db.rollback()
            await self._compensate(order_id, actor)
            raise

        if shortages:
            await self._compensate(order_id, actor)
            for shortage in shortages:
                logger.info(shortage.message)
            return PlaceOrderResult(outcome=FulfillmentOutcome.REJECTED, errors=list(shortages))

        source = {r.product_id: r.warehouse_id for r in reserved}
        sourced_lines = [
            OrderLineInput(line.product_id, line.quantity, source[line.product_id])
            for line in lines
        ]

        # Steps 3-6: one transaction
        step = "create_order"
        captured_reference = None
        captured_amount = None
        payment_error: Optional[PaymentFailed] = None
        try:
            order = await self._bounded(step, self.orders.create(
                customer_id, sourced_lines, created_by=actor, order_id=order_id, commit=False,
            ))

            step = "create_shipments"
            for warehouse_id in OrderedDict.fromkeys(line.warehouse_id for line in order.lines):
                await self._bounded(step, self.shipments.create(order, warehouse_id, carrier_id))

            step = "capture_payment"
            payment = await self._bounded(step, self.payments.create_for_order(order, payment_method))
            payment_error = await self._bounded(step, self.payments.capture(payment, actor))
            if payment_error is None:
                captured_reference = payment.gateway_reference
                captured_amount = payment.amount
            else:
                order.payment_failed = True

            if confirm:
                step = "confirm_order"
                transition = await self._bounded(step, self.orders.apply_transition(
                    order, OrderStatus.CONFIRMED, actor, note="Placed and reserved",
                ))
                if not transition.ok:
                    raise StorageUnavailable(step, transition.error.message)

            step = "commit"
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Placing order {order_id} failed at '{step}': {e}")
            try:
                await self._compensate(order_id, actor)
            finally:
                if captured_reference:
                    await self._refund_captured(order_id, captured_reference, captured_amount)
            if isinstance(e, SQLAlchemyError):
                raise StorageUnavailable(step) from e
            raise

        order = await self.orders.get(order_id)
        logger.info(
            f"Placed order {order.order_number}: {len(order.lines)} lines, "
            f"{len(order.shipments)} shipments, total {order.total_amount}"
        )

        if order.status == OrderStatus.CONFIRMED:
            await self.orders.publish_status(order)
        if payment_error:
            await self._payment_failed(payment_error)
            return PlaceOrderResult(
                outcome=FulfillmentOutcome.FULFILLED_WITHOUT_PAYMENT,
                order=order,
                shipments=list(order.shipments),
                payment=order.payments[-1] if order.payments else None,
                errors=[payment_error],
            )

        return PlaceOrderResult(
            outcome=FulfillmentOutcome.FULFILLED,
            order=order,
            shipments=list(order.shipments),
            payment=order.payments[-1] if order.payments else None,
        )

    async def _compensate(
        self,
        order_id: uuid.UUID,
        actor: Optional[uuid.UUID],
        reservations: Optional[List[Reservation]] = None,
    ) -> None:
        """
        Give back reservations taken for order_id: the given ones, or by
        default everything the ledger shows the order still holding.
        """
        if reservations is None:
            holdings = await self.ledger.net_out_by_reference(order_id)
        else:
            holdings = {}
            for reservation in reservations:
                key = (reservation.product_id, reservation.warehouse_id)
                holdings[key] = holdings.get(key, 0) + reservation.quantity

        await self._release(
            holdings, order_id, actor, ROLLBACK_REFERENCE,
            reason=f"Compensating reservation for order {order_id}",
        )

    async def _release(
        self,
        holdings: Dict[Tuple[uuid.UUID, uuid.UUID], int],
        order_id: uuid.UUID,
        actor: Optional[uuid.UUID],
        reference_type: str,
        reason: str,
    ) -> List[Reservation]:
        """
        Put held stock back, one ledger commit per (product, warehouse).

        Every release is attempted. The ones that fail are named together in
        a single StorageUnavailable raised after the rest have gone through.
        """
        released: List[Reservation] = []
        unreleased: List[str] = []
        for product_id, warehouse_id in sorted(holdings, key=lambda pair: (str(pair[0]), str(pair[1]))):
            quantity = holdings[(product_id, warehouse_id)]
            if quantity <= 0:
                continue
            try:
                released.append(await self.ledger.release(
                    product_id,
                    warehouse_id,
                    quantity,
                    reason=reason,
                    reference_type=reference_type,
                    reference_id=order_id,
                    created_by=actor,
                ))
            except StorageUnavailable as e:
                logger.error(
                    f"Could not release {quantity} x {product_id} at {warehouse_id} "
                    f"for order {order_id}: {e.message}"
                )
                unreleased.append(f"{quantity} x {product_id} at {warehouse_id}")

        if unreleased:
            raise StorageUnavailable(
                "release_stock",
                f"Order {order_id} still holds {'; '.join(unreleased)}",
            )
        return released

    async def _refund_captured(self, order_id: uuid.UUID, reference: str, amount) -> None:
        result = await self.payments.gateway.refund(reference, amount)
        if result.success:
            logger.info(f"Refunded captured payment {reference} for abandoned order {order_id}")
        else:
            logger.error(f"Refund of {reference} for abandoned order {order_id} failed: {result.reason}")

    async def _payment_failed(self, error: PaymentFailed) -> None:
        await self.events.publish(DomainEvent(EventType.PAYMENT_FAILED, {
            "order_id": error.order_id,
            "payment_id": error.payment_id,
            "reason": error.reason,
        }))

    # ==================== Post-placement ====================

    async def confirm_fulfillment(
        self,
        order_id: uuid.UUID,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Outcome[Order, Union[List[InsufficientStock], InvalidTransition]]:
        """
        Confirm a pending order, reserving any line that does not hold stock yet.

        A shortfall releases what this call reserved and leaves the order pending.
        """
        order = await self.orders.get_or_raise(order_id)
        error = ORDER_MACHINE.check(order.status, OrderStatus.CONFIRMED, order.id)
        if error:
            return Outcome.failure(error)

        held = await self.ledger.net_out_by_reference(order.id)
        acquired: List[Reservation] = []
        shortages: List[InsufficientStock] = []

        for line in sorted(order.lines, key=lambda item: str(item.product_id)):
            holding = sum(
                quantity for (product_id, warehouse_id), quantity in held.items()
                if product_id == line.product_id
                and (line.warehouse_id is None or warehouse_id == line.warehouse_id)
            )
            missing = line.quantity - holding
            if missing <= 0:
                continue

            outcome = await self.ledger.reserve_any(
                line.product_id,
                missing,
                reference_type="order",
                reference_id=order.id,
                created_by=changed_by,
                warehouse_id=line.warehouse_id,
            )
            if outcome.ok:
                acquired.append(outcome.value)
                if line.warehouse_id is None:
                    line.warehouse_id = outcome.value.warehouse_id
            else:
                shortages.append(replace(outcome.error, product_name=line.product_name))

        if shortages:
            await self._compensate(order.id, changed_by, acquired)
            return Outcome.failure(shortages)

        try:
            transition = await self.orders.apply_transition(order, OrderStatus.CONFIRMED, changed_by)
            if not transition.ok:
                await self.db.rollback()
                await self._compensate(order.id, changed_by, acquired)
                return transition
            await self.db.commit()
        except (SQLAlchemyError, StorageUnavailable) as e:
            await self.db.rollback()
            await self._compensate(order.id, changed_by, acquired)
            if isinstance(e, StorageUnavailable):
                raise
            raise StorageUnavailable("confirm_fulfillment") from e

        await self.orders.publish_status(order)
        return Outcome.success(await self.orders.get(order.id))

    async def mark_shippable(
        self,
        order_id: uuid.UUID,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Outcome[Order, InvalidTransition]:
        """
        Move a confirmed order to shipped through processing and put its
        shipments in transit. A warehouse whose lines have no open shipment
        gets one on the way.
        """
        order = await self.orders.get_or_raise(order_id)
        if order.status not in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
            return Outcome.failure(InvalidTransition("order", order.id, order.status, OrderStatus.SHIPPED))

        try:
            open_shipments = [s for s in order.shipments if s.status != ShipmentStatus.CANCELLED]
            open_shipments.extend(await self._open_missing_shipments(order, open_shipments))

            for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
                if order.status == status:
                    continue
                transition = await self.orders.apply_transition(order, status, changed_by)
                if not transition.ok:
                    await self.db.rollback()
                    return transition

            for shipment in open_shipments:
                if shipment.status == ShipmentStatus.PENDING:
                    await self.shipments.apply_transition(shipment, ShipmentStatus.IN_TRANSIT, changed_by)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Shipping order {order_id} failed: {e}")
            raise StorageUnavailable("mark_shippable") from e
        except (StorageUnavailable, ValueError):
            await self.db.rollback()
            raise

        await self.orders.publish_status(order)
        return Outcome.success(await self.orders.get(order.id))

    async def _open_missing_shipments(self, order: Order, open_shipments: List[Shipment]) -> List[Shipment]:
        """
        Make sure every line travels on an open shipment from its warehouse,
        creating one per warehouse that has none and linking unshipped lines.
        """
        by_warehouse = {shipment.warehouse_id: shipment for shipment in open_shipments}
        open_ids = {shipment.id for shipment in open_shipments}
        carrier_id = open_shipments[0].carrier_id if open_shipments else None
        created: List[Shipment] = []

        for line in order.lines:
            if line.shipment_id in open_ids:
                continue

            warehouse_id = line.warehouse_id
            if warehouse_id is None:
                warehouse = await self.catalog.first_active_warehouse()
                if warehouse is None:
                    raise ValueError("No active warehouse available to ship from")
                warehouse_id = warehouse.id

            shipment = by_warehouse.get(warehouse_id)
            if shipment is None:
                if carrier_id is None:
                    carrier = await self.catalog.first_active_carrier()
                    if carrier is None:
                        raise ValueError("No active carrier available")
                    carrier_id = carrier.id
                shipment = await self.shipments.create(order, warehouse_id, carrier_id)
                by_warehouse[warehouse_id] = shipment
                open_ids.add(shipment.id)
                created.append(shipment)
                logger.warning(
                    f"Order {order.order_number} lines at warehouse {warehouse_id} had no shipment; "
                    f"created {shipment.tracking_number}"
                )

            line.warehouse_id = warehouse_id
            line.shipment_id = shipment.id

        return created

    async def mark_delivered(
        self,
        order_id: uuid.UUID,
        changed_by: Optional[uuid.UUID] = None,
    ) -> Outcome[Order, InvalidTransition]:
        order = await self.orders.get_or_raise(order_id)
        try:
            transition = await self.orders.apply_transition(order, OrderStatus.DELIVERED, changed_by)
            if not transition.ok:
                await self.db.commit()
                return transition
            for shipment in order.shipments:
                if shipment.status == ShipmentStatus.IN_TRANSIT:
                    await self.shipments.apply_transition(shipment, ShipmentStatus.DELIVERED, changed_by)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("mark_delivered") from e
        except StorageUnavailable:
            await self.db.rollback()
            raise

        await self.orders.publish_status(order)
        return Outcome.success(await self.orders.get(order.id))

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        changed_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[Order, InvalidTransition]:
        """
        Cancel before shipping: cancel shipments, refund a captured payment,
        then give the held stock back with `order_cancelled` movements.

        A release that fails leaves the order cancelled and raises
        StorageUnavailable; release_held_stock gives back the rest.
        """
        order = await self.orders.get_or_raise(order_id)
        try:
            transition = await self.orders.apply_transition(order, OrderStatus.CANCELLED, changed_by, note)
            if not transition.ok:
                await self.db.commit()
                return transition

            for shipment in order.shipments:
                if shipment.status == ShipmentStatus.PENDING:
                    await self.shipments.apply_transition(shipment, ShipmentStatus.CANCELLED, changed_by, note)
            for payment in order.payments:
                if payment.status == PaymentStatus.COMPLETED:
                    await self.payments.refund(payment, changed_by, note="Order cancelled")
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("cancel_order") from e
        except (StorageUnavailable, ValueError):
            await self.db.rollback()
            raise

        # The conditional status write above admits one canceller
        try:
            await self._release(
                await self.ledger.net_out_by_reference(order.id),
                order.id,
                changed_by,
                CANCEL_REFERENCE,
                reason=note or f"Order {order.order_number} cancelled",
            )
        finally:
            logger.info(f"Cancelled order {order.order_number}")
            await self.orders.publish_status(order)
        return Outcome.success(await self.orders.get(order.id))

    async def release_held_stock(
        self,
        order_id: uuid.UUID,
        changed_by: Optional[uuid.UUID] = None,
    ) -> List[Reservation]:
        """
        Give back whatever a cancelled order still holds.

        The amounts come from the ledger, so running this again after a partly
        failed cancellation releases only what is left, and a fully released
        order gets nothing.
        """
        order = await self.orders.get_or_raise(order_id)
        if order.status != OrderStatus.CANCELLED:
            raise ValueError(
                f"Order {order.order_number} is {order.status}; only cancelled orders give back stock"
            )

        released = await self._release(
            await self.ledger.net_out_by_reference(order.id),
            order.id,
            changed_by,
            CANCEL_REFERENCE,
            reason=f"Order {order.order_number} cancelled",
        )
        if released:
            logger.info(f"Released {len(released)} holdings left by cancelled order {order.order_number}")
        return released

    async def retry_payment(
        self,
        order_id: uuid.UUID,
        changed_by: Optional[uuid.UUID] = None,
        method: Optional[str] = None,
    ) -> Outcome[PaymentRecord, PaymentFailed]:
        """Charge an order again after a failed capture."""
        order = await self.orders.get_or_raise(order_id)
        if not order.payment_failed:
            raise ValueError(f"Order {order.order_number} has no failed payment to retry")
        if order.status == OrderStatus.CANCELLED:
            raise ValueError(f"Order {order.order_number} is cancelled")

        failed = next((p for p in reversed(order.payments) if p.status == PaymentStatus.FAILED), None)
        try:
            if failed is not None:
                await self.payments.apply_transition(failed, PaymentStatus.PENDING, changed_by, note="Retry")
                if method:
                    failed.method = method
                payment = failed
            else:
                payment = await self.payments.create_for_order(order, method)

            error = await self._bounded("capture_payment", self.payments.capture(payment, changed_by))
            if error is None:
                order.payment_failed = False
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StorageUnavailable("retry_payment") from e
        except StorageUnavailable:
            await self.db.rollback()
            raise

        if error:
            await self._payment_failed(error)
            return Outcome.failure(error)
        logger.info(f"Payment for order {order.order_number} captured on retry")
        return Outcome.success(payment)
