import asyncio
import logging
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from supplychain.core.errors import InsufficientStock, PaymentFailed, StorageUnavailable
from supplychain.models.order import Order
from supplychain.services.event_publisher import EventType
from supplychain.services.fulfillment_service import FulfillmentOutcome, FulfillmentService
from supplychain.services.inventory_ledger import InventoryLedger
from supplychain.services.order_service import OrderLineInput, OrderService
from supplychain.services.payment_service import DecliningGateway, GatewayResult, OfflineGateway
from supplychain.services.status_history_service import StatusHistoryService


class RecordingGateway(OfflineGateway):
    """Accepts charges and remembers refunds."""

    def __init__(self):
        self.charges = []
        self.refunds = []

    async def charge(self, amount, reference, method):
        result = await super().charge(amount, reference, method)
        self.charges.append((result.reference, amount))
        return result

    async def refund(self, gateway_reference, amount):
        self.refunds.append((gateway_reference, amount))
        return GatewayResult(success=True, reference=gateway_reference)


class SlowGateway(OfflineGateway):

    async def charge(self, amount, reference, method):
        await asyncio.sleep(5)
        return await super().charge(amount, reference, method)


async def order_count(db) -> int:
    return await db.scalar(select(func.count(Order.id)))


# ==================== Checkout ====================

@pytest.mark.asyncio
async def test_end_to_end_checkout(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    ledger = InventoryLedger(db, events)

    result = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 3)], world.carrier.id)

    assert result.outcome == FulfillmentOutcome.FULFILLED
    order = result.order
    assert order.status == "confirmed"
    assert not order.payment_failed
    assert await ledger.quantity(world.widget.id, world.north.id) == 7

    out = [m for m in await ledger.movements(world.widget.id) if m.movement_type == "out"]
    assert len(out) == 1
    assert out[0].quantity_delta == -3
    assert out[0].reference_id == order.id

    history = await StatusHistoryService(db).history("order", order.id)
    assert [(h.old_status, h.new_status) for h in history] == [("pending", "confirmed")]

    second = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 8)], world.carrier.id)

    assert second.outcome == FulfillmentOutcome.REJECTED
    [error] = second.errors
    assert isinstance(error, InsufficientStock)
    assert error.product_id == world.widget.id
    assert error.requested == 8
    assert error.available == 7
    assert error.product_name == "Widget"
    assert await ledger.quantity(world.widget.id, world.north.id) == 7
    assert await order_count(db) == 1


@pytest.mark.asyncio
async def test_checkout_creates_shipment_and_payment(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    await stock(world.gadget, world.north, 10)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)

    result = await service.place_order(customer_id, [
        OrderLineInput(world.widget.id, 2),
        OrderLineInput(world.gadget.id, 1),
    ], world.carrier.id)

    [shipment] = result.shipments
    assert shipment.warehouse_id == world.north.id
    assert shipment.carrier_id == world.carrier.id
    assert shipment.status == "pending"
    assert shipment.tracking_number.startswith("TRK")
    assert all(line.shipment_id == shipment.id for line in result.order.lines)

    assert result.payment.status == "completed"
    assert result.payment.amount == Decimal("45.50")
    assert result.payment.method == "credit_card"


@pytest.mark.asyncio
async def test_lines_from_different_warehouses_get_separate_shipments(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    await stock(world.gadget, world.south, 5)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)

    result = await service.place_order(customer_id, [
        OrderLineInput(world.widget.id, 1),
        OrderLineInput(world.gadget.id, 1),
    ], world.carrier.id)

    assert result.success
    assert {s.warehouse_id for s in result.shipments} == {world.north.id, world.south.id}
    by_product = {line.product_id: line for line in result.order.lines}
    assert by_product[world.widget.id].warehouse_id == world.north.id
    assert by_product[world.gadget.id].warehouse_id == world.south.id


@pytest.mark.asyncio
async def test_partial_shortage_rolls_back_every_reservation(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    await stock(world.gadget, world.north, 1)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    ledger = InventoryLedger(db, events)

    result = await service.place_order(customer_id, [
        OrderLineInput(world.widget.id, 4),
        OrderLineInput(world.gadget.id, 2),
    ], world.carrier.id)

    assert result.outcome == FulfillmentOutcome.REJECTED
    assert [e.product_id for e in result.errors] == [world.gadget.id]
    assert await ledger.quantity(world.widget.id, world.north.id) == 10
    assert await ledger.quantity(world.gadget.id, world.north.id) == 1
    assert await order_count(db) == 0

    widget_moves = [m for m in await ledger.movements(world.widget.id) if m.movement_type != "adjustment"]
    assert sorted((m.movement_type, m.quantity_delta) for m in widget_moves) == [("in", 4), ("out", -4)]
    [rollback] = [m for m in widget_moves if m.movement_type == "in"]
    assert rollback.reference_type == "order_rollback"
    assert await ledger.reconcile() == []


@pytest.mark.asyncio
async def test_every_short_product_is_reported(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 1)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)

    result = await service.place_order(customer_id, [
        OrderLineInput(world.widget.id, 2),
        OrderLineInput(world.gadget.id, 2),
    ], world.carrier.id)

    assert {e.product_id for e in result.errors} == {world.widget.id, world.gadget.id}


@pytest.mark.asyncio
async def test_checkout_validates_input(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)

    with pytest.raises(ValueError):
        await service.place_order(customer_id, [], world.carrier.id)
    with pytest.raises(ValueError):
        await service.place_order(customer_id, [OrderLineInput(world.widget.id, -1)], world.carrier.id)
    with pytest.raises(ValueError):
        await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], uuid.uuid4())

    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 5


@pytest.mark.asyncio
async def test_declined_payment_keeps_order_and_flags_it(db, world, stock, events, recorder, customer_id, caplog):
    await stock(world.widget, world.north, 10)
    service = FulfillmentService(db, gateway=DecliningGateway(), events=events)

    with caplog.at_level(logging.WARNING):
        result = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 2)], world.carrier.id)

    assert result.outcome == FulfillmentOutcome.FULFILLED_WITHOUT_PAYMENT
    assert result.order.status == "confirmed"
    assert result.order.payment_failed
    assert result.payment.status == "failed"
    [error] = result.errors
    assert isinstance(error, PaymentFailed)
    assert error.order_id == result.order.id
    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 8
    assert len(recorder.named(EventType.PAYMENT_FAILED)) == 1
    assert "failed" in caplog.text


@pytest.mark.asyncio
async def test_retry_payment_clears_flag(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    declined = await FulfillmentService(db, gateway=DecliningGateway(), events=events).place_order(
        customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id
    )

    outcome = await FulfillmentService(db, gateway=OfflineGateway(), events=events).retry_payment(
        declined.order.id, customer_id
    )

    assert outcome.ok
    assert outcome.value.status == "completed"
    order = await OrderService(db, events).get(declined.order.id)
    assert not order.payment_failed
    history = await StatusHistoryService(db).history("payment", outcome.value.id)
    assert [h.new_status for h in history] == ["failed", "pending", "completed"]


@pytest.mark.asyncio
async def test_retry_payment_requires_failed_payment(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id)

    with pytest.raises(ValueError):
        await service.retry_payment(placed.order.id, customer_id)


@pytest.mark.asyncio
async def test_timeout_releases_reservations(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    # rollback expires loaded rows, so keep plain ids
    widget_id, north_id = world.widget.id, world.north.id
    service = FulfillmentService(db, gateway=SlowGateway(), events=events, step_timeout=0.05)
    ledger = InventoryLedger(db, events)

    with pytest.raises(StorageUnavailable) as exc_info:
        await service.place_order(customer_id, [OrderLineInput(world.widget.id, 3)], world.carrier.id)

    assert exc_info.value.step == "capture_payment"
    assert await ledger.quantity(widget_id, north_id) == 10
    assert await order_count(db) == 0
    rollbacks = await ledger.movements(widget_id, reference_type="order_rollback")
    assert [m.quantity_delta for m in rollbacks] == [3]


@pytest.mark.asyncio
async def test_storage_failure_after_capture_refunds(db, world, stock, events, customer_id, monkeypatch):
    await stock(world.widget, world.north, 10)
    widget_id, north_id = world.widget.id, world.north.id
    gateway = RecordingGateway()
    service = FulfillmentService(db, gateway=gateway, events=events)

    async def broken_transition(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(service.orders, "apply_transition", broken_transition)

    with pytest.raises(StorageUnavailable) as exc_info:
        await service.place_order(customer_id, [OrderLineInput(world.widget.id, 2)], world.carrier.id)

    assert exc_info.value.step == "confirm_order"
    assert len(gateway.charges) == 1
    assert gateway.refunds == [gateway.charges[0]]
    assert await InventoryLedger(db, events).quantity(widget_id, north_id) == 10
    assert await order_count(db) == 0


@pytest.mark.asyncio
async def test_reservation_committed_after_its_timeout_is_released(
    db, world, stock, events, customer_id, monkeypatch
):
    await stock(world.widget, world.north, 10)
    widget_id, north_id, carrier_id = world.widget.id, world.north.id, world.carrier.id
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events, step_timeout=0.05)
    reserve_any = service.ledger.reserve_any

    async def reserve_then_stall(*args, **kwargs):
        outcome = await reserve_any(*args, **kwargs)
        await asyncio.sleep(1)
        return outcome

    monkeypatch.setattr(service.ledger, "reserve_any", reserve_then_stall)

    with pytest.raises(StorageUnavailable) as exc_info:
        await service.place_order(customer_id, [OrderLineInput(widget_id, 3)], carrier_id)

    assert exc_info.value.step == "reserve"
    ledger = InventoryLedger(db, events)
    assert await ledger.quantity(widget_id, north_id) == 10
    assert await order_count(db) == 0
    assert await ledger.reconcile() == []


@pytest.mark.asyncio
async def test_failed_release_does_not_stop_other_releases_or_the_refund(
    db, world, stock, events, customer_id, monkeypatch
):
    await stock(world.widget, world.north, 10)
    await stock(world.gadget, world.north, 10)
    widget_id, gadget_id, north_id = world.widget.id, world.gadget.id, world.north.id
    carrier_id = world.carrier.id
    gateway = RecordingGateway()
    service = FulfillmentService(db, gateway=gateway, events=events)
    release = service.ledger.release

    async def broken_transition(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    async def release_all_but_widget(product_id, *args, **kwargs):
        if product_id == widget_id:
            raise StorageUnavailable("release")
        return await release(product_id, *args, **kwargs)

    monkeypatch.setattr(service.orders, "apply_transition", broken_transition)
    monkeypatch.setattr(service.ledger, "release", release_all_but_widget)

    with pytest.raises(StorageUnavailable) as exc_info:
        await service.place_order(customer_id, [
            OrderLineInput(widget_id, 2),
            OrderLineInput(gadget_id, 3),
        ], carrier_id)

    assert exc_info.value.step == "release_stock"
    assert str(widget_id) in exc_info.value.message
    assert str(gadget_id) not in exc_info.value.message
    assert gateway.refunds == [gateway.charges[0]]
    ledger = InventoryLedger(db, events)
    assert await ledger.quantity(gadget_id, north_id) == 10
    assert await ledger.quantity(widget_id, north_id) == 8


# ==================== Confirmation ====================

@pytest.mark.asyncio
async def test_confirm_reserves_lines_of_a_plain_order(db, world, stock, events, recorder, customer_id):
    await stock(world.widget, world.north, 5)
    order = await OrderService(db, events).create(customer_id, [OrderLineInput(world.widget.id, 2)])
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)

    outcome = await service.confirm_fulfillment(order.id, uuid.uuid4())

    assert outcome.ok
    assert outcome.value.status == "confirmed"
    assert outcome.value.lines[0].warehouse_id == world.north.id
    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 3
    assert len(recorder.named(EventType.ORDER_CONFIRMED)) == 1


@pytest.mark.asyncio
async def test_confirm_shortfall_leaves_order_pending(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    await stock(world.gadget, world.north, 1)
    order = await OrderService(db, events).create(customer_id, [
        OrderLineInput(world.widget.id, 2),
        OrderLineInput(world.gadget.id, 3),
    ])
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    ledger = InventoryLedger(db, events)

    outcome = await service.confirm_fulfillment(order.id)

    assert not outcome.ok
    assert [e.product_id for e in outcome.error] == [world.gadget.id]
    assert (await OrderService(db, events).get(order.id)).status == "pending"
    assert await ledger.quantity(world.widget.id, world.north.id) == 5
    assert await ledger.quantity(world.gadget.id, world.north.id) == 1


@pytest.mark.asyncio
async def test_confirm_does_not_reserve_twice(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(
        customer_id, [OrderLineInput(world.widget.id, 2)], world.carrier.id, confirm=False
    )
    assert placed.order.status == "pending"

    outcome = await service.confirm_fulfillment(placed.order.id)

    assert outcome.ok
    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 3


@pytest.mark.asyncio
async def test_confirming_twice_is_an_invalid_transition(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id)

    outcome = await service.confirm_fulfillment(placed.order.id)

    assert not outcome.ok
    assert outcome.error.from_status == "confirmed"


# ==================== Shipping and delivery ====================

@pytest.mark.asyncio
async def test_ship_walks_through_processing(db, world, stock, events, recorder, customer_id):
    await stock(world.widget, world.north, 5)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id)

    outcome = await service.mark_shippable(placed.order.id)

    assert outcome.ok
    assert outcome.value.status == "shipped"
    assert outcome.value.shipped_at is not None
    assert [s.status for s in outcome.value.shipments] == ["in_transit"]
    history = await StatusHistoryService(db).history("order", placed.order.id)
    assert [h.new_status for h in history] == ["confirmed", "processing", "shipped"]
    assert len(recorder.named(EventType.ORDER_SHIPPED)) == 1


@pytest.mark.asyncio
async def test_ship_pending_order_is_rejected(db, world, stock, events, customer_id):
    order = await OrderService(db, events).create(customer_id, [OrderLineInput(world.widget.id, 1)])

    outcome = await FulfillmentService(db, gateway=OfflineGateway(), events=events).mark_shippable(order.id)

    assert not outcome.ok
    assert outcome.error.from_status == "pending"
    assert outcome.error.to_status == "shipped"


@pytest.mark.asyncio
async def test_ship_recreates_missing_shipment(db, world, stock, events, customer_id, caplog):
    await stock(world.widget, world.south, 5)
    order = await OrderService(db, events).create(customer_id, [OrderLineInput(world.widget.id, 1)])
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    await service.confirm_fulfillment(order.id)

    with caplog.at_level(logging.WARNING):
        outcome = await service.mark_shippable(order.id)

    assert outcome.ok
    [shipment] = outcome.value.shipments
    assert shipment.warehouse_id == world.south.id
    assert shipment.carrier_id == world.carrier.id
    assert shipment.status == "in_transit"
    assert outcome.value.lines[0].shipment_id == shipment.id
    assert "had no shipment" in caplog.text


@pytest.mark.asyncio
async def test_ship_opens_a_shipment_per_source_warehouse(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    await stock(world.gadget, world.south, 5)
    order = await OrderService(db, events).create(customer_id, [
        OrderLineInput(world.widget.id, 1),
        OrderLineInput(world.gadget.id, 1),
    ])
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    await service.confirm_fulfillment(order.id)

    outcome = await service.mark_shippable(order.id)

    assert outcome.ok
    shipments = outcome.value.shipments
    assert len(shipments) == 2
    assert {s.warehouse_id for s in shipments} == {world.north.id, world.south.id}
    assert all(s.status == "in_transit" for s in shipments)
    by_warehouse = {s.warehouse_id: s.id for s in shipments}
    for line in outcome.value.lines:
        assert line.shipment_id == by_warehouse[line.warehouse_id]


@pytest.mark.asyncio
async def test_deliver_after_shipping(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 5)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id)

    early = await service.mark_delivered(placed.order.id)
    assert not early.ok

    await service.mark_shippable(placed.order.id)
    outcome = await service.mark_delivered(placed.order.id)

    assert outcome.ok
    assert outcome.value.status == "delivered"
    assert [s.status for s in outcome.value.shipments] == ["delivered"]


# ==================== Cancellation ====================

@pytest.mark.asyncio
async def test_cancel_releases_stock_and_refunds(db, world, stock, events, recorder, customer_id):
    await stock(world.widget, world.north, 10)
    gateway = RecordingGateway()
    service = FulfillmentService(db, gateway=gateway, events=events)
    ledger = InventoryLedger(db, events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 4)], world.carrier.id)

    outcome = await service.cancel_order(placed.order.id, customer_id, note="Changed my mind")

    assert outcome.ok
    order = outcome.value
    assert order.status == "cancelled"
    assert order.cancelled_at is not None
    assert [s.status for s in order.shipments] == ["cancelled"]
    assert [p.status for p in order.payments] == ["refunded"]
    assert len(gateway.refunds) == 1
    assert await ledger.quantity(world.widget.id, world.north.id) == 10
    [release] = await ledger.movements(world.widget.id, reference_type="order_cancelled")
    assert release.quantity_delta == 4
    assert release.reference_id == order.id
    assert len(recorder.named(EventType.ORDER_CANCELLED)) == 1

    again = await service.cancel_order(placed.order.id)
    assert not again.ok
    assert await ledger.quantity(world.widget.id, world.north.id) == 10


@pytest.mark.asyncio
async def test_cancel_after_shipping_is_rejected(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id)
    await service.mark_shippable(placed.order.id)

    outcome = await service.cancel_order(placed.order.id)

    assert not outcome.ok
    assert outcome.error.from_status == "shipped"
    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 9


@pytest.mark.asyncio
async def test_release_held_stock_finishes_a_partly_failed_cancellation(
    db, world, stock, events, recorder, customer_id, monkeypatch
):
    await stock(world.widget, world.north, 10)
    await stock(world.gadget, world.north, 10)
    widget_id, gadget_id, north_id = world.widget.id, world.gadget.id, world.north.id
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    ledger = InventoryLedger(db, events)
    placed = await service.place_order(customer_id, [
        OrderLineInput(widget_id, 2),
        OrderLineInput(gadget_id, 3),
    ], world.carrier.id)
    order_id = placed.order.id
    release = service.ledger.release

    async def release_all_but_widget(product_id, *args, **kwargs):
        if product_id == widget_id:
            raise StorageUnavailable("release")
        return await release(product_id, *args, **kwargs)

    monkeypatch.setattr(service.ledger, "release", release_all_but_widget)

    with pytest.raises(StorageUnavailable):
        await service.cancel_order(order_id, customer_id)

    assert (await OrderService(db, events).get(order_id)).status == "cancelled"
    assert await ledger.quantity(widget_id, north_id) == 8
    assert await ledger.quantity(gadget_id, north_id) == 10
    assert len(recorder.named(EventType.ORDER_CANCELLED)) == 1

    monkeypatch.setattr(service.ledger, "release", release)
    [released] = await service.release_held_stock(order_id, uuid.uuid4())

    assert released.product_id == widget_id
    assert released.quantity == 2
    assert await ledger.quantity(widget_id, north_id) == 10
    assert await service.release_held_stock(order_id) == []
    assert await ledger.quantity(widget_id, north_id) == 10
    assert await ledger.quantity(gadget_id, north_id) == 10
    assert await ledger.reconcile() == []


@pytest.mark.asyncio
async def test_release_held_stock_requires_a_cancelled_order(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id)

    with pytest.raises(ValueError, match="only cancelled orders"):
        await service.release_held_stock(placed.order.id)

    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 9
