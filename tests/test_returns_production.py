import asyncio
import uuid
from decimal import Decimal

import pytest

from supplychain.core.errors import EntityNotFound
from supplychain.schemas.catalog import ProductCreate
from supplychain.services.catalog_service import CatalogService
from supplychain.services.fulfillment_service import FulfillmentService
from supplychain.services.inventory_ledger import InventoryLedger
from supplychain.services.order_service import OrderLineInput
from supplychain.services.payment_service import OfflineGateway
from supplychain.services.production_service import ProductionService
from supplychain.services.return_service import ReturnService
from supplychain.services.status_history_service import StatusHistoryService


async def delivered_order(db, world, stock, events, customer_id, quantity=3):
    await stock(world.widget, world.north, 10)
    service = FulfillmentService(db, gateway=OfflineGateway(), events=events)
    placed = await service.place_order(customer_id, [OrderLineInput(world.widget.id, quantity)], world.carrier.id)
    await service.mark_shippable(placed.order.id)
    outcome = await service.mark_delivered(placed.order.id)
    return outcome.value


# ==================== Returns ====================

@pytest.mark.asyncio
async def test_completed_return_restocks_source_warehouse(db, world, stock, events, customer_id):
    order = await delivered_order(db, world, stock, events, customer_id)
    service = ReturnService(db, events)
    ledger = InventoryLedger(db, events)

    request = await service.create(order.id, world.widget.id, 2, "Damaged in transit", customer_id)
    assert request.status == "pending"
    assert request.warehouse_id == world.north.id

    for status in ("approved", "processing", "completed"):
        outcome = await service.transition(request.id, status)
        assert outcome.ok, status

    assert outcome.value.completed_at is not None
    assert await ledger.quantity(world.widget.id, world.north.id) == 9
    [movement] = await ledger.movements(world.widget.id, reference_type="return")
    assert movement.quantity_delta == 2
    assert movement.reference_id == request.id
    history = await StatusHistoryService(db).history("return", request.id)
    assert [h.new_status for h in history] == ["approved", "processing", "completed"]


@pytest.mark.asyncio
async def test_stale_return_completion_restocks_once(
    session_factory, db, world, stock, events, customer_id
):
    order = await delivered_order(db, world, stock, events, customer_id)
    service = ReturnService(db, events)
    request = await service.create(order.id, world.widget.id, 2, "Damaged in transit")
    for status in ("approved", "processing"):
        await service.transition(request.id, status)
    request_id = request.id

    async with session_factory() as first, session_factory() as second:
        stale = ReturnService(first, events)
        assert (await stale.get(request_id)).status == "processing"

        completed = await ReturnService(second, events).transition(request_id, "completed")
        late = await stale.transition(request_id, "completed")

    assert completed.ok
    assert not late.ok
    assert late.error.from_status == "completed"
    ledger = InventoryLedger(db, events)
    assert await ledger.quantity(world.widget.id, world.north.id) == 9
    assert len(await ledger.movements(world.widget.id, reference_type="return")) == 1
    history = await StatusHistoryService(db).history("return", request_id)
    assert [h.new_status for h in history] == ["approved", "processing", "completed"]


@pytest.mark.asyncio
async def test_return_cannot_skip_approval(db, world, stock, events, customer_id):
    order = await delivered_order(db, world, stock, events, customer_id)
    service = ReturnService(db, events)
    request = await service.create(order.id, world.widget.id, 1, "Wrong size")

    outcome = await service.transition(request.id, "completed")

    assert not outcome.ok
    assert outcome.error.from_status == "pending"
    assert await InventoryLedger(db, events).quantity(world.widget.id, world.north.id) == 7


@pytest.mark.asyncio
async def test_return_quantity_is_bounded_by_the_line(db, world, stock, events, customer_id):
    order = await delivered_order(db, world, stock, events, customer_id, quantity=3)
    service = ReturnService(db, events)
    await service.create(order.id, world.widget.id, 2, "Too many")

    with pytest.raises(ValueError, match="only 1 left"):
        await service.create(order.id, world.widget.id, 2, "Still too many")


@pytest.mark.asyncio
async def test_rejected_return_frees_its_quantity(db, world, stock, events, customer_id):
    order = await delivered_order(db, world, stock, events, customer_id, quantity=2)
    service = ReturnService(db, events)
    first = await service.create(order.id, world.widget.id, 2, "Changed my mind")
    await service.transition(first.id, "rejected")

    second = await service.create(order.id, world.widget.id, 2, "Really changed my mind")

    assert second.status == "pending"


@pytest.mark.asyncio
async def test_return_requires_delivered_order(db, world, stock, events, customer_id):
    await stock(world.widget, world.north, 10)
    placed = await FulfillmentService(db, gateway=OfflineGateway(), events=events).place_order(
        customer_id, [OrderLineInput(world.widget.id, 1)], world.carrier.id
    )

    with pytest.raises(ValueError, match="delivered"):
        await ReturnService(db, events).create(placed.order.id, world.widget.id, 1, "Not needed")


@pytest.mark.asyncio
async def test_return_for_unknown_order_raises(db, events):
    with pytest.raises(EntityNotFound):
        await ReturnService(db, events).create(uuid.uuid4(), uuid.uuid4(), 1, "Lost")


# ==================== Production ====================

@pytest.mark.asyncio
async def test_completed_production_adds_stock(db, world, events):
    service = ProductionService(db, events)
    ledger = InventoryLedger(db, events)
    run = await service.create(world.gadget.id, world.south.id, 25)

    started = await service.transition(run.id, "in_progress")
    assert started.value.start_date is not None
    finished = await service.transition(run.id, "completed")

    assert finished.ok
    assert finished.value.end_date is not None
    assert await ledger.quantity(world.gadget.id, world.south.id) == 25
    [movement] = await ledger.movements(world.gadget.id, reference_type="production")
    assert movement.reference_id == run.id


@pytest.mark.asyncio
async def test_concurrent_completions_add_output_once(session_factory, db, world, events):
    service = ProductionService(db, events)
    run = await service.create(world.gadget.id, world.south.id, 5)
    await service.transition(run.id, "in_progress")
    run_id = run.id

    async def complete():
        async with session_factory() as session:
            outcome = await ProductionService(session, events).transition(run_id, "completed")
            return outcome.ok

    results = await asyncio.gather(complete(), complete())

    assert sorted(results) == [False, True]
    ledger = InventoryLedger(db, events)
    assert await ledger.quantity(world.gadget.id, world.south.id) == 5
    assert len(await ledger.movements(world.gadget.id, reference_type="production")) == 1
    history = await StatusHistoryService(db).history("production_order", run_id)
    assert [h.new_status for h in history] == ["in_progress", "completed"]


@pytest.mark.asyncio
async def test_cancelled_production_adds_nothing(db, world, events):
    service = ProductionService(db, events)
    run = await service.create(world.gadget.id, world.south.id, 5)

    outcome = await service.transition(run.id, "cancelled")

    assert outcome.ok
    assert outcome.value.end_date is not None
    assert await InventoryLedger(db, events).quantity(world.gadget.id, world.south.id) is None
    assert not (await service.transition(run.id, "in_progress")).ok


@pytest.mark.asyncio
async def test_production_validates_input(db, world, events):
    service = ProductionService(db, events)

    with pytest.raises(ValueError):
        await service.create(world.gadget.id, world.south.id, 0)
    with pytest.raises(ValueError):
        await service.create(uuid.uuid4(), world.south.id, 1)
    with pytest.raises(ValueError):
        await service.create(world.gadget.id, uuid.uuid4(), 1)


# ==================== Catalog ====================

@pytest.mark.asyncio
async def test_warehouse_with_inventory_cannot_be_deleted(db, world, stock):
    await stock(world.widget, world.north, 1)
    catalog = CatalogService(db)

    with pytest.raises(ValueError, match="inventory records"):
        await catalog.delete_warehouse(world.north.id)

    await catalog.delete_warehouse(world.south.id)
    assert [w.code for w in await catalog.get_warehouses()] == ["NORTH"]


@pytest.mark.asyncio
async def test_duplicate_sku_is_rejected(db, world):
    with pytest.raises(ValueError, match="already exists"):
        await CatalogService(db).create_product(
            ProductCreate(sku="WID-001", name="Widget again", unit_price=Decimal("1.00"))
        )


@pytest.mark.asyncio
async def test_negative_price_is_rejected(db, world):
    with pytest.raises(ValueError):
        await CatalogService(db).update_price(world.widget.id, Decimal("-1"))
