"""
Pytest configuration and fixtures for the fulfillment core.

Every test gets its own SQLite file database so concurrent sessions behave
like separate connections to a real server.
"""
import os
import uuid
from decimal import Decimal
from types import SimpleNamespace
from typing import List

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_supplychain.db"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PAYMENT_GATEWAY"] = "offline"

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from supplychain import models  # noqa: E402,F401
from supplychain.database import Base, custom_json_dumps  # noqa: E402
from supplychain.schemas.catalog import CarrierCreate, ProductCreate, WarehouseCreate  # noqa: E402
from supplychain.services.catalog_service import CatalogService  # noqa: E402
from supplychain.services.event_publisher import DomainEvent, EventPublisher  # noqa: E402
from supplychain.services.inventory_ledger import InventoryLedger  # noqa: E402


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'supplychain.db'}",
        poolclass=NullPool,
        json_serializer=custom_json_dumps,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class EventRecorder:
    """Collects every published event."""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def __call__(self, event: DomainEvent):
        self.events.append(event)

    def named(self, name: str) -> List[DomainEvent]:
        return [event for event in self.events if event.name == name]


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def events(recorder):
    publisher = EventPublisher()
    publisher.subscribe(EventPublisher.WILDCARD, recorder)
    return publisher


@pytest.fixture
def customer_id():
    return uuid.uuid4()


@pytest_asyncio.fixture
async def world(db):
    """Two products, two warehouses and a carrier; no stock yet."""
    catalog = CatalogService(db)
    widget = await catalog.create_product(
        ProductCreate(sku="WID-001", name="Widget", unit_price=Decimal("10.00"))
    )
    gadget = await catalog.create_product(
        ProductCreate(sku="GAD-001", name="Gadget", unit_price=Decimal("25.50"))
    )
    north = await catalog.create_warehouse(WarehouseCreate(code="NORTH", name="North Hub"))
    south = await catalog.create_warehouse(WarehouseCreate(code="SOUTH", name="South Hub"))
    carrier = await catalog.create_carrier(CarrierCreate(code="FAST", name="Fast Freight"))
    return SimpleNamespace(widget=widget, gadget=gadget, north=north, south=south, carrier=carrier)


@pytest.fixture
def stock(db, events):
    """Set opening stock: await stock(product, warehouse, quantity)."""
    async def _stock(product, warehouse, quantity):
        await InventoryLedger(db, events).ensure_record(product.id, warehouse.id, quantity)
    return _stock
