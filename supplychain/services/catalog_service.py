"""Products, warehouses and carriers."""
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.core.errors import EntityNotFound, StorageUnavailable
from supplychain.models.inventory import InventoryRecord
from supplychain.models.product import Carrier, Product
from supplychain.models.warehouse import Warehouse
from supplychain.schemas.catalog import CarrierCreate, ProductCreate, WarehouseCreate

logger = logging.getLogger(__name__)


class CatalogService:

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== PRODUCT METHODS ====================

    async def get_products(
        self,
        supplier_id: Optional[uuid.UUID] = None,
        include_inactive: bool = False,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[Product], int]:
        stmt = select(Product).order_by(Product.name)
        count_stmt = select(func.count(Product.id))

        if supplier_id:
            stmt = stmt.where(Product.supplier_id == supplier_id)
            count_stmt = count_stmt.where(Product.supplier_id == supplier_id)
        if not include_inactive:
            stmt = stmt.where(Product.is_active == True)  # noqa: E712
            count_stmt = count_stmt.where(Product.is_active == True)  # noqa: E712

        total = (await self.db.execute(count_stmt)).scalar() or 0
        result = await self.db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def get_product(self, product_id: uuid.UUID) -> Optional[Product]:
        return await self.db.get(Product, product_id)

    async def create_product(self, data: ProductCreate) -> Product:
        product = Product(
            sku=data.sku,
            name=data.name,
            unit_price=data.unit_price,
            supplier_id=data.supplier_id,
        )
        self.db.add(product)
        await self._commit(f"SKU '{data.sku}' already exists", "create_product")
        return product

    async def update_price(self, product_id: uuid.UUID, unit_price: Decimal) -> Product:
        """Change the catalog price. Orders already placed keep their snapshot."""
        if unit_price is None or Decimal(unit_price) < 0:
            raise ValueError("Price cannot be negative")
        product = await self.get_product(product_id)
        if product is None:
            raise EntityNotFound("product", product_id)

        old_price = product.unit_price
        product.unit_price = Decimal(unit_price)
        product.updated_at = datetime.now(timezone.utc)
        await self._commit(None, "update_price")
        logger.info(f"Price of {product.sku} changed from {old_price} to {product.unit_price}")
        return product

    # ==================== WAREHOUSE METHODS ====================

    async def get_warehouses(self, include_inactive: bool = False) -> List[Warehouse]:
        stmt = select(Warehouse).order_by(Warehouse.code)
        if not include_inactive:
            stmt = stmt.where(Warehouse.is_active == True)  # noqa: E712
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_warehouse(self, warehouse_id: uuid.UUID) -> Optional[Warehouse]:
        return await self.db.get(Warehouse, warehouse_id)

    async def first_active_warehouse(self) -> Optional[Warehouse]:
        result = await self.db.execute(
            select(Warehouse)
            .where(Warehouse.is_active == True)  # noqa: E712
            .order_by(Warehouse.created_at, Warehouse.code)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_warehouse(self, data: WarehouseCreate) -> Warehouse:
        warehouse = Warehouse(code=data.code, name=data.name, location=data.location)
        self.db.add(warehouse)
        await self._commit(f"Warehouse code '{data.code}' already exists", "create_warehouse")
        return warehouse

    async def delete_warehouse(self, warehouse_id: uuid.UUID) -> None:
        """Delete a warehouse that has never held inventory."""
        warehouse = await self.get_warehouse(warehouse_id)
        if warehouse is None:
            raise EntityNotFound("warehouse", warehouse_id)

        records = await self.db.scalar(
            select(func.count(InventoryRecord.id)).where(InventoryRecord.warehouse_id == warehouse_id)
        )
        if records:
            raise ValueError(
                f"Warehouse {warehouse.code} still has {records} inventory records and cannot be deleted"
            )

        await self.db.delete(warehouse)
        await self._commit(f"Warehouse {warehouse.code} is still referenced", "delete_warehouse")

    # ==================== CARRIER METHODS ====================

    async def get_carriers(self, include_inactive: bool = False) -> List[Carrier]:
        stmt = select(Carrier).order_by(Carrier.code)
        if not include_inactive:
            stmt = stmt.where(Carrier.is_active == True)  # noqa: E712
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_carrier(self, carrier_id: uuid.UUID) -> Optional[Carrier]:
        return await self.db.get(Carrier, carrier_id)

    async def first_active_carrier(self) -> Optional[Carrier]:
        result = await self.db.execute(
            select(Carrier)
            .where(Carrier.is_active == True)  # noqa: E712
            .order_by(Carrier.created_at, Carrier.code)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_carrier(self, data: CarrierCreate) -> Carrier:
        carrier = Carrier(code=data.code, name=data.name)
        self.db.add(carrier)
        await self._commit(f"Carrier code '{data.code}' already exists", "create_carrier")
        return carrier

    async def _commit(self, conflict_message: Optional[str], step: str) -> None:
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValueError(conflict_message or str(e.orig)) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Catalog {step} failed: {e}")
            raise StorageUnavailable(step) from e
