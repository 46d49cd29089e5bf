from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from supplychain.api.deps import DB, Actor, CurrentActor, Role, require_roles
from supplychain.schemas.catalog import (
    CarrierCreate,
    CarrierResponse,
    ProductCreate,
    ProductPriceUpdate,
    ProductResponse,
    WarehouseCreate,
    WarehouseResponse,
)
from supplychain.services.catalog_service import CatalogService


router = APIRouter()


# ==================== Products ====================

@router.get("/products", response_model=list[ProductResponse], tags=["Products"])
async def list_products(
    db: DB,
    actor: CurrentActor,
    supplier_id: Optional[uuid.UUID] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    products, _ = await CatalogService(db).get_products(supplier_id=supplier_id, skip=skip, limit=limit)
    return [ProductResponse.model_validate(p) for p in products]


@router.post(
    "/products",
    response_model=ProductResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Products"],
)
async def create_product(
    data: ProductCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER)),
):
    """Create a product. Suppliers always own the products they create."""
    if actor.role == Role.SUPPLIER:
        data = data.model_copy(update={"supplier_id": actor.user_id})
    product = await CatalogService(db).create_product(data)
    return ProductResponse.model_validate(product)


@router.get("/products/{product_id}", response_model=ProductResponse, tags=["Products"])
async def get_product(product_id: uuid.UUID, db: DB, actor: CurrentActor):
    product = await CatalogService(db).get_product(product_id)
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found"
        )
    return ProductResponse.model_validate(product)


@router.patch("/products/{product_id}/price", response_model=ProductResponse, tags=["Products"])
async def update_product_price(
    product_id: uuid.UUID,
    data: ProductPriceUpdate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.SUPPLIER)),
):
    """Change a product's price. Placed orders keep the price they were placed at."""
    service = CatalogService(db)
    product = await service.get_product(product_id)
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found"
        )
    if actor.role == Role.SUPPLIER and product.supplier_id != actor.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Suppliers can only reprice their own products"
        )
    product = await service.update_price(product_id, data.unit_price)
    return ProductResponse.model_validate(product)


# ==================== Warehouses ====================

@router.get("/warehouses", response_model=list[WarehouseResponse], tags=["Warehouses"])
async def list_warehouses(db: DB, actor: CurrentActor):
    warehouses = await CatalogService(db).get_warehouses()
    return [WarehouseResponse.model_validate(w) for w in warehouses]


@router.post(
    "/warehouses",
    response_model=WarehouseResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Warehouses"],
)
async def create_warehouse(
    data: WarehouseCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    warehouse = await CatalogService(db).create_warehouse(data)
    return WarehouseResponse.model_validate(warehouse)


@router.delete(
    "/warehouses/{warehouse_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Warehouses"],
)
async def delete_warehouse(
    warehouse_id: uuid.UUID,
    db: DB,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
):
    """Delete a warehouse. Refused while it still has inventory records."""
    await CatalogService(db).delete_warehouse(warehouse_id)


# ==================== Carriers ====================

@router.get("/carriers", response_model=list[CarrierResponse], tags=["Carriers"])
async def list_carriers(db: DB, actor: CurrentActor):
    carriers = await CatalogService(db).get_carriers()
    return [CarrierResponse.model_validate(c) for c in carriers]


@router.post(
    "/carriers",
    response_model=CarrierResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Carriers"],
)
async def create_carrier(
    data: CarrierCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
):
    carrier = await CatalogService(db).create_carrier(data)
    return CarrierResponse.model_validate(carrier)
