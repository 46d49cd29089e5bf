from typing import Optional
import uuid

from fastapi import APIRouter, Depends, Query, status

from supplychain.api.deps import DB, Actor, CurrentActor, Role, conflict, require_roles
from supplychain.schemas.inventory import (
    AvailabilityResponse,
    DiscrepancyResponse,
    InventoryRecordCreate,
    MovementResponse,
    ReservationResponse,
    StockLevelResponse,
    StockReceive,
    StockSet,
    StockTransfer,
)
from supplychain.services.inventory_ledger import InventoryLedger


router = APIRouter(tags=["Inventory"])


@router.get("", response_model=list[StockLevelResponse])
async def list_stock(
    db: DB,
    actor: CurrentActor,
    product_id: Optional[uuid.UUID] = None,
    warehouse_id: Optional[uuid.UUID] = None,
):
    """Per-warehouse stock levels."""
    levels = await InventoryLedger(db).stock_levels(product_id=product_id, warehouse_id=warehouse_id)
    return [StockLevelResponse.model_validate(level) for level in levels]


@router.get("/movements", response_model=list[MovementResponse])
async def list_movements(
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE, Role.SUPPLIER)),
    product_id: Optional[uuid.UUID] = None,
    warehouse_id: Optional[uuid.UUID] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[uuid.UUID] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    """Stock movement log, oldest first."""
    movements = await InventoryLedger(db).movements(
        product_id=product_id,
        warehouse_id=warehouse_id,
        reference_type=reference_type,
        reference_id=reference_id,
        skip=skip,
        limit=limit,
    )
    return [MovementResponse.model_validate(movement) for movement in movements]


@router.get("/reconciliation", response_model=list[DiscrepancyResponse])
async def reconcile(
    db: DB,
    actor: Actor = Depends(require_roles(Role.ADMIN)),
    product_id: Optional[uuid.UUID] = None,
):
    """Counters that disagree with their movement log. Empty when the ledger is consistent."""
    discrepancies = await InventoryLedger(db).reconcile(product_id=product_id)
    return [DiscrepancyResponse.model_validate(d) for d in discrepancies]


@router.get("/{product_id}", response_model=AvailabilityResponse)
async def get_availability(product_id: uuid.UUID, db: DB, actor: CurrentActor):
    """Total availability of a product across warehouses."""
    ledger = InventoryLedger(db)
    levels = await ledger.stock_levels(product_id=product_id)
    return AvailabilityResponse(
        product_id=product_id,
        total_quantity=await ledger.availability(product_id),
        warehouses=[StockLevelResponse.model_validate(level) for level in levels],
    )


@router.post("/records", response_model=StockLevelResponse, status_code=status.HTTP_201_CREATED)
async def assign_product(
    data: InventoryRecordCreate,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Pair a product with a warehouse, optionally with opening stock."""
    level = await InventoryLedger(db).ensure_record(
        data.product_id, data.warehouse_id, data.initial_quantity, created_by=actor.user_id
    )
    return StockLevelResponse.model_validate(level)


@router.put("/stock", response_model=StockLevelResponse)
async def set_stock(
    data: StockSet,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Set the absolute quantity held (stock count correction)."""
    ledger = InventoryLedger(db)
    await ledger.set_exact(data.product_id, data.warehouse_id, data.quantity, actor.user_id, data.note)
    quantity = await ledger.quantity(data.product_id, data.warehouse_id)
    return StockLevelResponse(product_id=data.product_id, warehouse_id=data.warehouse_id, quantity=quantity or 0)


@router.post("/receive", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def receive_stock(
    data: StockReceive,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE, Role.SUPPLIER)),
):
    """Add inbound stock to a warehouse."""
    reservation = await InventoryLedger(db).release(
        data.product_id,
        data.warehouse_id,
        data.quantity,
        reason=data.reason,
        movement_type=data.movement_type,
        reference_type=data.reference_type,
        reference_id=data.reference_id,
        created_by=actor.user_id,
    )
    return ReservationResponse.model_validate(reservation)


@router.post("/transfer", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def transfer_stock(
    data: StockTransfer,
    db: DB,
    actor: Actor = Depends(require_roles(Role.WAREHOUSE)),
):
    """Move stock between two warehouses."""
    outcome = await InventoryLedger(db).transfer(
        data.product_id,
        data.from_warehouse_id,
        data.to_warehouse_id,
        data.quantity,
        created_by=actor.user_id,
        note=data.note,
    )
    if not outcome.ok:
        raise conflict(outcome.error)
    return ReservationResponse.model_validate(outcome.value)
