"""
Inventory Ledger.

Authoritative stock counter per (product, warehouse) plus the append-only
movement log that explains every change to it.

Every mutation is one transaction: a conditional UPDATE on the counter, one
movement row per side, commit. The conditional UPDATE is the concurrency
control: two reservations racing for the last units are serialized by the
database, and the loser sees zero rows returned instead of a negative count.

Quantities are read as columns rather than through ORM entities so a stale
identity map never feeds a decision.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from supplychain.config import settings
from supplychain.core.errors import InsufficientStock, StorageUnavailable
from supplychain.core.results import Outcome
from supplychain.models.inventory import InventoryRecord, InventoryMovement, MovementType
from supplychain.services.event_publisher import (
    DomainEvent,
    EventPublisher,
    EventType,
    get_event_publisher,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """One applied stock change."""
    product_id: uuid.UUID
    warehouse_id: uuid.UUID
    quantity: int
    balance_after: int
    movement_id: uuid.UUID


@dataclass(frozen=True)
class StockLevel:
    product_id: uuid.UUID
    warehouse_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """Counter that does not equal the sum of its movements."""
    product_id: uuid.UUID
    warehouse_id: uuid.UUID
    quantity: int
    movement_total: int

    @property
    def drift(self) -> int:
        return self.quantity - self.movement_total


class InventoryLedger:

    def __init__(self, db: AsyncSession, events: Optional[EventPublisher] = None):
        self.db = db
        self.events = events or get_event_publisher()

    # ==================== Reads ====================

    async def quantity(self, product_id: uuid.UUID, warehouse_id: uuid.UUID) -> Optional[int]:
        """Current quantity, or None when the pair has no record."""
        return await self.db.scalar(
            select(InventoryRecord.quantity).where(
                InventoryRecord.product_id == product_id,
                InventoryRecord.warehouse_id == warehouse_id,
            )
        )

    async def availability(self, product_id: uuid.UUID) -> int:
        """Total quantity across all warehouses."""
        total = await self.db.scalar(
            select(func.coalesce(func.sum(InventoryRecord.quantity), 0))
            .where(InventoryRecord.product_id == product_id)
        )
        return int(total or 0)

    async def stock_levels(
        self,
        product_id: Optional[uuid.UUID] = None,
        warehouse_id: Optional[uuid.UUID] = None,
    ) -> List[StockLevel]:
        query = select(
            InventoryRecord.product_id,
            InventoryRecord.warehouse_id,
            InventoryRecord.quantity,
        )
        if product_id:
            query = query.where(InventoryRecord.product_id == product_id)
        if warehouse_id:
            query = query.where(InventoryRecord.warehouse_id == warehouse_id)
        query = query.order_by(InventoryRecord.quantity.desc(), InventoryRecord.warehouse_id)

        result = await self.db.execute(query)
        return [StockLevel(row.product_id, row.warehouse_id, row.quantity) for row in result.all()]

    async def movements(
        self,
        product_id: Optional[uuid.UUID] = None,
        warehouse_id: Optional[uuid.UUID] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[InventoryMovement]:
        """Movements oldest first, optionally filtered."""
        query = select(InventoryMovement)
        if product_id:
            query = query.where(InventoryMovement.product_id == product_id)
        if warehouse_id:
            query = query.where(InventoryMovement.warehouse_id == warehouse_id)
        if reference_type:
            query = query.where(InventoryMovement.reference_type == reference_type)
        if reference_id:
            query = query.where(InventoryMovement.reference_id == reference_id)
        query = query.order_by(InventoryMovement.created_at, InventoryMovement.id).offset(skip)
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def net_out_by_reference(self, reference_id: uuid.UUID) -> dict:
        """
        Units currently held against a reference, keyed by (product_id, warehouse_id).

        Positive values mean stock was taken out and not yet given back.
        """
        result = await self.db.execute(
            select(
                InventoryMovement.product_id,
                InventoryMovement.warehouse_id,
                func.sum(InventoryMovement.quantity_delta).label("net"),
            )
            .where(InventoryMovement.reference_id == reference_id)
            .group_by(InventoryMovement.product_id, InventoryMovement.warehouse_id)
        )
        return {
            (row.product_id, row.warehouse_id): -int(row.net)
            for row in result.all()
            if row.net
        }

    async def reconcile(self, product_id: Optional[uuid.UUID] = None) -> List[LedgerDiscrepancy]:
        """
        Compare every counter with the sum of its movement deltas.

        Opening stock is itself a movement, so a healthy ledger returns [].
        """
        totals = (
            select(
                InventoryMovement.product_id,
                InventoryMovement.warehouse_id,
                func.sum(InventoryMovement.quantity_delta).label("total"),
            )
            .group_by(InventoryMovement.product_id, InventoryMovement.warehouse_id)
            .subquery()
        )
        query = select(
            InventoryRecord.product_id,
            InventoryRecord.warehouse_id,
            InventoryRecord.quantity,
            func.coalesce(totals.c.total, 0).label("movement_total"),
        ).outerjoin(
            totals,
            and_(
                totals.c.product_id == InventoryRecord.product_id,
                totals.c.warehouse_id == InventoryRecord.warehouse_id,
            ),
        )
        if product_id:
            query = query.where(InventoryRecord.product_id == product_id)

        result = await self.db.execute(query)
        return [
            LedgerDiscrepancy(row.product_id, row.warehouse_id, row.quantity, int(row.movement_total))
            for row in result.all()
            if row.quantity != int(row.movement_total)
        ]

    # ==================== Mutations ====================

    async def reserve(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        quantity: int,
        reference_type: str = "order",
        reference_id: Optional[uuid.UUID] = None,
        created_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[Reservation, InsufficientStock]:
        """
        Take quantity out of one warehouse, or report how much is there.

        The counter never goes below zero: the decrement only matches a row
        holding at least `quantity`.
        """
        if quantity <= 0:
            raise ValueError(f"Reservation quantity must be positive, got {quantity}")

        try:
            balance = await self.db.scalar(
                update(InventoryRecord)
                .where(
                    InventoryRecord.product_id == product_id,
                    InventoryRecord.warehouse_id == warehouse_id,
                    InventoryRecord.quantity >= quantity,
                )
                .values(
                    quantity=InventoryRecord.quantity - quantity,
                    updated_at=datetime.now(timezone.utc),
                )
                .returning(InventoryRecord.quantity)
                .execution_options(synchronize_session=False)
            )

            if balance is None:
                available = await self.quantity(product_id, warehouse_id)
                # Nothing was written; end the transaction without expiring the session
                await self.db.commit()
                return Outcome.failure(InsufficientStock(
                    product_id=product_id,
                    warehouse_id=warehouse_id,
                    requested=quantity,
                    available=available or 0,
                ))

            movement = self._movement(
                product_id, warehouse_id, MovementType.OUT, -quantity, balance,
                reference_type, reference_id, created_by, note,
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Reserve of {quantity} x {product_id} at {warehouse_id} failed: {e}")
            raise StorageUnavailable("reserve") from e

        await self._changed(product_id, warehouse_id, -quantity, balance, reference_type, reference_id)
        return Outcome.success(Reservation(product_id, warehouse_id, quantity, balance, movement.id))

    async def reserve_any(
        self,
        product_id: uuid.UUID,
        quantity: int,
        reference_type: str = "order",
        reference_id: Optional[uuid.UUID] = None,
        created_by: Optional[uuid.UUID] = None,
        warehouse_id: Optional[uuid.UUID] = None,
    ) -> Outcome[Reservation, InsufficientStock]:
        """
        Reserve the whole quantity from a single warehouse.

        With warehouse_id, only that warehouse is tried. Otherwise warehouses
        are tried largest stock first; a line is never split. On failure,
        `available` is the best single-warehouse stock seen.
        """
        if warehouse_id:
            return await self.reserve(
                product_id, warehouse_id, quantity, reference_type, reference_id, created_by
            )

        candidates = await self.stock_levels(product_id=product_id)
        best = 0
        for level in candidates:
            if level.quantity < quantity:
                best = max(best, level.quantity)
                continue
            outcome = await self.reserve(
                product_id, level.warehouse_id, quantity, reference_type, reference_id, created_by
            )
            if outcome.ok:
                return outcome
            # Lost a race for this warehouse; keep looking
            best = max(best, outcome.error.available)

        return Outcome.failure(InsufficientStock(
            product_id=product_id,
            requested=quantity,
            available=best,
        ))

    async def release(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        quantity: int,
        reason: Optional[str] = None,
        movement_type: MovementType = MovementType.IN,
        reference_type: Optional[str] = None,
        reference_id: Optional[uuid.UUID] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> Reservation:
        """
        Add quantity to a warehouse: receipts, returns, production output and
        compensation of earlier reservations. Creates the record on first use.
        """
        if quantity <= 0:
            raise ValueError(f"Release quantity must be positive, got {quantity}")
        movement_type = MovementType(movement_type)
        if movement_type not in (MovementType.IN, MovementType.ADJUSTMENT):
            raise ValueError(f"Release cannot record a '{movement_type.value}' movement")

        try:
            balance = await self._increment(product_id, warehouse_id, quantity)
            movement = self._movement(
                product_id, warehouse_id, movement_type, quantity, balance,
                reference_type, reference_id, created_by, reason,
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Release of {quantity} x {product_id} at {warehouse_id} failed: {e}")
            raise StorageUnavailable("release") from e

        await self._changed(product_id, warehouse_id, quantity, balance, reference_type, reference_id)
        return Reservation(product_id, warehouse_id, quantity, balance, movement.id)

    async def set_exact(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        new_quantity: int,
        created_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Optional[InventoryMovement]:
        """
        Administrative override to an absolute quantity.

        Compare-and-swap against the observed value, retried on contention.
        Returns the adjustment movement, or None when nothing changed.
        """
        if new_quantity < 0:
            raise ValueError(f"Inventory quantity cannot be negative, got {new_quantity}")

        for attempt in range(settings.INVENTORY_CAS_RETRIES):
            try:
                observed = await self.quantity(product_id, warehouse_id)

                if observed is None:
                    self.db.add(InventoryRecord(
                        product_id=product_id,
                        warehouse_id=warehouse_id,
                        quantity=new_quantity,
                    ))
                    try:
                        await self.db.flush()
                    except IntegrityError:
                        # Created concurrently; observe again
                        await self.db.rollback()
                        continue
                    observed = 0
                elif observed == new_quantity:
                    await self.db.commit()
                    return None
                else:
                    swapped = await self.db.execute(
                        update(InventoryRecord)
                        .where(
                            InventoryRecord.product_id == product_id,
                            InventoryRecord.warehouse_id == warehouse_id,
                            InventoryRecord.quantity == observed,
                        )
                        .values(quantity=new_quantity, updated_at=datetime.now(timezone.utc))
                        .execution_options(synchronize_session=False)
                    )
                    if swapped.rowcount == 0:
                        await self.db.commit()
                        logger.info(
                            f"Inventory {product_id}@{warehouse_id} changed while setting to "
                            f"{new_quantity}, retry {attempt + 1}"
                        )
                        continue

                if new_quantity == observed:
                    # New record at zero
                    await self.db.commit()
                    return None

                movement = self._movement(
                    product_id, warehouse_id, MovementType.ADJUSTMENT,
                    new_quantity - observed, new_quantity,
                    "adjustment", None, created_by, note,
                )
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.error(f"Setting {product_id}@{warehouse_id} to {new_quantity} failed: {e}")
                raise StorageUnavailable("set_exact") from e

            await self._changed(
                product_id, warehouse_id, new_quantity - observed, new_quantity, "adjustment", None
            )
            return movement

        raise StorageUnavailable(
            "set_exact",
            f"Inventory {product_id}@{warehouse_id} kept changing; gave up after "
            f"{settings.INVENTORY_CAS_RETRIES} attempts",
        )

    async def transfer(
        self,
        product_id: uuid.UUID,
        from_warehouse_id: uuid.UUID,
        to_warehouse_id: uuid.UUID,
        quantity: int,
        created_by: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> Outcome[Reservation, InsufficientStock]:
        """Move stock between warehouses. Both sides commit together."""
        if quantity <= 0:
            raise ValueError(f"Transfer quantity must be positive, got {quantity}")
        if from_warehouse_id == to_warehouse_id:
            raise ValueError("Transfer source and destination must differ")

        transfer_id = uuid.uuid4()
        try:
            source_balance = await self.db.scalar(
                update(InventoryRecord)
                .where(
                    InventoryRecord.product_id == product_id,
                    InventoryRecord.warehouse_id == from_warehouse_id,
                    InventoryRecord.quantity >= quantity,
                )
                .values(
                    quantity=InventoryRecord.quantity - quantity,
                    updated_at=datetime.now(timezone.utc),
                )
                .returning(InventoryRecord.quantity)
                .execution_options(synchronize_session=False)
            )
            if source_balance is None:
                available = await self.quantity(product_id, from_warehouse_id)
                await self.db.commit()
                return Outcome.failure(InsufficientStock(
                    product_id=product_id,
                    warehouse_id=from_warehouse_id,
                    requested=quantity,
                    available=available or 0,
                ))

            self._movement(
                product_id, from_warehouse_id, MovementType.TRANSFER, -quantity, source_balance,
                "transfer", transfer_id, created_by, note,
            )
            target_balance = await self._increment(product_id, to_warehouse_id, quantity)
            movement = self._movement(
                product_id, to_warehouse_id, MovementType.TRANSFER, quantity, target_balance,
                "transfer", transfer_id, created_by, note,
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                f"Transfer of {quantity} x {product_id} from {from_warehouse_id} "
                f"to {to_warehouse_id} failed: {e}"
            )
            raise StorageUnavailable("transfer") from e

        await self._changed(product_id, from_warehouse_id, -quantity, source_balance, "transfer", transfer_id)
        await self._changed(product_id, to_warehouse_id, quantity, target_balance, "transfer", transfer_id)
        return Outcome.success(Reservation(product_id, to_warehouse_id, quantity, target_balance, movement.id))

    async def ensure_record(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        initial_quantity: int = 0,
        created_by: Optional[uuid.UUID] = None,
    ) -> StockLevel:
        """
        Pair a product with a warehouse. An existing record is left untouched;
        a positive opening quantity is logged as an adjustment.
        """
        if initial_quantity < 0:
            raise ValueError(f"Inventory quantity cannot be negative, got {initial_quantity}")

        existing = await self.quantity(product_id, warehouse_id)
        if existing is not None:
            return StockLevel(product_id, warehouse_id, existing)

        if initial_quantity:
            await self.set_exact(product_id, warehouse_id, initial_quantity, created_by, note="Opening stock")
        else:
            try:
                self.db.add(InventoryRecord(product_id=product_id, warehouse_id=warehouse_id, quantity=0))
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                # Either paired concurrently, or the product/warehouse does not exist
                if await self.quantity(product_id, warehouse_id) is None:
                    raise ValueError(
                        f"Cannot pair product {product_id} with warehouse {warehouse_id}"
                    ) from e
            except SQLAlchemyError as e:
                await self.db.rollback()
                raise StorageUnavailable("ensure_record") from e

        current = await self.quantity(product_id, warehouse_id)
        return StockLevel(product_id, warehouse_id, current or 0)

    # ==================== Internals ====================

    async def _increment(self, product_id: uuid.UUID, warehouse_id: uuid.UUID, quantity: int) -> int:
        """Add to a counter inside the current transaction, creating it if missing."""
        balance = await self.db.scalar(
            update(InventoryRecord)
            .where(
                InventoryRecord.product_id == product_id,
                InventoryRecord.warehouse_id == warehouse_id,
            )
            .values(
                quantity=InventoryRecord.quantity + quantity,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(InventoryRecord.quantity)
            .execution_options(synchronize_session=False)
        )
        if balance is not None:
            return balance

        self.db.add(InventoryRecord(product_id=product_id, warehouse_id=warehouse_id, quantity=quantity))
        await self.db.flush()
        return quantity

    def _movement(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        movement_type: MovementType,
        delta: int,
        balance_after: int,
        reference_type: Optional[str],
        reference_id: Optional[uuid.UUID],
        created_by: Optional[uuid.UUID],
        note: Optional[str],
    ) -> InventoryMovement:
        movement = InventoryMovement(
            id=uuid.uuid4(),
            product_id=product_id,
            warehouse_id=warehouse_id,
            movement_type=movement_type.value,
            quantity_delta=delta,
            balance_after=balance_after,
            reference_type=reference_type,
            reference_id=reference_id,
            created_by=created_by,
            note=note,
        )
        self.db.add(movement)
        return movement

    async def _changed(
        self,
        product_id: uuid.UUID,
        warehouse_id: uuid.UUID,
        delta: int,
        balance: int,
        reference_type: Optional[str],
        reference_id: Optional[uuid.UUID],
    ) -> None:
        await self.events.publish(DomainEvent(EventType.INVENTORY_CHANGED, {
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "delta": delta,
            "quantity": balance,
            "reference_type": reference_type,
            "reference_id": reference_id,
        }))
