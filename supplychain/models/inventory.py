"""Inventory models for stock management."""
from enum import Enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, ForeignKey, Integer, DateTime
from sqlalchemy import UniqueConstraint, CheckConstraint, Index
import uuid

from supplychain.database import Base
from supplychain.db_types import UUIDType


class InventoryRecord(Base):
    """
    Stock counter per product per warehouse.

    Shared mutable state for all fulfillment activity on the pair. Only the
    InventoryLedger writes `quantity`, always through a conditional UPDATE.
    Records are never deleted, even at zero.
    """

    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_product_warehouse"),
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    product_id = Column(UUIDType, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    warehouse_id = Column(UUIDType, ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False, index=True)

    quantity = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<InventoryRecord {self.product_id}@{self.warehouse_id} qty={self.quantity}>"


class MovementType(str, Enum):
    """Stock movement type enum."""
    IN = "in"  # Receipt, production output, return, compensation
    OUT = "out"  # Order reservation
    TRANSFER = "transfer"  # Warehouse to warehouse (one row per side)
    ADJUSTMENT = "adjustment"  # Administrative override / opening stock


class InventoryMovement(Base):
    """Append-only stock ledger. One row per InventoryRecord mutation."""

    __tablename__ = "inventory_movements"
    __table_args__ = (
        Index("ix_movement_pair_created", "product_id", "warehouse_id", "created_at"),
        Index("ix_movement_reference", "reference_type", "reference_id"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    product_id = Column(UUIDType, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    warehouse_id = Column(UUIDType, ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False)

    movement_type = Column(
        String(20), nullable=False, index=True,
        comment="in, out, transfer, adjustment"
    )

    # Signed: positive for in, negative for out
    quantity_delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)

    # Related documents
    reference_type = Column(String(50))  # order, order_rollback, order_cancelled, return, production, ...
    reference_id = Column(UUIDType)

    created_by = Column(UUIDType)
    note = Column(Text)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<InventoryMovement {self.movement_type} {self.quantity_delta:+d}>"
