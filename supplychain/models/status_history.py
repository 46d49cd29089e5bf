import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Integer, String, DateTime, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from supplychain.database import Base
from supplychain.db_types import UUIDType


class StatusHistoryEntry(Base):
    """
    Append-only audit trail of status transitions for every stateful entity.
    The integer id doubles as an insertion sequence for stable ordering.
    """
    __tablename__ = "status_history"
    __table_args__ = (
        Index("ix_status_history_entity", "entity_type", "entity_id", "changed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Entity types: order, payment, shipment, return, production_order
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)

    old_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str] = mapped_column(String(30), nullable=False)

    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<StatusHistoryEntry({self.entity_type} {self.entity_id}: "
            f"'{self.old_status}' -> '{self.new_status}')>"
        )
