import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, DateTime, ForeignKey, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supplychain.database import Base
from supplychain.db_types import UUIDType, JSONType

if TYPE_CHECKING:
    from supplychain.models.order import Order


class PaymentRecord(Base):
    """
    Payment against a customer order or a supplier purchase order.
    Status only changes through PaymentService.
    """
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    payer_type: Mapped[str] = mapped_column(
        String(20),
        default="customer",
        nullable=False,
        comment="customer, supplier"
    )

    # Customer variant
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    # Supplier variant
    purchase_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("purchase_orders.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    supplier_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        default="pending",
        nullable=False,
        comment="pending, completed, failed, refunded"
    )

    # Gateway
    gateway: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    order: Mapped[Optional["Order"]] = relationship("Order", back_populates="payments")

    def __repr__(self) -> str:
        return f"<PaymentRecord(amount={self.amount}, status='{self.status}')>"
