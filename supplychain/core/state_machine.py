"""
Status State Machines

This module is the SINGLE SOURCE OF TRUTH for every status transition in the
fulfillment core: orders, payments, shipments, returns, production orders
and purchase orders.
Services consult these tables before writing a status column; nothing else
decides whether an edge is legal.
"""

import uuid
from typing import Dict, List, Optional

from supplychain.core.errors import InvalidTransition


# =============================================================================
# STATUS DEFINITIONS
# =============================================================================

class OrderStatus:
    """Order status constants - use these instead of strings."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def all(cls) -> List[str]:
        return [
            cls.PENDING, cls.CONFIRMED, cls.PROCESSING,
            cls.SHIPPED, cls.DELIVERED, cls.CANCELLED,
        ]


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.PENDING, cls.COMPLETED, cls.FAILED, cls.REFUNDED]


class ShipmentStatus:
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.PENDING, cls.IN_TRANSIT, cls.DELIVERED, cls.CANCELLED]


class ReturnStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.PENDING, cls.APPROVED, cls.REJECTED, cls.PROCESSING, cls.COMPLETED]


class ProductionStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.PENDING, cls.IN_PROGRESS, cls.COMPLETED, cls.CANCELLED]


class PurchaseOrderStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DELIVERED = "delivered"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.PENDING, cls.APPROVED, cls.REJECTED, cls.DELIVERED]


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """Table-driven transition rules for one entity type."""

    def __init__(self, entity_type: str, transitions: Dict[str, List[str]]):
        self.entity_type = entity_type
        self.transitions = transitions

    @property
    def statuses(self) -> List[str]:
        return list(self.transitions.keys())

    def allowed(self, current_status: str) -> List[str]:
        """Statuses reachable in one step from current_status."""
        return list(self.transitions.get(current_status, []))

    def can_transition(self, current_status: str, new_status: str) -> bool:
        return new_status in self.transitions.get(current_status, [])

    def is_terminal(self, status: str) -> bool:
        return status in self.transitions and not self.transitions[status]

    def check(
        self,
        current_status: Optional[str],
        new_status: str,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Optional[InvalidTransition]:
        """Return InvalidTransition when the edge is not in the table, else None."""
        if current_status is not None and self.can_transition(current_status, new_status):
            return None
        return InvalidTransition(
            entity_type=self.entity_type,
            entity_id=entity_id,
            from_status=current_status,
            to_status=new_status,
        )


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Forward only; cancellation before anything has left the warehouse.
ORDER_MACHINE = StateMachine("order", {
    OrderStatus.PENDING: [OrderStatus.CONFIRMED, OrderStatus.CANCELLED],
    OrderStatus.CONFIRMED: [OrderStatus.PROCESSING, OrderStatus.CANCELLED],
    OrderStatus.PROCESSING: [OrderStatus.SHIPPED],
    OrderStatus.SHIPPED: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [],
    OrderStatus.CANCELLED: [],
})

PAYMENT_MACHINE = StateMachine("payment", {
    PaymentStatus.PENDING: [PaymentStatus.COMPLETED, PaymentStatus.FAILED],
    PaymentStatus.FAILED: [PaymentStatus.PENDING],  # Retry
    PaymentStatus.COMPLETED: [PaymentStatus.REFUNDED],
    PaymentStatus.REFUNDED: [],
})

SHIPMENT_MACHINE = StateMachine("shipment", {
    ShipmentStatus.PENDING: [ShipmentStatus.IN_TRANSIT, ShipmentStatus.CANCELLED],
    ShipmentStatus.IN_TRANSIT: [ShipmentStatus.DELIVERED],
    ShipmentStatus.DELIVERED: [],
    ShipmentStatus.CANCELLED: [],
})

RETURN_MACHINE = StateMachine("return", {
    ReturnStatus.PENDING: [ReturnStatus.APPROVED, ReturnStatus.REJECTED],
    ReturnStatus.APPROVED: [ReturnStatus.PROCESSING],
    ReturnStatus.PROCESSING: [ReturnStatus.COMPLETED],
    ReturnStatus.REJECTED: [],
    ReturnStatus.COMPLETED: [],
})

PRODUCTION_MACHINE = StateMachine("production_order", {
    ProductionStatus.PENDING: [ProductionStatus.IN_PROGRESS, ProductionStatus.CANCELLED],
    ProductionStatus.IN_PROGRESS: [ProductionStatus.COMPLETED],
    ProductionStatus.COMPLETED: [],
    ProductionStatus.CANCELLED: [],
})

# The supplier approves or rejects; the warehouse takes delivery
PURCHASE_ORDER_MACHINE = StateMachine("purchase_order", {
    PurchaseOrderStatus.PENDING: [PurchaseOrderStatus.APPROVED, PurchaseOrderStatus.REJECTED],
    PurchaseOrderStatus.APPROVED: [PurchaseOrderStatus.DELIVERED],
    PurchaseOrderStatus.REJECTED: [],
    PurchaseOrderStatus.DELIVERED: [],
})
