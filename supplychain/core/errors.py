"""
Error taxonomy for the fulfillment core.

Business outcomes (insufficient stock, illegal status change, declined
payment) are plain dataclasses returned inside an Outcome, never raised.
StorageUnavailable is the only exception: it aborts the current request.
"""
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class InsufficientStock:
    """Requested quantity exceeds what the ledger can supply."""
    product_id: uuid.UUID
    requested: int
    available: int
    warehouse_id: Optional[uuid.UUID] = None
    product_name: Optional[str] = None

    code = "INSUFFICIENT_STOCK"

    @property
    def message(self) -> str:
        label = self.product_name or str(self.product_id)
        where = f" in warehouse {self.warehouse_id}" if self.warehouse_id else ""
        return (
            f"Insufficient stock for product {label}{where}: "
            f"requested {self.requested}, available {self.available}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code
        data["message"] = self.message
        return data


@dataclass(frozen=True)
class InvalidTransition:
    """Status change not permitted by the entity's state machine."""
    entity_type: str
    entity_id: Optional[uuid.UUID]
    from_status: Optional[str]
    to_status: str

    code = "INVALID_TRANSITION"

    @property
    def message(self) -> str:
        return (
            f"Cannot change {self.entity_type} {self.entity_id} "
            f"from '{self.from_status}' to '{self.to_status}'"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code
        data["message"] = self.message
        return data


@dataclass(frozen=True)
class PaymentFailed:
    """Payment could not be captured; the order stays valid but flagged."""
    order_id: uuid.UUID
    reason: str
    payment_id: Optional[uuid.UUID] = None

    code = "PAYMENT_FAILED"

    @property
    def message(self) -> str:
        return f"Payment for order {self.order_id} failed: {self.reason}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code
        data["message"] = self.message
        return data


class StorageUnavailable(Exception):
    """The backing store failed or timed out; fatal for the current request."""

    code = "STORAGE_UNAVAILABLE"

    def __init__(self, step: str, message: Optional[str] = None):
        self.step = step
        self.message = message or f"Storage unavailable during '{step}'"
        super().__init__(self.message)


class EntityNotFound(LookupError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.message = f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found"
        super().__init__(self.message)
