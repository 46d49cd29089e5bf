"""
Domain event publisher.

In-process publish/subscribe for facts that other parts of the system react
to (order confirmed, stock changed, payment failed). Events are published
after the unit of work that produced them has committed. When
EVENT_WEBHOOK_URL is configured, every event is also POSTed there as JSON.

Handler and delivery failures are logged and never propagate to the caller:
the state change already happened.
"""
import inspect
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from supplychain.config import settings

logger = logging.getLogger(__name__)


class EventType:
    ORDER_CONFIRMED = "OrderConfirmed"
    ORDER_SHIPPED = "OrderShipped"
    ORDER_DELIVERED = "OrderDelivered"
    ORDER_CANCELLED = "OrderCancelled"
    INVENTORY_CHANGED = "InventoryChanged"
    PAYMENT_FAILED = "PaymentFailed"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: Dict[str, Any]
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "name": self.name,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": {
                key: str(value) if isinstance(value, uuid.UUID) else value
                for key, value in self.payload.items()
            },
        }


EventHandler = Callable[[DomainEvent], Any]


class EventPublisher:
    """Fan-out of domain events to subscribers and an optional webhook."""

    WILDCARD = "*"

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        webhook_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.webhook_timeout = webhook_timeout
        self.transport = transport
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register handler for event_name, or for every event with "*"."""
        self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: DomainEvent) -> None:
        handlers = self._handlers.get(event.name, []) + self._handlers.get(self.WILDCARD, [])
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event handler {getattr(handler, '__name__', handler)} failed for {event.name}: {e}")

        if self.webhook_url:
            await self._forward(event)

    async def _forward(self, event: DomainEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.webhook_timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json=event.to_dict())
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery of {event.name} ({event.event_id}) failed: {e}")


_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """Process-wide publisher configured from settings."""
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher(
            webhook_url=settings.EVENT_WEBHOOK_URL,
            webhook_timeout=settings.EVENT_WEBHOOK_TIMEOUT_SECONDS,
        )
    return _publisher
