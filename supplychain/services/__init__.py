from supplychain.services.event_publisher import DomainEvent, EventPublisher, EventType, get_event_publisher
from supplychain.services.status_history_service import StatusHistoryService
from supplychain.services.inventory_ledger import InventoryLedger, LedgerDiscrepancy, Reservation, StockLevel
from supplychain.services.order_service import OrderLineInput, OrderService
from supplychain.services.shipment_service import ShipmentService
from supplychain.services.payment_service import (
    DecliningGateway,
    GatewayResult,
    OfflineGateway,
    PaymentGateway,
    PaymentService,
    get_payment_gateway,
)
from supplychain.services.catalog_service import CatalogService
from supplychain.services.fulfillment_service import (
    FulfillmentOutcome,
    FulfillmentService,
    PlaceOrderResult,
)
from supplychain.services.return_service import ReturnService
from supplychain.services.production_service import ProductionService
from supplychain.services.purchase_order_service import PurchaseOrderService

__all__ = [
    "DomainEvent",
    "EventPublisher",
    "EventType",
    "get_event_publisher",
    "StatusHistoryService",
    "InventoryLedger",
    "LedgerDiscrepancy",
    "Reservation",
    "StockLevel",
    "OrderLineInput",
    "OrderService",
    "ShipmentService",
    "DecliningGateway",
    "GatewayResult",
    "OfflineGateway",
    "PaymentGateway",
    "PaymentService",
    "get_payment_gateway",
    "CatalogService",
    "FulfillmentOutcome",
    "FulfillmentService",
    "PlaceOrderResult",
    "ReturnService",
    "ProductionService",
    "PurchaseOrderService",
]
