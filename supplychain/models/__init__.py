# Import every model so Base.metadata sees all tables
from supplychain.models.product import Product, Carrier
from supplychain.models.warehouse import Warehouse
from supplychain.models.inventory import InventoryRecord, InventoryMovement, MovementType
from supplychain.models.order import Order, OrderLine
from supplychain.models.shipment import Shipment
from supplychain.models.payment import PaymentRecord
from supplychain.models.status_history import StatusHistoryEntry
from supplychain.models.return_request import ReturnRequest
from supplychain.models.purchase_order import PurchaseOrder
from supplychain.models.production import ProductionOrder

__all__ = [
    "Product",
    "Carrier",
    "Warehouse",
    "InventoryRecord",
    "InventoryMovement",
    "MovementType",
    "Order",
    "OrderLine",
    "Shipment",
    "PaymentRecord",
    "StatusHistoryEntry",
    "ReturnRequest",
    "PurchaseOrder",
    "ProductionOrder",
]
