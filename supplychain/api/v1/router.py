from fastapi import APIRouter

from supplychain.api.v1.endpoints import (
    catalog,
    history,
    inventory,
    orders,
    payments,
    production,
    purchase_orders,
    returns,
)

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(catalog.router)
api_router.include_router(inventory.router, prefix="/inventory")
api_router.include_router(orders.router, prefix="/orders")
api_router.include_router(returns.router, prefix="/returns")
api_router.include_router(production.router, prefix="/production-orders")
api_router.include_router(purchase_orders.router, prefix="/purchase-orders")
api_router.include_router(payments.router, prefix="/payments")
api_router.include_router(history.router, prefix="/history")
