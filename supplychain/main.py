from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from supplychain.config import settings
from supplychain.api.v1.router import api_router
from supplychain.core.errors import EntityNotFound, StorageUnavailable
from supplychain.database import init_db, async_session_factory
from supplychain.jobs.scheduler import start_scheduler, shutdown_scheduler

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: configure logging, create tables, start the scheduler.
    Shutdown: stop the scheduler.
    """
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()

    yield

    shutdown_scheduler()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Products", "description": "Product catalog and supplier pricing"},
    {"name": "Warehouses", "description": "Warehouse management"},
    {"name": "Carriers", "description": "Shipping carriers"},
    {"name": "Inventory", "description": "Stock levels, movements, transfers and reconciliation"},
    {"name": "Orders", "description": "Checkout, order lifecycle and fulfillment"},
    {"name": "Returns", "description": "Customer returns and restocking"},
    {"name": "Production", "description": "Production orders feeding warehouse stock"},
    {"name": "Payments", "description": "Customer and supplier payments"},
    {"name": "Status History", "description": "Audit trail of status transitions"},
    {"name": "Health", "description": "Service health"},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Order fulfillment core for a multi-warehouse supply chain",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


@app.exception_handler(EntityNotFound)
async def not_found_handler(request: Request, exc: EntityNotFound):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": exc.message, "code": exc.code, "step": exc.step},
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError
    from datetime import datetime, timezone

    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "connected"
    except SQLAlchemyError as e:
        logger.warning(f"Health check database query failed: {e}")
        health_status["status"] = "degraded"
        health_status["checks"]["database"] = "unreachable"

    return health_status
