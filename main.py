"""
Movement Ledger - inventory movement ingestion and traceability
FastAPI Application Entry Point
"""
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from movement_ledger.core import settings, engine, Base
from movement_ledger.core.exceptions import MovementLedgerError
from movement_ledger.core.logging import setup_logging
from movement_ledger.models import Movement
from movement_ledger.api.router import api_router
from movement_ledger.jobs import start_movement_consumer, stop_movement_consumer

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Lifespan for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create the ledger table; catalog tables belong to the Stock API
    Base.metadata.create_all(bind=engine, tables=[Movement.__table__])
    logger.info(f"{settings.APP_NAME} starting on port {settings.APP_PORT}")

    if settings.CONSUMER_ENABLED:
        await start_movement_consumer(settings)

    yield

    # Shutdown: drain in-flight movements before closing the broker
    await stop_movement_consumer()
    logger.info(f"{settings.APP_NAME} shutting down")

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Inventory movement ledger, traceability and metrics",
    version=settings.APP_VERSION,
    lifespan=lifespan
)

@app.exception_handler(MovementLedgerError)
async def ledger_error_handler(request: Request, exc: MovementLedgerError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

# Include routers
app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.APP_PORT,
        reload=settings.DEBUG
    )
