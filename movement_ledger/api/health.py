"""
Health & Metrics API
"""
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from movement_ledger.core import START_TIME, get_db, settings
from movement_ledger.jobs import get_consumer
from movement_ledger.schemas.movement import MetricsResponse
from movement_ledger.services import TraceabilityService
from movement_ledger.services.query_service import format_uptime

logger = logging.getLogger(__name__)

health_router = APIRouter(tags=["Health"])


def check_database(db: Session) -> str:
    try:
        db.execute(text("SELECT 1"))
        return "healthy"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return f"unhealthy: {e.__class__.__name__}"


def check_broker() -> str:
    if not settings.CONSUMER_ENABLED:
        return "disabled"
    consumer = get_consumer()
    if consumer is None or not consumer.get_status()["connected"]:
        return "unhealthy: consumer not connected"
    return "healthy"


@health_router.get("/health")
def health_check(db: Session = Depends(get_db)):
    checks = {
        "database": check_database(db),
        "rabbitmq": check_broker(),
    }
    degraded = any(status.startswith("unhealthy") for status in checks.values())

    consumer = get_consumer()
    body = {
        "status": "degraded" if degraded else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "checks": checks,
        "consumer": consumer.get_status() if consumer else None,
        "uptime": format_uptime(START_TIME),
    }
    return JSONResponse(status_code=503 if degraded else 200, content=body)


@health_router.get("/metrics", response_model=MetricsResponse)
def get_metrics(db: Session = Depends(get_db)):
    return TraceabilityService.metrics(db)
