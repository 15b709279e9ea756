"""
API Router - JSON Endpoints
"""
from fastapi import APIRouter

from movement_ledger.api.movements import movements_router
from movement_ledger.api.health import health_router

api_router = APIRouter(tags=["API"])

# Include sub-routers
api_router.include_router(movements_router)
api_router.include_router(health_router)
