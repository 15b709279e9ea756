# Pydantic Schemas Package
from .movement import (
    MovementMessage, MovementFilters, MovementResponse, HistoryEntry,
    RequestSummary, SkuSummary, MovementSummary, TraceabilityResponse,
    MetricsResponse, NotificationMessage,
)

__all__ = [
    "MovementMessage", "MovementFilters",
    "MovementResponse", "HistoryEntry", "RequestSummary", "SkuSummary",
    "MovementSummary", "TraceabilityResponse", "MetricsResponse",
    "NotificationMessage",
]
