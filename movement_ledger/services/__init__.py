# Services Package
from .crypto_service import PayloadCipher
from .ledger_store import LedgerStore
from .movement_service import MovementProcessor, KeyedLock, compute_new_quantity, validate_event
from .notification_service import NotificationDispatcher
from .query_service import TraceabilityService

__all__ = [
    "PayloadCipher",
    "LedgerStore",
    "MovementProcessor",
    "KeyedLock",
    "compute_new_quantity",
    "validate_event",
    "NotificationDispatcher",
    "TraceabilityService",
]
