"""
Movement Ledger Exceptions

Every failure the engine can report is one of these types. The ingestion
pipeline decides ack/nack from ``retryable``; the query API answers with
``http_status`` and ``code``.
"""
from typing import Any, Dict, Optional


class MovementLedgerError(Exception):
    """Base class for ledger errors"""
    code: str = "LEDGER_ERROR"
    retryable: bool = False
    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(MovementLedgerError):
    """Malformed or out-of-range input. Never retried."""
    code = "VALIDATION_ERROR"
    http_status = 400


class DependencyError(MovementLedgerError):
    """Broker, database or stock API unavailable. Retried through redelivery."""
    code = "DEPENDENCY_ERROR"
    retryable = True
    http_status = 500


class InsufficientStockError(MovementLedgerError):
    """An exit would take the stock below zero."""
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, product_id, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: available={available}, requested={requested}",
            {"product_id": str(product_id), "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class IntegrityError(MovementLedgerError):
    """Encrypted payload failed authentication or is malformed."""
    code = "INTEGRITY_ERROR"
    http_status = 500


class NotFoundError(MovementLedgerError):
    """No ledger data for the requested product or movement."""
    code = "NOT_FOUND"
    http_status = 404


class ImmutableLedgerError(MovementLedgerError):
    """Attempt to modify or delete a committed ledger row."""
    code = "IMMUTABLE_LEDGER"
    http_status = 500
