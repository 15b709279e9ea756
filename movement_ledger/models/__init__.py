from .base import TimestampMixin, UUIDMixin
from .movement import Movement, MovementKind, MovementOrigin
from .catalog import Product, Sku, Request, Document

__all__ = [
    # Base
    "TimestampMixin", "UUIDMixin",
    # Ledger
    "Movement", "MovementKind", "MovementOrigin",
    # Catalog
    "Product", "Sku", "Request", "Document",
]
