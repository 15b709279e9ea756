"""
Movements API - read-only endpoints over the movement ledger
"""
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from movement_ledger.core import get_db, settings
from movement_ledger.core.exceptions import ValidationError
from movement_ledger.models import MovementKind, MovementOrigin
from movement_ledger.schemas.movement import MovementFilters, MovementResponse, TraceabilityResponse
from movement_ledger.services import PayloadCipher, TraceabilityService

movements_router = APIRouter(prefix="/movimientos", tags=["Movimientos"])

LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT = 100, 1000
SKU_DEFAULT_LIMIT, SKU_MAX_LIMIT = 50, 500


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except (ValueError, TypeError, AttributeError):
        raise ValidationError(f"Invalid {label} ID")


def parse_limit(raw: Optional[str], default: int, maximum: int) -> int:
    """Out-of-range or non-numeric limits fall back to the default"""
    try:
        limit = int(raw) if raw is not None else default
    except ValueError:
        return default
    if limit <= 0 or limit > maximum:
        return default
    return limit


@lru_cache()
def get_cipher() -> PayloadCipher:
    return PayloadCipher.from_base64(settings.ENCRYPTION_KEY)


@movements_router.get("")
def list_movements(
    product_id: Optional[str] = Query(None),
    sku_id: Optional[str] = Query(None),
    request_id: Optional[str] = Query(None),
    client_account_id: Optional[str] = Query(None),
    tipo_movimiento: Optional[str] = Query(None),
    origen: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """List movements matching every given filter, newest first"""
    kind = None
    if tipo_movimiento:
        try:
            kind = MovementKind(tipo_movimiento)
        except ValueError:
            raise ValidationError("Invalid movement type")

    origin = None
    if origen:
        try:
            origin = MovementOrigin(origen)
        except ValueError:
            raise ValidationError("Invalid origin")

    filters = MovementFilters(
        product_id=parse_uuid(product_id, "product") if product_id else None,
        sku_id=parse_uuid(sku_id, "SKU") if sku_id else None,
        request_id=parse_uuid(request_id, "request") if request_id else None,
        client_account_id=parse_uuid(client_account_id, "client account") if client_account_id else None,
        kind=kind,
        origin=origin,
    )
    limit = parse_limit(limit, LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT)

    movements = TraceabilityService.list_movements(db, filters, limit)
    return {
        "data": movements,
        "count": len(movements),
        "limit": limit,
        "filters": filters.to_dict(),
    }


@movements_router.get(
    "/producto/{product_id}/trazabilidad",
    response_model=TraceabilityResponse,
    response_model_exclude_none=True,
)
def get_traceability(
    product_id: str,
    include_requests: bool = Query(False),
    db: Session = Depends(get_db),
):
    """Full replayed history and aggregates for one product"""
    return TraceabilityService.reconstruct(db, parse_uuid(product_id, "product"), include_requests)


@movements_router.get("/sku/{sku_id}")
def get_sku_movements(
    sku_id: str,
    limit: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    sku_uuid = parse_uuid(sku_id, "SKU")
    limit = parse_limit(limit, SKU_DEFAULT_LIMIT, SKU_MAX_LIMIT)
    movements = TraceabilityService.movements_by_sku(db, sku_uuid, limit)
    return {
        "sku_id": sku_uuid,
        "total_movimientos": len(movements),
        "limit": limit,
        "movimientos": movements,
    }


@movements_router.get("/request/{request_id}")
def get_request_movements(
    request_id: str,
    limit: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    request_uuid = parse_uuid(request_id, "request")
    limit = parse_limit(limit, LIST_DEFAULT_LIMIT, LIST_MAX_LIMIT)
    return TraceabilityService.movements_by_request(db, request_uuid, limit)


@movements_router.get("/{movement_id}", response_model=MovementResponse)
def get_movement(movement_id: int, db: Session = Depends(get_db)):
    return TraceabilityService.get_movement(db, movement_id)


@movements_router.get("/{movement_id}/payload")
def get_movement_payload(
    movement_id: int,
    db: Session = Depends(get_db),
    cipher: PayloadCipher = Depends(get_cipher),
):
    """Decrypted sensitive payload of one movement"""
    return TraceabilityService.decrypt_movement(db, cipher, movement_id)
