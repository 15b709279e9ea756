"""
Movement Schemas - inbound broker message, query filters and response views
"""
import hashlib
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from movement_ledger.core.exceptions import ValidationError
from movement_ledger.models.movement import MovementKind, MovementOrigin

KIND_ALIASES = {
    "entry": MovementKind.ENTRY.value,
    "exit": MovementKind.EXIT.value,
    "adjustment": MovementKind.ADJUSTMENT.value,
}

ORIGIN_ALIASES = {
    "system": MovementOrigin.SYSTEM.value,
}


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ===================== INBOUND =====================

class MovementMessage(BaseModel):
    """One movement event as published on the broker"""
    product_id: UUID
    sku_id: Optional[UUID] = None
    request_id: Optional[UUID] = None
    document_id: Optional[UUID] = None
    tipo_movimiento: MovementKind
    cantidad: int
    usuario_id: Optional[str] = None
    motivo: Optional[str] = None
    client_account_id: UUID
    origen: MovementOrigin = MovementOrigin.API
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None

    @field_validator("tipo_movimiento", mode="before")
    @classmethod
    def normalize_kind(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return KIND_ALIASES.get(value, value)
        return value

    @field_validator("origen", mode="before")
    @classmethod
    def normalize_origin(cls, value):
        if value is None or value == "":
            return MovementOrigin.API.value
        if isinstance(value, str):
            value = value.strip().lower()
            return ORIGIN_ALIASES.get(value, value)
        return value

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value):
        return to_utc(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value):
        return value or {}

    @classmethod
    def from_body(cls, body: bytes) -> "MovementMessage":
        """Deserialize a broker message body, raising ValidationError on any defect"""
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Malformed JSON message: {e}")
        if not isinstance(payload, dict):
            raise ValidationError("Message body must be a JSON object")
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid movement message",
                {"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]},
            )

    def natural_key(self, message_id: Optional[str] = None) -> str:
        """
        Idempotency key for this event.
        Explicit event_id wins, then the broker message_id, then a digest of the event identity.
        """
        if self.event_id:
            return f"event:{self.event_id}"
        if message_id:
            return f"msg:{message_id}"
        identity = {
            "product_id": str(self.product_id),
            "sku_id": str(self.sku_id) if self.sku_id else None,
            "request_id": str(self.request_id) if self.request_id else None,
            "document_id": str(self.document_id) if self.document_id else None,
            "kind": self.tipo_movimiento.value,
            "quantity": self.cantidad,
            "client_account_id": str(self.client_account_id),
            "origin": self.origen.value,
            "timestamp": self.timestamp.isoformat(),
        }
        canonical = json.dumps(identity, sort_keys=True, separators=(",", ":"))
        return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def sensitive_payload(self) -> Dict[str, Any]:
        """Subset of the event stored encrypted on the ledger row"""
        return {
            "product_id": str(self.product_id),
            "sku_id": str(self.sku_id) if self.sku_id else None,
            "request_id": str(self.request_id) if self.request_id else None,
            "document_id": str(self.document_id) if self.document_id else None,
            "client_account_id": str(self.client_account_id),
            "cantidad": self.cantidad,
            "usuario_id": self.usuario_id,
            "motivo": self.motivo,
            "metadata": self.metadata,
        }


# ===================== FILTERS =====================

@dataclass(frozen=True)
class MovementFilters:
    """Recognized filter dimensions for movement listings; None means absent"""
    product_id: Optional[UUID] = None
    sku_id: Optional[UUID] = None
    request_id: Optional[UUID] = None
    client_account_id: Optional[UUID] = None
    kind: Optional[MovementKind] = None
    origin: Optional[MovementOrigin] = None

    def to_dict(self) -> Dict[str, str]:
        present = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            present[key] = value.value if hasattr(value, "value") else str(value)
        return present


# ===================== RESPONSES =====================

class MovementResponse(BaseModel):
    id: int
    product_id: UUID
    sku_id: Optional[UUID] = None
    request_id: Optional[UUID] = None
    document_id: Optional[UUID] = None
    tipo_movimiento: str
    cantidad: int
    cantidad_anterior: int
    cantidad_nueva: int
    fecha_movimiento: datetime
    usuario_id: Optional[str] = None
    motivo: Optional[str] = None
    client_account_id: UUID
    origen: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    product_name: Optional[str] = None
    sku_name: Optional[str] = None

    @classmethod
    def from_model(cls, m, product_name: Optional[str] = None, sku_name: Optional[str] = None) -> "MovementResponse":
        return cls(
            id=m.id,
            product_id=m.product_id,
            sku_id=m.sku_id,
            request_id=m.request_id,
            document_id=m.document_id,
            tipo_movimiento=m.kind,
            cantidad=m.quantity,
            cantidad_anterior=m.quantity_before,
            cantidad_nueva=m.quantity_after,
            fecha_movimiento=m.moved_at,
            usuario_id=m.user_id,
            motivo=m.reason,
            client_account_id=m.client_account_id,
            origen=m.origin,
            created_at=m.created_at,
            updated_at=m.updated_at,
            product_name=product_name,
            sku_name=sku_name,
        )


class HistoryEntry(BaseModel):
    fecha: datetime
    tipo: str
    cantidad: int
    stock_anterior: int
    stock_nuevo: int
    motivo: Optional[str] = None
    usuario: Optional[str] = None
    request_id: Optional[UUID] = None
    document_id: Optional[UUID] = None
    sku_id: Optional[UUID] = None
    sku_name: Optional[str] = None
    origen: str

    @classmethod
    def from_model(cls, m, sku_name: Optional[str] = None) -> "HistoryEntry":
        return cls(
            fecha=m.moved_at,
            tipo=m.kind,
            cantidad=m.quantity,
            stock_anterior=m.quantity_before,
            stock_nuevo=m.quantity_after,
            motivo=m.reason,
            usuario=m.user_id,
            request_id=m.request_id,
            document_id=m.document_id,
            sku_id=m.sku_id,
            sku_name=sku_name,
            origen=m.origin,
        )


class RequestSummary(BaseModel):
    request_id: UUID
    status: str
    created_at: Optional[datetime] = None
    total_documentos: int = 0
    total_movimientos: int = 0


class SkuSummary(BaseModel):
    sku_id: UUID
    sku_name: str
    status: bool
    total_movimientos: int = 0


class MovementSummary(BaseModel):
    total_entradas: int = 0
    total_salidas: int = 0
    total_ajustes: int = 0
    por_origen: Dict[str, int] = Field(default_factory=dict)


class TraceabilityResponse(BaseModel):
    product_id: UUID
    product_name: Optional[str] = None
    total_movimientos: int
    stock_actual: int
    historial: List[HistoryEntry]
    requests_relacionados: Optional[List[RequestSummary]] = None
    skus_afectados: Optional[List[SkuSummary]] = None
    resumen: MovementSummary


class MetricsResponse(BaseModel):
    service: str
    version: str
    total_movimientos: int
    movimientos_hoy: int
    movimientos_por_tipo: Dict[str, int]
    movimientos_por_origen: Dict[str, int]
    ultimos_movimientos: List[HistoryEntry]
    timestamp: datetime
    uptime: str


# ===================== OUTBOUND =====================

class NotificationMessage(BaseModel):
    type: str
    product_id: UUID
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    severity: str = "info"  # info, warning, error
