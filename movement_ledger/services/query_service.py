"""
Query Service - read-side reconstruction over the movement ledger
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from movement_ledger.core import START_TIME, settings
from movement_ledger.core.exceptions import DependencyError, NotFoundError
from movement_ledger.models import MovementKind
from movement_ledger.schemas.movement import (
    HistoryEntry, MetricsResponse, MovementFilters, MovementResponse, MovementSummary,
    RequestSummary, SkuSummary, TraceabilityResponse,
)
from .crypto_service import PayloadCipher
from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)


def format_uptime(since: datetime, now: Optional[datetime] = None) -> str:
    """Uptime as e.g. '3h25m10s'"""
    now = now or datetime.now(timezone.utc)
    seconds = max(int((now - since).total_seconds()), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


class TraceabilityService:
    """Read-only views over the ledger. Never calls the stock-of-record."""

    @staticmethod
    def reconstruct(db: Session, product_id: UUID, include_requests: bool = False) -> TraceabilityResponse:
        """
        Replay every movement of a product in ascending (timestamp, id) order.
        Raises NotFoundError when the product has no movements.
        """
        try:
            movements = LedgerStore.query_by_product(db, product_id)
        except SQLAlchemyError as e:
            raise DependencyError(f"Error reading traceability: {e}")

        if not movements:
            raise NotFoundError(f"No movements found for product {product_id}")

        totals = {kind.value: 0 for kind in MovementKind}
        per_origin: Dict[str, int] = {}
        request_ids: List[UUID] = []
        sku_ids: List[UUID] = []
        history: List[HistoryEntry] = []
        stock_actual = 0

        for m in movements:
            history.append(HistoryEntry.from_model(m))
            totals[m.kind] = totals.get(m.kind, 0) + m.quantity
            per_origin[m.origin] = per_origin.get(m.origin, 0) + 1
            stock_actual = m.quantity_after
            if m.request_id is not None and m.request_id not in request_ids:
                request_ids.append(m.request_id)
            if m.sku_id is not None and m.sku_id not in sku_ids:
                sku_ids.append(m.sku_id)

        # Optional enrichment: each section degrades on its own
        product_name = _best_effort(db, "product name", LedgerStore.product_name, db, product_id)
        sku_names = _best_effort(db, "SKU names", LedgerStore.sku_names, db, sku_ids) or {}
        for entry in history:
            if entry.sku_id is not None:
                entry.sku_name = sku_names.get(entry.sku_id)

        response = TraceabilityResponse(
            product_id=product_id,
            product_name=product_name,
            total_movimientos=len(history),
            stock_actual=stock_actual,
            historial=history,
            resumen=MovementSummary(
                total_entradas=totals[MovementKind.ENTRY.value],
                total_salidas=totals[MovementKind.EXIT.value],
                total_ajustes=totals[MovementKind.ADJUSTMENT.value],
                por_origen=per_origin,
            ),
        )

        if include_requests and request_ids:
            summaries = _best_effort(db, "request summaries", LedgerStore.request_summaries, db, request_ids)
            if summaries:
                response.requests_relacionados = [RequestSummary(**s) for s in summaries]

        if sku_ids:
            summaries = _best_effort(db, "SKU summaries", LedgerStore.sku_summaries, db, product_id, sku_ids)
            if summaries:
                response.skus_afectados = [SkuSummary(**s) for s in summaries]

        return response

    @staticmethod
    def list_movements(db: Session, filters: MovementFilters, limit: int) -> List[MovementResponse]:
        try:
            movements = LedgerStore.query(db, filters, limit)
        except SQLAlchemyError as e:
            raise DependencyError(f"Error listing movements: {e}")
        return [MovementResponse.from_model(m) for m in movements]

    @staticmethod
    def movements_by_sku(db: Session, sku_id: UUID, limit: int) -> List[MovementResponse]:
        try:
            rows = LedgerStore.query_by_sku(db, sku_id, limit)
        except SQLAlchemyError as e:
            raise DependencyError(f"Error reading movements for SKU: {e}")
        return [
            MovementResponse.from_model(m, product_name=product_name, sku_name=sku_name)
            for m, sku_name, product_name in rows
        ]

    @staticmethod
    def movements_by_request(db: Session, request_id: UUID, limit: int) -> Dict:
        """Movements of a request plus per-product statistics"""
        movements = TraceabilityService.list_movements(db, MovementFilters(request_id=request_id), limit)

        product_stats: Dict[str, Dict] = {}
        for m in movements:
            key = str(m.product_id)
            stats = product_stats.setdefault(key, {
                "product_id": m.product_id,
                "total_movimientos": 0,
                "total_cantidad": 0,
                "tipos": {},
            })
            stats["total_movimientos"] += 1
            stats["total_cantidad"] += m.cantidad
            stats["tipos"][m.tipo_movimiento] = stats["tipos"].get(m.tipo_movimiento, 0) + 1

        return {
            "request_id": request_id,
            "total_movimientos": len(movements),
            "productos_afectados": len(product_stats),
            "limit": limit,
            "movimientos": movements,
            "estadisticas_productos": product_stats,
        }

    @staticmethod
    def metrics(db: Session, now: Optional[datetime] = None) -> MetricsResponse:
        now = now or datetime.now(timezone.utc)
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            stats = LedgerStore.aggregate(db, since=start_of_day)
            latest = LedgerStore.latest(db, limit=5)
        except SQLAlchemyError as e:
            raise DependencyError(f"Error reading metrics: {e}")

        return MetricsResponse(
            service=settings.APP_NAME,
            version=settings.APP_VERSION,
            total_movimientos=stats["total"],
            movimientos_hoy=stats["today"],
            movimientos_por_tipo=stats["by_kind"],
            movimientos_por_origen=stats["by_origin"],
            ultimos_movimientos=[HistoryEntry.from_model(m) for m in latest],
            timestamp=now,
            uptime=format_uptime(START_TIME, now),
        )

    @staticmethod
    def get_movement(db: Session, movement_id: int) -> MovementResponse:
        try:
            movement = LedgerStore.get(db, movement_id)
        except SQLAlchemyError as e:
            raise DependencyError(f"Error reading movement: {e}")
        if movement is None:
            raise NotFoundError(f"Movement {movement_id} not found")
        return MovementResponse.from_model(movement)

    @staticmethod
    def decrypt_movement(db: Session, cipher: PayloadCipher, movement_id: int) -> Dict:
        """Decrypted payload of one movement; IntegrityError if the blob does not authenticate"""
        try:
            movement = LedgerStore.get(db, movement_id)
        except SQLAlchemyError as e:
            raise DependencyError(f"Error reading movement: {e}")
        if movement is None:
            raise NotFoundError(f"Movement {movement_id} not found")

        return {
            "id": movement.id,
            "product_id": movement.product_id,
            "payload": cipher.decrypt_payload(movement.encrypted_payload),
        }


def _best_effort(db: Session, section: str, fn, *args):
    try:
        return fn(*args)
    except SQLAlchemyError as e:
        logger.warning(f"Traceability section '{section}' omitted: {e}")
        db.rollback()
        return None
