"""
Ledger Store - the only component that issues persistence statements for movements
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import exc as sa_exc
from sqlalchemy import func
from sqlalchemy.orm import Session

from movement_ledger.models import Movement, Product, Sku, Request, Document
from movement_ledger.schemas.movement import MovementFilters

logger = logging.getLogger(__name__)


class LedgerStore:
    """Movement persistence and read-side queries"""

    # ===================== WRITE =====================

    @staticmethod
    def insert(db: Session, movement: Movement) -> Tuple[Movement, bool]:
        """
        Insert a movement unless one with the same idempotency key exists.
        Returns (row, created). The caller owns commit/rollback of the session.
        """
        existing = LedgerStore.get_by_idempotency_key(db, movement.idempotency_key)
        if existing:
            return existing, False

        db.add(movement)
        try:
            db.flush()
        except sa_exc.IntegrityError:
            # A concurrent unit committed the same key first
            db.rollback()
            existing = LedgerStore.get_by_idempotency_key(db, movement.idempotency_key)
            if existing is None:
                raise
            return existing, False

        return movement, True

    # ===================== LOOKUPS =====================

    @staticmethod
    def get(db: Session, movement_id: int) -> Optional[Movement]:
        return db.query(Movement).filter(Movement.id == movement_id).first()

    @staticmethod
    def get_by_idempotency_key(db: Session, key: str) -> Optional[Movement]:
        return db.query(Movement).filter(Movement.idempotency_key == key).first()

    @staticmethod
    def last_quantity_after(db: Session, product_id: UUID) -> Optional[int]:
        """quantity_after of the most recently inserted movement for a product"""
        row = (
            db.query(Movement.quantity_after)
            .filter(Movement.product_id == product_id)
            .order_by(Movement.id.desc())
            .first()
        )
        return row[0] if row else None

    # ===================== QUERIES =====================

    @staticmethod
    def query(db: Session, filters: MovementFilters, limit: int) -> List[Movement]:
        """Movements matching every present filter, newest first"""
        query = db.query(Movement)

        if filters.product_id is not None:
            query = query.filter(Movement.product_id == filters.product_id)
        if filters.sku_id is not None:
            query = query.filter(Movement.sku_id == filters.sku_id)
        if filters.request_id is not None:
            query = query.filter(Movement.request_id == filters.request_id)
        if filters.client_account_id is not None:
            query = query.filter(Movement.client_account_id == filters.client_account_id)
        if filters.kind is not None:
            query = query.filter(Movement.kind == filters.kind.value)
        if filters.origin is not None:
            query = query.filter(Movement.origin == filters.origin.value)

        return query.order_by(Movement.moved_at.desc(), Movement.id.desc()).limit(limit).all()

    @staticmethod
    def query_by_product(db: Session, product_id: UUID) -> List[Movement]:
        """Full history of a product in replay order (oldest first)"""
        return (
            db.query(Movement)
            .filter(Movement.product_id == product_id)
            .order_by(Movement.moved_at.asc(), Movement.id.asc())
            .all()
        )

    @staticmethod
    def query_by_sku(db: Session, sku_id: UUID, limit: int) -> List[Tuple[Movement, Optional[str], Optional[str]]]:
        """Movements for a SKU with SKU and product names, newest first"""
        return (
            db.query(Movement, Sku.name_sku, Product.name)
            .outerjoin(Sku, Sku.id == Movement.sku_id)
            .outerjoin(Product, Product.id == Movement.product_id)
            .filter(Movement.sku_id == sku_id)
            .order_by(Movement.moved_at.desc(), Movement.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def latest(db: Session, limit: int = 5) -> List[Movement]:
        return db.query(Movement).order_by(Movement.moved_at.desc(), Movement.id.desc()).limit(limit).all()

    # ===================== AGGREGATES =====================

    @staticmethod
    def aggregate(db: Session, since: datetime) -> Dict:
        """Totals over the whole ledger; `today` counts rows created at or after `since`"""
        total = db.query(func.count(Movement.id)).scalar() or 0
        today = db.query(func.count(Movement.id)).filter(Movement.created_at >= since).scalar() or 0

        by_kind = {
            kind: count
            for kind, count in db.query(Movement.kind, func.count(Movement.id)).group_by(Movement.kind).all()
        }
        by_origin = {
            origin: count
            for origin, count in db.query(Movement.origin, func.count(Movement.id)).group_by(Movement.origin).all()
        }

        return {"total": total, "today": today, "by_kind": by_kind, "by_origin": by_origin}

    # ===================== CATALOG (best-effort enrichment) =====================

    @staticmethod
    def product_name(db: Session, product_id: UUID) -> Optional[str]:
        row = db.query(Product.name).filter(Product.id == product_id).first()
        return row[0] if row else None

    @staticmethod
    def sku_names(db: Session, sku_ids: Iterable[UUID]) -> Dict[UUID, str]:
        sku_ids = list(sku_ids)
        if not sku_ids:
            return {}
        return {sku_id: name for sku_id, name in db.query(Sku.id, Sku.name_sku).filter(Sku.id.in_(sku_ids)).all()}

    @staticmethod
    def request_summaries(db: Session, request_ids: Iterable[UUID]) -> List[Dict]:
        """Status, document count and movement count per request, newest request first"""
        request_ids = list(request_ids)
        if not request_ids:
            return []

        documents = (
            db.query(Document.request_id.label("request_id"), func.count(Document.id).label("total"))
            .filter(Document.request_id.in_(request_ids))
            .group_by(Document.request_id)
            .subquery()
        )
        movements = (
            db.query(Movement.request_id.label("request_id"), func.count(Movement.id).label("total"))
            .filter(Movement.request_id.in_(request_ids))
            .group_by(Movement.request_id)
            .subquery()
        )

        rows = (
            db.query(
                Request.id,
                Request.status,
                Request.created_at,
                func.coalesce(documents.c.total, 0),
                func.coalesce(movements.c.total, 0),
            )
            .outerjoin(documents, documents.c.request_id == Request.id)
            .outerjoin(movements, movements.c.request_id == Request.id)
            .filter(Request.id.in_(request_ids))
            .order_by(Request.created_at.desc())
            .all()
        )

        return [
            {
                "request_id": request_id,
                "status": status,
                "created_at": created_at,
                "total_documentos": total_documents,
                "total_movimientos": total_movements,
            }
            for request_id, status, created_at, total_documents, total_movements in rows
        ]

    @staticmethod
    def sku_summaries(db: Session, product_id: UUID, sku_ids: Iterable[UUID]) -> List[Dict]:
        """Name, status and movement count of each SKU for one product, by SKU name"""
        sku_ids = list(sku_ids)
        if not sku_ids:
            return []

        rows = (
            db.query(Sku.id, Sku.name_sku, Sku.status, func.count(Movement.id))
            .outerjoin(Movement, (Movement.sku_id == Sku.id) & (Movement.product_id == product_id))
            .filter(Sku.id.in_(sku_ids))
            .group_by(Sku.id, Sku.name_sku, Sku.status)
            .order_by(Sku.name_sku)
            .all()
        )

        return [
            {"sku_id": sku_id, "sku_name": name, "status": status, "total_movimientos": count}
            for sku_id, name, status, count in rows
        ]
