"""
Movement Service - turns one movement event into one committed ledger row

Unit of work per event:
    dedupe -> validate -> read stock -> compute -> push stock -> encrypt -> insert -> notify

The stock-of-record calls cannot join the database transaction, so a row
exists only once the insert commits. Events for the same product are
serialized so that the read-modify-write on the stock value never interleaves.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, Hashable, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from movement_ledger.core.database import SessionLocal
from movement_ledger.core.exceptions import DependencyError, InsufficientStockError, ValidationError
from movement_ledger.integrations.base import BaseStockClient
from movement_ledger.models import Movement, MovementKind
from movement_ledger.schemas.movement import MovementMessage, NotificationMessage
from .crypto_service import PayloadCipher
from .ledger_store import LedgerStore
from .notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

NIL_UUID = UUID(int=0)


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or waits on it"""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def validate_event(event: MovementMessage):
    """Reject events that can never be applied"""
    if event.product_id is None or event.product_id == NIL_UUID:
        raise ValidationError("product_id is required")
    if event.client_account_id is None or event.client_account_id == NIL_UUID:
        raise ValidationError("client_account_id is required")
    if not isinstance(event.tipo_movimiento, MovementKind):
        raise ValidationError(f"Unknown movement kind: {event.tipo_movimiento}")
    if isinstance(event.cantidad, bool) or not isinstance(event.cantidad, int) or event.cantidad <= 0:
        raise ValidationError(f"cantidad must be a positive integer, got {event.cantidad}")


def compute_new_quantity(kind: MovementKind, before: int, quantity: int, product_id=None) -> int:
    """
    entrada: before + quantity
    salida:  before - quantity, never below zero
    ajuste:  quantity (absolute)
    """
    if kind == MovementKind.ENTRY:
        return before + quantity
    if kind == MovementKind.EXIT:
        if before < quantity:
            raise InsufficientStockError(product_id, available=before, requested=quantity)
        return before - quantity
    if kind == MovementKind.ADJUSTMENT:
        return quantity
    raise ValidationError(f"Unknown movement kind: {kind}")


class MovementProcessor:
    """Owns the write path into the movement ledger"""

    def __init__(
        self,
        stock_client: BaseStockClient,
        cipher: PayloadCipher,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[NotificationDispatcher] = None,
        low_stock_threshold: int = 10,
    ):
        self.stock_client = stock_client
        self.cipher = cipher
        self.session_factory = session_factory
        self.notifier = notifier
        self.low_stock_threshold = low_stock_threshold
        self.locks = KeyedLock()

    async def process(self, event: MovementMessage, idempotency_key: Optional[str] = None) -> Movement:
        """Apply one event; returns the committed (or previously committed) ledger row"""
        validate_event(event)
        key = idempotency_key or event.natural_key()

        async with self.locks.hold(event.product_id):
            existing = await run_in_threadpool(self._find_existing, key)
            if existing is not None:
                logger.info(f"[SKIP] Movement {key} already recorded as #{existing.id}")
                return existing

            snapshot = await self.stock_client.get_stock(event.product_id)
            before = snapshot.stock
            if before < 0:
                raise ValidationError(
                    f"Stock-of-record reports negative stock {before} for product {event.product_id}"
                )

            try:
                after = compute_new_quantity(event.tipo_movimiento, before, event.cantidad, event.product_id)
            except InsufficientStockError as e:
                self._notify_insufficient(event, e)
                raise

            await self.stock_client.update_stock(event.product_id, after)

            movement = Movement(
                product_id=event.product_id,
                sku_id=event.sku_id,
                request_id=event.request_id,
                document_id=event.document_id,
                kind=event.tipo_movimiento.value,
                quantity=event.cantidad,
                quantity_before=before,
                quantity_after=after,
                moved_at=event.timestamp,
                user_id=event.usuario_id,
                reason=event.motivo,
                client_account_id=event.client_account_id,
                origin=event.origen.value,
                encrypted_payload=self.cipher.encrypt_payload(event.sensitive_payload()),
                idempotency_key=key,
            )

            try:
                saved, created = await run_in_threadpool(self._commit, movement, before)
            except DependencyError:
                logger.error(
                    f"[GAP] Stock for product {event.product_id} pushed {before} -> {after} "
                    f"but ledger insert failed for {key}; stock-of-record is ahead of the ledger"
                )
                raise

        if created:
            logger.info(
                f"[OK] Movement #{saved.id} {saved.kind} {saved.quantity} "
                f"product={saved.product_id} {before} -> {after}"
            )
            self._notify_committed(saved)
        else:
            logger.warning(f"Movement {key} was committed concurrently as #{saved.id}; stock push may have double-applied")
        return saved

    # ===================== DATABASE =====================

    def _find_existing(self, key: str) -> Optional[Movement]:
        db = self.session_factory()
        try:
            return LedgerStore.get_by_idempotency_key(db, key)
        except SQLAlchemyError as e:
            raise DependencyError(f"Ledger lookup failed: {e}")
        finally:
            db.close()

    def _commit(self, movement: Movement, before: int) -> Tuple[Movement, bool]:
        """Insert the row and its quantity bookkeeping in one transaction"""
        db = self.session_factory()
        try:
            previous = LedgerStore.last_quantity_after(db, movement.product_id)
            if previous is not None and previous != before:
                logger.warning(
                    f"Stock drift for product {movement.product_id}: ledger says {previous}, "
                    f"stock-of-record says {before}"
                )

            saved, created = LedgerStore.insert(db, movement)
            db.commit()
            db.refresh(saved)
            return saved, created
        except SQLAlchemyError as e:
            db.rollback()
            raise DependencyError(f"Ledger insert failed: {e}")
        finally:
            db.close()

    # ===================== NOTIFICATIONS =====================

    def _notify(self, notification: NotificationMessage):
        if self.notifier is not None:
            self.notifier.dispatch(notification)

    def _notify_committed(self, movement: Movement):
        self._notify(NotificationMessage(
            type="movement_processed",
            product_id=movement.product_id,
            message=f"Movimiento {movement.kind} de {movement.quantity} unidades registrado",
            data={
                "movement_id": movement.id,
                "tipo_movimiento": movement.kind,
                "cantidad": movement.quantity,
                "cantidad_anterior": movement.quantity_before,
                "cantidad_nueva": movement.quantity_after,
                "origen": movement.origin,
                "request_id": str(movement.request_id) if movement.request_id else None,
                "sku_id": str(movement.sku_id) if movement.sku_id else None,
            },
            severity="info",
        ))

        if movement.quantity_after <= self.low_stock_threshold:
            self._notify(NotificationMessage(
                type="low_stock",
                product_id=movement.product_id,
                message=f"Stock bajo: {movement.quantity_after} unidades",
                data={"stock": movement.quantity_after, "threshold": self.low_stock_threshold},
                severity="warning",
            ))

    def _notify_insufficient(self, event: MovementMessage, error: InsufficientStockError):
        self._notify(NotificationMessage(
            type="insufficient_stock",
            product_id=event.product_id,
            message=f"Stock insuficiente: disponible {error.available}, solicitado {error.requested}",
            data={
                "available": error.available,
                "requested": error.requested,
                "request_id": str(event.request_id) if event.request_id else None,
            },
            severity="error",
        ))
