"""
Tests for the movement processor: stock arithmetic, idempotency,
per-product serialization and notifications.
"""
import asyncio
import logging
import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from movement_ledger.core.exceptions import DependencyError, InsufficientStockError, ValidationError
from movement_ledger.models import Movement, MovementKind
from movement_ledger.services import KeyedLock, LedgerStore, MovementProcessor, compute_new_quantity
from tests.conftest import FakeStockClient, make_event


def count_rows(session_factory, product_id=None) -> int:
    db = session_factory()
    try:
        query = db.query(Movement)
        if product_id is not None:
            query = query.filter(Movement.product_id == product_id)
        return query.count()
    finally:
        db.close()


class TestComputeNewQuantity:
    def test_entry_adds(self):
        assert compute_new_quantity(MovementKind.ENTRY, 100, 25) == 125

    def test_exit_subtracts(self):
        assert compute_new_quantity(MovementKind.EXIT, 125, 125) == 0

    def test_exit_below_zero_rejected(self):
        with pytest.raises(InsufficientStockError) as exc:
            compute_new_quantity(MovementKind.EXIT, 5, 6)
        assert exc.value.available == 5
        assert exc.value.requested == 6
        assert not exc.value.retryable

    def test_adjustment_is_absolute(self):
        assert compute_new_quantity(MovementKind.ADJUSTMENT, 125, 60) == 60


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_locks_are_released_after_use(self):
        locks = KeyedLock()
        async with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("p"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


class TestProcess:
    @pytest.mark.asyncio
    async def test_entry_exit_adjustment_sequence(self, processor, stock_client, session_factory):
        product_id = uuid4()
        stock_client.stocks[product_id] = 100

        entry = await processor.process(make_event(product_id, tipo_movimiento="entrada", cantidad=25))
        assert (entry.quantity_before, entry.quantity_after) == (100, 125)
        assert stock_client.stocks[product_id] == 125

        with pytest.raises(InsufficientStockError):
            await processor.process(make_event(product_id, tipo_movimiento="salida", cantidad=200))
        assert stock_client.stocks[product_id] == 125
        assert count_rows(session_factory, product_id) == 1

        adjustment = await processor.process(make_event(product_id, tipo_movimiento="ajuste", cantidad=60))
        assert (adjustment.quantity_before, adjustment.quantity_after) == (125, 60)
        assert stock_client.stocks[product_id] == 60
        assert count_rows(session_factory, product_id) == 2

    @pytest.mark.asyncio
    async def test_english_aliases_are_stored_canonically(self, processor, stock_client):
        product_id = uuid4()
        stock_client.stocks[product_id] = 10

        movement = await processor.process(make_event(product_id, tipo_movimiento="exit", cantidad=4, origen="system"))
        assert movement.kind == "salida"
        assert movement.origin == "sistema"
        assert movement.quantity_after == 6

    @pytest.mark.asyncio
    async def test_redelivery_does_not_apply_twice(self, processor, stock_client, session_factory):
        product_id = uuid4()
        stock_client.stocks[product_id] = 100
        event = make_event(product_id, cantidad=25)

        first = await processor.process(event, idempotency_key="msg:abc")
        second = await processor.process(event, idempotency_key="msg:abc")

        assert first.id == second.id
        assert stock_client.stocks[product_id] == 125
        assert len(stock_client.updates) == 1
        assert count_rows(session_factory, product_id) == 1

    @pytest.mark.asyncio
    async def test_derived_key_deduplicates_identical_event(self, processor, stock_client, session_factory):
        product_id = uuid4()
        stock_client.stocks[product_id] = 0
        event = make_event(product_id, cantidad=3)

        await processor.process(event)
        await processor.process(event)

        assert stock_client.stocks[product_id] == 3
        assert count_rows(session_factory, product_id) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"cantidad": 0},
        {"cantidad": -3},
        {"product_id": "00000000-0000-0000-0000-000000000000"},
        {"client_account_id": "00000000-0000-0000-0000-000000000000"},
    ])
    async def test_invalid_events_are_rejected_before_any_call(self, processor, stock_client, session_factory, overrides):
        with pytest.raises(ValidationError):
            await processor.process(make_event(**overrides))
        assert stock_client.updates == []
        assert count_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_negative_stock_of_record_is_rejected(self, processor, stock_client, session_factory):
        product_id = uuid4()
        stock_client.stocks[product_id] = -5

        with pytest.raises(ValidationError):
            await processor.process(make_event(product_id))
        assert stock_client.updates == []
        assert count_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_stock_read_failure_writes_nothing(self, processor, stock_client, session_factory):
        product_id = uuid4()
        stock_client.unavailable.add(product_id)

        with pytest.raises(DependencyError) as exc:
            await processor.process(make_event(product_id))
        assert exc.value.retryable
        assert count_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_stock_push_failure_writes_nothing(self, processor, stock_client, session_factory):
        product_id = uuid4()
        stock_client.stocks[product_id] = 10
        stock_client.fail_updates = True

        with pytest.raises(DependencyError):
            await processor.process(make_event(product_id))
        assert count_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_ledger_failure_rolls_back(self, processor, stock_client, session_factory, monkeypatch):
        product_id = uuid4()
        stock_client.stocks[product_id] = 10

        def broken_insert(db, movement):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(LedgerStore, "insert", staticmethod(broken_insert))

        with pytest.raises(DependencyError):
            await processor.process(make_event(product_id))
        assert count_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_payload_is_encrypted(self, processor, stock_client, cipher):
        product_id = uuid4()
        stock_client.stocks[product_id] = 0

        movement = await processor.process(make_event(product_id, usuario_id="user-7", motivo="restock"))
        assert "user-7" not in movement.encrypted_payload
        payload = cipher.decrypt_payload(movement.encrypted_payload)
        assert payload["usuario_id"] == "user-7"
        assert payload["motivo"] == "restock"
        assert payload["product_id"] == str(product_id)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_product_events_never_interleave(self, cipher, session_factory):
        product_id = uuid4()
        stock_client = FakeStockClient({product_id: 100}, delay=0.005)
        processor = MovementProcessor(stock_client, cipher, session_factory=session_factory)

        events = [make_event(product_id, cantidad=5, event_id=f"evt-{i}") for i in range(10)]
        await asyncio.gather(*(processor.process(e) for e in events))

        assert stock_client.stocks[product_id] == 150
        db = session_factory()
        try:
            rows = db.query(Movement).filter(Movement.product_id == product_id).order_by(Movement.id).all()
        finally:
            db.close()
        assert len(rows) == 10
        for previous, current in zip(rows, rows[1:]):
            assert current.quantity_before == previous.quantity_after
        assert len(processor.locks) == 0

    @pytest.mark.asyncio
    async def test_other_products_proceed_while_one_is_down(self, processor, stock_client, session_factory):
        down, up = uuid4(), uuid4()
        stock_client.unavailable.add(down)
        stock_client.stocks[up] = 1

        results = await asyncio.gather(
            processor.process(make_event(down)),
            processor.process(make_event(up, cantidad=2)),
            return_exceptions=True,
        )
        assert isinstance(results[0], DependencyError)
        assert isinstance(results[1], Movement)
        assert stock_client.stocks[up] == 3


class TestNotifications:
    @pytest.mark.asyncio
    async def test_committed_movement_is_announced(self, processor, stock_client, notifier, publisher):
        product_id = uuid4()
        stock_client.stocks[product_id] = 100

        await processor.process(make_event(product_id, cantidad=25))
        await notifier.drain()

        types = [json.loads(body)["type"] for _, body in publisher.published]
        assert types == ["movement_processed"]
        routing_key, body = publisher.published[0]
        assert routing_key == "notification.movement"
        assert json.loads(body)["data"]["cantidad_nueva"] == 125

    @pytest.mark.asyncio
    async def test_low_stock_warning(self, processor, stock_client, notifier, publisher):
        product_id = uuid4()
        stock_client.stocks[product_id] = 12

        await processor.process(make_event(product_id, tipo_movimiento="salida", cantidad=4))
        await notifier.drain()

        notifications = [json.loads(body) for _, body in publisher.published]
        low = [n for n in notifications if n["type"] == "low_stock"]
        assert len(low) == 1
        assert low[0]["severity"] == "warning"
        assert low[0]["data"]["stock"] == 8

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_announced(self, processor, stock_client, notifier, publisher):
        product_id = uuid4()
        stock_client.stocks[product_id] = 1

        with pytest.raises(InsufficientStockError):
            await processor.process(make_event(product_id, tipo_movimiento="salida", cantidad=5))
        await notifier.drain()

        notification = json.loads(publisher.published[0][1])
        assert notification["type"] == "insufficient_stock"
        assert notification["severity"] == "error"
        assert notification["data"]["available"] == 1

    @pytest.mark.asyncio
    async def test_failed_notification_does_not_fail_the_movement(self, processor, stock_client, notifier, publisher, session_factory):
        product_id = uuid4()
        stock_client.stocks[product_id] = 50
        publisher.fail = True

        movement = await processor.process(make_event(product_id))
        await notifier.drain()

        assert movement.id is not None
        assert notifier.failed_count == 1
        assert count_rows(session_factory, product_id) == 1

    @pytest.mark.asyncio
    async def test_slow_notification_times_out(self, processor, stock_client, notifier, publisher):
        product_id = uuid4()
        stock_client.stocks[product_id] = 50
        publisher.delay = 1.0
        notifier.timeout = 0.01

        await processor.process(make_event(product_id))
        await notifier.drain()

        assert notifier.failed_count == 1
        assert notifier.sent_count == 0


class TestDriftCheck:
    @pytest.mark.asyncio
    async def test_late_event_does_not_report_drift(self, processor, stock_client, caplog):
        product_id = uuid4()
        stock_client.stocks[product_id] = 0
        t0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

        await processor.process(make_event(product_id, cantidad=10, timestamp=(t0 + timedelta(hours=1)).isoformat()))
        await processor.process(make_event(product_id, cantidad=5, timestamp=t0.isoformat()))
        with caplog.at_level(logging.WARNING, logger="movement_ledger.services.movement_service"):
            await processor.process(make_event(product_id, cantidad=1, timestamp=(t0 + timedelta(hours=2)).isoformat()))

        assert stock_client.stocks[product_id] == 16
        assert "Stock drift" not in caplog.text

    @pytest.mark.asyncio
    async def test_drift_is_reported(self, processor, stock_client, caplog):
        product_id = uuid4()
        stock_client.stocks[product_id] = 0
        await processor.process(make_event(product_id, cantidad=10))

        stock_client.stocks[product_id] = 40
        with caplog.at_level(logging.WARNING, logger="movement_ledger.services.movement_service"):
            await processor.process(make_event(product_id, cantidad=1))

        assert "Stock drift" in caplog.text
