"""Pytest configuration and fixtures."""

import asyncio
import base64
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from uuid import UUID, uuid4

import pytest

# Set test environment before the package reads its settings
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite://")
os.environ.setdefault("CONSUMER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ENCRYPTION_KEY", base64.b64encode(b"k" * 32).decode("ascii"))

from sqlalchemy.orm import sessionmaker  # noqa: E402

from movement_ledger.core import Base  # noqa: E402
from movement_ledger.core.database import build_engine  # noqa: E402
from movement_ledger.core.exceptions import DependencyError  # noqa: E402
from movement_ledger.integrations.base import BaseStockClient, StockSnapshot  # noqa: E402
from movement_ledger.models import Movement  # noqa: E402
from movement_ledger.schemas.movement import MovementMessage  # noqa: E402
from movement_ledger.services import MovementProcessor, NotificationDispatcher, PayloadCipher  # noqa: E402

TEST_KEY = b"k" * 32


# ===================== DATABASE =====================

@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    """File-backed SQLite so every worker thread gets its own connection."""
    path = tmp_path_factory.mktemp("db") / "movements.db"
    engine = build_engine(f"sqlite:///{path}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    yield factory
    # Raw table deletes bypass the ORM immutability guard
    with test_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def cipher():
    return PayloadCipher(TEST_KEY)


def make_movement(
    db,
    cipher: PayloadCipher,
    product_id: UUID,
    kind: str = "entrada",
    quantity: int = 10,
    before: int = 0,
    after: Optional[int] = None,
    moved_at: Optional[datetime] = None,
    origin: str = "api",
    **extra,
) -> Movement:
    """Insert one committed ledger row directly."""
    if after is None:
        after = before + quantity if kind == "entrada" else (before - quantity if kind == "salida" else quantity)
    movement = Movement(
        product_id=product_id,
        kind=kind,
        quantity=quantity,
        quantity_before=before,
        quantity_after=after,
        moved_at=moved_at or datetime.now(timezone.utc),
        client_account_id=extra.pop("client_account_id", uuid4()),
        origin=origin,
        encrypted_payload=cipher.encrypt_payload({"product_id": str(product_id), "cantidad": quantity}),
        idempotency_key=extra.pop("idempotency_key", f"test:{uuid4()}"),
        **extra,
    )
    db.add(movement)
    db.commit()
    db.refresh(movement)
    return movement


# ===================== FAKES =====================

class FakeStockClient(BaseStockClient):
    """In-memory stock-of-record with switchable outages."""

    def __init__(self, stocks: Optional[Dict[UUID, int]] = None, delay: float = 0.0):
        super().__init__("http://stock.test")
        self.stocks: Dict[UUID, int] = dict(stocks or {})
        self.delay = delay
        self.unavailable: Set[UUID] = set()
        self.fail_updates = False
        self.updates: List[tuple] = []

    async def get_stock(self, product_id: UUID) -> StockSnapshot:
        if self.delay:
            await asyncio.sleep(self.delay)
        if product_id in self.unavailable:
            raise DependencyError(f"Stock API unreachable for {product_id}")
        return StockSnapshot(product_id=product_id, stock=self.stocks.get(product_id, 0))

    async def update_stock(self, product_id: UUID, quantity: int) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_updates:
            raise DependencyError("Stock API returned 503")
        self.stocks[product_id] = quantity
        self.updates.append((product_id, quantity))


class RecordingPublisher:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.published: List[tuple] = []

    async def __call__(self, routing_key: str, body: bytes):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("channel closed")
        self.published.append((routing_key, body))


class FakeDelivery:
    """Stand-in for an aio-pika IncomingMessage."""

    def __init__(self, body: bytes, message_id: Optional[str] = None):
        self.body = body
        self.message_id = message_id
        self.acks = 0
        self.nacks: List[bool] = []

    async def ack(self):
        self.acks += 1

    async def nack(self, requeue: bool = True):
        self.nacks.append(requeue)

    @property
    def settlements(self) -> int:
        return self.acks + len(self.nacks)


class FakeQueue:
    def __init__(self):
        self.callback = None
        self.cancelled = False

    async def consume(self, callback, no_ack: bool = False):
        self.callback = callback
        return "ctag-1"

    async def cancel(self, consumer_tag):
        self.cancelled = True


class FakeBroker:
    def __init__(self):
        self.queue = FakeQueue()
        self.connected = False
        self.published: List[tuple] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self):
        self.connected = True

    async def declare_queue(self, queue_name, routing_keys):
        self.queue_name = queue_name
        self.routing_keys = list(routing_keys)
        return self.queue

    async def publish(self, routing_key: str, body: bytes, message_id: Optional[str] = None):
        self.published.append((routing_key, body))

    async def close(self):
        self.connected = False


# ===================== PROCESSOR =====================

@pytest.fixture
def stock_client():
    return FakeStockClient()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier(publisher):
    return NotificationDispatcher(publisher, routing_key="notification.movement", timeout=0.5)


@pytest.fixture
def processor(stock_client, cipher, session_factory, notifier):
    return MovementProcessor(
        stock_client=stock_client,
        cipher=cipher,
        session_factory=session_factory,
        notifier=notifier,
        low_stock_threshold=10,
    )


def make_event(product_id: Optional[UUID] = None, **overrides) -> MovementMessage:
    payload = {
        "product_id": str(product_id or uuid4()),
        "tipo_movimiento": "entrada",
        "cantidad": 25,
        "client_account_id": str(uuid4()),
        "origen": "api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    payload.update(overrides)
    return MovementMessage.model_validate(payload)
