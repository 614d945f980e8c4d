"""
Shared fixtures.

Each test gets its own SQLite database file and a fresh service graph
wired exactly as the application wires it, with a controllable clock.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from stockroom.database import build_engine, build_session_factory, init_db
from stockroom.factory import create_services
from stockroom.schemas.events import Collection
from stockroom.services.stock_ledger_service import StockThresholds


class FakeClock:
    """Clock that only moves when told to (plus one millisecond per reading)."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'stockroom_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def thresholds():
    return StockThresholds(warning=5, critical=2, overstock=10000)


@pytest.fixture
def services(session_factory, clock, thresholds):
    return create_services(
        session_factory,
        thresholds=thresholds,
        reservation_ttl=timedelta(minutes=30),
        clock=clock,
    )


@pytest.fixture
def ledger(services):
    return services.ledger


@pytest.fixture
def reservations(services):
    return services.reservations


@pytest.fixture
def orders(services):
    return services.orders


@pytest.fixture
def events(services):
    """Every event published through the service graph, in order."""
    received = []
    for collection in Collection:
        services.broadcaster.subscribe(collection, "*", received.append)
    return received
