from decimal import Decimal

import pytest
import pytest_asyncio

from seatbook.config import Settings
from seatbook.confirmation import ConfirmationEngine
from seatbook.db import create_db_and_tables, create_store, ensure_operator
from seatbook.dispatcher import InboundDispatcher
from seatbook.holds import HoldIssuer, TripLocks
from seatbook.models import Route, Trip
from seatbook.notifier import Notifier
from tests.fakes import FakeClock, FakeMessenger
from tests.util_constant import DEPARTURE, JOURNEY_DATE, NOW


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        OPERATOR_PHONE="+91 98000-00001",
        OPERATOR_NAME="Test Travels",
        HOLD_DURATION_MINUTES=10,
        WEBHOOK_VERIFY_TOKEN="s3cret",
        WHATSAPP_ACCESS_TOKEN="test-token",
        WHATSAPP_PHONE_NUMBER_ID="1055",
    )


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh file-backed store per test, so concurrent sessions use separate connections."""
    store = create_store(f"sqlite+aiosqlite:///{tmp_path / 'seatbook-test.db'}")
    await create_db_and_tables(store)
    yield store
    await store.get_engine().dispose()


@pytest_asyncio.fixture
async def operator(db, settings):
    return await ensure_operator(db, settings.OPERATOR_PHONE, settings.OPERATOR_NAME)


@pytest_asyncio.fixture
async def make_route(db, operator):
    async def _make_route(source="Mumbai", destination="Pune", price="500.00"):
        async with db.Session() as session:
            route = Route(operator_id=operator.id, source=source, destination=destination,
                          price=Decimal(price))
            session.add(route)
            await session.commit()
            return route

    return _make_route


@pytest_asyncio.fixture
async def make_trip(db, make_route):
    async def _make_trip(route=None, journey_date=JOURNEY_DATE, departure_time=DEPARTURE, seat_quota=5):
        route = route or await make_route()
        async with db.Session() as session:
            trip = Trip(route_id=route.id, journey_date=journey_date,
                        departure_time=departure_time, seat_quota=seat_quota)
            session.add(trip)
            await session.commit()
            return await session.get(Trip, trip.id, populate_existing=True)

    return _make_trip


@pytest_asyncio.fixture
async def trip(make_trip):
    return await make_trip()


@pytest.fixture
def notifier(db, messenger, clock):
    return Notifier(db, messenger, clock)


@pytest.fixture
def trip_locks():
    return TripLocks()


@pytest.fixture
def hold_issuer(db, notifier, settings, trip_locks, clock):
    return HoldIssuer(db, notifier, settings, trip_locks, clock)


@pytest.fixture
def confirmation_engine(db, notifier, messenger, clock):
    return ConfirmationEngine(db, notifier, messenger, clock)


@pytest.fixture
def dispatcher(db, hold_issuer, confirmation_engine, notifier, clock):
    return InboundDispatcher(db, hold_issuer, confirmation_engine, notifier, clock)
