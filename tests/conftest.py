"""Test fixtures for the booking service."""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import fakeredis
import pytest

# Set test environment before importing app modules
os.environ.setdefault("BOOKING_DB", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ["RABBIT_URL"] = ""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from shared.database import Base
from app import models  # noqa: F401  (registers tables)
from app.deadlines import DeadlineManager
from app.gateway import GatewayDeclined, GatewayResult, GatewayTransientError
from app.payments import PaymentOrchestrator
from app.ranking import ProviderRanker
from app.repository import BookingRepository, PaymentRepository
from app.schemas import CreateBookingRequest, Location, ServiceRef
from app.state_machine import BookingStateMachine
from app.transitions import BookingMode, UrgencyLevel

# Downtown reference point for provider fixtures
ORIGIN = Location(latitude=52.5200, longitude=13.4050, address="Alexanderplatz 1")


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeGateway:
    """In-memory payment gateway. Records every successful call."""

    def __init__(self):
        self.calls: list[tuple[str, Decimal, str]] = []
        self.attempts: dict[str, int] = {"authorize": 0, "capture": 0, "refund": 0}
        self.decline: dict[str, str] = {}
        self.transient_failures: dict[str, int] = {"authorize": 0, "capture": 0, "refund": 0}
        self.always_fail: set[str] = set()
        self._seq = 0

    def _check(self, operation: str):
        self.attempts[operation] += 1
        if operation in self.decline:
            raise GatewayDeclined(self.decline[operation], status_code=402)
        if operation in self.always_fail:
            raise GatewayTransientError(f"{operation} timed out")
        if self.transient_failures[operation] > 0:
            self.transient_failures[operation] -= 1
            raise GatewayTransientError(f"{operation} timed out")

    async def authorize(self, amount, currency, idempotency_key, metadata=None):
        self._check("authorize")
        self._seq += 1
        self.calls.append(("authorize", amount, idempotency_key))
        return GatewayResult(reference=f"auth_{self._seq}", amount=amount, status="requires_capture")

    async def capture(self, reference, amount, idempotency_key):
        self._check("capture")
        self.calls.append(("capture", amount, idempotency_key))
        return GatewayResult(reference=reference, amount=amount, status="captured")

    async def refund(self, reference, amount, idempotency_key):
        self._check("refund")
        self.calls.append(("refund", amount, idempotency_key))
        return GatewayResult(reference=reference, amount=amount, status="refunded")

    def made(self, operation: str) -> list[tuple[str, Decimal, str]]:
        return [c for c in self.calls if c[0] == operation]


class FakeProviderSource:
    def __init__(self, providers: list[dict] | None = None):
        self.providers = providers if providers is not None else []
        self.requests: list[str] = []

    async def fetch_providers(self, category_id: str) -> list[dict]:
        self.requests.append(category_id)
        return [dict(p) for p in self.providers]


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.events: list[tuple[str, str]] = []

    async def publish(self, routing_key: str, message_body: str):
        self.events.append((routing_key, message_body))

    def routing_keys(self) -> list[str]:
        return [rk for rk, _ in self.events]


async def no_sleep(_delay):
    return None


def provider(provider_id: str, *, d_lat: float = 0.01, rating: float = 4.5, **overrides) -> dict:
    record = {
        "id": provider_id,
        "is_verified": True,
        "availability": "available",
        "is_paused": False,
        "emergency_available": True,
        "latitude": ORIGIN.latitude + d_lat,
        "longitude": ORIGIN.longitude,
        "average_rating": rating,
    }
    record.update(overrides)
    return record



# Default base prices come to totals of 100.00 and 50.00 once the 10% platform fee is added.
def normal_request(base: str = "90.91", provider_id: str = "prov-1", **overrides) -> CreateBookingRequest:
    data = {
        "mode": BookingMode.NORMAL,
        "customer_id": "cust-1",
        "provider_id": provider_id,
        "service": ServiceRef(category_id="plumbing", service_id="svc-1", base_price=Decimal(base)),
        "location": ORIGIN,
        "urgency_level": UrgencyLevel.MEDIUM,
    }
    data.update(overrides)
    return CreateBookingRequest(**data)


def sos_request(base: str = "45.45", provider_id: str | None = None, **overrides) -> CreateBookingRequest:
    data = {
        "mode": BookingMode.SOS,
        "customer_id": "cust-2",
        "provider_id": provider_id,
        "service": ServiceRef(category_id="locksmith", base_price=Decimal(base)),
        "location": ORIGIN,
        "urgency_level": UrgencyLevel.EMERGENCY,
        "notes": "Locked out, child inside",
    }
    data.update(overrides)
    return CreateBookingRequest(**data)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def source():
    return FakeProviderSource([provider("prov-a", d_lat=0.01), provider("prov-b", d_lat=0.03)])


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def booking_repo(session_factory):
    return BookingRepository(session_factory)


@pytest.fixture
def payment_repo(session_factory):
    return PaymentRepository(session_factory)


@pytest.fixture
def orchestrator(gateway, payment_repo):
    return PaymentOrchestrator(gateway, payment_repo, max_attempts=3, sleep=no_sleep)


@pytest.fixture
async def deadlines(clock):
    manager = DeadlineManager(clock=clock, retry_seconds=30)
    yield manager
    await manager.close()


@pytest.fixture
def machine(booking_repo, orchestrator, deadlines, source, publisher, clock):
    return BookingStateMachine(
        booking_repo,
        orchestrator,
        deadlines,
        ranker=ProviderRanker(source),
        publisher=publisher,
        clock=clock,
    )


def assert_deadline_invariant(booking):
    assert (booking.status == "pending") == (booking.response_deadline is not None)
