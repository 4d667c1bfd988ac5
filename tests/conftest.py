# tests/conftest.py
"""
Fixtures and test setup for the Pytest suite.

Every test gets its own in-memory SQLite database, a controllable clock and a
fake payment ledger; the real service container is built on top of them.
"""

import itertools
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment variables BEFORE any application code is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["METRICS_ENABLED"] = "true"
os.environ["LEDGER_WEBHOOK_SECRET"] = "whsec_test"
os.environ["API_KEY"] = "test_api_key"
os.environ["JWT_SECRET"] = "test-jwt-secret"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gatherpay.boot import build_services
from gatherpay.config import PipelineConfig
from gatherpay.infrastructure.db.models import Base, Event, User
from gatherpay.infrastructure.db.uow import make_session_scope

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock the services read; tests move it forward explicitly."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_ledger() -> MagicMock:
    """Payment ledger double with sequential references for every call kind."""
    intents, refunds, transfers = itertools.count(1), itertools.count(1), itertools.count(1)
    ledger = MagicMock()
    ledger.create_intent = AsyncMock(side_effect=lambda *a, **k: f"pi_{next(intents)}")
    ledger.refund = AsyncMock(side_effect=lambda *a, **k: f"re_{next(refunds)}")
    ledger.transfer = AsyncMock(side_effect=lambda *a, **k: f"tr_{next(transfers)}")
    ledger.aclose = AsyncMock()
    return ledger


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_scope(db_engine):
    return make_session_scope(sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> MagicMock:
    return make_ledger()


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        matching_mode="fallback",
        ml_service_url=None,
        platform_fee_percent=10,
        escrow_max_retries=3,
        fx_base_currency="EUR",
        fx_rates={"EUR": Decimal("1"), "USD": Decimal("1.08")},
    )


@pytest.fixture
def services(session_scope, ledger, pipeline_config, clock):
    """The real service container wired to the test database, fake ledger and clock."""
    return build_services(
        session_scope=session_scope,
        ledger=ledger,
        config=pipeline_config,
        clock=clock,
        with_scheduler=False,
    )


@pytest.fixture
def make_user(session_scope):
    counter = itertools.count(1)

    def _make(**overrides) -> User:
        n = next(counter)
        fields = dict(
            email=f"user{n}@example.com",
            display_name=f"User {n}",
            hobby_ids=[1, 2],
            latitude=52.52,
            longitude=13.405,
            search_radius_km=10.0,
            country="DE",
            city="Berlin",
        )
        fields.update(overrides)
        with session_scope() as s:
            user = User(**fields)
            s.add(user)
            s.flush()
        return user

    return _make


@pytest.fixture
def make_event(session_scope, clock):
    def _make(host: User, **overrides) -> Event:
        starts_at = overrides.pop("starts_at", clock() + timedelta(days=3))
        fields = dict(
            host_id=host.id,
            title="Board games night",
            capacity=10,
            starts_at=starts_at,
            ends_at=starts_at + timedelta(hours=3),
            price_minor=2000,
            currency="EUR",
            hobby_ids=[1],
            category_ids=[],
            latitude=52.52,
            longitude=13.405,
            country="DE",
            city="Berlin",
        )
        fields.update(overrides)
        with session_scope() as s:
            event = Event(**fields)
            s.add(event)
            s.flush()
        return event

    return _make


@pytest.fixture
def load(session_scope):
    """Fresh read of a row by primary key, outside any service transaction."""

    def _load(model, pk):
        with session_scope() as s:
            return s.get(model, pk)

    return _load


def ledger_event(event_id: str, event_type: str, ref: str, **obj) -> dict:
    return {"id": event_id, "type": event_type, "data": {"object": {"id": ref, **obj}}}
