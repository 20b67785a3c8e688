"""
Pytest configuration and shared fixtures for Kudos Integrity tests.

Provides:
- A controllable clock shared by every component
- An in-memory record store seeded with users
- Fully wired components and a Flask test client
"""

import os
import sys
from datetime import UTC, datetime, timedelta

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from abuse_detector import AbuseThresholds
from bootstrap import build_components
from idempotency import IdempotencyConfig
from identity import StoreIdentityResolver
from models import RECOGNITIONS, Actor, Recognition, Role, to_iso
from quota import QuotaConfig
from rate_limiter import RateLimitConfig
from storage.memory import MemoryRecordStore

START = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


USERS = [
    Actor(id="admin_1", role=Role.ADMIN, organization_id="org_1", email="admin@example.com"),
    Actor(id="manager_1", role=Role.MANAGER, organization_id="org_1", email="manager@example.com"),
    Actor(id="manager_2", role=Role.MANAGER, organization_id="org_2"),
    Actor(id="user_1", role=Role.USER, organization_id="org_1", email="one@example.com"),
    Actor(id="user_2", role=Role.USER, organization_id="org_1", email="two@example.com"),
    Actor(id="user_3", role=Role.USER, organization_id="org_1"),
]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = MemoryRecordStore()
    resolver = StoreIdentityResolver(store)
    for actor in USERS:
        resolver.register(actor)
    return store


@pytest.fixture
def components(store, clock):
    return build_components(
        store,
        rate_limit_config=RateLimitConfig(),
        quota_config=QuotaConfig(),
        idempotency_config=IdempotencyConfig(),
        thresholds=AbuseThresholds(),
        clock=clock,
    )


@pytest.fixture
def make_recognition(store, clock):
    """Insert a recognition directly into the store, bypassing creation guards."""

    def _make(giver_id="user_1", recipient_id="user_2", weight=1.0, **kwargs):
        kwargs.setdefault("reason", "Helped the team ship the quarterly release on time")
        kwargs.setdefault("created_at", to_iso(clock()))
        rec = Recognition(giver_id=giver_id, recipient_id=recipient_id, weight=weight, **kwargs)
        store.create(RECOGNITIONS, rec.id, rec.to_dict())
        return rec

    return _make


@pytest.fixture
def app(components):
    from api import create_app

    app = create_app(components)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
