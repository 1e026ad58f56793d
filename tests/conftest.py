import os

# main.create_app() runs at import time; keep it off the on-disk database
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest

import identity
from database import init_db, make_engine, make_session_factory
from delivery import DeliveryRouter
from identity import IdentityStore
from message_store import MessageStore
from notifications import NullNotifier
from presence import PresenceRegistry
from rate_limiter import LoginLockout, WebSocketRateLimiter
from session import Authenticator, SessionBinding

SEVEN_DAYS = 7 * 24 * 60 * 60


class FakeClock:
    """Naive-UTC wall clock that only moves when told to"""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, 0)):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return self.now


class FakeMonotonic:
    def __init__(self, start: float = 1000.0):
        self.value = start

    def advance(self, seconds: float) -> None:
        self.value += seconds

    def __call__(self) -> float:
        return self.value


class FakeConnection:
    """Stands in for a WebSocket: records every JSON frame sent to it"""

    def __init__(self, name: str = "conn", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent = []

    async def send_json(self, payload: dict) -> None:
        if self.fail:
            raise RuntimeError(f"{self.name} is closed")
        self.sent.append(payload)

    def of_type(self, event: str):
        return [p for p in self.sent if p.get("type") == event]

    def clear(self):
        self.sent.clear()


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    monkeypatch.setattr(identity, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def identities(session_factory):
    return IdentityStore(session_factory)


@pytest.fixture
def store(session_factory):
    return MessageStore(session_factory, SEVEN_DAYS, archive_enabled=True)


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def notifier():
    return NullNotifier()


@pytest.fixture
def router(presence, store, identities, notifier, clock):
    return DeliveryRouter(presence, store, identities, notifier, clock, preview_chars=10)


@pytest.fixture
def lockout(monotonic):
    return LoginLockout(max_failures=5, lockout_seconds=60, clock=monotonic)


@pytest.fixture
def authenticator(identities, lockout):
    return Authenticator(identities, lockout)


@pytest.fixture
def users(identities):
    identities.create("alice", "alicepw", "Alice")
    identities.create("bob", "bobpw1", "Bob")
    identities.create("carol", "carolpw", "Carol")
    return identities


@pytest.fixture
def make_session(router, authenticator, clock):
    def _make(name: str = "conn", limiter=None):
        connection = FakeConnection(name)
        session = SessionBinding(
            connection,
            router,
            authenticator,
            limiter or WebSocketRateLimiter(messages_per_minute=600),
            clock,
        )
        return session, connection
    return _make
