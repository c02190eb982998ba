"""Shared fixtures: in-memory database, fake Redis, fake Kafka and scripted providers."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("TENANT_API_KEYS", "key-a=tenant-a,key-b=tenant-b")
os.environ.setdefault("SERVICE_NAME", "notifly-test")
os.environ.setdefault("AUDIT_SERVICE_URL", "")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")

import asyncio
from uuid import uuid4

import pytest
from aiokafka.errors import KafkaConnectionError
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from notifly.common import db as db_module
from notifly.common.models import NotificationRequest
from notifly.services.gateway.idempotency import compute_payload_hash
from notifly.services.gateway.service import OutboxWriter


# One shared connection so every thread (TestClient included) sees the same in-memory database.
test_engine = create_engine(
    "sqlite+pysqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
db_module.SessionLocal.configure(bind=test_engine)


class FakeRedis:
    """Just enough of `redis.Redis` for the fixed-window limiter, with a manual clock."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}
        self._expiry: dict[str, int] = {}
        self.now = 0

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)

    def _purge(self, key: str) -> None:
        expiry = self._expiry.get(key)
        if expiry is not None and self.now >= expiry:
            self._counters.pop(key, None)
            self._expiry.pop(key, None)

    def incr(self, key: str) -> int:
        self._purge(key)
        self._counters[key] = self._counters.get(key, 0) + 1
        return self._counters[key]

    def expire(self, key: str, seconds: int, nx: bool = False) -> bool:
        self._purge(key)
        if key not in self._counters or (nx and key in self._expiry):
            return False
        self._expiry[key] = self.now + int(seconds)
        return True

    def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._counters:
            return -2
        if key not in self._expiry:
            return -1
        return self._expiry[key] - self.now

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, rdb: FakeRedis) -> None:
        self.rdb = rdb
        self.calls = []

    def incr(self, key):
        self.calls.append((self.rdb.incr, (key,), {}))

    def expire(self, key, seconds, nx=False):
        self.calls.append((self.rdb.expire, (key, seconds), {"nx": nx}))

    def ttl(self, key):
        self.calls.append((self.rdb.ttl, (key,), {}))

    def execute(self):
        return [fn(*args, **kwargs) for fn, args, kwargs in self.calls]


class FakeBus:
    """Records publishes instead of talking to Kafka."""

    def __init__(self) -> None:
        self.published = []
        self.fail = False
        self.fail_request_ids: set[str] = set()

    async def publish(self, topic, message) -> None:
        if self.fail or message.request_id in self.fail_request_ids:
            raise KafkaConnectionError("broker unavailable")
        self.published.append((topic, message))

    async def close(self) -> None:
        return None

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.published]


class ScriptedSender:
    """Provider double: raises queued errors in order, then succeeds (or keeps failing with `always`)."""

    def __init__(self, outcomes=None, always: Exception | None = None, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.always = always
        self.delay = delay
        self.calls = []

    async def send(self, message) -> None:
        self.calls.append(message)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if outcome is not None:
                raise outcome
            return
        if self.always is not None:
            raise self.always


@pytest.fixture
def session_factory():
    db_module.Base.metadata.create_all(test_engine)
    yield db_module.SessionLocal
    db_module.Base.metadata.drop_all(test_engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def bus():
    return FakeBus()


@pytest.fixture
def make_request(session_factory):
    """Persist a request plus its outbox row and return the request."""

    def _make(
        tenant_id: str = "tenant-a",
        event_type: str = "order.shipped",
        payload: dict | None = None,
        user_id: str | None = "user-1",
        channels: list[str] | None = None,
        request_id: str | None = None,
    ) -> NotificationRequest:
        payload = payload or {"recipient": {"email": "a@example.com", "phone": "+15550001111"}}
        with session_factory() as db:
            return OutboxWriter().persist(
                db,
                tenant_id=tenant_id,
                request_id=request_id or str(uuid4()),
                event_type=event_type,
                payload=payload,
                payload_hash=compute_payload_hash(event_type, payload, user_id),
                correlation_id=str(uuid4()),
                user_id=user_id,
                channels=channels,
            )

    return _make
