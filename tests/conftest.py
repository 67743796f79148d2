import asyncio
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from spin_agent.config import Settings
from spin_agent.database import Base
from spin_agent.models import Organization, WhatsAppAccount
from spin_agent.services.batch_service import BatchCoalescer
from spin_agent.services.conversation_service import get_or_create_contact, get_or_create_conversation
from spin_agent.services.dedup_service import IdempotencyGuard
from spin_agent.services.dispatch_service import ReplyDispatcher
from spin_agent.services.errors import GatewayHTTPError
from spin_agent.services.llm.base import LLMProvider, LLMResponse, join_fragments
from spin_agent.services.scheduler_service import BatchScheduler
from spin_agent.services.state_store import StateStore
from spin_agent.services.whatsapp_service import WhatsAppGateway
from spin_agent.wiring import build_engine

T0 = 1_760_000_000.0


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.commands = []
        return False

    def lrange(self, key, start, end):
        self.commands.append(("lrange", (key, start, end)))
        return self

    def delete(self, *keys):
        self.commands.append(("delete", keys))
        return self

    async def execute(self):
        self.redis._check()
        results = []
        for name, args in self.commands:
            results.append(await getattr(self.redis, name)(*args))
        self.commands = []
        return results


class FakeRedis:
    """In-memory subset of redis.asyncio with TTLs driven by a FakeClock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.data = {}
        self.expires = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    def _now_ms(self) -> int:
        return int(round(self.clock() * 1000))

    def _alive(self, key) -> bool:
        expires_at = self.expires.get(key)
        if expires_at is not None and expires_at <= self._now_ms():
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return key in self.data

    async def set(self, key, value, ex=None, px=None, nx=False):
        self._check()
        if nx and self._alive(key):
            return None
        self.data[key] = str(value)
        if px is not None:
            self.expires[key] = self._now_ms() + int(px)
        elif ex is not None:
            self.expires[key] = self._now_ms() + int(ex) * 1000
        else:
            self.expires.pop(key, None)
        return True

    async def get(self, key):
        self._check()
        if not self._alive(key):
            return None
        return self.data[key]

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.data.pop(key, None)
            self.expires.pop(key, None)
        return removed

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if self._alive(key))

    async def rpush(self, key, *values):
        self._check()
        self._alive(key)
        items = self.data.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lpush(self, key, *values):
        self._check()
        self._alive(key)
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lrange(self, key, start, end):
        self._check()
        if not self._alive(key):
            return []
        items = self.data[key]
        return list(items[start:] if end == -1 else items[start : end + 1])

    async def llen(self, key):
        self._check()
        return len(self.data[key]) if self._alive(key) else 0

    async def sadd(self, key, *members):
        self._check()
        self._alive(key)
        items = self.data.setdefault(key, set())
        before = len(items)
        items.update(members)
        return len(items) - before

    async def smembers(self, key):
        self._check()
        return set(self.data[key]) if self._alive(key) else set()

    async def hset(self, key, mapping=None):
        self._check()
        self._alive(key)
        items = self.data.setdefault(key, {})
        items.update(mapping or {})
        return len(mapping or {})

    async def hgetall(self, key):
        self._check()
        return dict(self.data[key]) if self._alive(key) else {}

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        return None

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class RecordingScheduler(BatchScheduler):
    def __init__(self):
        self.calls = []

    async def schedule(self, session_id, org_id, run_at, scheduled_at, deadline_ms=None):
        self.calls.append(
            {
                "session_id": session_id,
                "org_id": org_id,
                "run_at": run_at,
                "scheduled_at": scheduled_at,
                "deadline_ms": deadline_ms,
            }
        )


class FakeLLM(LLMProvider):
    def __init__(self, fragments=None, error: Optional[Exception] = None):
        self.fragments = fragments or ["Prazer! ", "Qual é o nome da sua empresa?"]
        self.error = error
        self.prompts = []

    async def complete(self, prompt: str) -> LLMResponse:
        self.prompts.append(prompt)
        # yield so concurrent callers interleave like a real network call
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return LLMResponse(content=join_fragments(self.fragments), model="fake", fragments=list(self.fragments))


class FakeGateway(WhatsAppGateway):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, to, text):
        if self.fail:
            raise GatewayHTTPError(500, "gateway down")
        self.sent.append({"to": to, "text": text})
        return {"key": {"id": f"out-{len(self.sent)}"}}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def store(fake_redis):
    return StateStore(fake_redis)


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def coalescer(store, scheduler, clock):
    return BatchCoalescer(store, scheduler, delay_seconds=120, clock=clock)


@pytest.fixture
def guard(store):
    return IdempotencyGuard(store, ttl_seconds=600)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def account(db):
    organization = Organization(id=uuid.uuid4(), name="Acme Vendas", created_at=datetime.now(timezone.utc))
    db.add(organization)
    db.flush()
    account = WhatsAppAccount(
        id=uuid.uuid4(),
        organization_id=organization.id,
        instance_id="inst-1",
        webhook_token="tok-1",
        base_url="https://evo.example.com",
        api_key="evo-key",
        created_at=datetime.now(timezone.utc),
    )
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        batching_delay_seconds=120,
        dedupe_ttl_seconds=600,
        lock_ttl_seconds=90,
        llm_provider="gemini",
        gemini_api_key="test-key",
    )


@pytest.fixture
def engine(test_settings, fake_redis, session_factory, scheduler, fake_llm, gateway, clock):
    return build_engine(
        test_settings,
        redis_client=fake_redis,
        session_factory=session_factory,
        scheduler=scheduler,
        llm=fake_llm,
        dispatcher_factory=lambda conversation: ReplyDispatcher(gateway),
        clock=clock,
    )


@pytest.fixture(autouse=True)
def _no_alerts(monkeypatch):
    monkeypatch.delenv("ALERT_BOT_TOKEN", raising=False)
    monkeypatch.delenv("ALERT_CHAT_ID", raising=False)


@pytest.fixture
def conversation(db, account):
    contact = get_or_create_contact(db, account.organization_id, "5511999990000", "Ana")
    conversation = get_or_create_conversation(db, account.organization_id, contact.id, account.id)
    db.commit()
    return conversation


@pytest.fixture
def client(engine, db):
    from fastapi.testclient import TestClient

    from spin_agent.database import get_db
    from spin_agent.main import app
    from spin_agent.wiring import get_engine

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
