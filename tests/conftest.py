import asyncio
import fnmatch
import itertools
from typing import Dict, Optional, Tuple

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from cms.api.main import create_app
from cms.db import models
from cms.db.database import StoreClient, reset_store_for_tests
from cms.db.readiness import ReadinessInitializer, reset_readiness_for_tests
from cms.db.schema import SynchronizeSchema
from cms.services.auth_service import AuthService, reset_auth_service_for_tests
from cms.services.cache import CacheClient, reset_cache_client_for_tests
from cms.utils.settings import refresh_settings_cache
from cms.utils.token_crypto import hash_password

_CONFIG_VARS = (
    "DATABASE_URL",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "POSTGRES_DB",
    "CMS_TEST_DB",
    "REDIS_URL",
    "REDIS_HOST",
    "REDIS_PORT",
    "REDIS_TLS",
    "REDIS_PASSWORD",
    "CACHE_RECONNECT_MAX_ATTEMPTS",
    "SCHEMA_SETTLE_DELAY_SECONDS",
    "SESSION_TTL_SECONDS",
    "JWT_SECRET",
    "JWT_EXPIRES_IN_SECONDS",
    "APP_ENV",
    "APP_PHASE",
    "ALEMBIC_CONFIG",
)

TEST_SECRET = "test-secret"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    """Every test starts from an empty configuration and fresh singletons."""
    for name in _CONFIG_VARS:
        monkeypatch.delenv(name, raising=False)
    refresh_settings_cache()
    yield
    refresh_settings_cache()
    reset_auth_service_for_tests()
    reset_cache_client_for_tests()
    reset_readiness_for_tests()
    reset_store_for_tests()


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with a manual clock.

    ``down`` makes every call raise a connection error; ``ping_failures``
    fails only the next N pings.
    """

    def __init__(self):
        self.now = 0.0
        self.data: Dict[str, Tuple[str, Optional[float]]] = {}
        self.down = False
        self.ping_failures = 0
        self.ping_calls = 0
        self.ping_delay = 0.0
        self.closed = False
        self.set_calls = []

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _live(self, key: str) -> bool:
        entry = self.data.get(key)
        if entry is None:
            return False
        expires_at = entry[1]
        if expires_at is not None and self.now >= expires_at:
            del self.data[key]
            return False
        return True

    def ttl_of(self, key: str) -> Optional[float]:
        if not self._live(key):
            return None
        expires_at = self.data[key][1]
        return None if expires_at is None else expires_at - self.now

    async def ping(self):
        self.ping_calls += 1
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        if self.ping_failures > 0:
            self.ping_failures -= 1
            raise RedisConnectionError("Connection refused")
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data[key][0] if self._live(key) else None

    async def set(self, key, value, ex=None):
        self._check()
        self.set_calls.append((key, ex))
        self.data[key] = (value, self.now + ex if ex else None)
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self._live(key):
                del self.data[key]
                removed += 1
        return removed

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.data):
            if self._live(key) and (match is None or fnmatch.fnmatchcase(key, match)):
                yield key

    async def aclose(self):
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def cache(fake_redis, sleeps):
    return CacheClient(lambda: fake_redis, max_reconnect_attempts=10, sleep=sleeps)


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite+pysqlite:///{tmp_path / 'cms.db'}"


@pytest.fixture
def store(sqlite_url):
    client = StoreClient(sqlite_url)
    yield client
    client.dispose()


@pytest.fixture
def migrated_store(store):
    models.Base.metadata.create_all(bind=store.engine)
    return store


@pytest.fixture
def readiness(migrated_store, sleeps):
    return ReadinessInitializer(migrated_store, repair_actions=[SynchronizeSchema()], settle_delay=0, sleep=sleeps)


@pytest.fixture
def auth_service(migrated_store, cache):
    return AuthService(
        migrated_store.session,
        cache,
        secret=TEST_SECRET,
        expires_in=3600,
        session_ttl=600,
    )


@pytest.fixture
def user_factory(migrated_store):
    """Insert users directly; the password of every created user is 'secret123'."""
    password_hash = hash_password("secret123")

    def _create(email: str, role: str = "VIEWER", name: Optional[str] = None):
        with migrated_store.session() as db:
            user = models.User(email=email, password_hash=password_hash, name=name or email.split("@")[0], role=role)
            db.add(user)
            db.commit()
            db.refresh(user)
            db.expunge(user)
            return user

    return _create


@pytest.fixture
def api_app(migrated_store, readiness, cache, auth_service):
    return create_app(
        store=migrated_store,
        readiness=readiness,
        cache=cache,
        auth_service=auth_service,
        warm_up=False,
    )


@pytest.fixture
def client(api_app):
    with TestClient(api_app) as test_client:
        yield test_client


@pytest.fixture
def login_as(client, user_factory):
    """Create a user with ``role`` and return Bearer headers for it.

    The session cookie set by ``/auth/login`` is dropped so each request
    authenticates with the returned header only.
    """
    counter = itertools.count(1)

    def _login(role: str = "VIEWER", email: Optional[str] = None):
        email = email or f"{role.lower()}{next(counter)}@example.com"
        user_factory(email, role=role)
        response = client.post("/auth/login", json={"email": email, "password": "secret123"})
        assert response.status_code == 200, response.text
        client.cookies.clear()
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _login
