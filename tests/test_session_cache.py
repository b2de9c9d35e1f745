"""Tests for the session manager's use of the Redis cache.

A fake cache with the RedisCache interface stands in for Redis so lock
contention, denylisting and cache outages can be exercised directly.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from jobinow.config import Settings
from jobinow.service.auth import SessionManager
from jobinow.storage.errors import PersistenceError
from jobinow.storage.memory import MemoryStore
from jobinow.storage.redis_cache import RedisCache

PASSWORD = "TestPassword123!"


class FakeCache:
    def __init__(self):
        self.locks = {}
        self.revoked = {}
        self.acquire_calls = 0

    async def acquire_user_lock(self, user_id, owner, ttl_seconds):
        self.acquire_calls += 1
        if user_id in self.locks:
            return False
        self.locks[user_id] = owner
        return True

    async def release_user_lock(self, user_id, owner):
        if self.locks.get(user_id) == owner:
            del self.locks[user_id]
            return True
        return False

    async def mark_token_revoked(self, token_id, ttl_seconds):
        if ttl_seconds > 0:
            self.revoked[token_id] = ttl_seconds

    async def is_token_revoked(self, token_id):
        return token_id in self.revoked


class DownCache(FakeCache):
    async def acquire_user_lock(self, user_id, owner, ttl_seconds):
        raise RedisConnectionError("redis down")

    async def mark_token_revoked(self, token_id, ttl_seconds):
        raise RedisConnectionError("redis down")

    async def is_token_revoked(self, token_id):
        raise RedisConnectionError("redis down")


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        user_lock_ttl_seconds=1,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _manager(store, cache, settings):
    manager = SessionManager(store=store, cache=cache, settings=settings)
    user = store.create_user("cache@example.com")
    digest, algo = manager.verifier.hash(PASSWORD)
    store.save_password(user.id, digest, algo)
    return manager, user


def test_login_takes_and_releases_distributed_lock(store, settings):
    cache = FakeCache()
    manager, user = _manager(store, cache, settings)

    asyncio.run(manager.authenticate(user.email, PASSWORD))

    assert cache.acquire_calls == 1
    assert cache.locks == {}


def test_revoked_tokens_are_denylisted_until_expiry(store, settings):
    cache = FakeCache()
    manager, user = _manager(store, cache, settings)

    _, first = asyncio.run(manager.authenticate(user.email, PASSWORD))
    asyncio.run(manager.authenticate(user.email, PASSWORD))

    assert first.id in cache.revoked
    assert 0 < cache.revoked[first.id] <= settings.access_token_ttl_minutes * 60


def test_denylisted_token_yields_anonymous(store, settings):
    cache = FakeCache()
    manager, user = _manager(store, cache, settings)
    _, token = asyncio.run(manager.authenticate(user.email, PASSWORD))

    cache.revoked[token.id] = 60

    principal = asyncio.run(manager.verify_bearer(f"Bearer {token.token}"))
    assert principal.anonymous


def test_held_lock_times_out_as_retryable(store, settings):
    cache = FakeCache()
    manager, user = _manager(store, cache, settings)
    cache.locks[user.id] = "another-worker"

    with pytest.raises(PersistenceError) as exc_info:
        asyncio.run(manager.authenticate(user.email, PASSWORD))

    assert exc_info.value.retryable
    assert store.find_all_valid_tokens(user.id) == []
    assert manager._user_locks == {}


def test_cache_outage_falls_back_to_store(store, settings):
    manager, user = _manager(store, DownCache(), settings)

    _, first = asyncio.run(manager.authenticate(user.email, PASSWORD))
    _, second = asyncio.run(manager.authenticate(user.email, PASSWORD))

    assert not store.get_token(first.token).is_valid
    assert asyncio.run(manager.verify_bearer(f"Bearer {second.token}")).authenticated
    assert asyncio.run(manager.verify_bearer(f"Bearer {first.token}")).anonymous


def test_cache_key_layout():
    assert RedisCache._lock_key("u1") == "auth:user_lock:u1"
    assert RedisCache._revoked_key("t1") == "auth:token:revoked:t1"
