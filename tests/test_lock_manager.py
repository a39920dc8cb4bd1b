import pytest
import redis

from settlement.core.errors import LockTimeoutError, LockUnavailableError
from settlement.services.lock_manager import KEY_PREFIX, LockManager, batch_lock_key


class _DownRedis:
    def set(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("Error 111 connecting to localhost:6379")


def test_batch_lock_key():
    assert batch_lock_key(42) == "batch:42"


def test_acquire_sets_key_with_ttl_and_release_deletes(lock_manager, redis_client):
    token = lock_manager.acquire("batch:1")

    assert redis_client.get(KEY_PREFIX + "batch:1").decode() == token
    assert 0 < redis_client.pttl(KEY_PREFIX + "batch:1") <= 5_000

    assert lock_manager.release("batch:1", token) is True
    assert redis_client.get(KEY_PREFIX + "batch:1") is None


def test_held_lock_times_out_after_retry_budget(lock_manager):
    lock_manager.acquire("batch:1")

    with pytest.raises(LockTimeoutError) as exc_info:
        lock_manager.acquire("batch:1")

    assert exc_info.value.attempts == 3
    assert exc_info.value.key == "batch:1"


def test_locks_are_scoped_per_key(lock_manager):
    lock_manager.acquire("batch:1")

    assert lock_manager.acquire("batch:2")


def test_release_leaves_a_lock_owned_by_someone_else(lock_manager, redis_client):
    token = lock_manager.acquire("batch:1")
    # TTL expired and another worker took the key.
    redis_client.set(KEY_PREFIX + "batch:1", "other-owner")

    assert lock_manager.release("batch:1", token) is False
    assert redis_client.get(KEY_PREFIX + "batch:1") == b"other-owner"


def test_with_lock_returns_result_and_releases(lock_manager, redis_client):
    result = lock_manager.with_lock("batch:9", lambda: "done")

    assert result == "done"
    assert redis_client.get(KEY_PREFIX + "batch:9") is None


def test_with_lock_releases_when_body_raises(lock_manager, redis_client):
    def _boom():
        raise RuntimeError("aggregation crashed")

    with pytest.raises(RuntimeError):
        lock_manager.with_lock("batch:9", _boom)

    assert redis_client.get(KEY_PREFIX + "batch:9") is None
    # Re-acquirable straight away.
    assert lock_manager.acquire("batch:9")


def test_lock_service_down_is_a_distinct_error():
    locks = LockManager(_DownRedis(), retry_count=3, retry_delay_ms=1, retry_jitter_ms=0)
    calls = []

    with pytest.raises(LockUnavailableError):
        locks.with_lock("batch:1", lambda: calls.append(1))

    assert calls == []


def test_retry_count_has_a_floor_of_one(redis_client):
    locks = LockManager(redis_client, retry_count=0, retry_delay_ms=1, retry_jitter_ms=0)

    assert locks.retry_count == 1
    assert locks.acquire("batch:1")
