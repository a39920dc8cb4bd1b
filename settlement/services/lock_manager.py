"""
Distributed mutual exclusion on redis.

A lock is a single key set with ``SET key token NX PX ttl``. Release deletes the
key only while it still holds our token, so a holder whose TTL expired never
removes a lock someone else acquired afterwards.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

import redis

from settlement.config import settings
from settlement.core.errors import LockTimeoutError, LockUnavailableError

logger = logging.getLogger("settlement.locks")

T = TypeVar("T")

KEY_PREFIX = "settlement:lock:"


def batch_lock_key(company_id: int) -> str:
    return f"batch:{int(company_id)}"


class LockManager:
    """Redis-backed lock with a bounded, jittered acquisition retry loop."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        ttl_ms: int | None = None,
        retry_count: int | None = None,
        retry_delay_ms: int | None = None,
        retry_jitter_ms: int | None = None,
    ):
        self.client = client if client is not None else redis.Redis.from_url(settings.redis_url)
        self.ttl_ms = int(ttl_ms if ttl_ms is not None else settings.lock_ttl_ms)
        self.retry_count = max(1, int(retry_count if retry_count is not None else settings.lock_retry_count))
        self.retry_delay_ms = int(
            retry_delay_ms if retry_delay_ms is not None else settings.lock_retry_delay_ms
        )
        self.retry_jitter_ms = int(
            retry_jitter_ms if retry_jitter_ms is not None else settings.lock_retry_jitter_ms
        )

    def _sleep_before_retry(self) -> None:
        jitter = random.uniform(0, self.retry_jitter_ms) if self.retry_jitter_ms > 0 else 0.0
        time.sleep((self.retry_delay_ms + jitter) / 1000.0)

    def acquire(self, key: str, *, ttl_ms: int | None = None) -> str:
        """Block until the lock is held; return the owner token."""

        token = uuid.uuid4().hex
        ttl = int(ttl_ms or self.ttl_ms)
        for attempt in range(1, self.retry_count + 1):
            try:
                acquired = self.client.set(KEY_PREFIX + key, token, nx=True, px=ttl)
            except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
                logger.error("lock_service_unavailable", extra={"key": key, "error": str(e)})
                raise LockUnavailableError(
                    "lock service unavailable", context={"key": key, "error": str(e)}
                ) from e
            if acquired:
                logger.info("lock_acquired", extra={"key": key, "attempt": attempt})
                return token
            if attempt < self.retry_count:
                self._sleep_before_retry()

        logger.warning("lock_timeout", extra={"key": key, "attempts": self.retry_count})
        raise LockTimeoutError(key, self.retry_count)

    def release(self, key: str, token: str) -> bool:
        """Delete the key if we still own it. Returns whether it was deleted."""

        name = KEY_PREFIX + key
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(name)
                current = pipe.get(name)
                if isinstance(current, bytes):
                    current = current.decode("utf-8")
                if current != token:
                    pipe.unwatch()
                    logger.warning("lock_lost_before_release", extra={"key": key})
                    return False
                pipe.multi()
                pipe.delete(name)
                pipe.execute()
            except redis.exceptions.WatchError:
                logger.warning("lock_lost_before_release", extra={"key": key})
                return False
        logger.info("lock_released", extra={"key": key})
        return True

    @contextmanager
    def lock(self, key: str, *, ttl_ms: int | None = None) -> Iterator[str]:
        token = self.acquire(key, ttl_ms=ttl_ms)
        try:
            yield token
        finally:
            try:
                self.release(key, token)
            except redis.exceptions.RedisError as e:
                # The TTL reclaims the key; the body's own outcome must surface.
                logger.error("lock_release_failed", extra={"key": key, "error": str(e)})

    def with_lock(self, key: str, fn: Callable[[], T], *, ttl_ms: int | None = None) -> T:
        with self.lock(key, ttl_ms=ttl_ms):
            return fn()
