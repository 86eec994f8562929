import asyncio
import random
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Any, Callable, Awaitable
from dataclasses import dataclass
from contextlib import asynccontextmanager
from enum import Enum
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError


class LockTimeoutError(TimeoutError):
    """Raised when a keyed lock cannot be acquired in time."""
    pass


@dataclass
class LockInfo:
    """Information about a held lock."""
    lock_id: str
    key: str
    operation_type: str
    acquired_at: datetime


@dataclass
class RetryConfig:
    """Configuration for retry mechanism."""
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + 0.5 * random.random())
        return delay


async def retry_with_backoff(operation: Callable[[], Awaitable[Any]], operation_name: str,
                             retry_config: Optional[RetryConfig] = None,
                             retry_on: tuple = (ConnectionError, TimeoutError)) -> Any:
    """Execute operation with exponential backoff on the given exception types."""
    logger = logging.getLogger(__name__)
    retry_config = retry_config or RetryConfig()

    for attempt in range(retry_config.max_attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt == retry_config.max_attempts - 1:
                logger.error(f"{operation_name} failed after {retry_config.max_attempts} attempts: {e}")
                raise
            delay = retry_config.delay_for(attempt)
            logger.warning(f"{operation_name} attempt {attempt + 1} failed ({type(e).__name__}), "
                           f"retrying in {delay:.2f}s")
            await asyncio.sleep(delay)


class KeyedLockManager:
    """In-process mutual exclusion keyed by an arbitrary string (e.g. patient id)."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._held: Dict[str, LockInfo] = {}

    @asynccontextmanager
    async def hold(self, key: str, operation_type: str = "update", timeout_seconds: float = 5.0):
        """Hold the lock for `key`, waiting at most timeout_seconds."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                raise LockTimeoutError(
                    f"Failed to acquire lock for {key} operation {operation_type} within {timeout_seconds}s"
                ) from None

            lock_id = str(uuid4())
            self._held[key] = LockInfo(
                lock_id=lock_id,
                key=key,
                operation_type=operation_type,
                acquired_at=datetime.now(timezone.utc)
            )
            try:
                yield lock_id
            finally:
                self._held.pop(key, None)
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                if not lock.locked():
                    self._locks.pop(key, None)

    def get_lock_status(self, key: str) -> Optional[Dict[str, Any]]:
        info = self._held.get(key)
        if not info:
            return None
        return {
            'lock_id': info.lock_id,
            'operation_type': info.operation_type,
            'acquired_at': info.acquired_at.isoformat(),
            'waiters': self._waiters.get(key, 0)
        }


class ClaimOutcome(Enum):
    ACQUIRED = "acquired"
    HELD_ELSEWHERE = "held_elsewhere"
    UNAVAILABLE = "unavailable"


# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class RedisTickClaim:
    """
    Cross-process claim for a periodic job, using SET NX EX.

    Only one process holds the claim at a time. The TTL bounds how long a
    crashed holder can block others.
    """

    def __init__(self, redis_client: redis.Redis, key: str, ttl_seconds: int = 300):
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_url(cls, url: str, key: str, ttl_seconds: int = 300) -> 'RedisTickClaim':
        return cls(redis.from_url(url), key, ttl_seconds)

    async def acquire(self) -> tuple:
        """
        Try to take the claim.

        Returns:
            (ClaimOutcome, token) where token is set only when ACQUIRED
        """
        token = str(uuid4())
        try:
            acquired = await self.redis_client.set(self.key, token, nx=True, ex=self.ttl_seconds)
        except (RedisError, ConnectionError, OSError) as e:
            self.logger.error(f"Tick claim {self.key} unavailable: {e}")
            return ClaimOutcome.UNAVAILABLE, None

        if acquired:
            return ClaimOutcome.ACQUIRED, token
        return ClaimOutcome.HELD_ELSEWHERE, None

    async def release(self, token: str) -> bool:
        try:
            released = await self.redis_client.eval(_RELEASE_SCRIPT, 1, self.key, token)
            return bool(released)
        except (RedisError, ConnectionError, OSError) as e:
            # Claim expires on its own after ttl_seconds
            self.logger.error(f"Failed to release tick claim {self.key}: {e}")
            return False

    async def close(self):
        await self.redis_client.aclose()
