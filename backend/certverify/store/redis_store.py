"""
CertVerify Backend — Redis Coordination Store
===============================================

What:  CoordinationStore backed by redis.asyncio.
How:   One shared connection pool per process. Every call goes through the
       circuit breaker, and every redis/socket error is re-raised as
       StoreUnavailableError so callers only ever handle one exception type.

Atomic counter:
    The rate limiter needs "increment, and start the window if this is the
    first hit" as ONE operation. Doing INCR then PEXPIRE from Python would
    leave a counter without an expiry if the request were cancelled between
    the two calls, locking the caller out forever. The Lua script runs both
    inside Redis, atomically.

Pattern delete:
    Uses SCAN (never KEYS) so deleting `api:GET:/api/certificates:*` does not
    block Redis on a large keyspace.
"""

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from certverify.exceptions import StoreUnavailableError
from certverify.store.base import CoordinationStore, CounterState
from certverify.store.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# KEYS[1] = counter key, ARGV[1] = window in ms
# Returns {count, pttl}
_INCREMENT_WINDOW_LUA = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""

_DELETE_BATCH = 500


class RedisStore(CoordinationStore):
    """
    Redis implementation of the coordination store.

    Args:
        url:              redis:// or rediss:// URL
        max_connections:  Pool size shared by all requests in this process
        socket_timeout:   Seconds before a single command is considered failed
        breaker:          Circuit breaker guarding every command
    """

    def __init__(
        self,
        url: str,
        max_connections: int = 20,
        socket_timeout: float = 2.0,
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[redis.Redis] = None,
    ):
        self._redis = client or redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.breaker = breaker or CircuitBreaker()
        self._increment_window = self._redis.register_script(_INCREMENT_WINDOW_LUA)

    async def _execute(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        self.breaker.can_execute()
        try:
            result = await func(*args, **kwargs)
        except (RedisError, OSError) as e:
            self.breaker.record_failure()
            logger.warning("Redis %s failed: %s", operation, e)
            raise StoreUnavailableError(context={"operation": operation, "error": str(e)}) from e
        self.breaker.record_success()
        return result

    async def get(self, key: str) -> Optional[str]:
        return await self._execute("get", self._redis.get, key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._execute("set", self._redis.set, key, value, ex=max(int(ttl_seconds), 1))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._execute("delete", self._redis.delete, *keys))

    async def _scan(self, pattern: str) -> List[str]:
        return [key async for key in self._redis.scan_iter(match=pattern, count=_DELETE_BATCH)]

    async def _delete_matching(self, pattern: str) -> int:
        keys = await self._scan(pattern)
        deleted = 0
        for start in range(0, len(keys), _DELETE_BATCH):
            deleted += await self._redis.delete(*keys[start:start + _DELETE_BATCH])
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        return await self._execute("delete_pattern", self._delete_matching, pattern)

    async def keys(self, pattern: str) -> List[str]:
        return await self._execute("scan", self._scan, pattern)

    async def count_keys(self, pattern: str) -> int:
        return len(await self.keys(pattern))

    async def increment_window(self, key: str, window_ms: int) -> CounterState:
        count, ttl = await self._execute(
            "increment_window",
            self._increment_window,
            keys=[key],
            args=[int(window_ms)],
        )
        return CounterState(count=int(count), ttl_ms=int(ttl))

    async def publish(self, channel: str, message: str) -> None:
        await self._execute("publish", self._redis.publish, channel, message)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        # Long-lived: not routed through the breaker. Connection loss ends
        # the iterator with StoreUnavailableError and the listener reconnects.
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.subscribe(channel)
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(
                context={"operation": "subscribe", "channel": channel, "error": str(e)}
            ) from e
        finally:
            await pubsub.aclose()

    async def ping(self) -> bool:
        return bool(await self._execute("ping", self._redis.ping))

    async def close(self) -> None:
        await self._redis.aclose()

    @property
    def circuit_state(self) -> str:
        return self.breaker.state
