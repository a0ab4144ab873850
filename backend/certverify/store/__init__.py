# Coordination store package
"""
CertVerify Backend — Coordination Store
=========================================

What:  The shared key/value + pub/sub service behind the cache, the rate
       limiter and the CSRF token store.

Store Inventory:
    - base.py:            CoordinationStore interface, CounterState
    - redis_store.py:     redis.asyncio implementation (production)
    - memory_store.py:    in-process implementation (tests, single instance)
    - circuit_breaker.py: fail-fast guard wrapped around RedisStore
"""

from certverify.store.base import CoordinationStore, CounterState
from certverify.store.circuit_breaker import CircuitBreaker
from certverify.store.memory_store import MemoryStore
from certverify.store.redis_store import RedisStore


def create_store(
    url: str,
    max_connections: int = 20,
    socket_timeout: float = 2.0,
    failure_threshold: int = 5,
    recovery_timeout: int = 30,
) -> CoordinationStore:
    """Builds the store named by REDIS_URL; `memory://` selects MemoryStore."""
    if url.startswith("memory://"):
        return MemoryStore()
    return RedisStore(
        url,
        max_connections=max_connections,
        socket_timeout=socket_timeout,
        breaker=CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        ),
    )


__all__ = [
    "CoordinationStore",
    "CounterState",
    "CircuitBreaker",
    "MemoryStore",
    "RedisStore",
    "create_store",
]
