"""
CertVerify Backend — Coordination Store Interface
===================================================

What:  Abstract async client for the shared key/value + pub/sub service.
Why:   Cache entries, rate-limit counters and CSRF tokens must live in ONE
       logical store shared by every process instance. Components depend on
       this interface, never on redis directly, so tests run against
       MemoryStore.
How:   Concrete stores implement the abstract methods; every failure to
       reach the backend is raised as StoreUnavailableError.

Implementations:
    - RedisStore:  redis.asyncio, Lua for atomic counters, circuit breaker
    - MemoryStore: single-process asyncio implementation
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional


@dataclass(frozen=True)
class CounterState:
    """
    Result of one atomic increment-with-expiry.

    count:   Hits recorded in the current window, including this one
    ttl_ms:  Milliseconds until the window (and the counter) expires
    """

    count: int
    ttl_ms: int


class CoordinationStore(ABC):
    """
    Operations the pipeline needs from the shared store.

    Every method is a single round-trip. Nothing here is a multi-step
    read-modify-write, so a cancelled request can never leave a counter or
    an entry half-updated.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store `value` under `key`, replacing any previous value, expiring after ttl."""
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys; returns how many existed."""
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (`*`, `?`, `[...]`)."""
        ...

    @abstractmethod
    async def keys(self, pattern: str) -> List[str]:
        """Every live key matching a glob pattern, in no particular order."""
        ...

    @abstractmethod
    async def count_keys(self, pattern: str) -> int:
        ...

    @abstractmethod
    async def increment_window(self, key: str, window_ms: int) -> CounterState:
        """
        Atomically increment `key`, starting a `window_ms` expiry on the
        first hit, and return the new count with the remaining TTL.
        """
        ...

    @abstractmethod
    async def publish(self, channel: str, message: str) -> None:
        ...

    @abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Async iterator over messages published to `channel`."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        """Release connections. No-op by default."""
        return None

    @property
    def circuit_state(self) -> str:
        """Reported by /health; stores without a breaker are always closed."""
        return "closed"
