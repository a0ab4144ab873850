"""
CertVerify Backend — Distributed Cache
========================================

What:  TTL key/value cache on the coordination store, with pattern deletes
       and cross-instance invalidation notifications.
Why:   Verification lookups are read-heavy (QR scans) and cheap to cache,
       but a revoked certificate must stop verifying as valid on EVERY
       instance, promptly.
How:   Values are JSON envelopes {"v": value, "ttl": n, "at": writtenAt}
       stored with the same TTL in the shared store. An optional per-process
       LocalCache sits in front; it trusts entries for at most
       min(ttl, local_max_ttl) and drops them when an invalidation
       notification arrives.

Consistency argument:
    The authoritative delete happens against the shared store. Pub/sub
    notifications are best-effort: a listener that misses one keeps a stale
    local copy for at most local_max_ttl. Nothing relies on the
    notification alone.

Failure policy: FAIL_OPEN. If the store is unreachable a get is a miss, a
set is skipped, and the request runs uncached.
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from certverify.exceptions import StoreUnavailableError
from certverify.policy import FailurePolicy
from certverify.store.base import CoordinationStore

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Local Secondary Cache
# ══════════════════════════════════════════════════════════════════════════


class LocalCache:
    """
    Bounded in-process LRU with per-entry expiry.

    Never authoritative: it is a shortcut in front of the shared store and
    holds nothing longer than `max_ttl` seconds.
    """

    def __init__(
        self,
        max_ttl: int = 30,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_ttl = max_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + min(ttl, self.max_ttl))
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        matched = [key for key in self._entries if fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    def clear(self) -> None:
        self._entries.clear()


# ══════════════════════════════════════════════════════════════════════════
# Distributed Cache
# ══════════════════════════════════════════════════════════════════════════


class DistributedCache:
    """
    Shared cache used by the response-cache stage and VerificationService.

    Args:
        store:        Coordination store (Redis in production)
        instance_id:  Identifies this process in invalidation messages
        channel:      Pub/sub channel for invalidation notifications
        local_cache:  Optional LocalCache in front of the store
        clock:        Wall clock used for the entry's writtenAt
    """

    failure_policy = FailurePolicy.FAIL_OPEN

    def __init__(
        self,
        store: CoordinationStore,
        instance_id: str,
        channel: str = "cache:invalidate",
        local_cache: Optional[LocalCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.instance_id = instance_id
        self.channel = channel
        self._local = local_cache
        self._clock = clock
        self.hits = 0
        self.misses = 0
        self.errors = 0

    def _on_store_error(self, operation: str, key: str, error: StoreUnavailableError) -> None:
        self.errors += 1
        if not self.failure_policy.allows:
            raise error
        logger.warning(
            "Cache %s skipped for %s (store unavailable, failing open): %s",
            operation,
            key,
            error.message,
        )

    async def get(self, key: str) -> Optional[Any]:
        if self._local is not None:
            value = self._local.get(key)
            if value is not None:
                self.hits += 1
                return value

        try:
            raw = await self._store.get(key)
        except StoreUnavailableError as e:
            self._on_store_error("get", key, e)
            self.misses += 1
            return None

        if raw is None:
            self.misses += 1
            return None

        try:
            envelope = json.loads(raw)
            value, ttl, written_at = envelope["v"], int(envelope["ttl"]), float(envelope["at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed cache entry %s", key)
            self.misses += 1
            return None

        # The store TTL should already have expired it; this guards against
        # clock skew between instances and stores with lazy expiry
        remaining = written_at + ttl - self._clock()
        if remaining <= 0:
            self.misses += 1
            return None

        if self._local is not None:
            self._local.set(key, value, int(remaining) or 1)
        self.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        if ttl <= 0:
            return
        envelope = json.dumps({"v": value, "ttl": ttl, "at": self._clock()}, default=str)
        try:
            await self._store.set(key, envelope, ttl)
        except StoreUnavailableError as e:
            self._on_store_error("set", key, e)
            return
        if self._local is not None:
            self._local.set(key, value, ttl)

    async def delete(self, key: str) -> int:
        if self._local is not None:
            self._local.delete(key)
        try:
            deleted = await self._store.delete(key)
        except StoreUnavailableError as e:
            self._on_store_error("delete", key, e)
            return 0
        await self._notify({"action": "delete", "key": key})
        return deleted

    async def delete_by_pattern(self, pattern: str) -> int:
        if self._local is not None:
            self._local.delete_pattern(pattern)
        try:
            deleted = await self._store.delete_pattern(pattern)
        except StoreUnavailableError as e:
            self._on_store_error("delete_pattern", pattern, e)
            return 0
        await self._notify({"action": "delete_pattern", "pattern": pattern})
        if deleted:
            logger.debug("Invalidated %d cache entries matching %s", deleted, pattern)
        return deleted

    async def _notify(self, payload: Dict[str, str]) -> None:
        payload["origin"] = self.instance_id
        try:
            await self._store.publish(self.channel, json.dumps(payload))
        except StoreUnavailableError as e:
            # Best-effort: peers fall back to their local TTL bound
            logger.warning("Invalidation notification not published: %s", e.message)

    def handle_invalidation(self, message: str) -> None:
        """Applies one notification from another instance to the local cache."""
        if self._local is None:
            return
        try:
            payload = json.loads(message)
        except ValueError:
            logger.warning("Ignoring malformed invalidation message: %r", message[:200])
            return
        if not isinstance(payload, dict) or payload.get("origin") == self.instance_id:
            return

        action = payload.get("action")
        if action == "delete" and payload.get("key"):
            self._local.delete(payload["key"])
        elif action == "delete_pattern" and payload.get("pattern"):
            self._local.delete_pattern(payload["pattern"])
        else:
            logger.warning("Ignoring unknown invalidation action: %r", action)

    def disable_local(self) -> None:
        """Drops and detaches the local cache (used when invalidations can't be received)."""
        if self._local is not None:
            self._local.clear()
            self._local = None
            logger.warning("Local cache disabled: invalidation channel unavailable")

    async def stats(self) -> Dict[str, Any]:
        try:
            keys = await self._store.count_keys("api:*") + await self._store.count_keys("verify:*")
            backend = "available"
        except StoreUnavailableError:
            keys, backend = None, "unavailable"
        return {
            "backend": backend,
            "keys": keys,
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "localEntries": len(self._local) if self._local is not None else None,
            "failurePolicy": self.failure_policy.value,
        }


# ══════════════════════════════════════════════════════════════════════════
# Invalidation Listener
# ══════════════════════════════════════════════════════════════════════════


class InvalidationListener:
    """
    Background task applying peers' invalidation notifications locally.

    Reconnects with exponential backoff + jitter (tenacity). If the channel
    stays unreachable past `max_attempts`, the local cache is disabled so
    this process never trusts copies it can no longer invalidate.
    """

    def __init__(
        self,
        store: CoordinationStore,
        cache: DistributedCache,
        max_attempts: int = 5,
        min_wait: float = 0.5,
        max_wait: float = 10,
    ):
        self._store = store
        self._cache = cache
        self._max_attempts = max_attempts
        self._min_wait = min_wait
        self._max_wait = max_wait
        self._task: Optional[asyncio.Task] = None

    async def _listen_once(self) -> None:
        async for message in self._store.subscribe(self._cache.channel):
            self._cache.handle_invalidation(message)

    async def run(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(initial=self._min_wait, max=self._max_wait),
            retry=retry_if_exception_type(StoreUnavailableError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._listen_once()
        except RetryError as e:
            logger.error(
                "Invalidation listener giving up after %d attempts: %s",
                self._max_attempts,
                e.last_attempt.exception(),
            )
            self._cache.disable_local()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="cache-invalidation-listener")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
