"""
CertVerify Backend — Instance Registry
========================================

What:  Every API instance announces itself in the coordination store;
       operators list the instances currently alive.
Why:   Cache entries, rate-limit counters and CSRF tokens are shared by all
       instances. When one of them misbehaves, the first questions are
       which instances are running and when each last checked in.
How:   system:instances:{instance_id} holds a JSON description with a TTL
       (INSTANCE_TTL, 60s). A heartbeat task refreshes it, and so does every
       listing. An instance that stops heartbeating drops out of the list
       when its key expires; a clean shutdown deletes it straight away.
Who:   main.py lifespan (heartbeat), routes/instances.py (listing).

Failure policy:
    Heartbeats fail open: a missed one is logged and the next tick tries
    again. Listing needs the store and lets StoreUnavailableError through
    (503), the same as CSRF token issuance.
"""

import asyncio
import json
import logging
import os
import socket
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from certverify.exceptions import StoreUnavailableError
from certverify.policy import FailurePolicy
from certverify.store import CoordinationStore

logger = logging.getLogger(__name__)

INSTANCE_PREFIX = "system:instances"


def instance_key(instance_id: str) -> str:
    return f"{INSTANCE_PREFIX}:{instance_id}"


class InstanceRegistry:
    failure_policy = FailurePolicy.FAIL_OPEN

    def __init__(
        self,
        store: CoordinationStore,
        instance_id: str,
        version: str,
        ttl_seconds: int = 60,
        heartbeat_interval: int = 20,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self.instance_id = instance_id
        self._version = version
        self.ttl_seconds = ttl_seconds
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._started_at = clock()
        self._task: Optional[asyncio.Task] = None

    def describe(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "id": self.instance_id,
            "version": self._version,
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "cpus": os.cpu_count(),
            "startedAt": self._started_at.isoformat(),
            "lastSeen": now.isoformat(),
            "uptimeSeconds": round((now - self._started_at).total_seconds(), 2),
        }

    async def heartbeat(self) -> bool:
        """Writes this instance's entry; False when the store is unreachable."""
        try:
            await self._store.set(
                instance_key(self.instance_id), json.dumps(self.describe()), self.ttl_seconds
            )
        except StoreUnavailableError as e:
            logger.warning(
                "Instance heartbeat failed for %s (%s): %s",
                self.instance_id,
                self.failure_policy.value,
                e.context,
            )
            return False
        return True

    async def list_instances(self) -> List[Dict[str, Any]]:
        """
        Live instances sorted by id, this one included.

        Raises:
            StoreUnavailableError: The coordination store is unreachable
        """
        await self.heartbeat()
        instances = []
        for key in await self._store.keys(f"{INSTANCE_PREFIX}:*"):
            raw = await self._store.get(key)
            if raw is None:
                # Expired between the scan and the read
                continue
            try:
                entry = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring malformed instance entry %s", key)
                continue
            if isinstance(entry, dict):
                instances.append(entry)
        return sorted(instances, key=lambda entry: str(entry.get("id", "")))

    async def deregister(self) -> None:
        try:
            await self._store.delete(instance_key(self.instance_id))
        except StoreUnavailableError as e:
            # The entry expires on its own after ttl_seconds
            logger.warning("Instance deregistration failed for %s: %s", self.instance_id, e.context)

    # ── Heartbeat task ─────────────────────────────────────────────────

    async def run(self) -> None:
        while True:
            await self.heartbeat()
            await asyncio.sleep(self.heartbeat_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="instance-heartbeat")
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.deregister()
