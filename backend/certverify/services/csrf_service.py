"""
CertVerify Backend — CSRF Token Store
=======================================

What:  Issues and validates short-lived anti-forgery tokens per subject.
How:   token  = sha256(random 32 bytes hex + CSRF_SECRET)     → given to client
       stored = {"hash": sha256(token), "exp": expiresAt}      → csrf:{subject}
       Issuing again replaces the previous token, so a subject has at most
       one live token. Validation is a constant-time hash comparison plus
       an expiry check.

Reuse:
    Tokens are reusable until expiry by default. CSRF_SINGLE_USE=true
    deletes the stored hash after the first successful validation.

Failure policy: FAIL_CLOSED. A store error or a malformed token is a
rejection. CSRF is a security control; silently disabling it during a
Redis outage would turn the outage into a vulnerability.
"""

import hashlib
import hmac
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from certverify.exceptions import StoreUnavailableError
from certverify.policy import FailurePolicy
from certverify.store.base import CoordinationStore

logger = logging.getLogger(__name__)

_TOKEN_SHAPE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: int


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class CsrfTokenStore:
    failure_policy = FailurePolicy.FAIL_CLOSED
    KEY_PREFIX = "csrf"

    def __init__(
        self,
        store: CoordinationStore,
        secret: str,
        ttl_seconds: int = 3600,
        single_use: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self.single_use = single_use
        self._clock = clock

    def _key(self, subject_id: str) -> str:
        return f"{self.KEY_PREFIX}:{subject_id}"

    async def issue(self, subject_id: str) -> IssuedToken:
        """
        Creates a token for `subject_id`, replacing any earlier one.

        Raises:
            StoreUnavailableError: the token could not be stored; handing out
            a token that can never validate would only defer the failure.
        """
        token = _digest(secrets.token_hex(32) + self._secret)
        record = json.dumps({"hash": _digest(token), "exp": self._clock() + self.ttl_seconds})
        await self._store.set(self._key(subject_id), record, self.ttl_seconds)
        return IssuedToken(token=token, expires_in=self.ttl_seconds)

    async def validate(self, subject_id: str, supplied: str) -> bool:
        if not supplied or not _TOKEN_SHAPE.match(supplied):
            return False

        try:
            raw = await self._store.get(self._key(subject_id))
        except StoreUnavailableError as e:
            logger.warning(
                "CSRF store unavailable for subject %s (%s): %s",
                subject_id,
                self.failure_policy.value,
                e.message,
            )
            return self.failure_policy.allows

        if raw is None:
            return False
        try:
            record = json.loads(raw)
            stored_hash, expires_at = record["hash"], float(record["exp"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Malformed CSRF record for subject %s", subject_id)
            return False

        if expires_at <= self._clock():
            return False
        if not hmac.compare_digest(_digest(supplied), stored_hash):
            return False

        if self.single_use:
            try:
                await self._store.delete(self._key(subject_id))
            except StoreUnavailableError as e:
                # Cannot guarantee single use; refuse rather than allow a replay
                logger.warning("CSRF token for %s could not be consumed: %s", subject_id, e.message)
                return self.failure_policy.allows
        return True
