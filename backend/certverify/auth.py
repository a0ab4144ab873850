"""
CertVerify Backend — Caller Identity
======================================

What:  Resolves who is calling from the headers the auth gateway sets.
Why:   Credential checking and session issuance belong to the upstream
       authentication provider. By the time a request reaches this service
       the gateway has replaced any client-supplied X-User-ID / X-User-Role
       with verified values; this module only reads them.

Subject vs principal:
    - principal: an authenticated (id, role); required for issuing,
      listing and revoking.
    - subject:   the key for per-caller state (CSRF token, rate-limit
      bucket). Falls back to the session cookie, then "anonymous", so
      unauthenticated callers still get their own CSRF token.
"""

import enum
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Request

from certverify.exceptions import UnauthorizedError

USER_ID_HEADER = "x-user-id"
USER_ROLE_HEADER = "x-user-role"
SESSION_COOKIE = "session"
ANONYMOUS = "anonymous"


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    STUDENT = "STUDENT"


@dataclass(frozen=True)
class Principal:
    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def can_issue(self) -> bool:
        return self.role in (Role.ADMIN, Role.STAFF)


def principal_from_headers(headers: Mapping[str, str]) -> Optional[Principal]:
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        return None
    raw_role = (headers.get(USER_ROLE_HEADER) or Role.STUDENT.value).strip().upper()
    try:
        role = Role(raw_role)
    except ValueError:
        raise UnauthorizedError(f"Unrecognized role '{raw_role}'") from None
    return Principal(id=user_id, role=role)


def subject_id(request: Request) -> str:
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if user_id:
        return user_id
    session = request.cookies.get(SESSION_COOKIE)
    if session:
        return f"session:{session}"
    return ANONYMOUS


# ── FastAPI dependencies ──────────────────────────────────────────────────


async def get_principal(request: Request) -> Optional[Principal]:
    return principal_from_headers(request.headers)


async def require_principal(request: Request) -> Principal:
    principal = principal_from_headers(request.headers)
    if principal is None:
        raise UnauthorizedError()
    return principal


def client_ip(request: Request, trust_forwarded_for: bool = True) -> str:
    """First X-Forwarded-For hop when the proxy is trusted, else the socket peer."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client:
        return request.client.host
    return "unknown"
