"""
CertVerify Backend — Cache Key Layout
=======================================

Every key the application writes to the response cache, and the patterns
that invalidate them, are derived here so writers and invalidators cannot
drift apart.

    api:{METHOD}:{path}:{sorted query}:{credential fingerprint}
    verify:{certificateId}

The fingerprint scopes per-user responses: two callers with different
credentials never share an entry.

Canonical identifiers:
    The routes accept more than one spelling of the same certificate
    (" CERT-1 " is verified as "CERT-1"; FastAPI parses an upper-case or
    hyphenless UUID). Response keys are built from the canonical spelling,
    otherwise a revoke would leave the other spellings cached.
"""

import hashlib
import uuid
from typing import Iterable, List, Tuple
from urllib.parse import urlencode

RESPONSE_PREFIX = "api"
VERIFICATION_PREFIX = "verify"
PUBLIC_FINGERPRINT = "public"


def credential_fingerprint(
    authorization: str = "", user_id: str = "", role: str = "", session: str = ""
) -> str:
    material = "|".join((authorization, user_id, role, session))
    if not material.strip("|"):
        return PUBLIC_FINGERPRINT
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def normalized_query(items: Iterable[Tuple[str, str]]) -> str:
    return urlencode(sorted(items))


def response_key(method: str, path: str, query_items: Iterable[Tuple[str, str]], fingerprint: str) -> str:
    path = path.rstrip("/") or "/"
    return f"{RESPONSE_PREFIX}:{method.upper()}:{path}:{normalized_query(query_items)}:{fingerprint}"


def verification_key(certificate_code: str) -> str:
    return f"{VERIFICATION_PREFIX}:{certificate_code}"


LIST_PATTERN = f"{RESPONSE_PREFIX}:GET:/api/certificates:*"


def certificate_patterns(certificate_pk: str, certificate_code: str) -> List[str]:
    """
    Glob patterns covering every cached response that embeds this certificate.
    `[&:]` after the code keeps CERT-1 from matching CERT-10.
    """
    return [
        LIST_PATTERN,
        f"{RESPONSE_PREFIX}:GET:/api/certificates/{certificate_pk}:*",
        f"{RESPONSE_PREFIX}:GET:/api/certificates/verify:*certificateId={certificate_code}[&:]*",
        f"{RESPONSE_PREFIX}:GET:/api/validate:*certificateId={certificate_code}[&:]*",
    ]


# ── Canonical forms ────────────────────────────────────────────────────

QueryItems = List[Tuple[str, str]]


def canonical_certificate_code(value: str) -> str:
    return value.strip()


def canonical_certificate_pk(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        # Not a UUID: the handler answers 422 and nothing is cached
        return value


def canonical_verification_request(path: str, query_items: Iterable[Tuple[str, str]]) -> Tuple[str, QueryItems]:
    return path, [
        (name, canonical_certificate_code(value) if name == "certificateId" else value)
        for name, value in query_items
    ]


def canonical_certificate_request(path: str, query_items: Iterable[Tuple[str, str]]) -> Tuple[str, QueryItems]:
    prefix, _, pk = path.rstrip("/").rpartition("/")
    return f"{prefix}/{canonical_certificate_pk(pk)}", list(query_items)
