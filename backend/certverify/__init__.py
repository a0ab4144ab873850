"""
CertVerify Backend — Application Package Initializer
======================================================

What: Certificate issuance, revocation and public verification API.
Who:  Imported by uvicorn (certverify.main:app), the test suite and
      `python -m certverify`.

Architecture Note:

    ┌─────────────────────────────────────┐
    │  Request pipeline (middleware/)     │  ← CORS, headers, rate limit,
    │                                     │    metrics, CSRF, caching
    ├─────────────────────────────────────┤
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← state machine, verification
    ├──────────────────┬──────────────────┤
    │  Repositories    │  Coordination    │  ← PostgreSQL (durable records)
    │  (SQLAlchemy)    │  store (Redis)   │    Redis (shared ephemeral state)
    └──────────────────┴──────────────────┘

    Durable facts (certificates, audit trail, verification log) live only
    in the database. Everything in Redis is reconstructible: losing it
    costs cache hits and resets rate-limit windows, nothing more.
"""

__version__ = "1.0.0"
