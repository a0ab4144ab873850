# Services package init
"""
CertVerify Backend — Services Layer
=====================================

Service Inventory:
    - CertificateService:      issue (single and bulk), get, list
    - CertificateStateMachine: the only writer of certificate status (revoke)
    - VerificationService:     public "is this certificate genuine?" checks
    - AuditLogger:             audit trail and verification log entries
    - DistributedCache:        shared cache with cross-instance invalidation
    - RateLimiter:             per-caller budgets in the coordination store
    - CsrfTokenStore:          per-subject CSRF tokens (fails closed)
    - CertificateSigner:       content hash + HMAC signature
    - InstanceRegistry:        live API instances, heartbeats with a TTL

Services never touch HTTP objects; routes and pipeline stages translate.
"""
