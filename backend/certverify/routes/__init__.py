# Routes package init
"""
CertVerify Backend — API Routes Package
=========================================

Route Inventory:
    - verification.py:  GET/POST /api/certificates/verify, /api/validate   (public)
    - certificates.py:  GET/POST /api/certificates, POST /bulk,
                        GET /api/certificates/{id}, PATCH /{id}/revoke
    - auth.py:          GET  /api/auth/csrf-token
    - cache_admin.py:   GET/DELETE /api/cache                               (ADMIN)
    - instances.py:     GET  /api/instances                               (ADMIN)
    - health.py:        GET  /health
    - metrics.py:       GET  /metrics

Routes stay thin: read the request, call a service from the container,
shape the response. Errors are raised, never returned.
"""
