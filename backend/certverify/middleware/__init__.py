# Middleware package init
"""
CertVerify Backend — Middleware Package
=========================================

Middleware Chain (order matters!):
    Request → [Request ID] → [Pipeline: cors → security_headers → rate_limit
              → metrics → csrf → cache_headers → error_handling
              → response_cache] → Route Handler

    - RequestIDMiddleware is a plain Starlette middleware and wraps
      everything, so short-circuited responses still carry the ID.
    - PipelineMiddleware runs the ordered stages (see pipeline.py); the
      public verification routes use the same chain without csrf.
    - /health, /metrics and the API docs bypass the pipeline.
"""
