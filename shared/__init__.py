"""
Shared utilities for the P4rsec services.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- deadline: Per-request deadline propagation for external calls
- base_service: FastAPI service skeleton (middleware, health, metrics)

Do not import from service packages into shared/.
"""
