"""
Shared utilities for the rate-limit gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI application scaffolding
- test_helpers: Fakes shared by the test suites

Do not import from service packages into shared/.
"""
