"""
Shared utilities for the 254Carbon Authorization Service.

This package aggregates common building blocks consumed by the service:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses

Any cross-cutting logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
