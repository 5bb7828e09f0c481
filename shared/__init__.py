"""
Shared utilities for the cached requestor.

This package aggregates the ambient building blocks used by every module:

- config: Requestor configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus counters for the request pipeline
- errors: Canonical error types and responses
- circuit_breaker: Shared store health tracking

Do not import from the requestor package into shared/.
"""
