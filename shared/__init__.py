"""
Shared utilities for the client sync layer.

This package aggregates common building blocks consumed by every
client_sync component:

- config: Settings via pydantic-settings
- logging: Structured logging with session correlation
- metrics: Prometheus counters
- errors: Error kinds and the internal exception hierarchy
- retry: Retry decorators and backoff delay calculation

Do not import from client_sync into shared/.
"""
