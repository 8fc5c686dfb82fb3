# backend/coinfolio/utils/__init__.py
"""
Shared helpers.

- context: correlation id and user id of the current request
- logging: setup_logging() for the API and the sync script
- sql: dialect-aware INSERT, statement timeouts, LIKE escaping

Submodules are imported directly (coinfolio.utils.logging reads settings,
the others do not).
"""
