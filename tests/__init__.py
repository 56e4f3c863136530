"""
TableDB Test Suite.

This package contains:
- unit/: Unit tests (in-memory SQLite, no network)
- integration/: Integration tests (HTTP API through the FastAPI test client)
"""
