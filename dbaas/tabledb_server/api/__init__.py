"""
API module for TableDB server.

This module provides the external interface:
- HTTP server (admin and store routes)

Invariants:
    - Store operations require a bearer token
    - Admin operations require the admin token
    - The API layer maps error kinds to statuses and holds no business logic
"""

from .http_server import create_http_app

__all__ = [
    "create_http_app",
]
