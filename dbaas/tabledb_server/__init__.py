"""
TableDB Server - multi-tenant relational data service with row-level access control.

This package implements a table service built on:
- A metadata store that is the system of record for tables, users, tokens and grants
- A delegated store that authorizes every request and rewrites it to honour row ownership
- A store factory that routes each table to a physical SQLite shard and caches the handle

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│    HTTP     │────▶│  DelegatedStore │
    │  (token)    │     │   Server    │     │  (authz+rewrite)│
    └─────────────┘     └──────┬──────┘     └───┬─────────┬───┘
                               │ admin          │         │
                               ▼                ▼         ▼
                        ┌─────────────────────────┐ ┌──────────────┐
                        │      MetadataStore      │ │ StoreFactory │
                        │ (tables/users/grants)   │ │ (shard cache)│
                        └────────────┬────────────┘ └──────┬───────┘
                                     ▼                     ▼
                                ┌─────────┐           ┌─────────┐
                                │ SQLite  │           │ SQLite  │
                                │(catalog)│           │ (shards)│
                                └─────────┘           └─────────┘

Invariants:
    - All data requests require a bearer token
    - created_by is set by the server on insert and never taken from the request
    - A RESTRICTED principal only ever reads or updates rows it created
    - A request touches exactly one shard

How to change safely:
    - New request shapes must go through DelegatedStore's rewrite before dispatch
    - New permissions must be seeded by MetadataStore.init and handled by TableAccess

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
