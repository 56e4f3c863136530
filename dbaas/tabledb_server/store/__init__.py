"""
Store module for TableDB - catalogs, routing and row-level access control.

This module handles:
- Physical store backends (SQLite shards)
- The store factory that opens and caches shard backends
- The metadata store (tables, users, tokens, grants)
- The delegated store that enforces grants by rewriting requests

Invariants:
    - Only the factory owns backend handles; catalogs record shard ids
    - Every user table carries a system-managed created_by column
    - Every query/exec request is authorized and rewritten before it reaches a shard

How to change safely:
    - Keep request validation ahead of any engine access
    - Test RESTRICTED permissions with more than one user per table
"""

from .backend import SQLiteBackend, StoreBackend
from .delegated import DelegatedStore, TableAccess, UserStore
from .factory import ShardSpec, StoreFactory
from .metadata import MetadataStore
from .types import (
    CREATED_BY_COLUMN,
    CreateTableOptions,
    ExecOptions,
    ExecResult,
    ExecType,
    FieldValue,
    Permission,
    Predicate,
    QueryOptions,
    QueryResult,
    Table,
    TablePermission,
    User,
)

__all__ = [
    "CREATED_BY_COLUMN",
    "CreateTableOptions",
    "DelegatedStore",
    "ExecOptions",
    "ExecResult",
    "ExecType",
    "FieldValue",
    "MetadataStore",
    "Permission",
    "Predicate",
    "QueryOptions",
    "QueryResult",
    "SQLiteBackend",
    "ShardSpec",
    "StoreBackend",
    "StoreFactory",
    "Table",
    "TableAccess",
    "TablePermission",
    "User",
    "UserStore",
]
