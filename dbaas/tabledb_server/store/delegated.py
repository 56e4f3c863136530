"""
Delegated store for TableDB - row-level access control.

Every query and exec request goes through the delegated store, which:
- Resolves the principal from a bearer token
- Resolves the target table and its shard
- Checks the principal's grants on that table
- Rewrites the request so it only touches rows the principal may touch
- Forwards the rewritten request to the shard's backend

Invariants:
    - Authorization is enforced by rewriting the request, never by
      filtering results afterwards
    - ALL permissions dominate their RESTRICTED counterparts
    - created_by is always set by the system on insert and never changed by update
    - Grants are fetched on every request; revocation applies on the next call
    - Caller-supplied request objects are never mutated

How to change safely:
    - New permissions must be reflected in TableAccess
    - Every new request shape needs an ownership rewrite before dispatch
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from ..errors import AuthorizationError, NotFoundError
from .factory import StoreFactory
from .metadata import MetadataStore
from .types import (
    CREATED_BY_COLUMN,
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

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableAccess:
    """What a principal's grants allow on one table.

    Attributes:
        table_name: Table the grants apply to
        permissions: Permissions held on the table
    """

    table_name: str
    permissions: frozenset[Permission]

    @classmethod
    def from_grants(cls, table_name: str, grants: list[TablePermission]) -> TableAccess:
        return cls(
            table_name=table_name,
            permissions=frozenset(
                g.permission for g in grants if g.table_name.lower() == table_name.lower()
            ),
        )

    @property
    def empty(self) -> bool:
        return not self.permissions

    @property
    def can_read(self) -> bool:
        return bool(self.permissions & {Permission.READ_ALL, Permission.READ_RESTRICTED})

    @property
    def can_write(self) -> bool:
        return bool(self.permissions & {Permission.WRITE_ALL, Permission.WRITE_RESTRICTED})

    @property
    def read_restricted_only(self) -> bool:
        # A user holding both READ_ALL and READ_RESTRICTED reads everything
        return (
            Permission.READ_RESTRICTED in self.permissions
            and Permission.READ_ALL not in self.permissions
        )

    @property
    def write_restricted_only(self) -> bool:
        return (
            Permission.WRITE_RESTRICTED in self.permissions
            and Permission.WRITE_ALL not in self.permissions
        )


def _is_created_by(name: str) -> bool:
    return isinstance(name, str) and name.lower() == CREATED_BY_COLUMN


def rewrite_query(opts: QueryOptions, user: User, access: TableAccess) -> QueryOptions:
    """Scope a query to the rows the user may read."""
    if access.read_restricted_only:
        return dataclasses.replace(
            opts, where=tuple(opts.where) + (Predicate.eq(CREATED_BY_COLUMN, user.id),)
        )
    return opts


def rewrite_exec(opts: ExecOptions, user: User, access: TableAccess) -> ExecOptions:
    """Stamp ownership on inserts and scope updates to the rows the user may write."""
    values = tuple(fv for fv in opts.values if not _is_created_by(fv.name))

    if opts.type is ExecType.INSERT:
        return dataclasses.replace(
            opts, values=values + (FieldValue(CREATED_BY_COLUMN, user.id),)
        )

    where = tuple(opts.where)
    if access.write_restricted_only:
        where += (Predicate.eq(CREATED_BY_COLUMN, user.id),)
    return dataclasses.replace(opts, values=values, where=where)


class DelegatedStore:
    """Enforces grants on query and exec requests and routes them to shards.

    Thread safety:
        Stateless per request; safe to share across threads.

    Example:
        >>> store = DelegatedStore(metadata, factory)
        >>> store.exec(token, ExecOptions(ExecType.INSERT, "foo", (FieldValue("name", "x"),)))
        >>> store.query(token, QueryOptions("foo", ("id", "name")))
        [{'id': 1, 'name': 'x'}]
    """

    def __init__(self, metadata: MetadataStore, factory: StoreFactory) -> None:
        self._metadata = metadata
        self._factory = factory

    def as_user(self, token: str) -> UserStore:
        """Bind a bearer token, returning a per-user view of the store."""
        return UserStore(self, token)

    def _authorize(
        self, token: str, opts: QueryOptions | ExecOptions, action: str
    ) -> tuple[User, Table, TableAccess]:
        try:
            user = self._metadata.get_user(token)
        except NotFoundError as e:
            raise AuthorizationError("unknown token", opts.table_name, action) from e

        # Caller predicates are checked before any ownership predicate is added,
        # so an unscoped update is rejected even for restricted writers
        opts.validate()

        try:
            table = self._metadata.get_table(opts.table_name)
        except NotFoundError as e:
            raise AuthorizationError(
                f"unknown table '{opts.table_name}'", opts.table_name, action
            ) from e

        access = TableAccess.from_grants(
            table.name, self._metadata.get_permissions_for_token(token)
        )
        if access.empty:
            logger.info(f"User {user.id} denied {action} on {table.name}: no grants")
            raise AuthorizationError(
                f"user '{user.name}' not allowed to {action} table '{table.name}'",
                table.name,
                action,
            )
        return user, table, access

    def query(self, token: str, opts: QueryOptions) -> QueryResult:
        """Run a query as the token's user.

        Raises:
            AuthorizationError: Unknown token or table, or no read grant
            ValidationError: Malformed request from a known user
            BackendError: Engine failure
            FactoryError: Shard cannot be resolved
        """
        user, table, access = self._authorize(token, opts, "query")
        if not access.can_read:
            logger.info(f"User {user.id} denied query on {table.name}: no read grant")
            raise AuthorizationError(
                f"user '{user.name}' cannot perform query action on '{table.name}'",
                table.name,
                "query",
            )

        rewritten = rewrite_query(opts, user, access)
        shard = self._factory.resolve(self._metadata.shard_spec_for(table))
        return shard.query(rewritten)

    def exec(self, token: str, opts: ExecOptions) -> ExecResult:
        """Run an insert or update as the token's user.

        Raises:
            AuthorizationError: Unknown token or table, or no write grant
            ValidationError: Malformed request from a known user
            BackendError: Engine failure
            FactoryError: Shard cannot be resolved
        """
        user, table, access = self._authorize(token, opts, "exec")
        if not access.can_write:
            logger.info(f"User {user.id} denied exec on {table.name}: no write grant")
            raise AuthorizationError(
                f"user '{user.name}' cannot perform exec action on '{table.name}'",
                table.name,
                "exec",
            )

        rewritten = rewrite_exec(opts, user, access)
        shard = self._factory.resolve(self._metadata.shard_spec_for(table))
        return shard.exec(rewritten)


class UserStore:
    """A DelegatedStore bound to one bearer token."""

    def __init__(self, store: DelegatedStore, token: str) -> None:
        self._store = store
        self._token = token

    def query(self, opts: QueryOptions) -> QueryResult:
        return self._store.query(self._token, opts)

    def exec(self, opts: ExecOptions) -> ExecResult:
        return self._store.exec(self._token, opts)
