"""
Metadata store for TableDB.

The metadata store is the system of record for:
- Tables and the shard that hosts each of them
- Users and their bearer tokens
- The permission catalog
- Per-table grants

It keeps its catalogs in a dedicated backend, separate from the shards
that host user tables.

Invariants:
    - A catalogued table exists physically in the shard it names
    - A grant never references an unknown user, table or permission
    - Every user table has a system-managed created_by column
    - User names and tokens are unique; AddUser is idempotent by name
    - Granting an existing (user, table, permission) triple is a no-op
    - Table names are case-insensitive, as SQLite identifiers are

How to change safely:
    - Catalog tables are created with IF NOT EXISTS; new columns need a migration
    - Keep init() idempotent; it runs on every start
    - CreateTable is two steps (physical create, then catalog insert) and is
      not transactional; see create_table
"""

from __future__ import annotations

import logging
import secrets

from ..errors import (
    ConstraintViolationError,
    NotFoundError,
    TableCreationError,
    TableDbError,
    ValidationError,
)
from .backend import SQLiteBackend, StoreBackend
from .factory import ShardSpec, StoreFactory
from .types import (
    CREATED_BY_COLUMN,
    CreateTableOptions,
    ExecOptions,
    ExecType,
    FieldValue,
    Permission,
    Predicate,
    QueryOptions,
    Table,
    TablePermission,
    User,
)

logger = logging.getLogger(__name__)

GLOBAL_TABLES = "global_tables"
GLOBAL_PERMISSIONS = "global_permissions"
GLOBAL_USERS = "global_users"
GLOBAL_USER_TABLE_PERMISSION = "global_user_table_permission"

# Catalog tables, in creation order
CATALOG_TABLES: tuple[CreateTableOptions, ...] = (
    CreateTableOptions(
        table_name=GLOBAL_TABLES,
        definitions=(
            ("id", "integer", "not null", "primary key"),
            ("name", "text", "not null", "unique", "collate nocase"),
            ("store_id", "integer", "not null"),
        ),
        if_not_exists=True,
    ),
    CreateTableOptions(
        table_name=GLOBAL_PERMISSIONS,
        definitions=(("name", "text", "primary key", "not null"),),
        if_not_exists=True,
    ),
    CreateTableOptions(
        table_name=GLOBAL_USERS,
        definitions=(
            ("id", "integer", "not null", "primary key"),
            ("name", "text", "not null", "unique"),
            ("token", "text", "not null", "unique"),
        ),
        if_not_exists=True,
    ),
    CreateTableOptions(
        table_name=GLOBAL_USER_TABLE_PERMISSION,
        definitions=(
            ("user_id", "integer", "not null"),
            ("table_name", "text", "not null"),
            ("permission", "text", "not null"),
            ("unique", "(user_id, table_name, permission)"),
        ),
        if_not_exists=True,
    ),
)


def new_token() -> str:
    """Mint an opaque, unguessable bearer token."""
    return secrets.token_hex(16)


class MetadataStore:
    """Catalog of tables, users, tokens and grants.

    All admin operations funnel through the catalog backend, which
    serializes them. Multi-step operations are not atomic.

    Example:
        >>> factory = StoreFactory()
        >>> metadata = MetadataStore.open(":memory:", ":memory:", factory)
        >>> metadata.create_table(CreateTableOptions("foo", (("id", "integer", "primary key"),)))
        >>> token = metadata.add_user("alice")
        >>> user = metadata.get_user(token)
        >>> metadata.add_permission(user.id, "foo", Permission.READ_ALL)
    """

    def __init__(
        self,
        catalog: StoreBackend,
        factory: StoreFactory,
        user_store_data_source: str,
    ) -> None:
        """Initialize the metadata store.

        Args:
            catalog: Dedicated backend holding the catalog tables
            factory: Factory used to place user tables on shards
            user_store_data_source: Data source for the default shard
        """
        self._catalog = catalog
        self._factory = factory
        self._user_store_data_source = user_store_data_source
        self._default_shard_id: int | None = None

    @classmethod
    def open(
        cls,
        admin_data_source: str,
        user_store_data_source: str,
        factory: StoreFactory,
        busy_timeout_ms: int = 5000,
    ) -> MetadataStore:
        """Open the catalog backend and initialize the catalogs.

        Raises:
            FactoryError: If the catalog backend cannot be opened
            BackendError: If catalog initialization fails
        """
        catalog = SQLiteBackend(
            admin_data_source,
            backend_id=0,
            busy_timeout_ms=busy_timeout_ms,
        )
        store = cls(catalog, factory, user_store_data_source)
        store.init()
        return store

    def init(self) -> None:
        """Create the catalog tables and seed the permission catalog.

        Safe to call against a store that already holds some or all of them.
        """
        for opts in CATALOG_TABLES:
            self._catalog.create_table(opts)
            logger.debug(f"Catalog table ready: {opts.table_name}")

        for perm in Permission.names():
            existing = self._catalog.query(
                QueryOptions(
                    table_name=GLOBAL_PERMISSIONS,
                    include_columns=("name",),
                    where=(Predicate.eq("name", perm),),
                    limit=1,
                )
            )
            if existing:
                continue
            try:
                self._catalog.exec(
                    ExecOptions(
                        type=ExecType.INSERT,
                        table_name=GLOBAL_PERMISSIONS,
                        values=(FieldValue("name", perm),),
                    )
                )
                logger.info(f"Seeded permission {perm}")
            except ConstraintViolationError:
                # Seeded concurrently by another process sharing the catalog
                continue

        self._default_shard_id = self._find_default_shard_id()

    def _find_default_shard_id(self) -> int | None:
        rows = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_TABLES,
                include_columns=("store_id",),
            )
        )
        return rows[-1]["store_id"] if rows else None

    def create_table(self, opts: CreateTableOptions) -> None:
        """Create a user table on the default shard and catalogue it.

        A created_by column is appended to the caller's definitions.

        The physical create and the catalog insert are separate steps. If the
        catalog insert fails, the physical table is left in place (orphaned)
        and a warning names it.

        Args:
            opts: Table name, column definitions and if_not_exists flag

        Raises:
            TableCreationError: If the name is empty or taken, a column is
                reserved, or the backend or catalog write fails
        """
        if not opts.table_name:
            raise TableCreationError("table name is empty", table_name=opts.table_name)
        if CREATED_BY_COLUMN in (c.lower() for c in opts.column_names()):
            raise TableCreationError(
                f"column '{CREATED_BY_COLUMN}' is reserved", table_name=opts.table_name
            )

        try:
            self.get_table(opts.table_name)
        except NotFoundError:
            pass
        else:
            if opts.if_not_exists:
                return
            raise TableCreationError(
                f"table '{opts.table_name}' already exists", table_name=opts.table_name
            )

        # Placement policy: every table goes to the default shard
        try:
            shard = self._factory.resolve(
                ShardSpec(
                    shard_id=self._default_shard_id,
                    data_source=self._user_store_data_source,
                )
            )
        except TableDbError as e:
            raise TableCreationError(
                f"unable to create table '{opts.table_name}': {e}", table_name=opts.table_name
            ) from e
        self._default_shard_id = shard.id

        physical = CreateTableOptions(
            table_name=opts.table_name,
            definitions=tuple(tuple(d) for d in opts.definitions)
            + ((CREATED_BY_COLUMN, "integer"),),
            if_not_exists=opts.if_not_exists,
        )
        try:
            shard.create_table(physical)
        except TableDbError as e:
            raise TableCreationError(
                f"unable to create table '{opts.table_name}': {e}", table_name=opts.table_name
            ) from e

        try:
            self._catalog.exec(
                ExecOptions(
                    type=ExecType.INSERT,
                    table_name=GLOBAL_TABLES,
                    values=(
                        FieldValue("name", opts.table_name),
                        FieldValue("store_id", shard.id),
                    ),
                )
            )
        except TableDbError as e:
            logger.warning(
                f"Table {opts.table_name} created on shard {shard.id} but not catalogued; "
                "physical table is orphaned"
            )
            raise TableCreationError(
                f"unable to record table '{opts.table_name}': {e}", table_name=opts.table_name
            ) from e

        logger.info(f"Created table {opts.table_name} on shard {shard.id}")

    def get_table(self, table_name: str) -> Table:
        """Look up a catalogued table.

        Raises:
            NotFoundError: If no table has that name
        """
        if not table_name:
            raise NotFoundError("table with empty name not found", resource_type="table")
        rows = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_TABLES,
                include_columns=("id", "name", "store_id"),
                where=(Predicate.eq("name", table_name),),
                limit=1,
            )
        )
        if not rows:
            raise NotFoundError(f"table with name '{table_name}' not found", resource_type="table")
        row = rows[0]
        return Table(id=row["id"], name=row["name"], shard_id=row["store_id"])

    def shard_spec_for(self, table: Table) -> ShardSpec:
        """Routing answer for a table: its shard id and the shard's data source."""
        return ShardSpec(shard_id=table.shard_id, data_source=self._user_store_data_source)

    def add_user(self, user_name: str) -> str:
        """Add a user and return their token.

        Idempotent by name: an existing user's token is returned unchanged.

        Raises:
            ValidationError: If the name is empty
        """
        if not user_name:
            raise ValidationError("user name is empty", field_name="user_name")

        token = self._find_token(user_name)
        if token is not None:
            return token

        token = new_token()
        try:
            self._catalog.exec(
                ExecOptions(
                    type=ExecType.INSERT,
                    table_name=GLOBAL_USERS,
                    values=(FieldValue("name", user_name), FieldValue("token", token)),
                )
            )
        except ConstraintViolationError:
            # Lost a race with a concurrent add_user for the same name
            existing = self._find_token(user_name)
            if existing is None:
                raise
            return existing

        logger.info(f"Added user {user_name}")
        return token

    def _find_token(self, user_name: str) -> str | None:
        rows = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_USERS,
                include_columns=("name", "token"),
                where=(Predicate.eq("name", user_name),),
                limit=1,
            )
        )
        return rows[0]["token"] if rows else None

    def get_user(self, token: str) -> User:
        """Resolve a bearer token to its user.

        Raises:
            NotFoundError: If no user holds the token
        """
        return self._get_user_where(Predicate.eq("token", token), "user with token not found")

    def get_user_by_name(self, user_name: str) -> User:
        return self._get_user_where(
            Predicate.eq("name", user_name), f"user with name '{user_name}' not found"
        )

    def _get_user_where(self, predicate: Predicate, message: str) -> User:
        rows = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_USERS,
                include_columns=("id", "name"),
                where=(predicate,),
                limit=1,
            )
        )
        if not rows:
            raise NotFoundError(message, resource_type="user")
        return User(id=rows[0]["id"], name=rows[0]["name"])

    def add_permission(
        self,
        user_id: int,
        table_name: str,
        permission: Permission | str,
    ) -> None:
        """Grant a permission on a table to a user.

        No-op if the grant already exists.

        Raises:
            InvalidPermissionError: If permission is not a catalog permission
            NotFoundError: If the user or table does not exist
        """
        perm = Permission.parse(permission)

        users = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_USERS,
                include_columns=("id",),
                where=(Predicate.eq("id", user_id),),
                limit=1,
            )
        )
        if not users:
            raise NotFoundError(f"user with id {user_id} not found", resource_type="user")
        # Grants are recorded under the catalogued spelling of the name
        table_name = self.get_table(table_name).name

        existing = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_USER_TABLE_PERMISSION,
                include_columns=("user_id", "table_name", "permission"),
                where=(
                    Predicate.eq("user_id", user_id),
                    Predicate.eq("table_name", table_name),
                    Predicate.eq("permission", perm.value),
                ),
                limit=1,
            )
        )
        if existing:
            return

        try:
            self._catalog.exec(
                ExecOptions(
                    type=ExecType.INSERT,
                    table_name=GLOBAL_USER_TABLE_PERMISSION,
                    values=(
                        FieldValue("user_id", user_id),
                        FieldValue("table_name", table_name),
                        FieldValue("permission", perm.value),
                    ),
                )
            )
        except ConstraintViolationError:
            # Granted concurrently
            return

        logger.info(f"Granted {perm.value} on {table_name} to user {user_id}")

    def get_permissions_for_token(self, token: str) -> list[TablePermission]:
        """Return every grant held by the token's user, across all tables.

        Raises:
            NotFoundError: If no user holds the token
        """
        user = self.get_user(token)
        rows = self._catalog.query(
            QueryOptions(
                table_name=GLOBAL_USER_TABLE_PERMISSION,
                include_columns=("user_id", "table_name", "permission"),
                where=(Predicate.eq("user_id", user.id),),
            )
        )
        return [
            TablePermission(table_name=row["table_name"], permission=Permission(row["permission"]))
            for row in rows
        ]

    def close(self) -> None:
        self._catalog.close()
