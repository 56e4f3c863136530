"""
Unit tests for the delegated store.

Tests cover:
- Grant evaluation (TableAccess)
- Ownership stamping on insert
- Row scoping for restricted readers and writers
- Denials for missing grants, unknown tokens and unknown tables
- Request objects are not mutated by rewriting
"""

import pytest

from dbaas.tabledb_server.errors import AuthorizationError, ValidationError
from dbaas.tabledb_server.store.delegated import (
    DelegatedStore,
    TableAccess,
    rewrite_exec,
    rewrite_query,
)
from dbaas.tabledb_server.store.factory import StoreFactory
from dbaas.tabledb_server.store.metadata import MetadataStore
from dbaas.tabledb_server.store.types import (
    CreateTableOptions,
    ExecOptions,
    ExecType,
    FieldValue,
    Permission,
    Predicate,
    QueryOptions,
    TablePermission,
    User,
)

READ_ALL = Permission.READ_ALL
WRITE_ALL = Permission.WRITE_ALL
READ_RESTRICTED = Permission.READ_RESTRICTED
WRITE_RESTRICTED = Permission.WRITE_RESTRICTED


def insert_name(name, **extra):
    values = (FieldValue("name", name),) + tuple(FieldValue(k, v) for k, v in extra.items())
    return ExecOptions(type=ExecType.INSERT, table_name="foo", values=values)


def update_name(name, *where):
    return ExecOptions(
        type=ExecType.UPDATE,
        table_name="foo",
        values=(FieldValue("name", name),),
        where=tuple(where),
    )


ALL_ROWS = QueryOptions(table_name="foo", include_columns=("id", "name"))


class Env:
    """A metadata store, delegated store and helpers for granting users."""

    def __init__(self):
        self.factory = StoreFactory()
        self.metadata = MetadataStore.open(":memory:", ":memory:", self.factory)
        self.store = DelegatedStore(self.metadata, self.factory)
        self.metadata.create_table(
            CreateTableOptions(
                table_name="foo",
                definitions=(
                    ("id", "integer", "not null", "primary key"),
                    ("name", "text"),
                ),
            )
        )

    def user(self, name, *permissions):
        token = self.metadata.add_user(name)
        user = self.metadata.get_user(token)
        for perm in permissions:
            self.metadata.add_permission(user.id, "foo", perm)
        return token, user

    def owners(self):
        """Map of row name to created_by, read directly from the shard."""
        shard = self.factory.resolve(
            self.metadata.shard_spec_for(self.metadata.get_table("foo"))
        )
        rows = shard.query(QueryOptions(table_name="foo", include_columns=("name", "created_by")))
        return {r["name"]: r["created_by"] for r in rows}

    def close(self):
        self.metadata.close()
        self.factory.close()


@pytest.fixture
def env():
    env = Env()
    yield env
    env.close()


class TestTableAccess:
    """Tests for grant evaluation."""

    def grants(self, *perms, table="foo"):
        return [TablePermission(table, p) for p in perms]

    def test_only_grants_for_the_table_count(self):
        grants = self.grants(READ_ALL) + self.grants(WRITE_ALL, table="bar")
        access = TableAccess.from_grants("foo", grants)
        assert access.can_read
        assert not access.can_write

    def test_empty(self):
        access = TableAccess.from_grants("foo", self.grants(READ_ALL, table="bar"))
        assert access.empty
        assert not access.can_read
        assert not access.can_write

    def test_restricted_only(self):
        access = TableAccess.from_grants("foo", self.grants(READ_RESTRICTED, WRITE_RESTRICTED))
        assert access.read_restricted_only
        assert access.write_restricted_only

    def test_all_dominates_restricted(self):
        access = TableAccess.from_grants(
            "foo", self.grants(READ_RESTRICTED, READ_ALL, WRITE_RESTRICTED, WRITE_ALL)
        )
        assert access.can_read
        assert access.can_write
        assert not access.read_restricted_only
        assert not access.write_restricted_only


class TestRewrite:
    """Tests for the request rewrites."""

    user = User(id=7, name="alice")

    def test_restricted_query_gets_owner_predicate(self):
        access = TableAccess("foo", frozenset({READ_RESTRICTED}))
        opts = QueryOptions(table_name="foo", where=(Predicate.eq("name", "a"),))
        rewritten = rewrite_query(opts, self.user, access)
        assert rewritten.where == (Predicate.eq("name", "a"), Predicate.eq("created_by", 7))
        assert opts.where == (Predicate.eq("name", "a"),)

    def test_read_all_query_unchanged(self):
        access = TableAccess("foo", frozenset({READ_ALL, READ_RESTRICTED}))
        opts = QueryOptions(table_name="foo")
        assert rewrite_query(opts, self.user, access) is opts

    def test_insert_stamps_owner(self):
        access = TableAccess("foo", frozenset({WRITE_ALL}))
        opts = insert_name("a", created_by=99)
        rewritten = rewrite_exec(opts, self.user, access)
        assert rewritten.values == (FieldValue("name", "a"), FieldValue("created_by", 7))
        assert opts.values == (FieldValue("name", "a"), FieldValue("created_by", 99))

    def test_update_strips_owner_value(self):
        access = TableAccess("foo", frozenset({WRITE_ALL}))
        opts = ExecOptions(
            type=ExecType.UPDATE,
            table_name="foo",
            values=(FieldValue("name", "z"), FieldValue("CREATED_BY", 99)),
            where=(Predicate.eq("id", 1),),
        )
        rewritten = rewrite_exec(opts, self.user, access)
        assert rewritten.values == (FieldValue("name", "z"),)
        assert rewritten.where == (Predicate.eq("id", 1),)

    def test_restricted_update_gets_owner_predicate(self):
        access = TableAccess("foo", frozenset({WRITE_RESTRICTED}))
        opts = update_name("z", Predicate.eq("id", 1))
        rewritten = rewrite_exec(opts, self.user, access)
        assert rewritten.where == (Predicate.eq("id", 1), Predicate.eq("created_by", 7))


class TestDelegatedStore:
    """Tests for DelegatedStore query and exec."""

    def test_owner_with_full_access(self, env):
        """A user with READ_ALL and WRITE_ALL inserts and reads back a row."""
        token, _ = env.user("alice", READ_ALL, WRITE_ALL)
        result = env.store.exec(token, insert_name("x"))
        assert result.last_insert_id > 0
        assert env.store.query(token, ALL_ROWS) == [{"id": 1, "name": "x"}]

    def test_insert_records_owner(self, env):
        """Rows written by a user are attributed to them."""
        token, user = env.user("alice", WRITE_ALL)
        result = env.store.exec(token, insert_name("a"))
        assert result.rows_affected == 1
        assert env.owners() == {"a": user.id}

    def test_insert_cannot_forge_owner(self, env):
        token, user = env.user("alice", WRITE_RESTRICTED)
        env.store.exec(token, insert_name("a", created_by=12345))
        assert env.owners() == {"a": user.id}

    def test_restricted_reader_sees_own_rows(self, env):
        """READ_RESTRICTED users only see rows they created."""
        alice, _ = env.user("alice", WRITE_RESTRICTED, READ_RESTRICTED)
        bob, _ = env.user("bob", WRITE_RESTRICTED, READ_RESTRICTED)
        env.store.exec(alice, insert_name("a1"))
        env.store.exec(alice, insert_name("a2"))
        env.store.exec(bob, insert_name("b1"))

        assert [r["name"] for r in env.store.query(alice, ALL_ROWS)] == ["a1", "a2"]
        assert [r["name"] for r in env.store.query(bob, ALL_ROWS)] == ["b1"]

    def test_restricted_reader_cannot_widen_with_predicates(self, env):
        alice, _ = env.user("alice", WRITE_RESTRICTED, READ_RESTRICTED)
        bob, bob_user = env.user("bob", WRITE_RESTRICTED)
        env.store.exec(bob, insert_name("b1"))

        opts = QueryOptions(
            table_name="foo",
            include_columns=("name",),
            where=(Predicate.eq("created_by", bob_user.id),),
        )
        assert env.store.query(alice, opts) == []

    def test_read_all_sees_every_row(self, env):
        alice, _ = env.user("alice", WRITE_RESTRICTED)
        bob, _ = env.user("bob", WRITE_RESTRICTED)
        admin, _ = env.user("carol", READ_ALL)
        env.store.exec(alice, insert_name("a1"))
        env.store.exec(bob, insert_name("b1"))

        assert [r["name"] for r in env.store.query(admin, ALL_ROWS)] == ["a1", "b1"]

    def test_read_all_dominates_restricted(self, env):
        alice, _ = env.user("alice", WRITE_RESTRICTED)
        carol, _ = env.user("carol", READ_RESTRICTED, READ_ALL)
        env.store.exec(alice, insert_name("a1"))
        assert [r["name"] for r in env.store.query(carol, ALL_ROWS)] == ["a1"]

    def test_query_hides_created_by_by_default(self, env):
        alice, _ = env.user("alice", WRITE_ALL, READ_ALL)
        env.store.exec(alice, insert_name("a1"))
        assert env.store.query(alice, QueryOptions(table_name="foo")) == [
            {"id": 1, "name": "a1"}
        ]

    def test_restricted_writer_updates_own_rows_only(self, env):
        """WRITE_RESTRICTED updates never touch other users' rows."""
        alice, _ = env.user("alice", WRITE_RESTRICTED)
        bob, _ = env.user("bob", WRITE_RESTRICTED)
        env.store.exec(alice, insert_name("a1"))
        env.store.exec(bob, insert_name("b1"))

        theirs = env.store.exec(alice, update_name("hijacked", Predicate.eq("name", "b1")))
        assert theirs.rows_affected == 0

        mine = env.store.exec(alice, update_name("a1-renamed", Predicate.eq("name", "a1")))
        assert mine.rows_affected == 1
        assert set(env.owners()) == {"a1-renamed", "b1"}

    def test_write_all_updates_any_row(self, env):
        alice, _ = env.user("alice", WRITE_RESTRICTED)
        carol, _ = env.user("carol", WRITE_ALL, WRITE_RESTRICTED)
        env.store.exec(alice, insert_name("a1"))

        result = env.store.exec(carol, update_name("edited", Predicate.eq("name", "a1")))
        assert result.rows_affected == 1
        assert set(env.owners()) == {"edited"}

    def test_update_cannot_change_owner(self, env):
        alice, alice_user = env.user("alice", WRITE_ALL)
        _, bob_user = env.user("bob")
        env.store.exec(alice, insert_name("a1"))

        opts = ExecOptions(
            type=ExecType.UPDATE,
            table_name="foo",
            values=(FieldValue("name", "a2"), FieldValue("created_by", bob_user.id)),
            where=(Predicate.eq("name", "a1"),),
        )
        env.store.exec(alice, opts)
        assert env.owners() == {"a2": alice_user.id}

    def test_update_of_owner_only_is_rejected(self, env):
        """An update whose only value is created_by has nothing left to set."""
        alice, _ = env.user("alice", WRITE_ALL)
        env.store.exec(alice, insert_name("a1"))
        opts = ExecOptions(
            type=ExecType.UPDATE,
            table_name="foo",
            values=(FieldValue("created_by", 5),),
            where=(Predicate.eq("name", "a1"),),
        )
        with pytest.raises(ValidationError):
            env.store.exec(alice, opts)

    def test_unscoped_update_rejected_for_restricted_writer(self, env):
        """The ownership predicate does not make an unscoped update valid."""
        alice, _ = env.user("alice", WRITE_RESTRICTED)
        env.store.exec(alice, insert_name("a1"))
        with pytest.raises(ValidationError, match="update without predicates"):
            env.store.exec(alice, update_name("z"))
        assert set(env.owners()) == {"a1"}

    def test_no_grants_denied(self, env):
        token, _ = env.user("mallory")
        with pytest.raises(AuthorizationError, match="not allowed to query"):
            env.store.query(token, ALL_ROWS)
        with pytest.raises(AuthorizationError, match="not allowed to exec"):
            env.store.exec(token, insert_name("x"))

    def test_grants_on_other_table_do_not_apply(self, env):
        env.metadata.create_table(
            CreateTableOptions(table_name="bar", definitions=(("id", "integer"),))
        )
        token, user = env.user("mallory")
        env.metadata.add_permission(user.id, "bar", READ_ALL)
        with pytest.raises(AuthorizationError):
            env.store.query(token, ALL_ROWS)

    def test_read_only_user_cannot_write(self, env):
        token, _ = env.user("reader", READ_ALL)
        with pytest.raises(AuthorizationError, match="cannot perform exec"):
            env.store.exec(token, insert_name("x"))
        assert env.owners() == {}

    def test_write_only_user_cannot_read(self, env):
        token, _ = env.user("writer", WRITE_ALL)
        env.store.exec(token, insert_name("x"))
        with pytest.raises(AuthorizationError, match="cannot perform query"):
            env.store.query(token, ALL_ROWS)

    def test_unknown_token(self, env):
        with pytest.raises(AuthorizationError) as exc_info:
            env.store.query("no-such-token", ALL_ROWS)
        assert "no-such-token" not in exc_info.value.message
        with pytest.raises(AuthorizationError):
            env.store.exec("no-such-token", insert_name("x"))

    def test_unknown_table(self, env):
        token, _ = env.user("alice", READ_ALL)
        with pytest.raises(AuthorizationError, match="unknown table"):
            env.store.query(token, QueryOptions(table_name="missing"))

    def test_identity_resolved_before_validation(self, env):
        """An unknown token is denied even when the request is malformed."""
        with pytest.raises(AuthorizationError, match="unknown token"):
            env.store.query("no-such-token", QueryOptions(table_name=""))
        with pytest.raises(AuthorizationError, match="unknown token"):
            env.store.exec("no-such-token", update_name("z"))

    def test_malformed_request_from_known_user(self, env):
        token, _ = env.user("alice", READ_ALL)
        with pytest.raises(ValidationError, match="table name is empty"):
            env.store.query(token, QueryOptions(table_name=""))

    def test_table_name_case_does_not_bypass_grants(self, env):
        """Another spelling of a table name reaches the same grants."""
        owner, _ = env.user("alice", WRITE_ALL)
        env.store.exec(owner, insert_name("secret"))
        env.metadata.create_table(
            CreateTableOptions(
                table_name="FOO", definitions=(("id", "integer"),), if_not_exists=True
            )
        )
        eve, _ = env.user("eve")
        upper = QueryOptions(table_name="FOO", include_columns=("id", "name"))
        with pytest.raises(AuthorizationError):
            env.store.query(eve, upper)

    def test_grant_under_other_spelling_applies(self, env):
        owner, _ = env.user("alice", WRITE_ALL)
        env.store.exec(owner, insert_name("a1"))
        token, user = env.user("bob")
        env.metadata.add_permission(user.id, "FOO", READ_ALL)
        upper = QueryOptions(table_name="FOO", include_columns=("id", "name"))
        assert env.store.query(token, upper) == [{"id": 1, "name": "a1"}]
        assert env.store.query(token, ALL_ROWS) == [{"id": 1, "name": "a1"}]

    def test_caller_options_not_mutated(self, env):
        alice, _ = env.user("alice", READ_RESTRICTED, WRITE_RESTRICTED)
        insert = insert_name("a1", created_by=42)
        query = QueryOptions(table_name="foo", include_columns=("name",))
        env.store.exec(alice, insert)
        env.store.query(alice, query)
        assert insert.values == (FieldValue("name", "a1"), FieldValue("created_by", 42))
        assert query.where == ()

    def test_new_grant_applies_on_next_call(self, env):
        token, user = env.user("alice")
        with pytest.raises(AuthorizationError):
            env.store.query(token, ALL_ROWS)
        env.metadata.add_permission(user.id, "foo", READ_ALL)
        assert env.store.query(token, ALL_ROWS) == []

    def test_as_user(self, env):
        token, user = env.user("alice", READ_RESTRICTED, WRITE_RESTRICTED)
        alice = env.store.as_user(token)
        result = alice.exec(insert_name("a1"))
        assert result.last_insert_id == 1
        assert alice.query(ALL_ROWS) == [{"id": 1, "name": "a1"}]
        assert env.owners() == {"a1": user.id}
