"""
Request and catalog types shared by the TableDB store layers.

This module defines:
- Permission: the closed set of grantable permissions
- ExecType: insert/update request shapes
- Predicate / FieldValue: parameterized filter and assignment units
- QueryOptions / ExecOptions / CreateTableOptions: request shapes with validation
- ExecResult / QueryResult: backend results
- User / Table / TablePermission: catalog records

Invariants:
    - Every identifier that reaches SQL text is a plain identifier
    - Every value that reaches SQL is a bound parameter
    - Validation happens before any backend is touched
    - created_by is owned by the system, never by request input

How to change safely:
    - New permissions must be added to Permission and seeded by MetadataStore.init
    - New predicate operators must be safe to splice between identifier and "?"
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from ..errors import InvalidPermissionError, ValidationError

CREATED_BY_COLUMN = "created_by"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DEFINITION_TOKEN_RE = re.compile(r"^[\w\s(),.'\"+-]+$")

PREDICATE_OPERATORS = frozenset({"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "IS", "IS NOT"})

ColumnValue = Union[str, int, float, None]
QueryResult = list[dict[str, ColumnValue]]


def is_identifier(name: Any) -> bool:
    """Check that a name is safe to use as a table or column identifier."""
    return isinstance(name, str) and bool(_IDENTIFIER_RE.match(name))


def quote_identifier(name: str) -> str:
    """Quote a validated identifier for SQLite."""
    if not is_identifier(name):
        raise ValidationError(f"invalid identifier '{name}'", field_name=name)
    return f'"{name}"'


def _validate_table_name(table_name: str) -> None:
    if not table_name:
        raise ValidationError("table name is empty", field_name="table_name")
    if not is_identifier(table_name):
        raise ValidationError(f"invalid table name '{table_name}'", field_name="table_name")


def _is_single_definition(text: str) -> bool:
    """Check that definition text cannot close the column list or start another column."""
    depth = 0
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
        elif char == "," and depth == 0:
            return False
    return depth == 0


class Permission(Enum):
    """Grantable permissions on a table."""

    # can read all the records in a table
    READ_ALL = "READ_ALL"
    # can create records and update any record in a table
    WRITE_ALL = "WRITE_ALL"
    # can read only records created by the user
    READ_RESTRICTED = "READ_RESTRICTED"
    # can create records and update only records created by the user
    WRITE_RESTRICTED = "WRITE_RESTRICTED"

    @classmethod
    def names(cls) -> list[str]:
        return [p.value for p in cls]

    @classmethod
    def parse(cls, value: Permission | str) -> Permission:
        """Parse a permission name.

        Raises:
            InvalidPermissionError: If value is not one of the catalog names
        """
        if isinstance(value, Permission):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidPermissionError(value, cls.names()) from None


class ExecType(Enum):
    """Write request shapes."""

    INSERT = "insert"
    UPDATE = "update"

    @classmethod
    def parse(cls, value: ExecType | str) -> ExecType:
        if isinstance(value, ExecType):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"invalid exec type '{value}'", field_name="type") from None


@dataclass(frozen=True)
class Predicate:
    """A single parameterized filter: ``column <operator> ?``.

    Predicates in a request are combined with logical AND.
    """

    column: str
    operator: str = "="
    value: ColumnValue = None

    @classmethod
    def eq(cls, column: str, value: ColumnValue) -> Predicate:
        return cls(column=column, operator="=", value=value)

    def validate(self) -> None:
        if not is_identifier(self.column):
            raise ValidationError(f"invalid predicate column '{self.column}'", field_name="where")
        if self.operator.upper() not in PREDICATE_OPERATORS:
            raise ValidationError(
                f"unsupported predicate operator '{self.operator}'", field_name="where"
            )

    def to_sql(self) -> str:
        return f"{quote_identifier(self.column)} {self.operator.upper()} ?"


@dataclass(frozen=True)
class FieldValue:
    """Named value for an insert or update."""

    name: str
    value: ColumnValue


@dataclass(frozen=True)
class QueryOptions:
    """Select request.

    Attributes:
        table_name: Table to read
        include_columns: Columns to return; empty means every column except created_by
        where: Predicates, combined with AND
        limit: Maximum rows to return; zero or less means no limit
    """

    table_name: str
    include_columns: tuple[str, ...] = ()
    where: tuple[Predicate, ...] = ()
    limit: int = 0

    def validate(self) -> None:
        _validate_table_name(self.table_name)
        for column in self.include_columns:
            if not is_identifier(column):
                raise ValidationError(f"invalid column '{column}'", field_name="include_columns")
        for predicate in self.where:
            predicate.validate()
        if not isinstance(self.limit, int):
            raise ValidationError("limit must be an integer", field_name="limit")


@dataclass(frozen=True)
class ExecOptions:
    """Insert or update request.

    Attributes:
        type: ExecType.INSERT or ExecType.UPDATE
        table_name: Table to write
        values: Field assignments
        where: Predicates scoping an update; required for updates
    """

    type: ExecType
    table_name: str
    values: tuple[FieldValue, ...] = ()
    where: tuple[Predicate, ...] = ()

    def validate(self) -> None:
        if not isinstance(self.type, ExecType):
            raise ValidationError(f"invalid exec type '{self.type}'", field_name="type")
        _validate_table_name(self.table_name)
        if not self.values:
            raise ValidationError("nothing to update", field_name="values")
        for fv in self.values:
            if not is_identifier(fv.name):
                raise ValidationError(f"invalid field name '{fv.name}'", field_name="values")
        if self.type is ExecType.UPDATE and not self.where:
            raise ValidationError("update without predicates not allowed", field_name="where")
        for predicate in self.where:
            predicate.validate()


@dataclass(frozen=True)
class CreateTableOptions:
    """Create-table request.

    Each definition is a token list such as ``["id", "integer", "not null",
    "primary key"]``. The first token names the column, or a table constraint
    keyword such as ``unique``.
    """

    table_name: str
    definitions: tuple[tuple[str, ...], ...] = ()
    if_not_exists: bool = False

    def validate(self) -> None:
        _validate_table_name(self.table_name)
        if not self.definitions:
            raise ValidationError("table has no column definitions", field_name="definitions")
        for definition in self.definitions:
            if not definition or not is_identifier(definition[0]):
                raise ValidationError(
                    f"invalid column definition {list(definition)}", field_name="definitions"
                )
            for token in definition[1:]:
                if not _DEFINITION_TOKEN_RE.match(token) or "--" in token:
                    raise ValidationError(
                        f"invalid column definition token '{token}'", field_name="definitions"
                    )
            if not _is_single_definition(" ".join(definition[1:])):
                raise ValidationError(
                    f"column definition {list(definition)} must describe one column",
                    field_name="definitions",
                )

    def column_names(self) -> list[str]:
        return [d[0] for d in self.definitions if d]


@dataclass(frozen=True)
class ExecResult:
    last_insert_id: int = 0
    rows_affected: int = 0


@dataclass(frozen=True)
class User:
    """A global_users row without its token; lookups never echo the token back."""

    id: int
    name: str


@dataclass(frozen=True)
class Table:
    id: int
    name: str
    shard_id: int


@dataclass(frozen=True)
class TablePermission:
    """A global_user_table_permission row as seen from the user that holds it.

    The user_id column is implied by the token the grants were listed for.
    """

    table_name: str
    permission: Permission

