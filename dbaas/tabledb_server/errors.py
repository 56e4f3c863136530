"""
Error types for TableDB Server.

This module defines every exception raised by the core:
- TableDbError: Base exception
- ValidationError: Malformed request (empty name, bad enum, unscoped update)
- InvalidPermissionError: Permission name outside the closed catalog
- TableCreationError: CreateTable could not complete
- NotFoundError: Unknown token, user or table
- AuthorizationError: No grant, or grant insufficient for the action
- BackendError: Underlying engine failure
- ConstraintViolationError: Engine rejected a write on a constraint
- FactoryError: A store backend could not be created or resolved

Invariants:
    - All errors inherit from TableDbError
    - Errors carry a stable code for the transport to map to a status
    - Bearer tokens never appear in error messages or details
    - The core never retries; errors surface to the immediate caller
"""

from __future__ import annotations

from typing import Any


class TableDbError(Exception):
    """Base exception for all TableDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "TABLEDB_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details or {}


class ValidationError(TableDbError):
    """Request validation failed.

    Raised when:
    - Table name is empty
    - Exec type is not insert or update
    - Exec carries no values
    - Update carries no predicates
    - An identifier or operator is malformed
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, details={"field": field_name})
        self.field_name = field_name


class InvalidPermissionError(ValidationError):
    """Permission name is not one of the four catalog permissions."""

    code = "INVALID_PERMISSION"

    def __init__(self, permission: Any, allowed: list[str]) -> None:
        super().__init__(
            f"invalid permission '{permission}'. should be one of '{','.join(allowed)}'",
            field_name="permission",
        )
        self.permission = permission
        self.allowed = allowed


class TableCreationError(TableDbError):
    """CreateTable failed before the table was catalogued."""

    code = "TABLE_CREATION_ERROR"

    def __init__(self, message: str, table_name: str) -> None:
        super().__init__(message, details={"table_name": table_name})
        self.table_name = table_name


class NotFoundError(TableDbError):
    """Resource not found.

    Raised when:
    - No user holds the token
    - No table is catalogued under the name
    - No user has the given id
    """

    code = "NOT_FOUND"

    def __init__(self, message: str, resource_type: str) -> None:
        super().__init__(message, details={"resource_type": resource_type})
        self.resource_type = resource_type


class AuthorizationError(TableDbError):
    """Principal may not perform the requested action on the table."""

    code = "ACCESS_DENIED"

    def __init__(
        self,
        message: str,
        table_name: str | None = None,
        action: str | None = None,
    ) -> None:
        super().__init__(message, details={"table_name": table_name, "action": action})
        self.table_name = table_name
        self.action = action


class BackendError(TableDbError):
    """The underlying relational engine failed the operation."""

    code = "BACKEND_ERROR"

    def __init__(self, message: str, backend_id: int | None = None) -> None:
        super().__init__(message, details={"backend_id": backend_id})
        self.backend_id = backend_id


class ConstraintViolationError(BackendError):
    """The engine rejected a write because it violates a constraint."""

    code = "CONSTRAINT_VIOLATION"


class FactoryError(TableDbError):
    """A store backend could not be created or resolved."""

    code = "FACTORY_ERROR"

    def __init__(self, message: str, shard_id: int | None = None) -> None:
        super().__init__(message, details={"shard_id": shard_id})
        self.shard_id = shard_id
