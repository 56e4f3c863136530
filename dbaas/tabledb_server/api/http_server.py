"""
HTTP server implementation for TableDB.

This module exposes the admin and store operations over JSON:
- POST /admin/addtable
- POST /admin/adduser
- POST /admin/addpermission
- POST /store/query
- POST /store/exec
- GET  /health

Invariants:
    - Admin routes require the admin token in the request body
    - Store routes carry the caller's bearer token in the request body
    - Handlers hold no business logic; they translate to and from the core
    - Core errors map to statuses by kind, never by message

How to change safely:
    - Keep request field names stable (camelCase on the wire)
    - Add new error kinds to STATUS_BY_CODE
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .._version import __version__
from ..errors import TableDbError
from ..store import (
    CreateTableOptions,
    DelegatedStore,
    ExecOptions,
    ExecType,
    FieldValue,
    MetadataStore,
    Permission,
    Predicate,
    QueryOptions,
)

logger = logging.getLogger(__name__)

WireValue = Union[int, float, str, None]

STATUS_BY_CODE = {
    "VALIDATION_ERROR": 400,
    "INVALID_PERMISSION": 400,
    "TABLE_CREATION_ERROR": 400,
    "NOT_FOUND": 404,
    "ACCESS_DENIED": 403,
    "CONSTRAINT_VIOLATION": 409,
    "BACKEND_ERROR": 500,
    "FACTORY_ERROR": 500,
}


# --- Request/Response Models ---


class WireModel(BaseModel):
    model_config = {"populate_by_name": True}


class PredicateModel(WireModel):
    """A single filter: column, operator and value."""

    column: str
    op: str = Field(default="=", description="Comparison operator")
    value: WireValue = None


class FieldValueModel(WireModel):
    name: str
    value: WireValue = None


class AdminAddTableRequest(WireModel):
    token: str
    table_name: str = Field(default="", alias="tableName")
    definitions: list[list[str]] = Field(default_factory=list)
    if_not_exists: bool = Field(default=False, alias="ifNotExists")


class AdminAddUserRequest(WireModel):
    token: str
    user_name: str = Field(default="", alias="userName")


class AdminAddUserResponse(WireModel):
    user_name: str = Field(alias="userName")
    user_token: str = Field(alias="userToken")


class AdminAddPermissionRequest(WireModel):
    token: str
    user_name: str = Field(default="", alias="userName")
    table_name: str = Field(default="", alias="tableName")
    permissions: list[str] = Field(default_factory=list)


class StoreQueryRequest(WireModel):
    token: str
    table_name: str = Field(default="", alias="tableName")
    include_columns: list[str] = Field(default_factory=list, alias="includeColumns")
    where: list[PredicateModel] = Field(default_factory=list)
    limit: int = 0


class StoreQueryResponse(WireModel):
    results: list[dict[str, Any]]


class StoreExecRequest(WireModel):
    token: str
    type: str
    table_name: str = Field(default="", alias="tableName")
    values: list[FieldValueModel] = Field(default_factory=list)
    where: list[PredicateModel] = Field(default_factory=list)


class StoreExecResponse(WireModel):
    last_insert_id: int = Field(alias="lastInsertId")
    rows_affected: int = Field(alias="rowsAffected")


def _predicates(models: list[PredicateModel]) -> tuple[Predicate, ...]:
    return tuple(Predicate(column=m.column, operator=m.op, value=m.value) for m in models)


def create_http_app(
    metadata: MetadataStore,
    delegated: DelegatedStore,
    admin_token: str,
) -> FastAPI:
    """Create the HTTP application.

    Args:
        metadata: Metadata store serving the admin routes
        delegated: Delegated store serving the store routes
        admin_token: Token required by the admin routes

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="TableDB",
        description="Multi-tenant table service with row-level access control.",
        version=__version__,
    )
    app.state.metadata = metadata
    app.state.delegated = delegated

    @app.exception_handler(TableDbError)
    async def tabledb_error_handler(request: Request, exc: TableDbError) -> JSONResponse:
        status = STATUS_BY_CODE.get(exc.code, 500)
        if status >= 500:
            logger.error(f"{request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=status,
            content={"error": exc.message, "error_code": exc.code},
        )

    def check_admin(token: str) -> None:
        if not secrets.compare_digest(token.encode(), admin_token.encode()):
            raise HTTPException(status_code=401, detail="invalid admin token")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy", "service": "tabledb"}

    @app.post("/admin/addtable")
    def admin_add_table(req: AdminAddTableRequest) -> dict[str, str]:
        check_admin(req.token)
        metadata.create_table(
            CreateTableOptions(
                table_name=req.table_name,
                definitions=tuple(tuple(d) for d in req.definitions),
                if_not_exists=req.if_not_exists,
            )
        )
        return {"tableName": req.table_name}

    @app.post("/admin/adduser", response_model=AdminAddUserResponse, response_model_by_alias=True)
    def admin_add_user(req: AdminAddUserRequest) -> AdminAddUserResponse:
        check_admin(req.token)
        token = metadata.add_user(req.user_name)
        return AdminAddUserResponse(user_name=req.user_name, user_token=token)

    @app.post("/admin/addpermission")
    def admin_add_permission(req: AdminAddPermissionRequest) -> dict[str, Any]:
        check_admin(req.token)
        perms = [Permission.parse(p) for p in req.permissions]
        # Granting to an unknown user name creates the user
        token = metadata.add_user(req.user_name)
        user = metadata.get_user(token)
        for perm in perms:
            metadata.add_permission(user.id, req.table_name, perm)
        return {"userName": user.name, "tableName": req.table_name, "permissions": req.permissions}

    @app.post("/store/query", response_model=StoreQueryResponse)
    def store_query(req: StoreQueryRequest) -> StoreQueryResponse:
        results = delegated.as_user(req.token).query(
            QueryOptions(
                table_name=req.table_name,
                include_columns=tuple(req.include_columns),
                where=_predicates(req.where),
                limit=req.limit,
            )
        )
        return StoreQueryResponse(results=results)

    @app.post("/store/exec", response_model=StoreExecResponse, response_model_by_alias=True)
    def store_exec(req: StoreExecRequest) -> StoreExecResponse:
        result = delegated.as_user(req.token).exec(
            ExecOptions(
                type=ExecType.parse(req.type),
                table_name=req.table_name,
                values=tuple(FieldValue(v.name, v.value) for v in req.values),
                where=_predicates(req.where),
            )
        )
        return StoreExecResponse(
            last_insert_id=result.last_insert_id,
            rows_affected=result.rows_affected,
        )

    return app
