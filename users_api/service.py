"""HTTP API exposing CRUD operations for user documents."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, load_settings
from .database import DEFAULT_PAGE_SIZE, DEFAULT_SORT, MAX_INT64, Database, UserQuery
from .models import User

logger = logging.getLogger("usersapi.service")

MAX_PAGE_SIZE = 100
# Keeps (page - 1) * limit within a BSON int64 skip value.
MAX_PAGE = MAX_INT64 // MAX_PAGE_SIZE
NOT_FOUND = "Not found"


class AddressPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    city: Optional[str] = None
    zip: Optional[str] = None


class UserCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)
    age: Optional[int] = Field(default=None, ge=0, le=MAX_INT64)
    roles: Optional[List[str]] = None
    address: Optional[AddressPayload] = None

    @field_validator("name", "email")
    @classmethod
    def _strip_required_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be empty")
        return stripped


class UserUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = Field(default=None, min_length=1)
    age: Optional[int] = Field(default=None, ge=0, le=MAX_INT64)
    roles: Optional[List[str]] = None
    address: Optional[AddressPayload] = None

    @field_validator("name", "email")
    @classmethod
    def _strip_optional_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be empty")
        return stripped

    @model_validator(mode="after")
    def _reject_null_required_fields(self):  # type: ignore[override]
        for field in ("name", "email"):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self


class UserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    email: str
    age: Optional[int] = None
    roles: List[str]
    address: Optional[AddressPayload] = None
    created_at: datetime = Field(..., alias="createdAt")


class DeleteUserResponse(BaseModel):
    message: str
    id: str


def user_to_response(user: User) -> UserResponse:
    address = None
    if user.address is not None:
        address = AddressPayload(city=user.address.city, zip=user.address.zip)
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        age=user.age,
        roles=list(user.roles),
        address=address,
        created_at=user.created_at,
    )


def _format_validation_errors(errors: Sequence[Dict[str, Any]]) -> str:
    messages: List[str] = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query"})
        message = str(error.get("msg", "Invalid value"))
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages)


def register_user_routes(app: FastAPI, database: Database) -> None:
    """Expose the user CRUD endpoints on the provided FastAPI application."""

    @app.get("/health")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post(
        "/users",
        status_code=status.HTTP_201_CREATED,
        response_model=UserResponse,
        response_model_exclude_none=True,
    )
    def create_user(payload: UserCreateRequest) -> UserResponse:
        try:
            user = database.create_user(
                payload.name,
                payload.email,
                age=payload.age,
                roles=payload.roles,
                address=payload.address.model_dump() if payload.address else None,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except PyMongoError as exc:
            logger.warning("Failed to create user: %s", exc)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return user_to_response(user)

    @app.get("/users", response_model=List[UserResponse], response_model_exclude_none=True)
    def list_users(
        min_age: Optional[float] = Query(default=None, alias="minAge"),
        role: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        page: int = Query(default=1, ge=1, le=MAX_PAGE),
        sort: str = Query(default=DEFAULT_SORT),
    ) -> List[UserResponse]:
        query = UserQuery(min_age=min_age, role=role, q=q, limit=limit, page=page, sort=sort)
        try:
            users = database.list_users(query)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except PyMongoError as exc:
            logger.error("Failed to list users: %s", exc)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
        return [user_to_response(user) for user in users]

    @app.get("/users/{user_id}", response_model=UserResponse, response_model_exclude_none=True)
    def read_user(user_id: str) -> UserResponse:
        try:
            user = database.get_user(user_id)
        except (ValueError, PyMongoError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
        return user_to_response(user)

    @app.patch("/users/{user_id}", response_model=UserResponse, response_model_exclude_none=True)
    def update_user(user_id: str, payload: UserUpdateRequest) -> UserResponse:
        updates = payload.model_dump(exclude_unset=True)
        try:
            user = database.update_user(user_id, **updates)
        except (ValueError, PyMongoError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
        return user_to_response(user)

    @app.delete("/users/{user_id}", response_model=DeleteUserResponse)
    def delete_user(user_id: str) -> DeleteUserResponse:
        try:
            deleted_id = database.delete_user(user_id)
        except (ValueError, PyMongoError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if deleted_id is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND)
        return DeleteUserResponse(message="Deleted", id=deleted_id)


def register_error_handlers(app: FastAPI) -> None:
    """Render every error response as ``{"error": <message>}``."""

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: object, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: object, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": _format_validation_errors(exc.errors())},
        )


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the users service.

    The database is initialised when the application starts and closed when it
    shuts down.
    """

    if database is None:
        database = Database.from_settings(settings or load_settings())

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        database.initialize()
        try:
            yield
        finally:
            database.close()

    app = FastAPI(
        title="Users API",
        version="0.1.0",
        description="CRUD service for user documents stored in MongoDB.",
        lifespan=lifespan,
    )
    app.state.database = database

    register_error_handlers(app)
    register_user_routes(app, database)

    return app


__all__ = [
    "AddressPayload",
    "DeleteUserResponse",
    "UserCreateRequest",
    "UserResponse",
    "UserUpdateRequest",
    "create_app",
    "user_to_response",
]
