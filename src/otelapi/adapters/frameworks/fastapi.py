"""FastAPI routers for the health, metrics and user endpoints."""

import math
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from otelapi.adapters.frameworks.schemas import (
    CreateUserRequest,
    ErrorResponse,
    PaginatedResponse,
    Pagination,
    SuccessResponse,
    UpdateUserRequest,
)
from otelapi.adapters.storage.database import Database
from otelapi.adapters.storage.users import UserRepository
from otelapi.core.errors import EmailAlreadyExistsError, UserNotFoundError
from otelapi.core.models import NewUser, UserChanges
from otelapi.core.ports import HealthChecker
from otelapi.telemetry.logs import get_logger
from otelapi.telemetry.tracing import add_span_attribute, add_span_event, record_error

logger = get_logger("otelapi.http")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=ErrorResponse(error=message).model_dump()
    )


def _success(
    status_code: int = 200, message: str | None = None, data: Any = None
) -> JSONResponse:
    body = SuccessResponse(message=message, data=data).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body)


def _to_int(value: str | None, default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def parse_pagination(page: str | None, limit: str | None) -> tuple[int, int, int]:
    """Lenient pagination: page below 1 becomes 1, limit outside 1..100 becomes 10.

    Returns:
        ``(page, limit, offset)``.
    """
    page_number = max(_to_int(page, 1), 1)
    page_size = _to_int(limit, DEFAULT_PAGE_SIZE)
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE
    return page_number, page_size, (page_number - 1) * page_size


def create_health_router(health: HealthChecker) -> APIRouter:
    """Create a router with /health and /ready, both backed by ``health()``."""
    router = APIRouter()

    @router.get("/health")
    async def health_check() -> JSONResponse:
        try:
            await health.health()
        except Exception as exc:
            logger.with_error(exc).error("Health check failed")
            return _error(503, "Database connection failed")
        return _success(
            message="Service is healthy",
            data={"status": "healthy", "database": "connected"},
        )

    @router.get("/ready")
    async def readiness_check() -> JSONResponse:
        try:
            await health.health()
        except Exception as exc:
            logger.with_error(exc).warn("Readiness check failed")
            return _error(503, "Service not ready")
        return _success(message="Service is ready")

    return router


def create_metrics_router(database: Database) -> APIRouter:
    """Create a router with the aggregate /metrics document.

    Returns 200 while the database answers and 503 otherwise.
    """
    router = APIRouter()

    @router.get("/metrics")
    async def get_metrics() -> JSONResponse:
        health_error: Exception | None = None
        try:
            await database.health()
        except Exception as exc:
            health_error = exc
        body = {
            "database": {
                "healthy": health_error is None,
                "error": str(health_error) if health_error is not None else "",
                "stats": database.detailed_stats(),
            },
            "application": {"status": "running"},
            "message": "Application and database metrics",
        }
        return JSONResponse(status_code=200 if health_error is None else 503, content=body)

    return router


def create_api_router(version: str) -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/")
    async def index() -> dict[str, str]:
        return {"message": "OpenTelemetry Example API", "version": version, "status": "running"}

    return router


def create_users_router(repository: UserRepository) -> APIRouter:
    """Create the /api/users CRUD router.

    Args:
        repository: Data access for users.

    Returns:
        APIRouter with list, create, get, update and delete endpoints.
    """
    router = APIRouter(prefix="/api/users")

    @router.get("")
    async def list_users(page: str | None = None, limit: str | None = None) -> JSONResponse:
        add_span_attribute("handler", "GetUsers")
        add_span_attribute("operation", "list_users")
        logger.info("Getting users list")

        page_number, page_size, offset = parse_pagination(page, limit)
        add_span_attribute("pagination.page", page_number)
        add_span_attribute("pagination.limit", page_size)
        add_span_attribute("pagination.offset", offset)
        add_span_event("pagination_parsed", page=page_number, limit=page_size, offset=offset)

        try:
            users = await repository.get_all(page_size, offset)
        except Exception as exc:
            logger.with_error(exc).error(
                "Failed to retrieve users from database",
                page=page_number,
                limit=page_size,
                offset=offset,
            )
            record_error(exc, "Failed to retrieve users from database")
            return _error(500, "Failed to retrieve users")
        add_span_event("users_retrieved", count=len(users))

        try:
            total = await repository.count()
        except Exception as exc:
            logger.with_error(exc).error("Failed to count users in database")
            record_error(exc, "Failed to count users in database")
            return _error(500, "Failed to count users")
        add_span_event("total_count_retrieved", total=total)

        total_pages = math.ceil(total / page_size)
        add_span_attribute("result.users_count", len(users))
        add_span_attribute("result.total_count", total)
        add_span_attribute("result.total_pages", total_pages)
        logger.info(
            "Successfully retrieved users",
            users_count=len(users),
            total_count=total,
            page=page_number,
            limit=page_size,
        )
        body = PaginatedResponse(
            data=[user.to_response() for user in users],
            pagination=Pagination(
                page=page_number, limit=page_size, total=total, total_pages=total_pages
            ),
        )
        return JSONResponse(content=body.model_dump())

    @router.post("")
    async def create_user(payload: CreateUserRequest) -> JSONResponse:
        if await repository.get_by_email(payload.email) is not None:
            return _error(409, "Email already exists")
        try:
            user = await repository.create(
                NewUser(name=payload.name, email=payload.email, bio=payload.bio)
            )
        except EmailAlreadyExistsError:
            return _error(409, "Email already exists")
        except Exception as exc:
            logger.with_error(exc).error("Failed to create user")
            record_error(exc, "Failed to create user")
            return _error(500, "Failed to create user")
        logger.info("User created", user_id=user.id)
        return _success(201, "User created successfully", user.to_response())

    @router.get("/{user_id}")
    async def get_user(user_id: str) -> JSONResponse:
        key = _to_int(user_id, -1)
        if key < 0:
            return _error(400, "Invalid user ID")
        try:
            user = await repository.get_by_id(key)
        except UserNotFoundError:
            return _error(404, "User not found")
        except Exception as exc:
            logger.with_error(exc).error("Failed to retrieve user", user_id=key)
            record_error(exc, "Failed to retrieve user")
            return _error(500, "Failed to retrieve user")
        return _success(data=user.to_response())

    @router.put("/{user_id}")
    async def update_user(user_id: str, payload: UpdateUserRequest) -> JSONResponse:
        key = _to_int(user_id, -1)
        if key < 0:
            return _error(400, "Invalid user ID")
        if payload.email is not None:
            existing = await repository.get_by_email(payload.email)
            if existing is not None and existing.id != key:
                return _error(409, "Email already exists")
        changes = UserChanges(name=payload.name, email=payload.email, bio=payload.bio)
        try:
            user = await repository.update(key, changes)
        except UserNotFoundError:
            return _error(404, "User not found")
        except EmailAlreadyExistsError:
            return _error(409, "Email already exists")
        except Exception as exc:
            logger.with_error(exc).error("Failed to update user", user_id=key)
            record_error(exc, "Failed to update user")
            return _error(500, "Failed to update user")
        return _success(message="User updated successfully", data=user.to_response())

    @router.delete("/{user_id}")
    async def delete_user(user_id: str) -> JSONResponse:
        key = _to_int(user_id, -1)
        if key < 0:
            return _error(400, "Invalid user ID")
        try:
            await repository.delete(key)
        except UserNotFoundError:
            return _error(404, "User not found")
        except Exception as exc:
            logger.with_error(exc).error("Failed to delete user", user_id=key)
            record_error(exc, "Failed to delete user")
            return _error(500, "Failed to delete user")
        return _success(message="User deleted successfully")

    return router


def register_error_handlers(app: FastAPI) -> None:
    """Render validation and unexpected errors as ``{success: false, error}``."""

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        return _error(400, f"Invalid request data: {details}")

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        return _error(500, "Internal server error")
