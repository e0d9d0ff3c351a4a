"""Request and response bodies for the HTTP API."""

from typing import Any

from pydantic import BaseModel, Field

# Deliberately loose: one "@" and a dotted domain
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CreateUserRequest(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(pattern=EMAIL_PATTERN)
    bio: str = ""


class UpdateUserRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN)
    bio: str | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class SuccessResponse(BaseModel):
    success: bool = True
    message: str | None = None
    data: Any = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PaginatedResponse(BaseModel):
    success: bool = True
    data: list[dict[str, Any]]
    pagination: Pagination
