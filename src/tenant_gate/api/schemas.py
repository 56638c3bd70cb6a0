"""Request/response schemas for the API layer."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Literal

from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field


class APIResponse(BaseModel):
    """Standard response envelope.

    Example::

        {"status": "success", "data": {"user_id": "..."}}
        {"status": "error", "message": "Rate limit exceeded"}
    """

    status: Literal["success", "error"]
    message: str | None = None
    data: Any = None

    def to_response(
        self,
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content=self.model_dump(mode="json", exclude_none=True),
            headers=dict(headers) if headers else None,
        )


def success_response(
    data: Any = None, *, message: str | None = None
) -> JSONResponse:
    return APIResponse(status="success", message=message, data=data).to_response()


def error_response(
    status_code: int,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    return APIResponse(status="error", message=message).to_response(
        status_code=status_code, headers=headers
    )


# --- Users ---


class UserCreateRequest(BaseModel):
    """Request body for POST /api/users."""

    name: str = Field(..., min_length=1, max_length=255)


class UserResponse(BaseModel):
    """One user row in GET /api/data."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    created_at: datetime
    updated_at: datetime
    is_active: bool


class UserCreatedResponse(BaseModel):
    user_id: uuid.UUID
