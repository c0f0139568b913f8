"""
API request and response models for Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    id: int
    username: str


class MeResponse(BaseModel):
    id: int
    username: str
    provider: str
    created_at: Optional[str] = None
    last_login: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope: {"error": {"code", "message", "detail"}}."""

    error: ErrorDetail
