"""
API request and response models for AdminHub REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, firstName, ...). Models accept both the
camelCase alias and the Python field name on input.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from auth.models import PrincipalProfile, SessionTokens

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
    # Not stripped: whitespace is significant in passwords.
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    refreshToken is optional and unbounded at the schema level so a missing
    or malformed token is reported as 401 by the session service rather
    than 422.
    """

    model_config = _CAMEL

    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Public-safe principal projection. Never carries the password hash."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    role: str

    @classmethod
    def from_profile(cls, profile: PrincipalProfile) -> "PrincipalResponse":
        return cls(
            id=profile.id,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            role=profile.role,
        )


class SessionResponse(BaseModel):
    """Response for login and refresh."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    principal: PrincipalResponse

    @classmethod
    def from_tokens(cls, tokens: SessionTokens) -> "SessionResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            principal=PrincipalResponse.from_profile(tokens.principal),
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
