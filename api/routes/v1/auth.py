"""
api/routes/v1/auth.py -- Session endpoints.

Routes:
  POST /api/v1/auth/login    -- email + password; returns access + refresh token
  POST /api/v1/auth/refresh  -- redeem a refresh token for a new pair
  POST /api/v1/auth/logout   -- revoke the caller's refresh tokens; always success
  GET  /api/v1/auth/me       -- identity attached by the authorization pipeline

Security:
  POST /login and POST /refresh are rate-limited per client IP.
  authenticate_principal() (via SessionService.login) provides timing
  equalization -- never inline lookup_by_email() + verify_password().
  Cache-Control: no-store on every response that carries tokens.
  The refresh token travels in the JSON body both ways, never as a cookie.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, LogoutResponse, MeResponse, RefreshRequest, SessionResponse
from auth.dependencies import get_current_principal
from auth.models import AuthenticatedPrincipal, SessionTokens
from auth.policy import policies
from auth.sessions import SessionService
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/login:    public (also the endpoint the pipeline always lets through)
# - POST /api/v1/auth/refresh:  public -- the refresh token in the body is the credential
# - POST /api/v1/auth/logout:   requires bearer
# - GET  /api/v1/auth/me:       requires bearer
router = APIRouter()


def _session_response(tokens: SessionTokens) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=SessionResponse.from_tokens(tokens).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=SessionResponse)
@policies.public()
@policies.login_route()
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Every failure (unknown email, wrong password, inactive account) produces
    the same 401 "Invalid credentials" and creates no refresh-token row.
    """
    sessions: SessionService = request.app.state.sessions
    return _session_response(sessions.login(body.email, body.password))


@limiter.limit(_settings.refresh_rate_limit)
@router.post("/auth/refresh", response_model=SessionResponse)
@policies.public()
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access + refresh token pair.

    The presented token is consumed. Presenting it again fails with 401.
    """
    sessions: SessionService = request.app.state.sessions
    return _session_response(sessions.refresh(body.refresh_token))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> LogoutResponse:
    """Revoke every refresh token of the caller. Reports success even if none existed."""
    sessions: SessionService = request.app.state.sessions
    sessions.logout(principal.id)
    return LogoutResponse(success=True)


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: AuthenticatedPrincipal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    return MeResponse(id=principal.id, email=principal.email, role=principal.role)
