"""
api/main.py -- FastAPI application entry point for AdminHub.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Access control is not middleware: authorize() is a global dependency, so it
runs after routing, once FastAPI knows which route (and therefore which
policy) the request targets, and before the handler.

Lifespan handles startup (stores, route table, authorization pipeline,
refresh-token purge task) and shutdown symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import authorize
from auth.errors import AuthError
from auth.pipeline import AuthorizationPipeline
from auth.policy import policies
from auth.sessions import SessionService
from auth.store import PrincipalStore, RefreshTokenStore, create_store_engine
from core.config import get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("adminhub.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Delete expired refresh-token rows every `interval` seconds.

    Expired rows are already unredeemable; this only keeps the table small.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A failed purge is logged and
    retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.refresh_store.purge_expired)
        except Exception:
            logger.exception("Refresh-token purge failed")
            continue
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# State wiring -- shared by the real lifespan and the test lifespan
# ---------------------------------------------------------------------------


def wire_state(app: FastAPI, principal_store: PrincipalStore, refresh_store: RefreshTokenStore) -> None:
    """Attach stores, the session service and the authorization pipeline to app.state.

    The route table is resolved here, once, from the declarations recorded
    at import time. Entries are keyed by endpoint, so router prefixes do not
    matter; undeclared endpoints get the default policy (bearer required).
    """
    app.state.principal_store = principal_store
    app.state.refresh_store = refresh_store
    app.state.sessions = SessionService(principal_store, refresh_store)
    route_table = policies.build()
    app.state.access_pipeline = AuthorizationPipeline(route_table, principal_store)
    logger.info("Route table resolved (%d entries)", len(route_table))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("AdminHub API starting up")
    engine = create_store_engine(_settings.database_url)
    wire_state(app, PrincipalStore(engine=engine), RefreshTokenStore(engine))
    app.state.purge_task = asyncio.create_task(_purge_loop(app, _settings.token_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.principal_store.close()
    logger.info("AdminHub API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AdminHub API",
    description="Identity and access control for the AdminHub administrative backend.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by routes behind the pipeline below.
    docs_url=None,
    redoc_url=None,
    dependencies=[Depends(authorize)],
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# API documentation -- default policy, so a bearer token is required
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs():
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="AdminHub API")


@app.get("/redoc", include_in_schema=False)
async def redoc():
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="AdminHub API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Translate the identity-subsystem taxonomy into HTTP responses.

    401 and 403 carry the exception's generic message. Anything mapped to a
    5xx (a refresh-token collision that survived the retry) is logged and
    returned without detail.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return _error(500, "internal_error", "An unexpected error occurred.")
    response = _error(exc.status_code, exc.error_code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404, 405, ...)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged server-side only, never written to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
@policies.public()
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability. Public."""
    try:
        database = "ok" if request.app.state.principal_store.ping() else "error"
    except Exception:
        logger.exception("Health check could not reach the database")
        database = "error"
    return HealthResponse(version=VERSION, database=database)
