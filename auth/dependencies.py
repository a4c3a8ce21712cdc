"""
auth/dependencies.py -- FastAPI Depends() helpers for access control.

authorize() is installed as a global dependency on the FastAPI app, so the
authorization pipeline runs for every API route before its handler. It hands
the endpoint FastAPI matched (request.scope["endpoint"]) to the pipeline,
which looks the policy up in the route table. The endpoint is the same
function object however the route was mounted or prefixed.

get_current_principal() is the per-handler dependency for routes that need
the caller's identity; it only reads what authorize() already attached.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import AuthenticationError
from auth.models import AuthenticatedPrincipal
from auth.pipeline import AuthorizationPipeline


def matched_endpoint(request: Request) -> Callable | None:
    """Return the endpoint function of the route FastAPI matched for this request."""
    return request.scope.get("endpoint") or getattr(request.scope.get("route"), "endpoint", None)


def authorize(request: Request) -> None:
    """Run the authorization pipeline for the matched route.

    Raises AuthenticationError / AuthorizationError on denial. On success the
    resolved principal (None for public routes) is stored on request.state.
    """
    pipeline: AuthorizationPipeline = request.app.state.access_pipeline
    request.state.principal = pipeline.run(
        matched_endpoint(request),
        request.method,
        request.url.path,
        request.headers.get("Authorization"),
    )


def get_current_principal(request: Request) -> AuthenticatedPrincipal:
    """Require the principal attached by authorize(). Raises 401 on public routes without one.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: AuthenticatedPrincipal = Depends(get_current_principal)): ...
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise AuthenticationError()
    return principal
