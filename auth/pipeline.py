"""
auth/pipeline.py -- Ordered, short-circuiting authorization pipeline.

Every request passes through four stages before its handler runs:

  A. public override       -- public routes and the login endpoint are allowed outright
  B. bearer verification   -- Authorization: Bearer <access token>, resolved to a principal
  C. role allowlist        -- route-declared role names
  D. permission allowlist  -- route-declared permission names, re-read from the directory

A stage returns Decision.CONTINUE to hand over to the next stage or
Decision.ALLOW to stop the chain and let the request through. Denials raise
AuthenticationError (stages A/B) or AuthorizationError (C/D); the API layer
maps both in a single exception handler.

Stage D deliberately does not reuse the principal resolved in stage B: the
role's permission set is loaded again so a revoked permission takes effect
on the next request. Inactive roles and inactive permissions grant nothing.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from auth.errors import AuthenticationError, AuthorizationError
from auth.models import AuthenticatedPrincipal
from auth.policy import RoutePolicy, RouteTable
from auth.store import PrincipalStore
from auth.tokens import decode_access_token

logger = logging.getLogger("adminhub.auth.pipeline")


class Decision(Enum):
    CONTINUE = "continue"
    ALLOW = "allow"


@dataclass
class AccessRequest:
    """Per-request state threaded through the stages.

    endpoint identifies the route; method and path are only used for logging.
    """

    endpoint: Callable | None
    method: str
    path: str
    authorization: str | None
    policy: RoutePolicy
    principal: AuthenticatedPrincipal | None = None


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header value, or None."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationPipeline:
    """Runs the stages in order against the immutable route table."""

    def __init__(
        self,
        table: RouteTable,
        directory: PrincipalStore,
    ) -> None:
        self.table = table
        self.directory = directory
        self.stages: tuple[Callable[[AccessRequest], Decision], ...] = (
            self.public_override,
            self.verify_bearer,
            self.check_roles,
            self.check_permissions,
        )

    def run(
        self,
        endpoint: Callable | None,
        method: str,
        path: str,
        authorization: str | None,
    ) -> AuthenticatedPrincipal | None:
        """Authorize one request to the route served by endpoint.

        Returns the resolved principal, or None when a public route was
        allowed before bearer verification. Raises on denial.
        """
        request = AccessRequest(
            endpoint=endpoint,
            method=method.upper(),
            path=path,
            authorization=authorization,
            policy=self.table.lookup(endpoint),
        )
        for stage in self.stages:
            if stage(request) is Decision.ALLOW:
                break
        return request.principal

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def public_override(self, request: AccessRequest) -> Decision:
        if request.policy.is_public or self.table.is_login(request.endpoint):
            return Decision.ALLOW
        return Decision.CONTINUE

    def verify_bearer(self, request: AccessRequest) -> Decision:
        token = extract_bearer(request.authorization)
        if token is None:
            raise AuthenticationError()
        payload = decode_access_token(token)
        if payload is None:
            logger.debug("Rejected bearer token on %s %s", request.method, request.path)
            raise AuthenticationError("Invalid or expired token")
        principal = self.directory.lookup_by_id(payload["sub"])
        if principal is None or not principal.is_active or principal.role is None:
            logger.info("Bearer subject %s no longer resolves to an active principal with a role", payload["sub"])
            raise AuthenticationError("Invalid or expired token")
        request.principal = AuthenticatedPrincipal(id=principal.id, email=principal.email, role=principal.role.name)
        return Decision.CONTINUE

    def check_roles(self, request: AccessRequest) -> Decision:
        required = request.policy.roles
        if required is None:
            return Decision.CONTINUE
        if request.principal is None or request.principal.role not in required:
            logger.info(
                "Role %r denied on %s %s",
                request.principal.role if request.principal else None,
                request.method,
                request.path,
            )
            raise AuthorizationError()
        return Decision.CONTINUE

    def check_permissions(self, request: AccessRequest) -> Decision:
        required = request.policy.permissions
        if required is None:
            return Decision.CONTINUE
        if request.principal is None:
            raise AuthorizationError()
        current = self.directory.lookup_by_id(request.principal.id)
        if current is None or current.role is None:
            raise AuthorizationError()
        missing = required - current.role.granted_permissions()
        if missing:
            logger.info(
                "Principal %s lacks %s on %s %s",
                request.principal.id,
                sorted(missing),
                request.method,
                request.path,
            )
            raise AuthorizationError()
        return Decision.CONTINUE
