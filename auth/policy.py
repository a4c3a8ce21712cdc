"""
auth/policy.py -- Declarative route access metadata and the immutable route table.

Routes declare who may call them through the shared `policies` registry:

    router = APIRouter()
    policies.controller(router, roles=["Admin"])          # every route on router

    @router.patch("/settings/{key}")
    @policies.handler(permissions=["setting:update"])     # this handler only
    def update_setting(...): ...

    @router.get("/status")
    @policies.public()
    def status(): ...

Declarations are only recorded at import time. During application startup
AccessPolicies.build() resolves them into a RouteTable keyed by endpoint
callable, the function FastAPI places in scope["endpoint"] for the matched
route. Keying by endpoint rather than by path keeps the table independent of
router prefixes and of how FastAPI stores included routers. Handler-level
attributes override controller-level ones attribute by attribute. The table
is read-only afterwards; the authorization pipeline only looks entries up.

A route with no declaration at all gets the default policy: a valid bearer
token is required, no role or permission constraint.

The @policies.handler decorator must sit BELOW the @router decorator so the
router registers the function the registry recorded.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType

from fastapi import APIRouter
from fastapi.routing import APIRoute


@dataclass(frozen=True)
class RoutePolicy:
    """Access metadata for one route. None means "not declared at this level"."""

    public: bool | None = None
    roles: frozenset[str] | None = None
    permissions: frozenset[str] | None = None

    @property
    def is_public(self) -> bool:
        return bool(self.public)

    def over(self, base: RoutePolicy) -> RoutePolicy:
        """Layer self on top of base: attributes self declares win."""
        return RoutePolicy(
            public=self.public if self.public is not None else base.public,
            roles=self.roles if self.roles is not None else base.roles,
            permissions=self.permissions if self.permissions is not None else base.permissions,
        )


DEFAULT_POLICY = RoutePolicy()


def _make_policy(
    public: bool | None,
    roles: Iterable[str] | None,
    permissions: Iterable[str] | None,
) -> RoutePolicy:
    return RoutePolicy(
        public=public,
        roles=frozenset(roles) if roles is not None else None,
        permissions=frozenset(permissions) if permissions is not None else None,
    )


def _api_routes(routes: Iterable) -> Iterator[APIRoute]:
    """Yield every APIRoute reachable from routes, descending into mounts and included routers."""
    for route in routes:
        if isinstance(route, APIRoute):
            yield route
            continue
        children = getattr(route, "routes", None)
        if children is None:
            children = getattr(getattr(route, "router", None), "routes", None)
        if children:
            yield from _api_routes(children)


class RouteTable:
    """Immutable endpoint -> RoutePolicy mapping built once at startup.

    login_endpoint is the credential-exchange handler the pipeline lets
    through without a bearer token even if it carries no declaration.
    """

    def __init__(
        self,
        entries: dict[Callable, RoutePolicy],
        login_endpoint: Callable | None = None,
    ) -> None:
        self._entries = MappingProxyType(dict(entries))
        self.login_endpoint = login_endpoint

    def lookup(self, endpoint: Callable | None) -> RoutePolicy:
        return self._entries.get(endpoint, DEFAULT_POLICY)

    def is_login(self, endpoint: Callable | None) -> bool:
        return endpoint is not None and endpoint is self.login_endpoint

    def __contains__(self, endpoint: Callable) -> bool:
        return endpoint in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class AccessPolicies:
    """Collects controller- and handler-level declarations until build() is called."""

    def __init__(self) -> None:
        self._controllers: list[tuple[APIRouter, RoutePolicy]] = []
        self._handlers: dict[Callable, RoutePolicy] = {}
        self._login_endpoint: Callable | None = None

    def controller(
        self,
        router: APIRouter,
        *,
        public: bool | None = None,
        roles: Iterable[str] | None = None,
        permissions: Iterable[str] | None = None,
    ) -> None:
        """Declare metadata for every route registered on router."""
        self._controllers.append((router, _make_policy(public, roles, permissions)))

    def handler(
        self,
        *,
        public: bool | None = None,
        roles: Iterable[str] | None = None,
        permissions: Iterable[str] | None = None,
    ) -> Callable[[Callable], Callable]:
        """Decorator declaring metadata for a single endpoint function."""
        policy = _make_policy(public, roles, permissions)

        def decorator(func: Callable) -> Callable:
            existing = self._handlers.get(func, DEFAULT_POLICY)
            self._handlers[func] = policy.over(existing)
            return func

        return decorator

    def public(self) -> Callable[[Callable], Callable]:
        return self.handler(public=True)

    def login_route(self) -> Callable[[Callable], Callable]:
        """Mark the endpoint that exchanges credentials for tokens."""

        def decorator(func: Callable) -> Callable:
            self._login_endpoint = func
            return func

        return decorator

    def build(self) -> RouteTable:
        """Resolve the declarations into a RouteTable.

        Controller routers are read directly, so routes declared on them
        resolve no matter where or under which prefix they are included.
        Endpoints with no declaration at any level are left out and get
        DEFAULT_POLICY on lookup.
        """
        controller_policies: dict[Callable, RoutePolicy] = {}
        for router, policy in self._controllers:
            for route in _api_routes(router.routes):
                controller_policies[route.endpoint] = policy

        entries: dict[Callable, RoutePolicy] = {}
        for endpoint in set(controller_policies) | set(self._handlers):
            base = controller_policies.get(endpoint, DEFAULT_POLICY)
            merged = self._handlers.get(endpoint, DEFAULT_POLICY).over(base)
            if merged != DEFAULT_POLICY:
                entries[endpoint] = merged
        return RouteTable(entries, login_endpoint=self._login_endpoint)


# Shared registry -- routers declare against it at import time, the app lifespan builds it.
policies = AccessPolicies()
