"""Tests for auth/policy.py -- declaration merging and the immutable route table."""

from __future__ import annotations

import pytest
from fastapi import APIRouter, FastAPI, Request
from fastapi.testclient import TestClient

from auth.dependencies import matched_endpoint
from auth.policy import DEFAULT_POLICY, AccessPolicies, RoutePolicy, RouteTable


@pytest.fixture
def registry() -> AccessPolicies:
    return AccessPolicies()


class TestRoutePolicy:
    def test_over_prefers_declared_attributes(self):
        base = RoutePolicy(roles=frozenset({"Admin"}), permissions=frozenset({"a"}))
        top = RoutePolicy(roles=frozenset({"User"}))
        merged = top.over(base)
        assert merged.roles == {"User"}
        assert merged.permissions == {"a"}
        assert merged.public is None

    def test_default_is_not_public(self):
        assert DEFAULT_POLICY.is_public is False
        assert DEFAULT_POLICY.roles is None
        assert DEFAULT_POLICY.permissions is None


class TestBuild:
    def test_handler_overrides_controller(self, registry):
        router = APIRouter()
        registry.controller(router, roles=["Admin", "Manager"], permissions=["user:list"])

        @router.get("/users")
        def list_users():
            return []

        @router.delete("/users/{user_id}")
        @registry.handler(roles=["Admin"])
        def delete_user(user_id: str):
            return None

        table = registry.build()

        listed = table.lookup(list_users)
        assert listed.roles == {"Admin", "Manager"}
        assert listed.permissions == {"user:list"}

        deleted = table.lookup(delete_user)
        assert deleted.roles == {"Admin"}
        # Not declared by the handler, inherited from the controller.
        assert deleted.permissions == {"user:list"}

    def test_handler_public_on_protected_controller(self, registry):
        router = APIRouter()
        registry.controller(router, roles=["Admin"])

        @router.get("/status")
        @registry.public()
        def status():
            return {}

        policy = registry.build().lookup(status)
        assert policy.is_public
        assert policy.roles == {"Admin"}

    def test_undeclared_endpoint_gets_default(self, registry):
        router = APIRouter()

        @router.get("/plain")
        def plain():
            return {}

        table = registry.build()
        assert plain not in table
        assert table.lookup(plain) == DEFAULT_POLICY
        assert table.lookup(None) == DEFAULT_POLICY

    def test_stacked_handler_declarations_merge(self, registry):
        router = APIRouter()

        @router.post("/reports")
        @registry.handler(roles=["Admin"])
        @registry.handler(permissions=["report:create"])
        def create_report():
            return {}

        policy = registry.build().lookup(create_report)
        assert policy.roles == {"Admin"}
        assert policy.permissions == {"report:create"}

    def test_login_endpoint_recorded(self, registry):
        router = APIRouter()

        @router.post("/auth/login")
        @registry.login_route()
        def login():
            return {}

        @router.post("/auth/logout")
        def logout():
            return {}

        table = registry.build()
        assert table.is_login(login)
        assert not table.is_login(logout)
        assert not table.is_login(None)

    def test_matched_endpoint_resolves_through_nested_prefixes(self, registry):
        """The endpoint FastAPI reports for a request under stacked prefixes is the declared one."""
        inner = APIRouter()
        registry.controller(inner, roles=["Admin"])
        seen = {}

        @inner.get("/settings/{key}")
        @registry.handler(permissions=["setting:read"])
        def read_setting(key: str, request: Request):
            seen["endpoint"] = matched_endpoint(request)
            return {"key": key}

        outer = APIRouter()
        outer.include_router(inner, prefix="/admin")
        app = FastAPI()
        app.include_router(outer, prefix="/api/v1")

        table = registry.build()
        with TestClient(app) as client:
            resp = client.get("/api/v1/admin/settings/theme")
        assert resp.status_code == 200

        policy = table.lookup(seen["endpoint"])
        assert policy.roles == {"Admin"}
        assert policy.permissions == {"setting:read"}


class TestRouteTable:
    def test_entries_are_read_only(self):
        def first():
            return {}

        def second():
            return {}

        source = {first: RoutePolicy(public=True)}
        table = RouteTable(source)
        source[second] = RoutePolicy(public=True)
        assert second not in table
        assert len(table) == 1
        with pytest.raises(TypeError):
            table._entries[second] = RoutePolicy()

    def test_policies_are_frozen(self):
        policy = RoutePolicy(roles=frozenset({"Admin"}))
        with pytest.raises(AttributeError):
            policy.roles = frozenset({"User"})
