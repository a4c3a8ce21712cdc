"""
tests/conftest.py -- Shared test fixtures for AdminHub.

This module provides:
  - engine / principal_store / refresh_store: stores on an isolated SQLite file
  - seeded: roles, permissions and principals loaded into principal_store
  - api_client: TestClient over the real app with a patched lifespan
  - a guarded router mounted on the app, declaring public / role / permission
    policies so the authorization pipeline can be exercised over HTTP

Design: each test gets its own SQLite file under tmp_path rather than an
in-memory database. TestClient runs sync handlers in a thread pool and the
concurrency tests use real threads; a file database gives every connection
the same data and real file locking.

Environment variables must be set before any api/auth/core import so
get_settings() picks them up: DEBUG auto-generates SECRET_KEY, the rate
limits are raised so repeated logins in one module are not throttled, and
TestClient's "testserver" host is allowed.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi import APIRouter, Depends
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, wire_state
from auth.dependencies import get_current_principal
from auth.models import AuthenticatedPrincipal, Permission, Principal, Role
from auth.policy import policies
from auth.store import PrincipalStore, RefreshTokenStore, create_store_engine
from auth.tokens import hash_password

PASSWORD = "secret1"

# bcrypt is slow on purpose; hash once per session and reuse for every principal.
_PASSWORD_HASH = hash_password(PASSWORD)

# ---------------------------------------------------------------------------
# Guarded routes -- mounted once, used by the HTTP pipeline tests
#
# Controller level: Admin or Manager. Handler level overrides per route.
# ---------------------------------------------------------------------------

guarded_router = APIRouter()
policies.controller(guarded_router, roles=["Admin", "Manager"])


@guarded_router.get("/guarded/public")
@policies.public()
def guarded_public() -> dict:
    return {"ok": True}


@guarded_router.get("/guarded/staff")
def guarded_staff(principal: AuthenticatedPrincipal = Depends(get_current_principal)) -> dict:
    return {"role": principal.role}


@guarded_router.get("/guarded/admin")
@policies.handler(roles=["Admin"])
def guarded_admin() -> dict:
    return {"ok": True}


@guarded_router.patch("/guarded/settings")
@policies.handler(permissions=["setting:update"])
def guarded_update_setting() -> dict:
    return {"ok": True}


@guarded_router.get("/guarded/anyone")
@policies.handler(roles=["Admin", "Manager", "User"])
def guarded_anyone() -> dict:
    return {"ok": True}


app.include_router(guarded_router, prefix="/api/v1", tags=["Guarded"])


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@dataclass
class Seed:
    """Ids of the seeded directory rows."""

    roles: dict[str, str]
    permissions: dict[str, str]
    principals: dict[str, str]


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    eng = create_store_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def principal_store(engine: Engine) -> PrincipalStore:
    return PrincipalStore(engine=engine)


@pytest.fixture
def refresh_store(engine: Engine) -> RefreshTokenStore:
    return RefreshTokenStore(engine)


def _seed(store: PrincipalStore) -> Seed:
    """Load the reference directory.

    Admin   -- setting:read, setting:update, user:list
    Manager -- setting:read, user:list        (no setting:update)
    User    -- setting:read
    """
    permissions = {
        name: store.create_permission(Permission(name=name))
        for name in ("setting:read", "setting:update", "user:list")
    }
    grants = {
        "Admin": ["setting:read", "setting:update", "user:list"],
        "Manager": ["setting:read", "user:list"],
        "User": ["setting:read"],
    }
    roles = {}
    for role_name, perm_names in grants.items():
        role_id = store.create_role(Role(name=role_name))
        store.grant_permissions(role_id, [permissions[p] for p in perm_names])
        roles[role_name] = role_id

    principals = {}
    for email, role_name, first, last in (
        ("admin@x.com", "Admin", "Ada", "Admin"),
        ("manager@x.com", "Manager", "Max", "Manager"),
        ("a@x.com", "User", "Alice", "User"),
    ):
        principals[email] = store.create_principal(
            Principal(
                email=email,
                password_hash=_PASSWORD_HASH,
                first_name=first,
                last_name=last,
                role_id=roles[role_name],
            )
        )
    principals["norole@x.com"] = store.create_principal(
        Principal(email="norole@x.com", password_hash=_PASSWORD_HASH, first_name="No", last_name="Role")
    )
    principals["nopassword@x.com"] = store.create_principal(
        Principal(email="nopassword@x.com", role_id=roles["User"])
    )
    return Seed(roles=roles, permissions=permissions, principals=principals)


@pytest.fixture
def seeded(principal_store: PrincipalStore) -> Seed:
    return _seed(principal_store)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(principal_store: PrincipalStore, refresh_store: RefreshTokenStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores into app.state through the same wire_state() the
    real lifespan uses, so the route table and pipeline are built the same
    way. No purge task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_state(app, principal_store, refresh_store)
        yield

    return test_lifespan


@pytest.fixture
def api_client(
    principal_store: PrincipalStore,
    refresh_store: RefreshTokenStore,
    seeded: Seed,
) -> Generator[TestClient, None, None]:
    """TestClient over the real app, backed by the seeded per-test database."""
    app.router.lifespan_context = _patch_lifespan(principal_store, refresh_store)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

