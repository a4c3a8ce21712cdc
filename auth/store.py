"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
PrincipalStore is the principal directory (principals, roles, permissions);
RefreshTokenStore owns the refresh_tokens table and the rotation protocol.
Both share one Engine. _row_to_* functions are the mappers. Route, pipeline
and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Transactions:
  SQLite connections are opened in driver autocommit mode. Write paths run on
  an engine carrying the sqlite_immediate execution option and start with
  BEGIN IMMEDIATE, so the write lock is taken up front and two redemptions of
  the same refresh token cannot both read the row before either deletes it.
  Read paths start with a plain deferred BEGIN and, under WAL, proceed while
  a writer holds the lock.

  On other backends row locks give the same serialization: redemption
  selects the token row FOR UPDATE, and every rotation first selects the
  owning principal row FOR UPDATE, so concurrent rotations for one principal
  queue instead of each deleting nothing and inserting its own row.

  A rotation (lock the principal, delete all of its rows, insert the new one)
  always runs inside a single transaction. The insert runs in a SAVEPOINT so a
  token-value collision can be retried without losing the delete.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import AuthenticationError, ConflictError
from auth.models import Permission, Principal, RefreshToken, Role
from auth.tokens import generate_refresh_token
from core.config import get_settings

logger = logging.getLogger("adminhub.auth.store")

# A rotation tries the normal token once and the widened token once.
ROTATION_ATTEMPTS = 2

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(36), primary_key=True),
    Column("permission_id", String(36), primary_key=True),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL = no local password
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("role_id", String(36)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _configure_sqlite_connection(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL.

    isolation_level=None stops the sqlite3 driver from issuing its own
    deferred BEGIN, so the "begin" listener below decides how transactions
    start. WAL lets deferred readers proceed while a writer holds the lock.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin(conn: Connection) -> None:
    if conn.get_execution_options().get("sqlite_immediate", False):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


def _write_engine(engine: Engine) -> Engine:
    """Return a view of engine whose transactions start with BEGIN IMMEDIATE on SQLite."""
    return engine.execution_options(sqlite_immediate=True)


def create_store_engine(db_url: str | None = None) -> Engine:
    """Create the Engine shared by PrincipalStore and RefreshTokenStore and ensure the schema exists."""
    db_url = db_url or get_settings().database_url
    connect_args: dict = {}
    is_sqlite = db_url.startswith("sqlite")
    if is_sqlite:
        connect_args["check_same_thread"] = False
        # Seconds a writer waits for the lock before sqlite3 raises "database is locked".
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if is_sqlite:
        event.listen(engine, "connect", _configure_sqlite_connection)
        event.listen(engine, "begin", _begin)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    # Fixed precision keeps the stored strings lexically ordered by time.
    return moment.isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def _load_principal(conn: Connection, condition) -> Principal | None:
    """Fetch one principal with its role and the role's permission set.

    Shared by the directory lookups and by refresh-token redemption, which
    must see the principal's current role rather than the one at login.
    """
    row = conn.execute(
        select(
            _users,
            _roles.c.name.label("role_name"),
            _roles.c.description.label("role_description"),
            _roles.c.is_active.label("role_is_active"),
        )
        .select_from(_users.outerjoin(_roles, _users.c.role_id == _roles.c.id))
        .where(condition)
    ).fetchone()
    if row is None:
        return None
    role = None
    if row.role_name is not None:
        perm_rows = conn.execute(
            select(_permissions)
            .select_from(_permissions.join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id))
            .where(_role_permissions.c.role_id == row.role_id)
            .order_by(_permissions.c.name)
        ).fetchall()
        role = Role(
            id=row.role_id,
            name=row.role_name,
            description=row.role_description,
            is_active=bool(row.role_is_active),
            permissions=[_row_to_permission(p) for p in perm_rows],
        )
    return _row_to_principal(row, role)


# ---------------------------------------------------------------------------
# Principal directory
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for principals, roles and permissions.

    Usage:
        store = PrincipalStore("sqlite:///adminhub.db")
        perm_id = store.create_permission(Permission(name="setting:update"))
        role_id = store.create_role(Role(name="Admin"))
        store.grant_permissions(role_id, [perm_id])
        store.create_principal(Principal(email="a@x.com", password_hash=hash_password("secret1"), role_id=role_id))
        principal = store.lookup_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None, engine: Engine | None = None) -> None:
        self.engine: Engine = engine if engine is not None else create_store_engine(db_url)
        self._writer = _write_engine(self.engine)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def lookup_by_email(self, email: str) -> Principal | None:
        """Look up a principal by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            return _load_principal(conn, _users.c.email == email)

    def lookup_by_id(self, principal_id: str) -> Principal | None:
        """Look up a principal by id, including role and permissions. Returns None if not found."""
        with self.engine.connect() as conn:
            return _load_principal(conn, _users.c.id == principal_id)

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> str:
        """Insert a permission and return its id. Raises IntegrityError on a duplicate name."""
        permission_id = permission.id or _new_id()
        with self._writer.begin() as conn:
            conn.execute(
                _permissions.insert().values(
                    id=permission_id,
                    name=permission.name,
                    description=permission.description,
                    is_active=1 if permission.is_active else 0,
                )
            )
        return permission_id

    def create_role(self, role: Role) -> str:
        """Insert a role and return its id. Raises IntegrityError on a duplicate name."""
        role_id = role.id or _new_id()
        with self._writer.begin() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    name=role.name,
                    description=role.description,
                    is_active=1 if role.is_active else 0,
                )
            )
        return role_id

    def grant_permissions(self, role_id: str, permission_ids: list[str]) -> None:
        """Link permissions to a role. Already-linked pairs raise IntegrityError."""
        if not permission_ids:
            return
        with self._writer.begin() as conn:
            conn.execute(
                _role_permissions.insert(),
                [{"role_id": role_id, "permission_id": pid} for pid in permission_ids],
            )

    def create_principal(self, principal: Principal) -> str:
        """Insert a principal and return its id. Raises IntegrityError if the email exists."""
        principal_id = principal.id or _new_id()
        with self._writer.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=principal_id,
                    email=principal.email,
                    password_hash=principal.password_hash,
                    first_name=principal.first_name,
                    last_name=principal.last_name,
                    role_id=principal.role_id,
                    is_active=1 if principal.is_active else 0,
                    created_at=_iso(_now()),
                )
            )
        return principal_id

    def update_principal(self, principal_id: str, **fields) -> bool:
        """Update mutable principal fields (role_id, is_active, names, password_hash).

        Returns True if a row was updated, False if principal_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self._writer.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == principal_id).values(**fields))
        return result.rowcount > 0

    def update_role(self, role_id: str, **fields) -> bool:
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self._writer.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
        return result.rowcount > 0

    def update_permission(self, permission_id: str, **fields) -> bool:
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self._writer.begin() as conn:
            result = conn.execute(_permissions.update().where(_permissions.c.id == permission_id).values(**fields))
        return result.rowcount > 0

    def delete_principal(self, principal_id: str) -> bool:
        """Permanently delete a principal. Their refresh tokens become unredeemable."""
        with self._writer.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == principal_id))
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Owns the refresh_tokens table and keeps at most one live row per principal.

    token_factory(principal_id, widened) mints token values; tests replace it
    to force collisions.
    """

    def __init__(
        self,
        engine: Engine,
        ttl_seconds: int | None = None,
        token_factory: Callable[[str, bool], str] = generate_refresh_token,
    ) -> None:
        self.engine = engine
        self._writer = _write_engine(engine)
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().refresh_token_expire_seconds
        self._token_factory = token_factory

    def rotate(self, principal_id: str) -> str:
        """Replace every refresh token of principal_id with a new one and return it.

        Runs in one transaction: if the insert ultimately fails, the delete is
        rolled back with it and the previous token stays valid.
        """
        with self._writer.begin() as conn:
            return self._rotate(conn, principal_id)

    def _rotate(self, conn: Connection, principal_id: str) -> str:
        # Serializes concurrent rotations for one principal on backends with row locks.
        conn.execute(select(_users.c.id).where(_users.c.id == principal_id).with_for_update()).fetchone()
        removed = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == principal_id)).rowcount
        now = _now()
        expires_at = _iso(now + timedelta(seconds=self.ttl_seconds))
        collision: IntegrityError | None = None
        for attempt in range(ROTATION_ATTEMPTS):
            token = self._token_factory(principal_id, attempt > 0)
            try:
                with conn.begin_nested():
                    conn.execute(
                        _refresh_tokens.insert().values(
                            id=_new_id(),
                            token=token,
                            user_id=principal_id,
                            expires_at=expires_at,
                            created_at=_iso(now),
                        )
                    )
            except IntegrityError as exc:
                collision = exc
                logger.warning("Refresh token collision for principal %s (attempt %d)", principal_id, attempt + 1)
                continue
            logger.debug("Rotated refresh token for principal %s (%d removed)", principal_id, removed)
            return token
        raise ConflictError() from collision

    def redeem(self, token: str) -> tuple[Principal, str]:
        """Consume token and return (principal with current role, next refresh token).

        Lookup, deletion of the redeemed row and the rotation share one
        transaction. A concurrent redemption of the same value either waits
        for the lock and then finds no row, or finds the row already gone;
        both raise AuthenticationError.
        """
        with self._writer.begin() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token == token).with_for_update()
            ).fetchone()
            if row is None:
                logger.info("Refresh rejected: unknown or already redeemed token")
                raise AuthenticationError("Invalid refresh token")
            if datetime.fromisoformat(row.expires_at) <= _now():
                logger.info("Refresh rejected: token for principal %s expired", row.user_id)
                raise AuthenticationError("Invalid refresh token")

            principal = _load_principal(conn, _users.c.id == row.user_id)
            if principal is None or not principal.is_active or principal.role is None:
                logger.info("Refresh rejected: principal %s missing, inactive or without role", row.user_id)
                raise AuthenticationError("Invalid refresh token")

            deleted = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == row.id)).rowcount
            if deleted == 0:
                logger.debug("Redeemed refresh token %s was already removed", row.id)
            next_token = self._rotate(conn, principal.id)
        return principal.sanitized(), next_token

    def revoke_all(self, principal_id: str) -> int:
        """Delete every refresh token of principal_id. Returns the number of rows removed."""
        with self._writer.begin() as conn:
            return conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == principal_id)).rowcount

    def list_for_principal(self, principal_id: str) -> list[RefreshToken]:
        """Return every stored row for principal_id, expired ones included."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == principal_id)
                .order_by(_refresh_tokens.c.created_at)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def count_active(self, principal_id: str) -> int:
        """Number of non-expired rows for principal_id. The rotation protocol keeps this at 0 or 1."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where((_refresh_tokens.c.user_id == principal_id) & (_refresh_tokens.c.expires_at > _iso(_now())))
            ).scalar()
        return result or 0

    def purge_expired(self) -> int:
        """Delete rows whose expiry has passed. Returns the number removed."""
        with self._writer.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _iso(_now())))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        description=row.description,
        is_active=bool(row.is_active),
    )


def _row_to_principal(row, role: Role | None) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        role_id=row.role_id,
        role=role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        principal_id=row.user_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
