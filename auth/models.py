"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, almost no logic). Stores, the
session service and the authorization pipeline do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace


@dataclass
class Permission:
    """A fine-grained capability key such as "setting:update"."""

    name: str
    id: str | None = None
    description: str | None = None
    is_active: bool = True


@dataclass
class Role:
    """A named bundle of permissions assigned to principals.

    permissions is populated by the directory lookups; rows created through
    the store helpers start empty until grant_permissions() links them.
    """

    name: str
    id: str | None = None
    description: str | None = None
    is_active: bool = True
    permissions: list[Permission] = field(default_factory=list)

    def granted_permissions(self) -> frozenset[str]:
        """Names this role grants. An inactive role grants nothing; inactive permissions are skipped."""
        if not self.is_active:
            return frozenset()
        return frozenset(p.name for p in self.permissions if p.is_active)


@dataclass
class Principal:
    """An identity that can log in.

    password_hash is None for accounts provisioned without a local password;
    such accounts can never pass credential verification.
    """

    email: str
    id: str | None = None
    password_hash: str | None = None
    first_name: str = ""
    last_name: str = ""
    role_id: str | None = None
    role: Role | None = None
    is_active: bool = True
    created_at: str | None = None

    @property
    def role_name(self) -> str | None:
        return self.role.name if self.role is not None else None

    def sanitized(self) -> Principal:
        """Return a copy with the password hash stripped."""
        return replace(self, password_hash=None)


@dataclass
class RefreshToken:
    """One stored refresh token. At most one non-expired row exists per principal."""

    token: str
    principal_id: str
    expires_at: str
    id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """What the authorization pipeline attaches to the request after bearer verification."""

    id: str
    email: str
    role: str


@dataclass(frozen=True)
class PrincipalProfile:
    """Public-safe projection returned by login and refresh."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: str

    @classmethod
    def from_principal(cls, principal: Principal) -> PrincipalProfile:
        return cls(
            id=principal.id or "",
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
            role=principal.role_name or "",
        )


@dataclass(frozen=True)
class SessionTokens:
    """Result of a successful login or refresh."""

    access_token: str
    refresh_token: str
    principal: PrincipalProfile
