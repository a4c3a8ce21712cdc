"""
auth/sessions.py -- Login, refresh and logout.

SessionService composes the credential verifier, the token issuer and the
refresh-token store into the three session operations the API exposes:

  login(email, password)   -> SessionTokens  (first rotation)
  refresh(refresh_token)   -> SessionTokens  (redeem + next rotation)
  logout(principal_id)     -> None           (always succeeds)

Refresh tokens are single-use: redeeming one deletes it and mints its
successor in the same transaction, so a replayed value finds no row.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import AuthenticationError
from auth.models import Principal, PrincipalProfile, SessionTokens
from auth.store import PrincipalStore, RefreshTokenStore
from auth.tokens import authenticate_principal, create_access_token

logger = logging.getLogger("adminhub.auth.sessions")


class SessionService:
    def __init__(self, principals: PrincipalStore, refresh_tokens: RefreshTokenStore) -> None:
        self.principals = principals
        self.refresh_tokens = refresh_tokens

    def login(self, email: str, password: str) -> SessionTokens:
        """Verify credentials and issue a fresh token pair.

        A failed login raises AuthenticationError before any refresh-token row
        is touched. A principal without a role cannot be authorized anywhere,
        so it is refused here with the same generic message.
        """
        principal = authenticate_principal(self.principals, email, password)
        if principal.role is None:
            logger.info("Login rejected for %s: no role assigned", email)
            raise AuthenticationError("Invalid credentials")
        access_token = self._issue_access_token(principal)
        refresh_token = self.refresh_tokens.rotate(principal.id)
        logger.info("Login succeeded for principal %s", principal.id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            principal=PrincipalProfile.from_principal(principal),
        )

    def refresh(self, refresh_token: str | None) -> SessionTokens:
        """Redeem a refresh token for a new pair carrying the principal's current role."""
        if not refresh_token:
            raise AuthenticationError("No refresh token provided")
        principal, next_refresh_token = self.refresh_tokens.redeem(refresh_token)
        return SessionTokens(
            access_token=self._issue_access_token(principal),
            refresh_token=next_refresh_token,
            principal=PrincipalProfile.from_principal(principal),
        )

    def logout(self, principal_id: str) -> None:
        """Revoke every refresh token of principal_id.

        Never raises: reporting a failure would reveal whether a session
        existed. Store errors are logged and otherwise ignored.
        """
        try:
            removed = self.refresh_tokens.revoke_all(principal_id)
        except Exception:
            logger.exception("Logout cleanup failed for principal %s", principal_id)
            return
        logger.info("Logout for principal %s (%d refresh tokens revoked)", principal_id, removed)

    @staticmethod
    def _issue_access_token(principal: Principal) -> str:
        return create_access_token(principal.id, principal.email, principal.role_name or "")
