"""
auth/tokens.py -- Password hashing, credential verification and token minting.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry sub (principal id), email, role, iat, exp and typ="access". They
       are never stored; verification is signature + expiry only and returns
       None on any failure -- the authorization pipeline turns that into a 401.

  Refresh tokens: also HS256 JWTs, but treated as opaque strings. They embed
       the subject and a 256-bit random nonce so two values never coincide in
       practice. Redemption is an exact-match lookup in the refresh-token
       store, not a signature check.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_principal() so response
       time does not reveal whether an email exists.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import AuthenticationError
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import PrincipalStore

logger = logging.getLogger("adminhub.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# Nonce sizes in bytes. The widened size is only used for the single retry
# after a token-value collision.
_REFRESH_NONCE_BYTES = 32
_REFRESH_NONCE_BYTES_WIDENED = 48

INVALID_CREDENTIALS = "Invalid credentials"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash makes bcrypt raise ValueError; that is reported as
    a mismatch so the caller fails with the same generic error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        logger.warning("Stored password hash could not be checked")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("adminhub_timing_dummy")


# ---------------------------------------------------------------------------
# Credential verification (constant-time)
# ---------------------------------------------------------------------------


def authenticate_principal(store: PrincipalStore, email: str, password: str) -> Principal:
    """Verify email + password and return the sanitized principal.

    Always runs bcrypt whether or not the principal exists:
    - Unknown email or no local password: bcrypt runs against _DUMMY_HASH.
    - Wrong password: bcrypt runs against the real hash.

    Every failure raises the same AuthenticationError("Invalid credentials").
    The reason is logged, never returned.
    """
    principal = store.lookup_by_email(email)
    if principal is None or principal.password_hash is None:
        verify_password(password, _DUMMY_HASH)
        logger.info("Login rejected for %s: unknown account or no password", email)
        raise AuthenticationError(INVALID_CREDENTIALS)
    if not verify_password(password, principal.password_hash):
        logger.info("Login rejected for %s: password mismatch", email)
        raise AuthenticationError(INVALID_CREDENTIALS)
    if not principal.is_active:
        logger.info("Login rejected for %s: account inactive", email)
        raise AuthenticationError(INVALID_CREDENTIALS)
    return principal.sanitized()


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def create_access_token(principal_id: str, email: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed access token.

    Args:
        principal_id:   Stored principal id, used as the subject claim.
        email:          Principal email.
        role:           Role name at issue time.
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds. Negative values
                        produce an already-expired token (tests use this).
    """
    duration = expire_seconds if expire_seconds != 0 else _settings.access_token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": principal_id,
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
        "typ": ACCESS_TOKEN_TYPE,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access token. Returns the payload dict or None on any failure.

    Refresh tokens are signed with the same key, so the typ claim is checked
    to stop one being presented as a bearer credential.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != ACCESS_TOKEN_TYPE or not payload.get("sub"):
        return None
    return payload


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def generate_refresh_token(principal_id: str, widened: bool = False) -> str:
    """Mint a new opaque refresh-token value for principal_id.

    widened=True is the collision-retry variant: a larger nonce plus a
    nanosecond timestamp claim.
    """
    nonce_bytes = _REFRESH_NONCE_BYTES_WIDENED if widened else _REFRESH_NONCE_BYTES
    payload = {
        "sub": principal_id,
        "nonce": secrets.token_urlsafe(nonce_bytes),
        "typ": REFRESH_TOKEN_TYPE,
    }
    if widened:
        payload["ts"] = time.time_ns()
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)
