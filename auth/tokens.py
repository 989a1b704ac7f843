"""
auth/tokens.py -- JWT, password hashing, and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Session tokens carry the claims assembled by
       auth.claims.build_token_claims() (id, roles, email, name, image) plus
       sub and exp. Verification returns None on any failure -- the session
       layer treats that as "not signed in".

       Magic-link and password-reset tokens are separate purpose JWTs
       ({"sub", "type", "jti", "exp"}). decode_access_token() rejects them
       because they carry no roles claim, and decode_purpose_token() rejects
       session tokens and tokens minted for another purpose because the type
       does not match. Each jti can be redeemed once (UserStore.consume_token).

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in verify_credentials() so response time does not reveal
       whether an email is registered.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("launchkit.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
SESSION_COOKIE = "session_token"
MAGIC_LINK_PURPOSE = "magic_link"
PASSWORD_RESET_PURPOSE = "reset"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps password
    length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first sign-in attempt is not measurably
# slower than later ones.
DUMMY_HASH: str = hash_password("launchkit_timing_dummy")


# ---------------------------------------------------------------------------
# Session JWT
# ---------------------------------------------------------------------------


def create_access_token(claims: dict, expire_seconds: int = 0) -> str:
    """Sign the session claims into a JWT.

    Args:
        claims:         Output of build_token_claims(); must contain "id".
        expire_seconds: Token lifetime. 0 means Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    payload = {
        "sub": claims["id"],
        "id": claims["id"],
        "roles": list(claims.get("roles") or []),
        "email": claims.get("email"),
        "name": claims.get("name"),
        "image": claims.get("image"),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "id" not in payload or not isinstance(payload.get("roles"), list):
        return None
    return payload


# ---------------------------------------------------------------------------
# Single-use purpose tokens (magic links, password resets)
# ---------------------------------------------------------------------------


def create_purpose_token(user_id: str, purpose: str, expire_seconds: int) -> str:
    """Sign a short-lived token for one purpose.

    The jti claim is what makes the token single-use: whoever redeems it
    records the jti with UserStore.consume_token(), and a second redemption
    finds it already recorded.
    """
    expire = datetime.now(timezone.utc) + timedelta(seconds=expire_seconds)
    payload = {"sub": user_id, "type": purpose, "jti": uuid.uuid4().hex, "exp": expire}
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_purpose_token(token: str, purpose: str) -> dict | None:
    """Return the payload of a valid token for purpose, or None.

    Signature, expiry, type and the presence of sub and jti are checked here.
    Whether the token was already used is the store's concern.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        logger.info("Rejected %s token: bad signature or expired", purpose)
        return None
    if payload.get("type") != purpose or not payload.get("sub") or not payload.get("jti"):
        return None
    return payload


def create_magic_link_token(user_id: str) -> str:
    return create_purpose_token(user_id, MAGIC_LINK_PURPOSE, _settings.magic_link_expire_seconds)


def decode_magic_link_token(token: str) -> dict | None:
    return decode_purpose_token(token, MAGIC_LINK_PURPOSE)


def create_password_reset_token(user_id: str) -> str:
    return create_purpose_token(user_id, PASSWORD_RESET_PURPOSE, _settings.password_reset_expire_seconds)


def decode_password_reset_token(token: str) -> dict | None:
    return decode_purpose_token(token, PASSWORD_RESET_PURPOSE)


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": not sent on cross-site POST.
    secure: only over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
