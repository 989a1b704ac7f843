"""
auth/claims.py -- Token claims builder and session projector.

build_token_claims() runs once per sign-in, right before the session JWT is
signed. It decides where the roles claim comes from:

  credentials / magic link -> the provider already resolved roles while
                              authenticating; they are copied verbatim.
  google / github          -> provider data is not trusted for roles; they
                              are re-read from the store by user id. A store
                              failure yields [] (fail-safe empty, never
                              fail-open).

With no user (a token refresh without a new sign-in) the existing token is
returned unchanged, so claims stay fixed until the next sign-in.

project_session() runs on every request that needs the session: it copies the
id and roles claims onto session["user"]. No token means no change at all.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from auth.models import OAUTH_PROVIDERS, UserClaims

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("launchkit.auth.claims")


def build_token_claims(
    store: UserStore,
    token: dict,
    user: UserClaims | None = None,
    provider: str | None = None,
) -> dict:
    """Stamp identity and roles onto token for a fresh sign-in.

    Mutates and returns token. Without a user the token is returned as-is.
    """
    if user is None:
        return token

    if provider in OAUTH_PROVIDERS:
        try:
            roles = store.roles_for(user.id)
        except SQLAlchemyError:
            logger.error("Could not fetch roles for user %s; issuing token without roles", user.id, exc_info=True)
            roles = []
    else:
        roles = list(user.roles or [])

    token["id"] = user.id
    token["roles"] = roles
    token["email"] = user.email
    token["name"] = user.name
    token["image"] = user.image
    logger.debug("Token claims built for user %s with roles %s", user.id, roles)
    return token


def project_session(session: dict, token: dict | None) -> dict:
    """Expose the token's id and roles on session["user"].

    Returns the same session object. With token=None nothing is touched.
    """
    if token is not None:
        user = session.setdefault("user", {})
        user["id"] = token.get("id")
        user["roles"] = list(token.get("roles") or [])
    return session
