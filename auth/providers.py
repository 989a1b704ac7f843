"""
auth/providers.py -- The closed set of sign-in provider variants.

Each variant exposes a name and authenticate(input) -> UserClaims, raising
AuthError on failure:

  CredentialsProvider  input: {"email", "password"}   -> verify_credentials()
  MagicLinkProvider    input: signed magic-link token -> user by token subject (once)
  GoogleProvider       input: OAuthIdentity           -> normalized claims
  GitHubProvider       input: OAuthIdentity           -> normalized claims

The OAuth variants only normalize what the provider returned; linking,
first-time role assignment, and user creation happen in
auth.signin.SignInService after the gate has approved the attempt.

build_providers() turns the enable_* settings into the provider map once at
startup.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from auth.models import AuthError, OAuthIdentity, SignInMethod, UserClaims
from auth.store import normalize_email
from auth.tokens import (
    DUMMY_HASH,
    MAGIC_LINK_PURPOSE,
    create_magic_link_token,
    decode_magic_link_token,
    verify_password,
)

if TYPE_CHECKING:
    from auth.mail import MailSender
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("launchkit.auth.providers")


class Provider(Protocol):
    name: str

    def authenticate(self, credentials) -> UserClaims: ...


# ---------------------------------------------------------------------------
# Credential verifier (constant-time)
# ---------------------------------------------------------------------------


def verify_credentials(store: UserStore, email: str, password: str) -> UserClaims | None:
    """Check email + password against the stored bcrypt hash.

    Always runs bcrypt whether or not the user exists, so an attacker cannot
    tell registered emails apart by response time. Users without a password
    (OAuth or magic-link only) fail closed.

    Returns the user's claims (with current roles) and stamps last_signed_in
    on success; returns None and writes nothing on failure.
    """
    if not email or not password:
        return None
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None

    store.update_last_signed_in(user.id)
    return UserClaims(
        id=user.id,
        email=user.email,
        name=user.name,
        image=user.image,
        roles=store.roles_for(user.id),
    )


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class CredentialsProvider:
    name = SignInMethod.credentials.value

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def authenticate(self, credentials: dict) -> UserClaims:
        claims = verify_credentials(self.store, credentials.get("email", ""), credentials.get("password", ""))
        if claims is None:
            # Same code for unknown email and wrong password.
            raise AuthError("bad_credentials", "Invalid email or password.")
        return claims


class MagicLinkProvider:
    """Passwordless sign-in through a signed, expiring, single-use link sent by email."""

    name = SignInMethod.magic_link.value

    def __init__(self, store: UserStore, mailer: MailSender) -> None:
        self.store = store
        self.mailer = mailer

    def send_link(self, email: str, base_url: str) -> bool:
        """Email a sign-in link if the address belongs to a live user.

        Unknown addresses get no email, but the caller must answer both cases
        identically. Returns True if a link was sent.
        """
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Magic link requested for unknown email")
            return False
        token = create_magic_link_token(user.id)
        url = f"{base_url.rstrip('/')}/auth/magic-link?token={token}"
        self.mailer.send_magic_link(user.email, url)
        return True

    def authenticate(self, credentials: str) -> UserClaims:
        """Redeem a link. Each link signs in once; a replay is invalid_token."""
        payload = decode_magic_link_token(credentials or "")
        if payload is None:
            raise AuthError("invalid_token", "This sign-in link is invalid or has expired.")
        user = self.store.get_by_id(payload["sub"])
        if user is None or not self.store.consume_token(payload["jti"], MAGIC_LINK_PURPOSE, user.id):
            raise AuthError("invalid_token", "This sign-in link is invalid or has expired.")
        self.store.update_last_signed_in(user.id)
        return UserClaims(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            roles=self.store.roles_for(user.id),
        )


class _OAuthProvider:
    name: str = ""

    def authenticate(self, credentials: OAuthIdentity) -> UserClaims:
        if credentials.provider != self.name:
            raise AuthError("oauth_failed", "OAuth identity came from the wrong provider.")
        email = normalize_email(credentials.email) if credentials.email else None
        return UserClaims(email=email or None, name=credentials.name, image=credentials.image)


class GoogleProvider(_OAuthProvider):
    name = SignInMethod.google.value


class GitHubProvider(_OAuthProvider):
    name = SignInMethod.github.value


# ---------------------------------------------------------------------------
# Startup wiring
# ---------------------------------------------------------------------------


def build_providers(store: UserStore, settings: Settings, mailer: MailSender) -> dict[str, Provider]:
    """Return {provider name: variant} for every sign-in method enabled in settings.

    OAuth variants additionally need both client credentials configured.
    """
    providers: dict[str, Provider] = {}
    if settings.enable_email_password:
        providers[CredentialsProvider.name] = CredentialsProvider(store)
    if settings.enable_magic_link:
        providers[MagicLinkProvider.name] = MagicLinkProvider(store, mailer)
    if settings.google_configured:
        providers[GoogleProvider.name] = GoogleProvider()
    if settings.github_configured:
        providers[GitHubProvider.name] = GitHubProvider()
    logger.info("Sign-in providers enabled: %s", ", ".join(providers) or "none")
    return providers
