"""
auth/oauth.py -- Authlib OAuth provider registry and identity extraction.

create_oauth_registry(settings) registers only the providers that are both
enabled (ENABLE_GOOGLE_AUTH / ENABLE_GITHUB_AUTH) and configured with a
client ID and secret. It is called once from the application lifespan; the
registry lives on app.state.oauth.

Security notes:
  Only verified emails are used for account linking. An unverified email
  could be a victim's address that an attacker added to their own provider
  account. When the provider cannot vouch for the email, the identity is
  returned with email=None and the sign-in gate rejects it (oauth_no_email).

  The OAuth state parameter (CSRF protection) is handled by authlib via
  Starlette SessionMiddleware.

Supported providers:
  google -- Authorization code flow; OIDC discovery.
  github -- Authorization code flow; static endpoints.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthIdentity
from core.config import Settings

logger = logging.getLogger("launchkit.auth.oauth")

_LABELS = {"google": "Google", "github": "GitHub"}


def create_oauth_registry(settings: Settings) -> OAuth:
    """Build the authlib registry for every enabled, configured provider."""
    oauth = OAuth()

    if settings.google_configured:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.github_configured:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name", "label"}] for each OAuth provider the sign-in page should offer."""
    providers: list[dict] = []
    if settings.google_configured:
        providers.append({"name": "google", "label": _LABELS["google"]})
    if settings.github_configured:
        providers.append({"name": "github", "label": _LABELS["github"]})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def fetch_oauth_identity(client, provider: str, token: dict) -> OAuthIdentity:
    """Normalize a provider token response into an OAuthIdentity.

    Raises ValueError if the response lacks a stable subject ID or the
    provider is unknown. A missing or unverified email is NOT an error here
    -- it yields email=None so the sign-in gate can reject it with the
    provider-specific hint.
    """
    if provider == "github":
        return await _github_identity(client, token)
    if provider == "google":
        return _google_identity(token)
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_identity(client, token: dict) -> OAuthIdentity:
    """GitHub needs two API calls: /user for the profile, /user/emails for the email.

    The profile email is public-only and carries no verification flag, so
    the primary+verified entry from /user/emails is always preferred.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()
    if "id" not in profile:
        raise ValueError("GitHub OAuth: profile response has no id")

    email: str | None = None
    emails_resp = await client.get("user/emails", token=token)
    if emails_resp.status_code == 200:
        for entry in emails_resp.json():
            if entry.get("primary") and entry.get("verified"):
                email = entry.get("email")
                break
    else:
        logger.warning("GitHub OAuth: /user/emails returned %d", emails_resp.status_code)

    return OAuthIdentity(
        provider="github",
        provider_account_id=str(profile["id"]),
        email=email,
        name=profile.get("name") or profile.get("login"),
        image=profile.get("avatar_url"),
        profile=profile,
    )


def _google_identity(token: dict) -> OAuthIdentity:
    """Google returns OIDC userinfo claims (sub, email, email_verified, name, picture)."""
    userinfo = token.get("userinfo")
    if not userinfo or not userinfo.get("sub"):
        raise ValueError("google OAuth: no userinfo/sub in token response")

    email = userinfo.get("email") if userinfo.get("email_verified", False) else None
    return OAuthIdentity(
        provider="google",
        provider_account_id=str(userinfo["sub"]),
        email=email,
        name=userinfo.get("name"),
        image=userinfo.get("picture"),
        profile=dict(userinfo),
    )
