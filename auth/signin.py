"""
auth/signin.py -- Sign-in gate and sign-in orchestrator.

The gate (check_sign_in) decides whether an attempt may proceed and does the
first-touch bookkeeping for OAuth identities:

  NOT_OAUTH           credentials / magic link -> allowed, store untouched
  OAUTH_NO_EMAIL      provider gave no usable email -> rejected
  OAUTH_EXISTING_USER email matches a local user -> give "user" if the user
                      has no roles, then sync name/avatar from the profile
  OAUTH_NEW_USER      no local user yet -> allowed; the orchestrator creates
                      the user and on_user_created() assigns "user"

Store failures during that bookkeeping never block a sign-in. A failed role
lookup or assignment is logged and surfaced as
SignInResult.role_assignment_warning, which the orchestrator
carries through to SignInOutcome. A user can therefore end up signed in with
zero roles; nothing retries or reconciles that later. A failed profile sync
is only logged.

SignInService is the single dispatch point: it looks up the provider variant,
authenticates, runs the gate, links/creates OAuth users, builds the token
claims, and signs the session token.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.claims import build_token_claims
from auth.models import (
    DEFAULT_ROLE,
    OAUTH_PROVIDERS,
    AuthError,
    GateState,
    OAuthIdentity,
    SignInAttempt,
    SignInOutcome,
    SignInResult,
    User,
    UserClaims,
)
from auth.tokens import create_access_token

if TYPE_CHECKING:
    from auth.providers import Provider
    from auth.store import UserStore

logger = logging.getLogger("launchkit.auth.signin")

# Where each provider keeps the avatar in its raw profile payload.
_AVATAR_KEYS = {"google": "picture", "github": "avatar_url"}


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def check_sign_in(store: UserStore, attempt: SignInAttempt) -> SignInResult:
    """Approve or reject a sign-in attempt. See the module docstring for states."""
    provider = attempt.provider
    if provider not in OAUTH_PROVIDERS:
        return SignInResult(signed_in=True, state=GateState.NOT_OAUTH)

    email = (attempt.user.email or "").strip()
    if not email:
        logger.error("%s sign-in rejected: no email address available", provider)
        if provider == "github":
            logger.error("GitHub user must make a verified email visible to this app")
        return SignInResult(signed_in=False, state=GateState.OAUTH_NO_EMAIL, error="oauth_no_email")

    logger.info("%s sign-in attempt for %s", provider, email)
    try:
        existing = store.get_by_email(email)
    except SQLAlchemyError:
        logger.warning("User lookup failed during %s sign-in for %s", provider, email, exc_info=True)
        return SignInResult(
            signed_in=True,
            state=GateState.OAUTH_NEW_USER,
            role_assignment_warning="User lookup failed; roles were not checked.",
        )

    if existing is None:
        logger.info("New %s user: %s", provider, email)
        return SignInResult(signed_in=True, state=GateState.OAUTH_NEW_USER)

    result = SignInResult(signed_in=True, state=GateState.OAUTH_EXISTING_USER, user=existing)
    try:
        if not store.roles_for(existing.id):
            if store.assign_role(existing.id, DEFAULT_ROLE):
                logger.info("Assigned %r role to %s", DEFAULT_ROLE, email)
    except SQLAlchemyError:
        logger.warning("Role bookkeeping failed during %s sign-in for %s", provider, email, exc_info=True)
        result.role_assignment_warning = "Default role assignment failed; user may have no roles."

    if attempt.profile:
        try:
            sync_oauth_profile(store, existing, provider, attempt.profile)
        except SQLAlchemyError:
            # Roles are already settled here; only name and avatar stay stale.
            logger.warning("Profile sync failed during %s sign-in for %s", provider, email, exc_info=True)
    return result


def on_user_created(store: UserStore, user_id: str, provider: str) -> str | None:
    """Post-creation hook: give brand-new OAuth users the default role.

    Returns a warning string if the assignment failed, None otherwise.
    """
    if provider not in OAUTH_PROVIDERS:
        return None
    try:
        if store.assign_role(user_id, DEFAULT_ROLE):
            logger.info("Assigned %r role to new %s user %s", DEFAULT_ROLE, provider, user_id)
    except SQLAlchemyError:
        logger.warning("Could not assign default role to new %s user %s", provider, user_id, exc_info=True)
        return "Default role assignment failed; user may have no roles."
    return None


def sync_oauth_profile(store: UserStore, user: User, provider: str, profile: dict) -> bool:
    """Backfill name and avatar from an OAuth profile. Returns True if anything changed.

    Name is set once: only when the local user has none. The avatar follows
    the provider: set when missing, replaced when it differs.
    """
    updates: dict = {}
    profile_name = profile.get("name")
    if not user.name and profile_name:
        updates["name"] = profile_name

    avatar_url = profile.get(_AVATAR_KEYS.get(provider, ""))
    if avatar_url and avatar_url != user.image:
        updates["image"] = avatar_url

    if not updates:
        return False
    store.update_user(user.id, **updates)
    logger.info("Updated %s from %s profile for %s", sorted(updates), provider, user.email)
    return True


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SignInService:
    """Dispatches a sign-in to one provider variant and issues the session token.

    Usage:
        service = SignInService(store, build_providers(store, settings, mailer))
        outcome = service.sign_in("credentials", {"email": e, "password": p})
        set_auth_cookie(response, outcome.token)
    """

    def __init__(self, store: UserStore, providers: dict[str, Provider]) -> None:
        self.store = store
        self.providers = providers

    def is_enabled(self, provider: str) -> bool:
        return provider in self.providers

    def sign_in(self, provider: str, credentials) -> SignInOutcome:
        """Authenticate through provider and return claims plus a signed token.

        Raises AuthError on any authentication failure.
        """
        variant = self.providers.get(provider)
        if variant is None:
            raise AuthError("provider_disabled", f"Sign-in method {provider!r} is not enabled.")

        claims = variant.authenticate(credentials)
        profile = credentials.profile if isinstance(credentials, OAuthIdentity) else None
        gate = check_sign_in(self.store, SignInAttempt(provider=provider, user=claims, profile=profile))
        if not gate.signed_in:
            raise AuthError(gate.error or "signin_rejected", "This account cannot sign in.")

        warning = gate.role_assignment_warning
        is_new_user = False
        if provider in OAUTH_PROVIDERS:
            claims, is_new_user, link_warning = self._resolve_oauth_user(credentials, claims, gate)
            warning = warning or link_warning

        token_claims = build_token_claims(self.store, {}, claims, provider)
        return SignInOutcome(
            claims=token_claims,
            token=create_access_token(token_claims),
            provider=provider,
            is_new_user=is_new_user,
            role_assignment_warning=warning,
        )

    def _resolve_oauth_user(
        self, identity: OAuthIdentity, claims: UserClaims, gate: SignInResult
    ) -> tuple[UserClaims, bool, str | None]:
        """Find or create the local user for an OAuth identity and link it.

        Unlike the gate, failures here propagate: without a user row there is
        nothing to sign in as.
        """
        store = self.store
        user = gate.user or store.get_by_email(claims.email)
        is_new_user = False
        warning = None
        if user is None:
            try:
                user_id = store.create_user(User(email=claims.email, name=claims.name, image=claims.image))
            except IntegrityError:
                # Either a concurrent first sign-in created the row between lookup
                # and insert, or the email belongs to a soft-deleted user.
                winner = store.get_by_email(claims.email)
                if winner is None:
                    logger.warning(
                        "%s sign-in rejected: %s belongs to a deleted account", identity.provider, claims.email
                    )
                    raise AuthError("signin_rejected", "This account cannot sign in.") from None
                user_id = winner.id
            else:
                is_new_user = True
                warning = on_user_created(store, user_id, identity.provider)
            user = store.get_by_id(user_id)

        if store.get_linked_account(identity.provider, identity.provider_account_id) is None:
            try:
                store.link_account(user.id, identity.provider, identity.provider_account_id)
                logger.info("Linked %s account to %s", identity.provider, user.email)
            except IntegrityError:
                logger.info("%s account already linked for %s", identity.provider, user.email)

        store.update_last_signed_in(user.id)
        # Re-read so the claims carry any name/avatar the gate just synced.
        user = store.get_by_id(user.id) or user
        resolved = UserClaims(id=user.id, email=user.email, name=user.name, image=user.image)
        return resolved, is_new_user, warning
