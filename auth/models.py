"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
sign-in orchestrator do the work; these only own the shape.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

OAUTH_PROVIDERS: frozenset[str] = frozenset({"google", "github"})
DEFAULT_ROLE = "user"
ADMIN_ROLE = "admin"
PROTECTED_ROLES: frozenset[str] = frozenset({DEFAULT_ROLE, ADMIN_ROLE})


class SignInMethod(str, Enum):
    """The closed set of sign-in providers.

    Values double as the provider name carried through the token claims
    builder, so they must match OAUTH_PROVIDERS for the OAuth variants.
    """

    credentials = "credentials"
    magic_link = "email"
    google = "google"
    github = "github"


@dataclass
class User:
    """A local identity record.

    email is always stored lowercase. hashed_password is None for users who
    only ever signed in via OAuth or magic link -- password sign-in fails
    closed for them. deleted_at is the soft-delete marker (None = active).
    """

    email: str
    id: str | None = None
    name: str | None = None
    image: str | None = None  # avatar URL
    hashed_password: str | None = None
    created_at: str | None = None
    last_signed_in: str | None = None
    deleted_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


@dataclass
class Role:
    name: str
    id: str | None = None
    created_at: str | None = None
    user_count: int = 0  # populated by list_roles() only


@dataclass
class LinkedAccount:
    """An OAuth identity attached to exactly one User."""

    user_id: str
    provider: str  # "google" | "github"
    provider_account_id: str  # provider's stable subject ID
    id: str | None = None
    created_at: str | None = None


@dataclass
class UserClaims:
    """What a provider hands back after authenticating.

    roles is only meaningful for the non-OAuth providers, which resolve it
    from the store while authenticating. OAuth roles are always re-fetched by
    the token claims builder, whatever this field holds.
    """

    email: str | None
    id: str | None = None
    name: str | None = None
    image: str | None = None
    roles: list[str] = field(default_factory=list)


@dataclass
class OAuthIdentity:
    """Provider-normalized result of an OAuth code exchange."""

    provider: str
    provider_account_id: str
    email: str | None
    name: str | None = None
    image: str | None = None
    profile: dict | None = None  # raw provider profile payload


@dataclass
class SignInAttempt:
    provider: str
    user: UserClaims
    profile: dict | None = None


class GateState(str, Enum):
    NOT_OAUTH = "not_oauth"
    OAUTH_NO_EMAIL = "oauth_no_email"
    OAUTH_EXISTING_USER = "oauth_existing_user"
    OAUTH_NEW_USER = "oauth_new_user"


@dataclass
class SignInResult:
    """Decision returned by the sign-in gate.

    role_assignment_warning is set when role bookkeeping failed but the
    sign-in was still allowed through.
    """

    signed_in: bool
    state: GateState
    user: User | None = None
    error: str | None = None
    role_assignment_warning: str | None = None


@dataclass
class SignInOutcome:
    """Final product of SignInService.sign_in()."""

    claims: dict
    token: str
    provider: str
    is_new_user: bool = False
    role_assignment_warning: str | None = None


class AuthError(Exception):
    """Authentication failure. code is a stable, user-safe identifier."""

    def __init__(self, code: str, message: str = "Authentication failed.") -> None:
        super().__init__(message)
        self.code = code
        self.message = message
