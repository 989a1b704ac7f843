"""
API request and response models for LaunchKit REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import PROTECTED_ROLES, Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@" with something on both sides and a dot in the
# domain. Deliverability is proven by the magic link, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
ROLE_NAME_PATTERN = r"^[a-z0-9_-]+$"


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class SignInRequest(_EmailBody):
    """Request body for POST /api/v1/auth/signin."""

    # bcrypt ignores bytes past 72; the cap keeps inputs well below abuse sizes.
    password: str = Field(min_length=1, max_length=128)


class SignUpRequest(_EmailBody):
    """Request body for POST /api/v1/auth/signup."""

    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, max_length=255)


class MagicLinkRequest(_EmailBody):
    """Request body for POST /api/v1/auth/magic-link."""


class SetupAdminRequest(_EmailBody):
    """Request body for POST /api/v1/auth/setup-admin."""

    password: str = Field(min_length=8, max_length=128)


class ForgotPasswordRequest(_EmailBody):
    """Request body for POST /api/v1/auth/forgot-password."""


class ResetTokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify-reset-token."""

    token: str = Field(min_length=1, max_length=2048)


class ResetPasswordRequest(ResetTokenRequest):
    """Request body for POST /api/v1/auth/reset-password."""

    password: str = Field(min_length=8, max_length=128)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password.

    current_password may be omitted only by accounts that have no password yet.
    """

    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class SessionUser(BaseModel):
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    image: Optional[str] = None
    roles: list[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    """The projected session, as returned by GET /api/v1/auth/me."""

    user: SessionUser
    expires: Optional[str] = None


class SignInResponse(BaseModel):
    """Response for POST /api/v1/auth/signin and /signup."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: SessionUser


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class MessageResponse(BaseModel):
    message: str


class ResetTokenStatus(BaseModel):
    valid: bool
    email: str


# ---------------------------------------------------------------------------
# Admin -- users and roles
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str]
    image: Optional[str]
    roles: list[str]
    has_password: bool
    created_at: str
    last_signed_in: Optional[str]

    @classmethod
    def from_user(cls, user: User, roles: list[str]) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            roles=roles,
            has_password=user.hashed_password is not None,
            created_at=user.created_at or "",
            last_signed_in=user.last_signed_in,
        )


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    user_count: int
    protected: bool

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(id=role.id, name=role.name, user_count=role.user_count, protected=role.name in PROTECTED_ROLES)


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/admin/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50, pattern=ROLE_NAME_PATTERN)


class RoleAssignment(BaseModel):
    """Request body for POST/DELETE /api/v1/admin/users/{id}/roles.

    Accepts both "roleName" (what the admin UI sends) and "role_name".
    """

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    role_name: str = Field(alias="roleName", min_length=1, max_length=50)


class AdminCheckResponse(BaseModel):
    is_admin: bool
    user_id: str


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error body shared by every non-2xx JSON response."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
