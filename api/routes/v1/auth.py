"""
api/routes/v1/auth.py -- Sign-in and session REST endpoints.

Routes:
  POST /api/v1/auth/signin        -- email + password sign-in; sets session cookie
  POST /api/v1/auth/signup        -- create an email + password account, then sign in
  POST /api/v1/auth/magic-link    -- email a passwordless sign-in link
  POST /api/v1/auth/logout        -- clear the session cookie
  GET  /api/v1/auth/me            -- the projected session (requires a session)
  GET  /api/v1/auth/providers     -- OAuth providers the sign-in page should offer
  POST /api/v1/auth/setup-admin   -- first-run: create the first admin account
  POST /api/v1/auth/forgot-password     -- email a single-use password reset link
  POST /api/v1/auth/verify-reset-token  -- is this reset link still usable?
  POST /api/v1/auth/reset-password      -- redeem a reset link and set a new password
  POST /api/v1/auth/change-password     -- change the signed-in user's password

Security:
  POST /signin is rate-limited per IP (SIGNIN_RATE_LIMIT).
  Unknown email and wrong password answer with the same "bad_credentials" error.
  POST /magic-link and /forgot-password answer identically whether or not the
  email is registered. Magic links and reset links are single-use.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import SIGNIN_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    MagicLinkRequest,
    MessageResponse,
    OAuthProviderInfo,
    ResetPasswordRequest,
    ResetTokenRequest,
    ResetTokenStatus,
    SessionResponse,
    SessionUser,
    SetupAdminRequest,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    UserResponse,
)
from auth.dependencies import get_current_session
from auth.models import ADMIN_ROLE, DEFAULT_ROLE, AuthError, SignInMethod, SignInOutcome, User
from auth.oauth import get_enabled_providers
from auth.passwords import change_password, check_reset_token, reset_password, send_reset_link
from auth.signin import SignInService
from auth.store import UserStore
from auth.tokens import clear_auth_cookie, hash_password, set_auth_cookie

logger = logging.getLogger("launchkit.api.auth")

# Auth policy:
# - POST /api/v1/auth/signin:       public
# - POST /api/v1/auth/signup:       public, only while email + password is enabled
# - POST /api/v1/auth/magic-link:   public, only while magic links are enabled
# - POST /api/v1/auth/logout:       public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/providers:    public
# - GET  /api/v1/auth/me:           requires a session (get_current_session)
# - POST /api/v1/auth/setup-admin:  public, but only while no admin exists
# - POST /api/v1/auth/forgot-password, verify-reset-token, reset-password: public
# - POST /api/v1/auth/change-password: requires a session
router = APIRouter()

_MAGIC_LINK_SENT = "If that email is registered, a sign-in link is on its way."
_RESET_LINK_SENT = "If that email is registered, a password reset link is on its way."


def _require_method(request: Request, method: SignInMethod) -> None:
    signin: SignInService = request.app.state.signin
    if not signin.is_enabled(method.value):
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_disabled", "message": "This sign-in method is not enabled."},
        )


def _signed_in_response(request: Request, outcome: SignInOutcome, status_code: int = 200) -> JSONResponse:
    expires_in = request.app.state.settings.token_expire_seconds
    body = SignInResponse(
        access_token=outcome.token,
        token_type="bearer",  # noqa: S106 -- OAuth token type, not a password
        expires_in=expires_in,
        user=SessionUser(**{k: outcome.claims.get(k) for k in ("id", "email", "name", "image", "roles")}),
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump())
    set_auth_cookie(resp, outcome.token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(SIGNIN_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signin", response_model=SignInResponse)
def signin(request: Request, body: SignInRequest) -> JSONResponse:
    """Sign in with email and password.

    AuthError("bad_credentials") from the provider becomes a 401 via the
    application's AuthError handler.
    """
    _require_method(request, SignInMethod.credentials)
    signin_service: SignInService = request.app.state.signin
    outcome = signin_service.sign_in(
        SignInMethod.credentials.value,
        {"email": body.email, "password": body.password},
    )
    return _signed_in_response(request, outcome)


@limiter.limit(SIGNIN_LIMIT)
@router.post("/auth/signup", response_model=SignInResponse, status_code=201)
def signup(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create an email + password account with the default role, then sign it in."""
    _require_method(request, SignInMethod.credentials)
    store: UserStore = request.app.state.user_store
    try:
        user_id = store.create_user(User(email=body.email, name=body.name, hashed_password=hash_password(body.password)))
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    store.assign_role(user_id, DEFAULT_ROLE)
    logger.info("New credentials user %s", user_id)

    signin_service: SignInService = request.app.state.signin
    outcome = signin_service.sign_in(
        SignInMethod.credentials.value,
        {"email": body.email, "password": body.password},
    )
    return _signed_in_response(request, outcome, status_code=201)


@limiter.limit(SIGNIN_LIMIT)
@router.post("/auth/magic-link", response_model=MessageResponse)
def request_magic_link(request: Request, body: MagicLinkRequest) -> MessageResponse:
    """Email a sign-in link. The answer never reveals whether the email is registered."""
    _require_method(request, SignInMethod.magic_link)
    provider = request.app.state.signin.providers[SignInMethod.magic_link.value]
    base_url = request.app.state.settings.base_url or str(request.base_url)
    provider.send_link(body.email, base_url)
    return MessageResponse(message=_MAGIC_LINK_SENT)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the session cookie. The JWT itself stays valid until it expires."""
    resp = JSONResponse(content={"message": "Signed out."})
    clear_auth_cookie(resp)
    return resp


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the OAuth providers that are enabled and configured."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


@router.post("/auth/setup-admin", response_model=UserResponse, status_code=201)
def setup_admin(request: Request, body: SetupAdminRequest) -> UserResponse:
    """Create the first admin account. Refused once any live admin exists.

    Two concurrent calls can both pass the admin check; the unique email
    constraint makes only one insert win when they share an email.
    """
    store: UserStore = request.app.state.user_store
    if store.count_role_holders(ADMIN_ROLE) > 0:
        raise HTTPException(
            status_code=400,
            detail={"code": "admin_exists", "message": "An admin account already exists."},
        )
    try:
        user_id = store.create_user(User(email=body.email, hashed_password=hash_password(body.password)))
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    store.assign_role(user_id, DEFAULT_ROLE)
    store.assign_role(user_id, ADMIN_ROLE)
    logger.info("First admin account created: %s", user_id)
    return UserResponse.from_user(store.get_by_id(user_id), store.roles_for(user_id))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def _reset_error(exc: AuthError) -> HTTPException:
    # 400, not the 401 of a failed sign-in: the caller's session is not at issue.
    return HTTPException(status_code=400, detail={"code": exc.code, "message": exc.message})


@limiter.limit(SIGNIN_LIMIT)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Email a password reset link. The answer never reveals whether the email is registered."""
    _require_method(request, SignInMethod.credentials)
    base_url = request.app.state.settings.base_url or str(request.base_url)
    send_reset_link(request.app.state.user_store, request.app.state.mailer, body.email, base_url)
    return MessageResponse(message=_RESET_LINK_SENT)


@limiter.limit(SIGNIN_LIMIT)
@router.post("/auth/verify-reset-token", response_model=ResetTokenStatus)
def verify_reset_token(request: Request, body: ResetTokenRequest) -> ResetTokenStatus:
    """Check a reset link before showing the new-password form. Does not use it up."""
    try:
        user = check_reset_token(request.app.state.user_store, body.token)
    except AuthError as exc:
        raise _reset_error(exc) from exc
    return ResetTokenStatus(valid=True, email=user.email)


@limiter.limit(SIGNIN_LIMIT)
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password_endpoint(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a reset link. Each link works once."""
    try:
        reset_password(request.app.state.user_store, body.token, body.password)
    except AuthError as exc:
        raise _reset_error(exc) from exc
    return MessageResponse(message="Password updated. You can now sign in.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=SessionResponse)
async def me(session: dict = Depends(get_current_session)) -> SessionResponse:
    """Return the session as projected from the token: identity plus roles."""
    return SessionResponse(user=SessionUser(**session["user"]), expires=session.get("expires"))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password_endpoint(
    request: Request, body: ChangePasswordRequest, session: dict = Depends(get_current_session)
) -> MessageResponse:
    """Change the signed-in user's password. Existing sessions stay valid."""
    try:
        change_password(request.app.state.user_store, session["user"]["id"], body.current_password, body.new_password)
    except AuthError as exc:
        raise _reset_error(exc) from exc
    return MessageResponse(message="Password updated.")
