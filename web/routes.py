"""
web/routes.py -- Jinja2 template routes for the LaunchKit web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same user store, sign-in service, OAuth registry) but answer with
pages and redirects instead of JSON.

/auth/callback/{provider} must keep its route name ("oauth_callback"): the
authorize redirect builds the callback URL from it.

Routes:
  GET  /                          -- home page (public; shows the session if any)
  GET  /admin                     -- admin dashboard (admin role required)
  GET  /auth/signin               -- sign-in page
  POST /auth/signin               -- email + password form submission
  GET  /auth/signin/{provider}    -- redirect to the OAuth provider
  GET  /auth/callback/{provider}  -- OAuth callback; issues the session cookie
  POST /auth/magic-link           -- request a magic link
  GET  /auth/magic-link           -- consume a magic link (?token=...)
  POST /auth/signout              -- clear the session cookie
  GET  /auth/forgot-password       -- request a password reset link
  POST /auth/forgot-password
  GET  /auth/reset-password        -- new-password form (?token=...)
  POST /auth/reset-password        -- redeem the reset link
  GET  /setup                     -- first-run admin wizard (404 once an admin exists)
  POST /setup                     -- create the first admin

Every post-sign-in destination goes through auth.redirects.resolve_redirect().
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import IntegrityError

from auth.dependencies import try_get_session
from auth.models import ADMIN_ROLE, DEFAULT_ROLE, OAUTH_PROVIDERS, PROTECTED_ROLES, AuthError, SignInMethod, User
from auth.oauth import fetch_oauth_identity, get_enabled_providers
from auth.passwords import MIN_PASSWORD_LENGTH, check_reset_token, reset_password, send_reset_link
from auth.permissions import role_required
from auth.redirects import SIGNIN_PATH, resolve_redirect
from auth.signin import SignInService
from auth.store import UserStore
from auth.tokens import clear_auth_cookie, hash_password, set_auth_cookie

logger = logging.getLogger("launchkit.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# base.html calls this to render the signed-in header without every handler
# passing the session explicitly.
templates.env.globals["try_get_session"] = try_get_session
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist for ?error= on the sign-in page. The raw query param never reaches
# the template, only the message from this dict does.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
    "oauth_no_email": "Your account has no verified email address we can use. "
    "GitHub users: make a verified email visible to this app and try again.",
    "oauth_failed": "Sign-in with that provider failed. Please try again.",
    "invalid_token": "This sign-in link is invalid or has expired.",
    "provider_disabled": "That sign-in method is not enabled.",
    "signin_rejected": "This account cannot sign in.",
    "setup_complete": "Setup is already complete. Please sign in.",
    "invalid_reset_token": "This password reset link is invalid or has expired.",
}

_NOTICES: dict[str, str] = {
    "password_reset": "Your password was updated. Please sign in.",
}

_SESSION_CALLBACK_KEY = "callback_url"


def _base_url(request: Request) -> str:
    return request.app.state.settings.base_url or str(request.base_url)


def _signin_redirect(error: str, callback_url: Optional[str] = None) -> RedirectResponse:
    params = {"error": error}
    if callback_url:
        params["callbackUrl"] = callback_url
    return RedirectResponse(f"{SIGNIN_PATH}?{urlencode(params)}", status_code=302)


def _signed_in_redirect(request: Request, token: str, callback_url: Optional[str]) -> RedirectResponse:
    resp = RedirectResponse(resolve_redirect(callback_url or "", _base_url(request)), status_code=302)
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# GET / -- home
# ---------------------------------------------------------------------------


@router.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    session = try_get_session(request)
    return templates.TemplateResponse(request, "home.html", {"session": session})


# ---------------------------------------------------------------------------
# GET /admin -- guarded by the route guard, not by the path
# ---------------------------------------------------------------------------


@router.get("/admin", response_class=HTMLResponse)
def admin_dashboard(request: Request, session: dict = Depends(role_required(ADMIN_ROLE))) -> HTMLResponse:
    store: UserStore = request.app.state.user_store
    users = [{"user": u, "roles": store.roles_for(u.id)} for u in store.list_users()]
    return templates.TemplateResponse(
        request,
        "admin.html",
        {
            "session": session,
            "users": users,
            "roles": store.list_roles(),
            "protected_roles": PROTECTED_ROLES,
        },
    )


# ---------------------------------------------------------------------------
# OAuth -- redirect and callback
# ---------------------------------------------------------------------------


@router.get("/auth/signin/{provider}", response_class=HTMLResponse)
async def oauth_redirect(request: Request, provider: str, callbackUrl: Optional[str] = None) -> RedirectResponse:
    """Send the browser to the provider's authorization page.

    Only providers in the enabled map are accepted, so a crafted provider
    name cannot reach the registry. callbackUrl waits in the signed session
    cookie until the callback.
    """
    signin: SignInService = request.app.state.signin
    if provider not in OAUTH_PROVIDERS or not signin.is_enabled(provider):
        return _signin_redirect("provider_disabled")

    request.session[_SESSION_CALLBACK_KEY] = callbackUrl or ""
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", response_class=HTMLResponse, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Exchange the code, normalize the identity, and run it through the sign-in service.

    Flow:
      1. authlib exchanges the code and checks the state parameter.
      2. fetch_oauth_identity() extracts a verified email and stable subject ID.
      3. SignInService runs the gate, creates or links the user, and issues
         the token with roles read from the store.
    """
    signin: SignInService = request.app.state.signin
    callback_url = request.session.pop(_SESSION_CALLBACK_KEY, None)
    if provider not in OAUTH_PROVIDERS or not signin.is_enabled(provider):
        return _signin_redirect("provider_disabled")

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _signin_redirect("oauth_failed", callback_url)

    try:
        identity = await fetch_oauth_identity(client, provider, token)
    except (ValueError, httpx.HTTPError):
        logger.warning("OAuth sign-in rejected: could not read profile from %r", provider, exc_info=True)
        return _signin_redirect("oauth_failed", callback_url)

    try:
        outcome = signin.sign_in(provider, identity)
    except AuthError as exc:
        return _signin_redirect(exc.code, callback_url)

    if outcome.role_assignment_warning:
        logger.warning("%s sign-in for %s: %s", provider, identity.email, outcome.role_assignment_warning)
    return _signed_in_redirect(request, outcome.token, callback_url)


# ---------------------------------------------------------------------------
# Sign-in page and email + password form
# ---------------------------------------------------------------------------


@router.get("/auth/signin", response_class=HTMLResponse)
def signin_form(request: Request, callbackUrl: Optional[str] = None) -> HTMLResponse:
    """Render the sign-in page with every enabled method."""
    if try_get_session(request) is not None:
        return RedirectResponse(resolve_redirect(callbackUrl or "", _base_url(request)), status_code=302)

    signin: SignInService = request.app.state.signin
    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)
    return templates.TemplateResponse(
        request,
        "signin.html",
        {
            "error_msg": error_msg,
            "notice": _NOTICES.get(request.query_params.get("notice", "")),
            "callback_url": callbackUrl or "",
            "credentials_enabled": signin.is_enabled(SignInMethod.credentials.value),
            "magic_link_enabled": signin.is_enabled(SignInMethod.magic_link.value),
            "providers": get_enabled_providers(request.app.state.settings),
        },
    )


@router.post("/auth/signin", response_class=HTMLResponse)
def signin_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    callbackUrl: str = Form(""),
) -> RedirectResponse:
    signin: SignInService = request.app.state.signin
    try:
        outcome = signin.sign_in(SignInMethod.credentials.value, {"email": email, "password": password})
    except AuthError as exc:
        return _signin_redirect(exc.code, callbackUrl)
    return _signed_in_redirect(request, outcome.token, callbackUrl)


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


@router.post("/auth/magic-link", response_class=HTMLResponse)
def magic_link_request(request: Request, email: str = Form(...)) -> HTMLResponse:
    """Send a link if the email is registered. The page is identical either way."""
    signin: SignInService = request.app.state.signin
    if not signin.is_enabled(SignInMethod.magic_link.value):
        return _signin_redirect("provider_disabled")

    signin.providers[SignInMethod.magic_link.value].send_link(email.strip().lower(), _base_url(request))
    return templates.TemplateResponse(
        request,
        "signin.html",
        {
            "error_msg": None,
            "notice": "If that email is registered, a sign-in link is on its way.",
            "callback_url": "",
            "credentials_enabled": signin.is_enabled(SignInMethod.credentials.value),
            "magic_link_enabled": True,
            "providers": get_enabled_providers(request.app.state.settings),
        },
    )


@router.get("/auth/magic-link")
def magic_link_consume(request: Request, token: str = "") -> RedirectResponse:
    signin: SignInService = request.app.state.signin
    try:
        outcome = signin.sign_in(SignInMethod.magic_link.value, token)
    except AuthError as exc:
        return _signin_redirect(exc.code)
    return _signed_in_redirect(request, outcome.token, None)


@router.post("/auth/signout")
def signout(request: Request) -> RedirectResponse:
    resp = RedirectResponse(SIGNIN_PATH, status_code=302)
    clear_auth_cookie(resp)
    return resp



# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.get("/auth/forgot-password", response_class=HTMLResponse)
def forgot_password_form(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(request, "forgot_password.html", {"notice": None})


@router.post("/auth/forgot-password", response_class=HTMLResponse)
def forgot_password_post(request: Request, email: str = Form(...)) -> HTMLResponse:
    """Send a reset link if the email is registered. The page is identical either way."""
    if not request.app.state.signin.is_enabled(SignInMethod.credentials.value):
        return _signin_redirect("provider_disabled")
    send_reset_link(request.app.state.user_store, request.app.state.mailer, email.strip().lower(), _base_url(request))
    return templates.TemplateResponse(
        request,
        "forgot_password.html",
        {"notice": "If that email is registered, a password reset link is on its way."},
    )


@router.get("/auth/reset-password", response_class=HTMLResponse)
def reset_password_form(request: Request, token: str = "") -> HTMLResponse:
    try:
        user = check_reset_token(request.app.state.user_store, token)
    except AuthError:
        return _signin_redirect("invalid_reset_token")
    return templates.TemplateResponse(
        request, "reset_password.html", {"token": token, "email": user.email, "error_msg": None}
    )


@router.post("/auth/reset-password", response_class=HTMLResponse)
def reset_password_post(
    request: Request,
    token: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
) -> HTMLResponse:
    """Redeem the reset link. Form mistakes re-render the page without using the link up."""
    store: UserStore = request.app.state.user_store
    try:
        user = check_reset_token(store, token)
    except AuthError:
        return _signin_redirect("invalid_reset_token")

    error_msg = None
    if password != confirm_password:
        error_msg = "Passwords do not match."
    elif len(password) < MIN_PASSWORD_LENGTH:
        error_msg = f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if error_msg:
        return templates.TemplateResponse(
            request, "reset_password.html", {"token": token, "email": user.email, "error_msg": error_msg}
        )

    try:
        reset_password(store, token, password)
    except AuthError:
        # Lost a race with another submission of the same link.
        return _signin_redirect("invalid_reset_token")
    return RedirectResponse(f"{SIGNIN_PATH}?{urlencode({'notice': 'password_reset'})}", status_code=302)


# ---------------------------------------------------------------------------
# First-run setup
# ---------------------------------------------------------------------------


def _setup_required(store: UserStore) -> bool:
    return store.count_role_holders(ADMIN_ROLE) == 0


@router.get("/setup", response_class=HTMLResponse)
def setup_form(request: Request) -> HTMLResponse:
    """Render the first-admin wizard. 404 once an admin exists."""
    if not _setup_required(request.app.state.user_store):
        raise HTTPException(status_code=404)
    return templates.TemplateResponse(request, "setup.html", {})


@router.post("/setup", response_class=HTMLResponse)
def setup_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
) -> RedirectResponse:
    """Create the first admin account.

    Re-checks for an existing admin inside the handler: two concurrent
    requests can both have rendered the form before either submits.
    """
    store: UserStore = request.app.state.user_store
    if not _setup_required(store):
        return _signin_redirect("setup_complete")

    error_msg = None
    if password != confirm_password:
        error_msg = "Passwords do not match."
    elif len(password) < 8:
        error_msg = "Password must be at least 8 characters."
    elif "@" not in email.strip():
        error_msg = "A valid email is required."
    if error_msg:
        return templates.TemplateResponse(request, "setup.html", {"error_msg": error_msg})

    try:
        user_id = store.create_user(User(email=email.strip(), hashed_password=hash_password(password)))
    except IntegrityError:
        return _signin_redirect("setup_complete")
    store.assign_role(user_id, DEFAULT_ROLE)
    store.assign_role(user_id, ADMIN_ROLE)
    logger.info("First admin account created: %s", user_id)
    return RedirectResponse(SIGNIN_PATH, status_code=302)
