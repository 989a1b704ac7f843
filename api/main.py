"""
api/main.py -- FastAPI application entry point for LaunchKit.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie that carries OAuth state and the
                              pending callbackUrl between redirect and callback

Lifespan builds every auth collaborator once and parks it on app.state:
  user_store  -- auth.store.UserStore
  mailer      -- auth.mail.LoggingMailSender
  signin      -- auth.signin.SignInService over the enabled provider variants
  oauth       -- authlib registry for the enabled OAuth providers
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_session
from auth.mail import LoggingMailSender
from auth.models import AuthError
from auth.oauth import create_oauth_registry
from auth.permissions import GuardRedirect, RoleChangeError
from auth.providers import build_providers
from auth.signin import SignInService
from auth.store import UserStore
from core.config import get_settings

APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("launchkit.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth collaborators on startup and close the store on shutdown.

    Order matters: providers need the store and the mailer, and the sign-in
    service needs the providers.
    """
    logger.info("LaunchKit starting up")
    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url)
    app.state.mailer = LoggingMailSender(debug=settings.debug)
    providers = build_providers(app.state.user_store, settings, app.state.mailer)
    app.state.signin = SignInService(app.state.user_store, providers)
    app.state.oauth = create_oauth_registry(settings)
    logger.info("Auth initialized (users present=%s)", app.state.user_store.has_users())

    yield

    app.state.user_store.close()
    logger.info("LaunchKit shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LaunchKit API",
    description="Authentication, sessions, and role-based access for a web-app starter.",
    version=APP_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by signed-in-only routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value here between the authorize redirect and
# the callback. Without it the state check (CSRF protection) cannot run.
app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=settings.secure_cookies)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Signed-in-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(session: dict = Depends(get_current_session)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="LaunchKit API")


@app.get("/redoc", include_in_schema=False)
async def redoc(session: dict = Depends(get_current_session)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="LaunchKit API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON errors share the ErrorResponse envelope. The route guard is the one
# exception: it answers with a redirect, never a 401/403 body.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(GuardRedirect)
async def guard_redirect_handler(request: Request, exc: GuardRedirect) -> RedirectResponse:
    return RedirectResponse(exc.location, status_code=302)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    response = _error(401, exc.code, exc.message)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RoleChangeError)
async def role_change_error_handler(request: Request, exc: RoleChangeError) -> JSONResponse:
    return _error(400, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers raise HTTPException with detail={"code", "message"}; pass it through as the error."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint -- never rate limited
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Report liveness plus a database check. 503 when the store is unreachable."""
    db_ok = request.app.state.user_store.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=APP_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
