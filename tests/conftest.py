"""
tests/conftest.py -- Shared test fixtures for LaunchKit tests.

This module provides:
  - make_store(): a fresh, isolated in-memory UserStore
  - RecordingMailSender: a mailer that keeps the links it was asked to send
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - store: a fresh UserStore per test (unit tests)
  - api_client / web_client: TestClients over the full ASGI app with seeded users

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
RATE_LIMIT_ENABLED=false keeps the sign-in limit from tripping across tests.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.mail import LoggingMailSender
from auth.models import ADMIN_ROLE, DEFAULT_ROLE, User
from auth.providers import build_providers
from auth.signin import SignInService
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"
MEMBER_EMAIL = "member@example.com"
MEMBER_PASSWORD = "memberpass123"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store() -> UserStore:
    """Create a UserStore on its own named shared-memory database."""
    return UserStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def make_user(store: UserStore, email: str, password: str | None = None, roles: tuple = (DEFAULT_ROLE,)) -> str:
    uid = store.create_user(User(email=email, hashed_password=hash_password(password) if password else None))
    for role in roles:
        store.assign_role(uid, role)
    return uid


def token_for(store: UserStore, user_id: str) -> str:
    """Sign a session token for user_id with its current roles."""
    user = store.get_by_id(user_id)
    return create_access_token(
        {"id": user.id, "email": user.email, "name": user.name, "image": user.image, "roles": store.roles_for(user.id)},
        expire_seconds=3600,
    )


def all_methods_settings(**overrides):
    """Application settings with every sign-in method switched on.

    model_copy keeps the process-wide SECRET_KEY, so tokens signed by
    auth.tokens still verify.
    """
    values = {
        "enable_email_password": True,
        "enable_magic_link": True,
        "enable_google_auth": True,
        "enable_github_auth": True,
        "google_client_id": "google-client",
        "google_client_secret": "google-secret",
        "github_client_id": "github-client",
        "github_client_secret": "github-secret",
        "base_url": "http://localhost",
    }
    values.update(overrides)
    return get_settings().model_copy(update=values)


class RecordingMailSender(LoggingMailSender):
    """Keeps every outgoing link so tests can follow it."""

    def __init__(self) -> None:
        super().__init__(debug=True)
        self.sent: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_magic_link(self, email: str, url: str) -> None:
        super().send_magic_link(email, url)
        self.sent.append((email, url))

    def send_password_reset(self, email: str, url: str) -> None:
        super().send_password_reset(email, url)
        self.resets.append((email, url))


def _patch_lifespan(store: UserStore, settings, mailer: RecordingMailSender, oauth):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.user_store = store
        app.state.mailer = mailer
        app.state.signin = SignInService(store, build_providers(store, settings, mailer))
        app.state.oauth = oauth
        yield

    return test_lifespan


@dataclass
class AppHarness:
    client: TestClient
    store: UserStore
    mailer: RecordingMailSender
    oauth: MagicMock
    admin_id: str
    admin_token: str
    member_id: str
    member_token: str


def _harness(follow_redirects: bool) -> Generator[AppHarness, None, None]:
    store = make_store()
    admin_id = make_user(store, ADMIN_EMAIL, ADMIN_PASSWORD, roles=(DEFAULT_ROLE, ADMIN_ROLE))
    member_id = make_user(store, MEMBER_EMAIL, MEMBER_PASSWORD)
    mailer = RecordingMailSender()
    oauth = MagicMock()

    app.router.lifespan_context = _patch_lifespan(store, all_methods_settings(), mailer, oauth)

    # TrustedHostMiddleware only admits localhost-style hosts.
    with TestClient(
        app,
        base_url="http://localhost",
        follow_redirects=follow_redirects,
        raise_server_exceptions=True,
    ) as client:
        yield AppHarness(
            client=client,
            store=store,
            mailer=mailer,
            oauth=oauth,
            admin_id=admin_id,
            admin_token=token_for(store, admin_id),
            member_id=member_id,
            member_token=token_for(store, member_id),
        )

    store.close()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def api_client() -> Generator[AppHarness, None, None]:
    """Full app with an admin and a plain member. Function-scoped: tests mutate roles."""
    yield from _harness(follow_redirects=True)


@pytest.fixture
def web_client() -> Generator[AppHarness, None, None]:
    """Same as api_client but follow_redirects=False, so tests can assert on Location."""
    yield from _harness(follow_redirects=False)
