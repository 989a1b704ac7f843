"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth/*.

These tests exercise the full stack: routing -> rate-limit decorator ->
sign-in service -> store -> response model -> exception handlers.

Fixtures used (from conftest.py):
  - api_client: AppHarness with admin@example.com (user+admin) and
    member@example.com (user); every sign-in method enabled.
"""

from __future__ import annotations

from auth.tokens import decode_access_token
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, MEMBER_EMAIL, MEMBER_PASSWORD, AppHarness


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestSignIn:
    def test_valid_credentials(self, api_client: AppHarness) -> None:
        resp = api_client.client.post("/api/v1/auth/signin", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == ADMIN_EMAIL
        assert data["user"]["roles"] == ["admin", "user"]
        assert resp.headers["cache-control"] == "no-store"
        assert "session_token" in resp.cookies
        assert decode_access_token(data["access_token"])["id"] == api_client.admin_id

    def test_email_is_case_insensitive(self, api_client: AppHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/signin", json={"email": MEMBER_EMAIL.upper(), "password": MEMBER_PASSWORD}
        )
        assert resp.status_code == 200

    def test_wrong_password_and_unknown_email_look_the_same(self, api_client: AppHarness) -> None:
        wrong = api_client.client.post("/api/v1/auth/signin", json={"email": ADMIN_EMAIL, "password": "nope"})
        unknown = api_client.client.post(
            "/api/v1/auth/signin", json={"email": "ghost@example.com", "password": "nope"}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    def test_malformed_body_is_422(self, api_client: AppHarness) -> None:
        resp = api_client.client.post("/api/v1/auth/signin", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestSignUp:
    def test_new_account_gets_user_role_and_session(self, api_client: AppHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/signup", json={"email": "new@example.com", "password": "long-enough", "name": "New"}
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["user"]["roles"] == ["user"]
        user = api_client.store.get_by_email("new@example.com")
        assert user.name == "New"

    def test_duplicate_email_is_409(self, api_client: AppHarness) -> None:
        resp = api_client.client.post("/api/v1/auth/signup", json={"email": MEMBER_EMAIL, "password": "long-enough"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_short_password_is_422(self, api_client: AppHarness) -> None:
        resp = api_client.client.post("/api/v1/auth/signup", json={"email": "new@example.com", "password": "short"})
        assert resp.status_code == 422


class TestMagicLink:
    def test_registered_and_unknown_emails_get_the_same_answer(self, api_client: AppHarness) -> None:
        known = api_client.client.post("/api/v1/auth/magic-link", json={"email": MEMBER_EMAIL})
        unknown = api_client.client.post("/api/v1/auth/magic-link", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert [email for email, _ in api_client.mailer.sent] == [MEMBER_EMAIL]

    def test_link_points_at_the_configured_base_url(self, api_client: AppHarness) -> None:
        api_client.client.post("/api/v1/auth/magic-link", json={"email": MEMBER_EMAIL})
        _, url = api_client.mailer.sent[-1]
        assert url.startswith("http://localhost/auth/magic-link?token=")


class TestSession:
    def test_me_requires_a_session(self, api_client: AppHarness) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_returns_projected_session(self, api_client: AppHarness) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers=_bearer(api_client.member_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["id"] == api_client.member_id
        assert data["user"]["email"] == MEMBER_EMAIL
        assert data["user"]["roles"] == ["user"]
        assert data["expires"]

    def test_cookie_from_signin_is_honoured(self, api_client: AppHarness) -> None:
        api_client.client.post("/api/v1/auth/signin", json={"email": MEMBER_EMAIL, "password": MEMBER_PASSWORD})
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == MEMBER_EMAIL

    def test_logout_clears_cookie(self, api_client: AppHarness) -> None:
        api_client.client.post("/api/v1/auth/signin", json={"email": MEMBER_EMAIL, "password": MEMBER_PASSWORD})
        resp = api_client.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert api_client.client.get("/api/v1/auth/me").status_code == 401


class TestProvidersAndSetup:
    def test_providers_is_public(self, api_client: AppHarness) -> None:
        resp = api_client.client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert {p["name"] for p in resp.json()} == {"google", "github"}

    def test_setup_admin_refused_once_an_admin_exists(self, api_client: AppHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/setup-admin", json={"email": "second@example.com", "password": "long-enough"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "admin_exists"


def _reset_token(api_client: AppHarness) -> str:
    return api_client.mailer.resets[-1][1].split("token=", 1)[1]


class TestPasswordReset:
    def test_registered_and_unknown_emails_get_the_same_answer(self, api_client: AppHarness) -> None:
        known = api_client.client.post("/api/v1/auth/forgot-password", json={"email": MEMBER_EMAIL})
        unknown = api_client.client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert [email for email, _ in api_client.mailer.resets] == [MEMBER_EMAIL]

    def test_verify_then_reset_then_sign_in(self, api_client: AppHarness) -> None:
        api_client.client.post("/api/v1/auth/forgot-password", json={"email": MEMBER_EMAIL})
        token = _reset_token(api_client)

        check = api_client.client.post("/api/v1/auth/verify-reset-token", json={"token": token})
        assert check.status_code == 200
        assert check.json() == {"valid": True, "email": MEMBER_EMAIL}

        reset = api_client.client.post(
            "/api/v1/auth/reset-password", json={"token": token, "password": "brand-new-password"}
        )
        assert reset.status_code == 200, reset.text

        old = api_client.client.post("/api/v1/auth/signin", json={"email": MEMBER_EMAIL, "password": MEMBER_PASSWORD})
        new = api_client.client.post(
            "/api/v1/auth/signin", json={"email": MEMBER_EMAIL, "password": "brand-new-password"}
        )
        assert old.status_code == 401
        assert new.status_code == 200

    def test_reused_link_is_refused(self, api_client: AppHarness) -> None:
        api_client.client.post("/api/v1/auth/forgot-password", json={"email": MEMBER_EMAIL})
        token = _reset_token(api_client)
        api_client.client.post("/api/v1/auth/reset-password", json={"token": token, "password": "brand-new-password"})

        again = api_client.client.post(
            "/api/v1/auth/reset-password", json={"token": token, "password": "another-password"}
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_token"
        check = api_client.client.post("/api/v1/auth/verify-reset-token", json={"token": token})
        assert check.status_code == 400

    def test_short_password_is_422(self, api_client: AppHarness) -> None:
        resp = api_client.client.post("/api/v1/auth/reset-password", json={"token": "x", "password": "short"})
        assert resp.status_code == 422


class TestChangePassword:
    def test_requires_a_session(self, api_client: AppHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/change-password", json={"current_password": MEMBER_PASSWORD, "new_password": "long-enough"}
        )
        assert resp.status_code == 401

    def test_wrong_current_password_is_400(self, api_client: AppHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "wrong-password", "new_password": "long-enough"},
            headers=_bearer(api_client.member_token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_change_then_sign_in(self, api_client: AppHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": MEMBER_PASSWORD, "new_password": "long-enough"},
            headers=_bearer(api_client.member_token),
        )
        assert resp.status_code == 200, resp.text
        signin = api_client.client.post(
            "/api/v1/auth/signin", json={"email": MEMBER_EMAIL, "password": "long-enough"}
        )
        assert signin.status_code == 200
