"""
tests/test_auth_redirect.py -- Integration tests for the route guard on web pages.

These tests exercise require_role() end-to-end through the real ASGI stack
using the web_client fixture (follow_redirects=False). We assert on redirect
Location headers directly -- following the redirect would hide them.

Coverage:
  - Signed out -> 302 /auth/signin?callbackUrl={path}
  - Signed in without the role -> 302 /
  - Signed in with the role -> 200
  - Role revoked after sign-in -> 302 / on the very next request
  - callbackUrl is always a bare path (open-redirect prevention)
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from conftest import AppHarness


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestAdminPageGuard:
    def test_signed_out_redirects_to_signin(self, web_client: AppHarness) -> None:
        resp = web_client.client.get("/admin")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/signin?callbackUrl=/admin"

    def test_member_redirects_home_not_403(self, web_client: AppHarness) -> None:
        resp = web_client.client.get("/admin", headers=_bearer(web_client.member_token))
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_admin_gets_the_page(self, web_client: AppHarness) -> None:
        resp = web_client.client.get("/admin", headers=_bearer(web_client.admin_token))
        assert resp.status_code == 200
        assert "member@example.com" in resp.text

    def test_session_cookie_works_like_bearer(self, web_client: AppHarness) -> None:
        web_client.client.cookies.set("session_token", web_client.admin_token)
        resp = web_client.client.get("/admin")
        assert resp.status_code == 200

    def test_revoked_role_takes_effect_immediately(self, web_client: AppHarness) -> None:
        """The token still claims "admin"; the guard reads the store and disagrees."""
        store = web_client.store
        second_admin = store.get_by_email("member@example.com").id
        store.assign_role(second_admin, "admin")
        store.remove_role(web_client.admin_id, "admin")

        resp = web_client.client.get("/admin", headers=_bearer(web_client.admin_token))
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_expired_or_forged_token_counts_as_signed_out(self, web_client: AppHarness) -> None:
        resp = web_client.client.get("/admin", headers=_bearer("forged.token.value"))
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/auth/signin")


class TestCallbackParam:
    def test_callback_is_path_only(self, web_client: AppHarness) -> None:
        resp = web_client.client.get("/admin")
        parsed = urlparse(resp.headers["location"])
        assert parsed.path == "/auth/signin"
        values = parse_qs(parsed.query).get("callbackUrl", [])
        assert values == ["/admin"]
        assert not values[0].startswith("//")
