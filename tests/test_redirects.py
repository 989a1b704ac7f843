"""
tests/test_redirects.py -- Unit tests for auth.redirects.resolve_redirect().

resolve_redirect() is the only thing standing between a browser-supplied
callbackUrl and a Location header, so every branch of the allow-list is
covered here, plus the open-redirect attempts it must neutralize.
"""

from __future__ import annotations

import pytest

from auth.redirects import resolve_redirect

BASE = "http://x"


class TestAllowedTargets:
    def test_signin_path_passes_through(self) -> None:
        assert resolve_redirect("/auth/signin", BASE) == "/auth/signin"

    def test_signin_path_with_query_passes_through(self) -> None:
        assert resolve_redirect("/auth/signin?error=bad_credentials", BASE) == "/auth/signin?error=bad_credentials"

    def test_absolute_signin_url_passes_through(self) -> None:
        assert resolve_redirect("http://x/auth/signin", BASE) == "http://x/auth/signin"

    def test_signin_sub_path_passes_through(self) -> None:
        assert resolve_redirect("/auth/signin/github", BASE) == "/auth/signin/github"
        assert resolve_redirect("http://x/auth/signin/google", BASE) == "http://x/auth/signin/google"

    def test_signin_fragment_passes_through(self) -> None:
        assert resolve_redirect("/auth/signin#magic", BASE) == "/auth/signin#magic"

    def test_base_itself_gets_trailing_slash(self) -> None:
        assert resolve_redirect("http://x", BASE) == "http://x/"

    def test_relative_path_is_prefixed_with_base(self) -> None:
        assert resolve_redirect("/dash", BASE) == "http://x/dash"

    def test_relative_path_keeps_query(self) -> None:
        assert resolve_redirect("/admin?tab=roles", BASE) == "http://x/admin?tab=roles"

    def test_same_origin_absolute_url_passes_through(self) -> None:
        assert resolve_redirect("http://x/dash", BASE) == "http://x/dash"

    def test_same_origin_ignores_host_case_and_default_port(self) -> None:
        assert resolve_redirect("http://X:80/dash", BASE) == "http://X:80/dash"

    def test_trailing_slash_on_base_is_ignored(self) -> None:
        assert resolve_redirect("/dash", "http://x/") == "http://x/dash"


class TestRejectedTargets:
    @pytest.mark.parametrize(
        "url",
        [
            "",
            "https://evil.com/p",
            "https://x/dash",  # scheme differs -> different origin
            "http://x:8080/dash",  # port differs -> different origin
            "http://x.evil.com/",
            "not-a-url",
            "?a=1",
            "#frag",
            "javascript:alert(1)",
            "http://[::1/",  # unparseable
        ],
    )
    def test_everything_else_goes_home(self, url: str) -> None:
        assert resolve_redirect(url, BASE) == "http://x/"

    def test_protocol_relative_url_stays_on_our_origin(self) -> None:
        """"//evil.com/p" is prefixed, so the browser resolves it against our host."""
        assert resolve_redirect("//evil.com/p", BASE) == "http://x//evil.com/p"

    def test_signin_lookalike_is_not_passed_through(self) -> None:
        assert resolve_redirect("/auth/signinevil", BASE) == "http://x/auth/signinevil"
        assert resolve_redirect("https://evil.com/auth/signin", BASE) == "http://x/"
