"""
tests/test_credentials.py -- Unit tests for the credential verifier, tokens, and provider variants.

Covers:
  - verify_credentials(): success, wrong password, unknown email, no password set
  - timing equalization: bcrypt runs even when the email is unknown
  - session, magic-link and reset JWTs never verify as each other
  - magic links are single-use
  - build_providers() honours the enable_* flags
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from auth.models import AuthError, OAuthIdentity
from auth.providers import (
    CredentialsProvider,
    GitHubProvider,
    GoogleProvider,
    MagicLinkProvider,
    build_providers,
    verify_credentials,
)
from auth.store import UserStore
from auth.tokens import (
    create_access_token,
    create_magic_link_token,
    create_password_reset_token,
    decode_access_token,
    decode_magic_link_token,
    decode_password_reset_token,
    hash_password,
    verify_password,
)
from conftest import RecordingMailSender, all_methods_settings, make_user


class TestVerifyCredentials:
    def test_valid_credentials_return_claims_with_roles(self, store: UserStore) -> None:
        uid = make_user(store, "a@example.com", "correct-horse", roles=("user", "admin"))
        claims = verify_credentials(store, "a@example.com", "correct-horse")
        assert claims.id == uid
        assert claims.email == "a@example.com"
        assert claims.roles == ["admin", "user"]
        assert store.get_by_id(uid).last_signed_in is not None

    def test_email_is_case_insensitive(self, store: UserStore) -> None:
        make_user(store, "a@example.com", "correct-horse")
        assert verify_credentials(store, "A@EXAMPLE.com", "correct-horse") is not None

    def test_wrong_password(self, store: UserStore) -> None:
        uid = make_user(store, "a@example.com", "correct-horse")
        assert verify_credentials(store, "a@example.com", "wrong") is None
        assert store.get_by_id(uid).last_signed_in is None

    def test_unknown_email(self, store: UserStore) -> None:
        assert verify_credentials(store, "nobody@example.com", "whatever") is None

    def test_user_without_password_fails_closed(self, store: UserStore) -> None:
        make_user(store, "oauth@example.com", None)
        assert verify_credentials(store, "oauth@example.com", "") is None
        assert verify_credentials(store, "oauth@example.com", "anything") is None

    def test_unknown_email_still_runs_bcrypt(self, store: UserStore) -> None:
        with patch("auth.providers.verify_password", return_value=False) as mocked:
            verify_credentials(store, "nobody@example.com", "whatever")
        mocked.assert_called_once()

    def test_deleted_user_cannot_sign_in(self, store: UserStore) -> None:
        uid = make_user(store, "a@example.com", "correct-horse")
        store.soft_delete_user(uid)
        assert verify_credentials(store, "a@example.com", "correct-horse") is None


class TestPasswordHashing:
    def test_round_trip(self) -> None:
        hashed = hash_password("s3cret-pass")
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("other", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestTokens:
    def test_session_token_carries_claims(self) -> None:
        token = create_access_token({"id": "u1", "roles": ["admin"], "email": "a@example.com"})
        payload = decode_access_token(token)
        assert payload["sub"] == "u1"
        assert payload["roles"] == ["admin"]
        assert payload["email"] == "a@example.com"

    def test_garbage_token_is_rejected(self) -> None:
        assert decode_access_token("not.a.jwt") is None

    def test_magic_link_token_is_not_a_session(self) -> None:
        assert decode_access_token(create_magic_link_token("u1")) is None

    def test_session_token_is_not_a_magic_link(self) -> None:
        assert decode_magic_link_token(create_access_token({"id": "u1", "roles": []})) is None

    def test_magic_link_round_trip(self) -> None:
        payload = decode_magic_link_token(create_magic_link_token("u1"))
        assert payload["sub"] == "u1"
        assert payload["jti"]

    def test_each_link_gets_its_own_id(self) -> None:
        first = decode_magic_link_token(create_magic_link_token("u1"))
        second = decode_magic_link_token(create_magic_link_token("u1"))
        assert first["jti"] != second["jti"]

    def test_reset_token_is_not_a_magic_link(self) -> None:
        assert decode_magic_link_token(create_password_reset_token("u1")) is None
        assert decode_password_reset_token(create_magic_link_token("u1")) is None


class TestProviders:
    def test_credentials_provider_raises_bad_credentials(self, store: UserStore) -> None:
        with pytest.raises(AuthError) as exc_info:
            CredentialsProvider(store).authenticate({"email": "nobody@example.com", "password": "x"})
        assert exc_info.value.code == "bad_credentials"

    def test_magic_link_send_and_authenticate(self, store: UserStore) -> None:
        uid = make_user(store, "a@example.com")
        mailer = RecordingMailSender()
        provider = MagicLinkProvider(store, mailer)
        assert provider.send_link("a@example.com", "http://localhost/") is True
        email, url = mailer.sent[0]
        assert email == "a@example.com"
        assert url.startswith("http://localhost/auth/magic-link?token=")

        claims = provider.authenticate(url.split("token=", 1)[1])
        assert claims.id == uid
        assert claims.roles == ["user"]

    def test_magic_link_for_unknown_email_sends_nothing(self, store: UserStore) -> None:
        mailer = RecordingMailSender()
        assert MagicLinkProvider(store, mailer).send_link("nobody@example.com", "http://localhost") is False
        assert mailer.sent == []

    def test_magic_link_bad_token(self, store: UserStore) -> None:
        with pytest.raises(AuthError) as exc_info:
            MagicLinkProvider(store, RecordingMailSender()).authenticate("garbage")
        assert exc_info.value.code == "invalid_token"

    def test_magic_link_works_once(self, store: UserStore) -> None:
        uid = make_user(store, "a.com")
        provider = MagicLinkProvider(store, RecordingMailSender())
        token = create_magic_link_token(uid)
        assert provider.authenticate(token).id == uid
        with pytest.raises(AuthError) as exc_info:
            provider.authenticate(token)
        assert exc_info.value.code == "invalid_token"

    def test_oauth_provider_normalizes_email(self) -> None:
        identity = OAuthIdentity(provider="google", provider_account_id="1", email=" Ada@Example.com ", name="Ada")
        claims = GoogleProvider().authenticate(identity)
        assert claims.email == "ada@example.com"
        assert claims.id is None

    def test_oauth_provider_rejects_foreign_identity(self) -> None:
        identity = OAuthIdentity(provider="google", provider_account_id="1", email="a@example.com")
        with pytest.raises(AuthError):
            GitHubProvider().authenticate(identity)


class TestBuildProviders:
    def test_all_enabled(self) -> None:
        providers = build_providers(MagicMock(), all_methods_settings(), RecordingMailSender())
        assert set(providers) == {"credentials", "email", "google", "github"}

    def test_flags_switch_methods_off(self) -> None:
        settings = all_methods_settings(enable_email_password=False, enable_magic_link=False, enable_github_auth=False)
        assert set(build_providers(MagicMock(), settings, RecordingMailSender())) == {"google"}

    def test_oauth_needs_credentials(self) -> None:
        settings = all_methods_settings(google_client_secret="")
        assert "google" not in build_providers(MagicMock(), settings, RecordingMailSender())
