"""
auth/passwords.py -- Password reset and password change.

Reset flow:
  1. send_reset_link() emails a signed, single-use reset link (1 hour by
     default, PASSWORD_RESET_EXPIRE_SECONDS) when the email belongs to a
     live user. Callers answer identically either way.
  2. check_reset_token() lets a reset page validate the link before showing
     the form. It does not redeem the token.
  3. reset_password() redeems the token and stores the new bcrypt hash.

change_password() is for a signed-in user. When the account already has a
password the current one must be supplied; an OAuth or magic-link-only
account can set its first password from its session.

Failures raise AuthError: "invalid_token" for a bad, expired, reused or
orphaned token, "bad_credentials" for a wrong current password.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.models import AuthError, User
from auth.tokens import (
    PASSWORD_RESET_PURPOSE,
    create_password_reset_token,
    decode_password_reset_token,
    hash_password,
    verify_password,
)

if TYPE_CHECKING:
    from auth.mail import MailSender
    from auth.store import UserStore

logger = logging.getLogger("launchkit.auth.passwords")

RESET_PATH = "/auth/reset-password"
MIN_PASSWORD_LENGTH = 8

_INVALID_RESET = "This password reset link is invalid or has expired."


def send_reset_link(store: UserStore, mailer: MailSender, email: str, base_url: str) -> bool:
    """Email a reset link if email belongs to a live user. Returns True if one was sent."""
    user = store.get_by_email(email)
    if user is None:
        logger.info("Password reset requested for unknown email")
        return False
    send_reset_link_to(mailer, user, base_url)
    return True


def send_reset_link_to(mailer: MailSender, user: User, base_url: str) -> None:
    token = create_password_reset_token(user.id)
    mailer.send_password_reset(user.email, f"{base_url.rstrip('/')}{RESET_PATH}?token={token}")


def check_reset_token(store: UserStore, token: str) -> User:
    """Return the user a reset token belongs to without redeeming it."""
    payload = decode_password_reset_token(token or "")
    if payload is None or store.is_token_used(payload["jti"]):
        raise AuthError("invalid_token", _INVALID_RESET)
    user = store.get_by_id(payload["sub"])
    if user is None:
        raise AuthError("invalid_token", _INVALID_RESET)
    return user


def reset_password(store: UserStore, token: str, new_password: str) -> User:
    """Redeem a reset token and set new_password. The token cannot be used again."""
    _check_length(new_password)
    payload = decode_password_reset_token(token or "")
    if payload is None:
        raise AuthError("invalid_token", _INVALID_RESET)
    user = store.get_by_id(payload["sub"])
    if user is None or not store.consume_token(payload["jti"], PASSWORD_RESET_PURPOSE, user.id):
        raise AuthError("invalid_token", _INVALID_RESET)
    store.update_user(user.id, hashed_password=hash_password(new_password))
    logger.info("Password reset for user %s", user.id)
    return user


def change_password(store: UserStore, user_id: str, current_password: str | None, new_password: str) -> None:
    _check_length(new_password)
    user = store.get_by_id(user_id)
    if user is None:
        raise AuthError("unauthorized", "Not signed in.")
    if user.hashed_password is not None and not verify_password(current_password or "", user.hashed_password):
        raise AuthError("bad_credentials", "Current password is incorrect.")
    store.update_user(user.id, hashed_password=hash_password(new_password))
    logger.info("Password changed for user %s", user.id)


def _check_length(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError("weak_password", f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
