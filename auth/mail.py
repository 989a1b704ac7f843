"""
auth/mail.py -- Outbound auth email.

Delivery is a pluggable collaborator. LoggingMailSender writes a line to the
application log instead of sending anything, which is what local development
uses. A real provider only needs send_magic_link() and send_password_reset().

The links carry single-use credentials. LoggingMailSender logs only the
recipient; the link itself is logged (at DEBUG) only when debug=True, so a
developer can click through without a mail server.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("launchkit.mail")


class MailSender(Protocol):
    def send_magic_link(self, email: str, url: str) -> None: ...

    def send_password_reset(self, email: str, url: str) -> None: ...


class LoggingMailSender:
    def __init__(self, debug: bool = False) -> None:
        self.debug = debug

    def send_magic_link(self, email: str, url: str) -> None:
        self._deliver("sign-in link", email, url)

    def send_password_reset(self, email: str, url: str) -> None:
        self._deliver("password reset link", email, url)

    def _deliver(self, kind: str, email: str, url: str) -> None:
        logger.info("Sending %s to %s", kind, email)
        if self.debug:
            logger.debug("%s for %s: %s", kind, email, url)
