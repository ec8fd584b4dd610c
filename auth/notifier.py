"""
auth/notifier.py -- Outbound notification boundary (email delivery lives elsewhere).

The orchestrator calls a Notifier after a state transition has committed.
Delivery is fire-and-forget: notify() catches and logs any failure so a
broken mail relay can never block registration, reset, or password change.

LoggingNotifier is the default implementation. It records that a message
would be sent; raw tokens are never written to the log, only the fact that a
link was issued.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("gatekeeper.auth.notifier")


class Notifier(Protocol):
    def send_verification_email(self, email: str, token: str) -> None: ...

    def send_password_reset_email(self, email: str, token: str) -> None: ...

    def send_password_change_confirmation(self, email: str) -> None: ...


class LoggingNotifier:
    """Notifier that only logs. Suitable for development and tests."""

    def send_verification_email(self, email: str, token: str) -> None:
        logger.info("Verification email queued for %s", email)

    def send_password_reset_email(self, email: str, token: str) -> None:
        logger.info("Password reset email queued for %s", email)

    def send_password_change_confirmation(self, email: str) -> None:
        logger.info("Password change confirmation queued for %s", email)


def notify(notifier: Notifier, method: str, *args) -> bool:
    """Invoke notifier.<method>(*args); log and swallow delivery errors. Returns success."""
    try:
        getattr(notifier, method)(*args)
        return True
    except Exception:
        logger.exception("Notifier %s failed; continuing without delivery", method)
        return False
