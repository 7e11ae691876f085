"""Shared outboxes and errors for notification channels."""

from __future__ import annotations

import httpx

from .. import config

# populated instead of calling providers when TESTING=1
EMAIL_OUTBOX: list[tuple[str, str, str]] = []
SMS_OUTBOX: list[tuple[str, str]] = []
PUSH_OUTBOX: list[tuple[str, str, str, dict]] = []
CALL_OUTBOX: list[tuple[str, str]] = []


class NotificationError(RuntimeError):
    """Raised when a provider rejects or fails to accept a message."""


def clear_outboxes() -> None:
    for outbox in (EMAIL_OUTBOX, SMS_OUTBOX, PUSH_OUTBOX, CALL_OUTBOX):
        outbox.clear()


def http_timeout() -> httpx.Timeout:
    return httpx.Timeout(config.NOTIFICATION_TIMEOUT_SECONDS)
