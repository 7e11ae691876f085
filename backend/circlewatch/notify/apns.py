"""Apple Push Notification service adapter.

Provider authentication uses a short-lived ES256 JWT. The token provider
owns its cache and refreshes ahead of expiry, so callers only ever ask for
an ``Authorization`` header value.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable
from uuid import UUID

import httpx
import jwt

from .. import config
from .base import PUSH_OUTBOX, NotificationError, http_timeout

logger = logging.getLogger(__name__)

APNS_PRODUCTION_HOST = "https://api.push.apple.com"
APNS_SANDBOX_HOST = "https://api.sandbox.push.apple.com"


@dataclass
class PushResult:
    token: str
    success: bool
    apns_id: str | None = None
    error: str | None = None


class ApnsTokenProvider:
    """Caches the provider JWT and re-signs it ``refresh_ahead`` seconds before expiry."""

    def __init__(
        self,
        key_id: str | None = None,
        team_id: str | None = None,
        private_key: str | None = None,
        lifetime: int = 3600,
        refresh_ahead: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.key_id = key_id or os.getenv("APNS_KEY_ID")
        self.team_id = team_id or os.getenv("APNS_TEAM_ID")
        if private_key is None and os.getenv("APNS_KEY_BASE64"):
            private_key = base64.b64decode(os.environ["APNS_KEY_BASE64"]).decode("utf-8")
        self.private_key = private_key
        self.lifetime = lifetime
        self.refresh_ahead = refresh_ahead
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._issued_at: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.team_id and self.private_key)

    def _needs_refresh(self, now: float) -> bool:
        return self._token is None or now >= self._issued_at + self.lifetime - self.refresh_ahead

    def get_auth_header(self) -> str:
        if not self.configured:
            raise NotificationError("APNs credentials not configured")
        with self._lock:
            now = self._clock()
            if self._needs_refresh(now):
                self._token = jwt.encode(
                    {"iss": self.team_id, "iat": int(now)},
                    self.private_key,
                    algorithm="ES256",
                    headers={"kid": self.key_id},
                )
                self._issued_at = now
            return f"bearer {self._token}"


def database_token_lookup(session_factory: Callable | None = None) -> Callable[[UUID], list[str]]:
    """Build a device-token lookup that reads from ``session_factory``'s store."""

    from .. import models

    def lookup(user_id: UUID) -> list[str]:
        factory = session_factory
        if factory is None:
            from ..database import SessionLocal

            factory = SessionLocal
        db = factory()
        try:
            rows = db.query(models.PushToken.token).filter(models.PushToken.user_id == user_id).all()
            return [row.token for row in rows]
        finally:
            db.close()

    return lookup


class ApnsPushSender:
    def __init__(
        self,
        token_provider: ApnsTokenProvider | None = None,
        token_lookup: Callable[[UUID], list[str]] | None = None,
        bundle_id: str | None = None,
        sandbox: bool | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.token_provider = token_provider or ApnsTokenProvider()
        self.token_lookup = token_lookup or database_token_lookup()
        self.bundle_id = bundle_id or os.getenv("APNS_BUNDLE_ID", "com.circlewatch.app")
        if sandbox is None:
            sandbox = os.getenv("APNS_USE_SANDBOX", "1") == "1"
        self.host = APNS_SANDBOX_HOST if sandbox else APNS_PRODUCTION_HOST
        self._transport = transport

    @property
    def configured(self) -> bool:
        return config.testing() or self.token_provider.configured

    def _payload(self, title: str, body: str, data: dict, category, interruption_level) -> dict:
        aps: dict = {"alert": {"title": title, "body": body}, "sound": "default"}
        if category:
            aps["category"] = category
        if interruption_level:
            aps["interruption-level"] = interruption_level
        if interruption_level == "critical":
            aps["sound"] = {"critical": 1, "name": "alert.caf", "volume": 1.0}
        return {"aps": aps, **data}

    def send(
        self,
        user_id: UUID,
        title: str,
        body: str,
        data: dict | None = None,
        *,
        category: str | None = None,
        interruption_level: str | None = None,
    ) -> list[PushResult]:
        """Push to every registered device of ``user_id``; per-device failures are returned, not raised."""

        data = data or {}
        if config.testing():
            PUSH_OUTBOX.append((str(user_id), title, body, data))
            return [PushResult(token="test-device", success=True, apns_id="test")]

        tokens = self.token_lookup(user_id)
        if not tokens:
            return []
        try:
            authorization = self.token_provider.get_auth_header()
        except (NotificationError, jwt.PyJWTError, ValueError) as exc:
            return [PushResult(token=t, success=False, error=str(exc)) for t in tokens]

        payload = json.dumps(self._payload(title, body, data, category, interruption_level))
        headers = {
            "authorization": authorization,
            "apns-topic": self.bundle_id,
            "apns-push-type": "alert",
            "apns-priority": "10",
        }
        results: list[PushResult] = []
        with httpx.Client(http2=True, timeout=http_timeout(), transport=self._transport) as client:
            for device_token in tokens:
                try:
                    response = client.post(
                        f"{self.host}/3/device/{device_token}",
                        content=payload,
                        headers=headers,
                    )
                except httpx.HTTPError as exc:
                    results.append(PushResult(token=device_token, success=False, error=str(exc)))
                    continue
                if response.status_code == 200:
                    results.append(
                        PushResult(
                            token=device_token,
                            success=True,
                            apns_id=response.headers.get("apns-id"),
                        )
                    )
                else:
                    try:
                        reason = response.json().get("reason", "Unknown error")
                    except ValueError:
                        reason = "Unknown error"
                    results.append(
                        PushResult(
                            token=device_token,
                            success=False,
                            error=f"{response.status_code}: {reason}",
                        )
                    )
        return results
