"""Twilio adapters for alert SMS and outbound voice calls."""

from __future__ import annotations

import logging
import os
import uuid

from requests import RequestException
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http import HttpClient
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .. import config
from .base import CALL_OUTBOX, SMS_OUTBOX, NotificationError

logger = logging.getLogger(__name__)

CALL_STATUS_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioClient:
    """Credentials plus a lazily built REST client bounded by the notification timeout."""

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
        http_client: HttpClient | None = None,
    ):
        self.account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN")
        self.from_number = from_number or os.getenv("TWILIO_PHONE_NUMBER")
        self.messaging_service_sid = messaging_service_sid or os.getenv("TWILIO_MESSAGING_SERVICE_SID")
        self._http_client = http_client
        self._client: Client | None = None

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and (self.from_number or self.messaging_service_sid))

    @property
    def rest(self) -> Client:
        if self._client is None:
            http_client = self._http_client or TwilioHttpClient(timeout=config.NOTIFICATION_TIMEOUT_SECONDS)
            self._client = Client(self.account_sid, self.auth_token, http_client=http_client)
        return self._client

    def create(self, resource: str, **params) -> str:
        """Create a Messages or Calls record and return its SID."""

        api = self.rest.messages if resource == "Messages" else self.rest.calls
        try:
            return api.create(**params).sid
        except TwilioRestException as exc:
            raise NotificationError(f"Twilio rejected {resource} request: {exc.status}") from exc
        except (TwilioException, RequestException) as exc:
            raise NotificationError(f"Twilio {resource} request failed: {exc}") from exc


class TwilioSmsSender:
    def __init__(self, client: TwilioClient | None = None):
        self.client = client or TwilioClient()

    @property
    def configured(self) -> bool:
        return config.testing() or self.client.configured

    def send(self, to_e164: str, body: str) -> str:
        """Send an SMS and return the message SID; raises NotificationError."""

        if config.testing():
            SMS_OUTBOX.append((to_e164, body))
            return f"SM{uuid.uuid4().hex}"
        if not self.client.configured:
            raise NotificationError("Twilio SMS credentials not configured")
        if self.client.messaging_service_sid:
            return self.client.create(
                "Messages", to=to_e164, body=body, messaging_service_sid=self.client.messaging_service_sid
            )
        return self.client.create("Messages", to=to_e164, body=body, from_=self.client.from_number)


class TwilioVoiceCaller:
    def __init__(self, client: TwilioClient | None = None):
        self.client = client or TwilioClient()

    @property
    def configured(self) -> bool:
        return config.testing() or bool(
            self.client.account_sid and self.client.auth_token and self.client.from_number
        )

    def initiate_call(
        self,
        to_e164: str,
        callback_url: str,
        status_callback_url: str | None = None,
    ) -> str | None:
        """Start an outbound call; ``None`` means voice is not configured."""

        if config.testing():
            CALL_OUTBOX.append((to_e164, callback_url))
            return f"CA{uuid.uuid4().hex}"
        if not self.configured:
            return None
        params = {"to": to_e164, "from_": self.client.from_number, "url": callback_url}
        if status_callback_url:
            params.update(
                status_callback=status_callback_url,
                status_callback_event=CALL_STATUS_EVENTS,
                status_callback_method="POST",
            )
        sid = self.client.create("Calls", **params)
        logger.info("Initiated voice call %s", sid)
        return sid
