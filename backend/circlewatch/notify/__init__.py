from dataclasses import dataclass, field

from .apns import ApnsPushSender, ApnsTokenProvider, PushResult, database_token_lookup
from .base import (
    CALL_OUTBOX,
    EMAIL_OUTBOX,
    PUSH_OUTBOX,
    SMS_OUTBOX,
    NotificationError,
    clear_outboxes,
)
from .mail import EmailResult, SmtpEmailSender
from .telephony import TwilioClient, TwilioSmsSender, TwilioVoiceCaller

__all__ = [
    "ApnsPushSender",
    "ApnsTokenProvider",
    "CALL_OUTBOX",
    "Channels",
    "EMAIL_OUTBOX",
    "EmailResult",
    "NotificationError",
    "PUSH_OUTBOX",
    "PushResult",
    "SMS_OUTBOX",
    "SmtpEmailSender",
    "TwilioClient",
    "TwilioSmsSender",
    "TwilioVoiceCaller",
    "clear_outboxes",
    "database_token_lookup",
    "default_channels",
]


@dataclass
class Channels:
    """The four channel collaborators the fan-out dispatches to."""

    push: ApnsPushSender = field(default_factory=ApnsPushSender)
    sms: TwilioSmsSender = field(default_factory=TwilioSmsSender)
    email: SmtpEmailSender = field(default_factory=SmtpEmailSender)
    voice: TwilioVoiceCaller = field(default_factory=TwilioVoiceCaller)


def default_channels(session_factory=None) -> Channels:
    """Live provider adapters; push tokens are read through ``session_factory``."""

    twilio = TwilioClient()
    return Channels(
        push=ApnsPushSender(token_lookup=database_token_lookup(session_factory)),
        sms=TwilioSmsSender(twilio),
        email=SmtpEmailSender(),
        voice=TwilioVoiceCaller(twilio),
    )
