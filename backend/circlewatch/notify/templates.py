"""Message copy for alert notifications across channels."""

from __future__ import annotations

import re
from datetime import datetime

_EMAIL_COPY = {
    "reminder": {
        "subject": "Reminder: {name} hasn't checked in yet",
        "urgency": "Gentle Reminder",
        "message": "{name} hasn't completed their check-in for today. This is just a friendly heads up.",
    },
    "soft": {
        "subject": "{name} missed their check-in window",
        "urgency": "Soft Alert",
        "message": "{name} has missed their scheduled check-in window. They may be busy, but we wanted to let you know.",
    },
    "hard": {
        "subject": "{name} hasn't checked in for 36+ hours",
        "urgency": "Urgent Alert",
        "message": "{name} hasn't checked in for over 36 hours. You may want to reach out to them.",
    },
    "escalation": {
        "subject": "URGENT: {name} hasn't checked in for 48+ hours",
        "urgency": "Critical Escalation",
        "message": "{name} hasn't responded in over 48 hours. Please try to contact them or someone who can check on them.",
    },
}


def truncate(value: str | None, max_length: int) -> str:
    if not value:
        return ""
    if len(value) <= max_length:
        return value
    return value[: max_length - 1] + "…"


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%a %b %d at %H:%M UTC")


def sms_body(
    level: str,
    checker_name: str,
    *,
    address: str | None = None,
    phone: str | None = None,
    last_check_in: datetime | None = None,
    ack_url: str | None = None,
) -> str:
    name = truncate(checker_name, 15)
    if level == "soft":
        body = f"CircleWatch: {name} hasn't checked in for 24h."
        if address:
            body += f" Last seen: {truncate(address, 25)}."
        if phone:
            body += f" Call: {phone}"
        return body
    if level == "hard":
        lines = [f"URGENT CircleWatch: {name} missed 36h."]
    elif level == "escalation":
        lines = [f"EMERGENCY: {name} - 48H NO CHECK-IN", ""]
        if last_check_in is not None:
            lines.append(f"Last seen: {format_timestamp(last_check_in)}")
    else:
        raise ValueError(f"No SMS copy for level {level!r}")
    if address:
        lines.append(f"Location: {truncate(address, 40)}")
    if phone:
        lines.append(f"Call: {phone}")
    if ack_url:
        lines.append(f"Ack: {ack_url}")
    return "\n".join(lines)


def email_content(
    level: str,
    checker_name: str,
    supporter_name: str,
    *,
    last_check_in: datetime | None = None,
    last_location: str | None = None,
    last_mood: dict | None = None,
) -> dict:
    """Return ``subject`` and plain-text ``body`` for an alert email."""

    copy = _EMAIL_COPY[level]
    lines = [
        f"Hi {supporter_name},",
        "",
        copy["urgency"].upper(),
        copy["message"].format(name=checker_name),
        "",
        f"Last check-in: {format_timestamp(last_check_in) or 'No recent check-ins'}",
    ]
    if last_location:
        lines.append(f"Last known location: {last_location}")
    if last_mood:
        lines.append(
            "Last mood: mind {mental}/5, body {body}/5, mood {mood}/5".format(**last_mood)
        )
    lines += ["", "You're receiving this because you're part of a care circle on CircleWatch."]
    return {
        "subject": copy["subject"].format(name=checker_name),
        "body": "\n".join(lines),
    }


def reminder_push() -> dict:
    return {
        "title": "Time to Check In",
        "body": "Don't forget to log how you're feeling today!",
        "category": "CHECKIN_REMINDER",
        "interruption_level": "time-sensitive",
    }


def alert_push(level: str, checker_name: str, hours_since_missed: float) -> dict:
    critical = level == "escalation"
    return {
        "title": f"URGENT: {checker_name} needs help" if critical else f"Alert: {checker_name} hasn't checked in",
        "body": f"It's been {round(hours_since_missed)} hours since their last check-in",
        "category": "ALERT",
        "interruption_level": "critical" if critical else "time-sensitive",
    }


def poke_push(sender_name: str, message: str | None = None) -> dict:
    return {
        "title": f"{sender_name} is thinking of you",
        "body": message or "Check in when you can!",
        "category": "POKE",
        "interruption_level": "active",
    }


def poke_sms(sender_name: str, message: str | None = None) -> str:
    if message:
        return f'CircleWatch: {truncate(sender_name, 15)} is thinking of you: "{truncate(message, 40)}"'
    return f"CircleWatch: {truncate(sender_name, 15)} is thinking of you. Check in when you can!"


def poke_email(recipient_name: str, sender_name: str, message: str | None = None) -> dict:
    lines = [
        f"Hi {recipient_name},",
        "",
        f"{sender_name} sent you a poke on CircleWatch to check in on you.",
    ]
    if message:
        lines += ["", f'"{message}"']
    lines += ["", "Open the app and check in when you can."]
    return {"subject": f"{sender_name} sent you a poke on CircleWatch", "body": "\n".join(lines)}


def phone_for_speech(phone: str | None) -> str:
    """'+15551234567' -> '5 5 5, 1 2 3, 4 5 6 7'"""

    if not phone:
        return "unknown"
    digits = re.sub(r"\D", "", phone)[-10:]
    if len(digits) < 10:
        return " ".join(digits)
    groups = (digits[:3], digits[3:6], digits[6:])
    return ", ".join(" ".join(group) for group in groups)


def format_phone_e164(phone: str, default_country: str = "US") -> str:
    cleaned = re.sub(r"[^\d+]", "", phone)
    if cleaned.startswith("+"):
        return cleaned
    prefix = {"US": "+1", "ZA": "+27", "UK": "+44", "AU": "+61"}.get(default_country, "+1")
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    return f"{prefix}{cleaned}"
