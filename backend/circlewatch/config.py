"""Environment-driven settings for the escalation engine and its channels."""

from __future__ import annotations

import os
from dataclasses import dataclass

# purpose: single place where tick cadence, thresholds and provider credentials are read
# status: active


@dataclass(frozen=True)
class EscalationThresholds:
    """Hours since the missed deadline at which each level is reached."""

    soft: float = 24.0
    hard: float = 36.0
    escalation: float = 48.0

    def __post_init__(self) -> None:
        if not 0 < self.soft < self.hard < self.escalation:
            raise ValueError(
                "Escalation thresholds must be positive and strictly increasing "
                f"(soft={self.soft}, hard={self.hard}, escalation={self.escalation})"
            )


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def load_thresholds() -> EscalationThresholds:
    return EscalationThresholds(
        soft=_float_env("SOFT_ALERT_HOURS", 24.0),
        hard=_float_env("HARD_ALERT_HOURS", 36.0),
        escalation=_float_env("ESCALATION_ALERT_HOURS", 48.0),
    )


THRESHOLDS = load_thresholds()

ESCALATION_MAX_WORKERS = int(os.getenv("ESCALATION_MAX_WORKERS", "4"))
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))
DISPATCH_LEASE_MINUTES = int(os.getenv("DISPATCH_LEASE_MINUTES", "10"))
# beat cadence; a deadline must pass before the last tick of the local day
TICK_INTERVAL_MINUTES = int(os.getenv("TICK_INTERVAL_MINUTES", "15"))

API_URL = os.getenv("API_URL", "http://localhost:8000").rstrip("/")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))


def testing() -> bool:
    return os.getenv("TESTING") == "1"
