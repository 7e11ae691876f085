import uuid
import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    SmallInteger,
    Text,
    Float,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .database import Base

# Ordered by rank: index in this tuple is the level's rank.
ALERT_LEVELS = ("reminder", "soft", "hard", "escalation")
OPEN_ALERT_STATUSES = ("pending", "sent", "acknowledged")
RESOLUTION_REASONS = ("checked_in", "contacted", "safe_confirmed", "false_alarm", "other")

_OPEN_STATUS_SQL = "status IN ('pending', 'sent', 'acknowledged')"


def _utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    phone_number = Column(String(20), unique=True, nullable=True)
    is_checker = Column(Boolean, default=True, nullable=False)
    last_known_latitude = Column(Float, nullable=True)
    last_known_longitude = Column(Float, nullable=True)
    last_known_address = Column(Text, nullable=True)
    last_known_location_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    schedules = relationship("Schedule", back_populates="user")
    push_tokens = relationship(
        "PushToken", back_populates="user", cascade="all, delete-orphan"
    )


class Schedule(Base):
    __tablename__ = "schedules"
    __table_args__ = (
        sa.Index(
            "uq_schedules_one_active_per_user",
            "user_id",
            unique=True,
            sqlite_where=sa.text("is_active = 1"),
            postgresql_where=sa.text("is_active"),
        ),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    window_start_hour = Column(SmallInteger, nullable=False, default=7)
    window_start_minute = Column(SmallInteger, nullable=False, default=0)
    window_end_hour = Column(SmallInteger, nullable=False, default=10)
    window_end_minute = Column(SmallInteger, nullable=False, default=0)
    timezone_identifier = Column(String(50), nullable=False, default="UTC")
    active_days = Column(JSON, nullable=False, default=lambda: [0, 1, 2, 3, 4, 5, 6])  # 0=Sun..6=Sat
    grace_period_minutes = Column(SmallInteger, nullable=False, default=30)
    reminder_enabled = Column(Boolean, nullable=False, default=True)
    reminder_minutes_before = Column(SmallInteger, nullable=False, default=30)
    last_reminded_on = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    user = relationship("User", back_populates="schedules")


class CheckIn(Base):
    __tablename__ = "checkins"
    __table_args__ = (sa.Index("ix_checkins_user_timestamp", "user_id", "timestamp"),)
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    mental_score = Column(SmallInteger, nullable=False)
    body_score = Column(SmallInteger, nullable=False)
    mood_score = Column(SmallInteger, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_name = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    selfie_url = Column(Text, nullable=True)
    selfie_expires_at = Column(DateTime(timezone=True), nullable=True)
    is_manual = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    @property
    def average_score(self) -> float:
        return (self.mental_score + self.body_score + self.mood_score) / 3


class CircleLink(Base):
    __tablename__ = "circle_links"
    __table_args__ = (sa.UniqueConstraint("checker_id", "supporter_id"),)
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checker_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    supporter_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    supporter_display_name = Column(String(100), nullable=True)
    # contact details for supporters who do not use the app
    supporter_phone = Column(String(20), nullable=True)
    supporter_email = Column(String(255), nullable=True)
    can_see_mood = Column(Boolean, nullable=False, default=True)
    can_see_location = Column(Boolean, nullable=False, default=False)
    can_see_selfie = Column(Boolean, nullable=False, default=False)
    can_poke = Column(Boolean, nullable=False, default=True)
    alert_priority = Column(SmallInteger, nullable=False, default=1)  # 1 = primary contact
    alert_via_push = Column(Boolean, nullable=False, default=True)
    alert_via_sms = Column(Boolean, nullable=False, default=False)
    alert_via_email = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    invited_at = Column(DateTime(timezone=True), default=_utcnow)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    checker = relationship("User", foreign_keys=[checker_id])
    supporter = relationship("User", foreign_keys=[supporter_id])

    @property
    def supporter_key(self) -> str:
        """Identifier recorded in notified_supporter_ids."""
        return str(self.supporter_id or self.id)

    @property
    def contact_email(self) -> str | None:
        if self.supporter is not None and self.supporter.email:
            return self.supporter.email
        return self.supporter_email

    @property
    def contact_phone(self) -> str | None:
        if self.supporter is not None and self.supporter.phone_number:
            return self.supporter.phone_number
        return self.supporter_phone

    @property
    def display_name(self) -> str:
        if self.supporter_display_name:
            return self.supporter_display_name
        if self.supporter is not None:
            return self.supporter.name
        return "Someone"


class AlertEvent(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        sa.Index(
            "uq_alerts_open_per_checker_day",
            "checker_id",
            "alert_day",
            unique=True,
            sqlite_where=sa.text(_OPEN_STATUS_SQL),
            postgresql_where=sa.text(_OPEN_STATUS_SQL),
        ),
        sa.Index("ix_alerts_checker_status", "checker_id", "status"),
    )
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checker_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    checker_name = Column(String(100), nullable=False)
    level = Column(String(20), nullable=False, default="reminder")
    status = Column(String(20), nullable=False, default="pending")
    alert_day = Column(Date, nullable=False)  # checker-local calendar day
    triggered_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    missed_window_at = Column(DateTime(timezone=True), nullable=False)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    last_checkin_at = Column(DateTime(timezone=True), nullable=True)
    last_known_location = Column(String(255), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    acknowledged_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    resolution = Column(String(50), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    notified_supporter_ids = Column(JSON, nullable=False, default=list)
    # fan-out bookkeeping: last level whose dispatch completed, and the lease on the current one
    notified_level = Column(String(20), nullable=True)
    dispatch_claimed_at = Column(DateTime(timezone=True), nullable=True)

    deliveries = relationship(
        "AlertDelivery", back_populates="alert", order_by="AlertDelivery.created_at"
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ALERT_STATUSES and self.resolved_at is None


class AlertDelivery(Base):
    __tablename__ = "alert_deliveries"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    alert_id = Column(UUID(as_uuid=True), ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False, index=True)
    level = Column(String(20), nullable=False)
    channel = Column(String(10), nullable=False)  # push, sms, email, voice
    supporter_key = Column(String(64), nullable=True)  # null for checker-directed pushes
    recipient = Column(String(255), nullable=True)
    outcome = Column(String(10), nullable=False)  # sent, failed, skipped
    provider_id = Column(String(128), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    alert = relationship("AlertEvent", back_populates="deliveries")


class PushToken(Base):
    __tablename__ = "push_tokens"
    __table_args__ = (sa.UniqueConstraint("user_id", "token"),)
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(Text, nullable=False)
    platform = Column(String(10), nullable=False)
    device_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="push_tokens")


class CallLog(Base):
    __tablename__ = "call_logs"
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    alert_id = Column(UUID(as_uuid=True), ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False, index=True)
    supporter_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    call_sid = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), nullable=False)
    duration_seconds = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class Poke(Base):
    """A supporter's nudge asking a checker to check in."""

    __tablename__ = "pokes"
    __table_args__ = (sa.Index("ix_pokes_to_user_sent", "to_user_id", "sent_at"),)
    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    to_user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), default=_utcnow)
    seen_at = Column(DateTime(timezone=True), nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    sender = relationship("User", foreign_keys=[from_user_id])

    @property
    def from_name(self) -> str | None:
        return self.sender.name if self.sender is not None else None
