from datetime import date, datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from . import config
from .services.schedule_eval import is_valid_zone, latest_deadline_minutes

AlertLevel = Literal["reminder", "soft", "hard", "escalation"]
ResolutionReason = Literal["checked_in", "contacted", "safe_confirmed", "false_alarm", "other"]


class UserOut(BaseModel):
    id: UUID
    name: str
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    is_checker: bool = True
    model_config = ConfigDict(from_attributes=True)


class CheckInCreate(BaseModel):
    mental_score: int = Field(ge=1, le=5)
    body_score: int = Field(ge=1, le=5)
    mood_score: int = Field(ge=1, le=5)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    location_name: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    is_manual: bool = True


class CheckInOut(BaseModel):
    id: UUID
    user_id: UUID
    timestamp: datetime
    mental_score: int
    body_score: int
    mood_score: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_name: Optional[str] = None
    address: Optional[str] = None
    is_manual: bool = True
    model_config = ConfigDict(from_attributes=True)


class CheckInResult(BaseModel):
    checkin: CheckInOut
    resolved_alert_ids: List[UUID] = []


class ScheduleIn(BaseModel):
    window_start_hour: int = Field(7, ge=0, le=23)
    window_start_minute: int = Field(0, ge=0, le=59)
    window_end_hour: int = Field(10, ge=0, le=23)
    window_end_minute: int = Field(0, ge=0, le=59)
    timezone_identifier: str = "UTC"
    active_days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])
    grace_period_minutes: int = Field(30, ge=0, le=240)
    reminder_enabled: bool = True
    reminder_minutes_before: int = Field(30, ge=0, le=240)

    @field_validator("timezone_identifier")
    @classmethod
    def known_zone(cls, value: str) -> str:
        if not is_valid_zone(value):
            raise ValueError(f"Unknown timezone {value!r}")
        return value

    @field_validator("active_days")
    @classmethod
    def weekday_indexes(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("At least one active day is required")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("Active days are 0 (Sunday) to 6 (Saturday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def window_order(self):
        start = self.window_start_hour * 60 + self.window_start_minute
        end = self.window_end_hour * 60 + self.window_end_minute
        if end <= start:
            raise ValueError("Window end must be after window start")
        # missed deadlines are detected on the schedule's own local day
        latest = latest_deadline_minutes(config.TICK_INTERVAL_MINUTES)
        if end + self.grace_period_minutes > latest:
            raise ValueError(
                f"Window end plus grace period must be no later than {latest // 60:02d}:{latest % 60:02d}"
            )
        return self


class ScheduleOut(ScheduleIn):
    id: UUID
    user_id: UUID
    is_active: bool
    last_reminded_on: Optional[date] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

    @field_validator("timezone_identifier")
    @classmethod
    def known_zone(cls, value: str) -> str:
        return value

    @model_validator(mode="after")
    def window_order(self):
        return self


class PushTokenIn(BaseModel):
    token: str = Field(min_length=1)
    platform: Literal["ios", "android"] = "ios"
    device_id: Optional[str] = Field(None, max_length=100)


class PushTokenDelete(BaseModel):
    token: str


class CircleMemberCreate(BaseModel):
    supporter_id: Optional[UUID] = None
    supporter_display_name: Optional[str] = Field(None, max_length=100)
    supporter_phone: Optional[str] = Field(None, max_length=20)
    supporter_email: Optional[EmailStr] = None
    can_see_mood: bool = True
    can_see_location: bool = False
    can_see_selfie: bool = False
    can_poke: bool = True
    alert_priority: int = Field(1, ge=1, le=10)
    alert_via_push: bool = True
    alert_via_sms: bool = False
    alert_via_email: bool = False

    @model_validator(mode="after")
    def has_contact(self):
        if not (self.supporter_id or self.supporter_phone or self.supporter_email):
            raise ValueError("A supporter needs an account, a phone number or an email address")
        return self


class CircleMemberUpdate(BaseModel):
    supporter_display_name: Optional[str] = Field(None, max_length=100)
    supporter_phone: Optional[str] = Field(None, max_length=20)
    supporter_email: Optional[EmailStr] = None
    can_see_mood: Optional[bool] = None
    can_see_location: Optional[bool] = None
    can_see_selfie: Optional[bool] = None
    can_poke: Optional[bool] = None
    alert_priority: Optional[int] = Field(None, ge=1, le=10)
    alert_via_push: Optional[bool] = None
    alert_via_sms: Optional[bool] = None
    alert_via_email: Optional[bool] = None


class CircleLinkOut(BaseModel):
    id: UUID
    checker_id: UUID
    supporter_id: Optional[UUID] = None
    supporter_display_name: Optional[str] = None
    supporter_phone: Optional[str] = None
    supporter_email: Optional[str] = None
    can_see_mood: bool
    can_see_location: bool
    can_see_selfie: bool
    can_poke: bool
    alert_priority: int
    alert_via_push: bool
    alert_via_sms: bool
    alert_via_email: bool
    is_active: bool
    invited_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class AlertOut(BaseModel):
    id: UUID
    checker_id: UUID
    checker_name: str
    level: AlertLevel
    status: str
    alert_day: date
    triggered_at: datetime
    missed_window_at: datetime
    escalated_at: Optional[datetime] = None
    last_checkin_at: Optional[datetime] = None
    last_known_location: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[UUID] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UUID] = None
    resolution: Optional[str] = None
    resolution_notes: Optional[str] = None
    notified_supporter_ids: List[str] = []
    model_config = ConfigDict(from_attributes=True)


class AlertDeliveryOut(BaseModel):
    id: UUID
    level: str
    channel: str
    supporter_key: Optional[str] = None
    outcome: str
    provider_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class AlertDetailOut(AlertOut):
    deliveries: List[AlertDeliveryOut] = []


class AlertResolveIn(BaseModel):
    resolution: ResolutionReason
    notes: Optional[str] = Field(None, max_length=500)


class AlertTriggerIn(BaseModel):
    level: AlertLevel = "soft"


class PokeCreate(BaseModel):
    to_user_id: UUID
    message: Optional[str] = Field(None, max_length=500)


class PokeOut(BaseModel):
    id: UUID
    from_user_id: UUID
    to_user_id: UUID
    from_name: Optional[str] = None
    message: Optional[str] = None
    sent_at: datetime
    seen_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class UnseenPokes(BaseModel):
    count: int
