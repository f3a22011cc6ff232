from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from .config import DEFAULT_TIMEZONE

ALL_DAYS = [0, 1, 2, 3, 4, 5, 6]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes coming from clients or storage are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_days(days: List[int]) -> List[int]:
    for day in days:
        if not 0 <= day <= 6:
            raise ValueError("days_of_week values must be between 0 (Sunday) and 6 (Saturday)")
    return sorted(set(days))


def _check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name}")
    return name


class Channel(str, Enum):
    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class Frequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


# ============== USER / HABIT MODELS ==============

class UserCreate(BaseModel):
    email: EmailStr
    password: str
    name: str

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    created_at: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class HabitCreate(BaseModel):
    name: str
    category: str  # Health, Study, Work, Fitness, Personal
    color: str = "#6366F1"

class HabitResponse(BaseModel):
    id: str
    user_id: str
    name: str
    category: str
    color: str
    is_active: bool
    created_at: str


# ============== REMINDER MODELS ==============

class TimeOfDay(BaseModel):
    hour: int = Field(..., ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)


class NotificationSettings(BaseModel):
    sound: bool = True
    vibration: bool = True
    badge: bool = True


class Reminder(BaseModel):
    """A stored reminder document and everything the scheduler needs from it."""

    id: str
    user_id: str
    habit_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=100)
    message: Optional[str] = Field(None, max_length=500)
    channel: Channel = Channel.IN_APP
    frequency: Frequency = Frequency.DAILY
    days_of_week: List[int] = Field(default_factory=list)
    time_of_day: TimeOfDay
    start_date: datetime = Field(default_factory=utcnow)
    end_date: Optional[datetime] = None
    is_active: bool = True
    last_fired_at: Optional[datetime] = None
    timezone: str = DEFAULT_TIMEZONE
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("title", "message", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("days_of_week")
    @classmethod
    def _days(cls, value: List[int]) -> List[int]:
        return _check_days(value)

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, value: str) -> str:
        return _check_timezone(value)

    @field_validator("start_date", "end_date", "last_fired_at", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def _window(self):
        if self.end_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.frequency == Frequency.WEEKLY and not self.days_of_week:
            self.days_of_week = list(ALL_DAYS)
        return self

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ReminderCreate(BaseModel):
    habit_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=100)
    message: Optional[str] = Field(None, max_length=500)
    channel: Channel = Channel.IN_APP
    frequency: Frequency = Frequency.DAILY
    days_of_week: List[int] = Field(default_factory=list)
    time_of_day: TimeOfDay
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    timezone: str = DEFAULT_TIMEZONE
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", "message", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("days_of_week")
    @classmethod
    def _days(cls, value: List[int]) -> List[int]:
        return _check_days(value)

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, value: str) -> str:
        return _check_timezone(value)


class ReminderUpdate(BaseModel):
    """Partial update; user_id and habit_id are not updatable."""

    title: Optional[str] = Field(None, min_length=1, max_length=100)
    message: Optional[str] = Field(None, max_length=500)
    channel: Optional[Channel] = None
    frequency: Optional[Frequency] = None
    days_of_week: Optional[List[int]] = None
    time_of_day: Optional[TimeOfDay] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    timezone: Optional[str] = None
    notification_settings: Optional[NotificationSettings] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("title", "message", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("days_of_week")
    @classmethod
    def _days(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        return None if value is None else _check_days(value)

    @field_validator("timezone")
    @classmethod
    def _timezone(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_timezone(value)


class ReminderResponse(Reminder):
    next_send_time: Optional[datetime] = None
    is_scheduled: bool = False


class TimeUntil(BaseModel):
    hours: int
    minutes: int


class UpcomingReminderResponse(ReminderResponse):
    time_until: TimeUntil
    is_today: bool


class SendOutcome(BaseModel):
    delivered: bool
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class ReminderTestResponse(BaseModel):
    channel: Channel
    sent_at: datetime
    delivered: bool
    error: Optional[str] = None


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    reminder_id: str
    title: str
    message: str
    channel: Channel
    priority: str
    is_test: bool
    habit_id: Optional[str] = None
    settings: NotificationSettings
    created_at: str
