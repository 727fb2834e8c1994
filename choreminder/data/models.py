"""
ChoreMinder — Data Models.

Plain dataclasses for the records the stores hand back, and pydantic models
for the two admin-authored documents (recurrence patterns and notification
rules) whose validation must reject malformed input at creation time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RecurrenceKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    CANCELLED = "cancelled"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventType(str, Enum):
    CHORE_ASSIGNED = "chore_assigned"
    CHORE_DUE_SOON = "chore_due_soon"
    CHORE_OVERDUE = "chore_overdue"
    CHORE_COMPLETED = "chore_completed"
    CHORE_APPROVED = "chore_approved"
    STREAK_MILESTONE = "streak_milestone"
    POINTS_MILESTONE = "points_milestone"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"
    EMAIL = "email"
    TELEGRAM = "telegram"


class MemberRole(str, Enum):
    PARENT = "parent"
    CHILD = "child"


LAST_WEEK = -1  # week_of_month value meaning "last occurrence in the month"


# ---------------------------------------------------------------------------
# Recurrence pattern
# ---------------------------------------------------------------------------


class RecurrencePattern(BaseModel):
    """Cron-like rule a ScheduledTask repeats by.

    Weekdays use Sunday=0 .. Saturday=6. Immutable: replacing the pattern of
    a schedule is the only way to change it.

    JSON example:
    {
        "kind": "weekly",
        "interval": 1,
        "days_of_week": [1, 4]
    }
    """

    model_config = ConfigDict(frozen=True)

    kind: RecurrenceKind
    interval: int = Field(default=1, ge=1)
    days_of_week: tuple[int, ...] | None = None
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    week_of_month: int | None = None
    end_date: date | None = None
    max_occurrences: int | None = Field(default=None, ge=1)
    skip_holidays: bool = False

    @field_validator("days_of_week")
    @classmethod
    def _check_weekdays(cls, v: tuple[int, ...] | None) -> tuple[int, ...] | None:
        if v is None:
            return None
        if not v:
            raise ValueError("days_of_week must not be empty when given")
        bad = [d for d in v if not 0 <= d <= 6]
        if bad:
            raise ValueError(f"days_of_week out of range 0..6: {bad}")
        return tuple(sorted(set(v)))

    @field_validator("week_of_month")
    @classmethod
    def _check_week_of_month(cls, v: int | None) -> int | None:
        if v is not None and v != LAST_WEEK and not 1 <= v <= 4:
            raise ValueError(f"week_of_month must be 1..4 or -1 (last), got {v}")
        return v

    @model_validator(mode="after")
    def _check_monthly_fields(self) -> RecurrencePattern:
        if self.week_of_month is not None:
            if self.kind != RecurrenceKind.MONTHLY:
                raise ValueError("week_of_month only applies to monthly patterns")
            if self.day_of_month is not None:
                raise ValueError("day_of_month and week_of_month are mutually exclusive")
            if not self.days_of_week or len(self.days_of_week) != 1:
                raise ValueError("week_of_month requires exactly one weekday")
        if self.day_of_month is not None and self.kind != RecurrenceKind.MONTHLY:
            raise ValueError("day_of_month only applies to monthly patterns")
        return self


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass
class ScheduledTask:
    """A recurring task template owned by a household."""

    id: int
    household_id: str
    title: str
    assigned_to: str                  # household member id
    pattern: RecurrencePattern
    next_due: datetime
    description: str = ""
    category: str = "general"
    points: int = 0
    estimated_duration: int = 30      # minutes
    priority: Priority = Priority.MEDIUM
    created_by: str = ""
    last_generated: datetime | None = None  # high-water mark for generation
    active: bool = field(default=True)
    created_at: str = ""


@dataclass
class TaskInstance:
    """One concrete, dated occurrence of a task."""

    id: int
    household_id: str
    title: str
    assigned_to: str
    due_at: datetime
    schedule_id: int | None = None    # None for one-off tasks
    category: str = "general"
    points: int = 0
    priority: Priority = Priority.MEDIUM
    estimated_duration: int | None = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: str = ""


# ---------------------------------------------------------------------------
# Household
# ---------------------------------------------------------------------------


@dataclass
class HouseholdMember:
    """A household member: a message recipient and a task assignee."""

    id: str
    household_id: str
    name: str
    role: MemberRole = MemberRole.CHILD
    quiet_hours_start: str | None = None   # "HH:MM"
    quiet_hours_end: str | None = None     # "HH:MM"
    telegram_chat_id: int | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == MemberRole.PARENT


@dataclass
class Actor:
    """Verified caller identity supplied by the authentication layer."""

    member_id: str
    household_id: str
    is_admin: bool = False


# ---------------------------------------------------------------------------
# Notification rules
# ---------------------------------------------------------------------------


def _check_hhmm(v: str) -> str:
    """Normalize an "H:MM" / "HH:MM" string, raising ValueError when malformed."""
    try:
        hour, minute = (int(p) for p in v.split(":"))
    except ValueError:
        raise ValueError(f"expected HH:MM, got {v!r}") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"expected HH:MM, got {v!r}")
    return f"{hour:02d}:{minute:02d}"


class QuietHours(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return _check_hhmm(v)


class TriggerConditions(BaseModel):
    time_offset: int = 0                   # minutes; negative = before due date
    priorities: list[Priority] | None = None
    categories: list[str] | None = None
    recipients: list[str] | None = None
    min_streak: int | None = None
    min_points: int | None = None


class Trigger(BaseModel):
    event: EventType
    conditions: TriggerConditions = Field(default_factory=TriggerConditions)


class EscalationConfig(BaseModel):
    enabled: bool = False
    delay_minutes: int = Field(default=30, ge=1)
    escalate_to_parents: bool = False
    max_attempts: int = Field(default=3, ge=1)


class RuleActions(BaseModel):
    channels: list[Channel] = Field(min_length=1)
    template: str = ""
    priority: Priority = Priority.MEDIUM
    escalation: EscalationConfig | None = None


class SchedulingConstraints(BaseModel):
    respect_quiet_hours: bool = True
    quiet_hours: QuietHours | None = None  # overrides the recipient's own window
    max_per_hour: int = Field(default=5, ge=1)
    cooldown_minutes: int = Field(default=0, ge=0)
    days_of_week: list[int] | None = None  # 0=Sunday

    @field_validator("days_of_week")
    @classmethod
    def _check_weekdays(cls, v: list[int] | None) -> list[int] | None:
        if v is None:
            return None
        if not v or any(not 0 <= d <= 6 for d in v):
            raise ValueError(f"days_of_week must be a non-empty subset of 0..6, got {v}")
        return sorted(set(v))


class NotificationRule(BaseModel):
    """A household's delivery rule for one lifecycle event type."""

    id: int | None = None
    household_id: str
    name: str
    description: str = ""
    trigger: Trigger
    actions: RuleActions
    scheduling: SchedulingConstraints = Field(default_factory=SchedulingConstraints)
    active: bool = True
    created_by: str = "system"


# ---------------------------------------------------------------------------
# Notification schedules and events
# ---------------------------------------------------------------------------


@dataclass
class NotificationSchedule:
    """A pending (or finished) delivery instantiated from a rule."""

    id: int
    rule_id: int
    recipient_id: str
    household_id: str
    scheduled_at: datetime
    max_attempts: int
    task_id: int | None = None
    attempts: int = 0
    status: ScheduleStatus = ScheduleStatus.PENDING
    escalation_level: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    channel: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str = ""


@dataclass
class LifecycleEvent:
    """A task lifecycle event raised by the surrounding application."""

    type: str
    recipient_id: str
    household_id: str
    task_id: int | None = None
    due_at: datetime | None = None
    priority: Priority | None = None
    category: str | None = None
    streak: int | None = None
    points: int | None = None
    data: dict = field(default_factory=dict)
