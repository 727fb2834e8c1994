"""NotificationSchedule state machine — pure business logic.

    pending --success--> sent
    pending --failure--> pending   (attempts + 1, retried after the delay)
    pending --failure--> failed    (attempts exhausted; may trigger escalation)

Escalation is a side effect of reaching `failed`, not a state of its own.
No I/O: callers persist the returned schedule.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from choreminder.data.models import NotificationRule, NotificationSchedule, ScheduleStatus


class InvalidTransition(RuntimeError):
    """Raised when a transition is applied to a schedule that is not pending."""


@dataclass
class FailureOutcome:
    schedule: NotificationSchedule
    exhausted: bool
    escalate: bool


def _require_pending(schedule: NotificationSchedule) -> None:
    if schedule.status != ScheduleStatus.PENDING:
        raise InvalidTransition(
            f"Notification #{schedule.id} is {schedule.status.value}, expected pending"
        )


def register_success(
    schedule: NotificationSchedule, now: datetime, channel: str | None = None,
) -> NotificationSchedule:
    _require_pending(schedule)
    return replace(
        schedule,
        status=ScheduleStatus.SENT,
        attempts=schedule.attempts + 1,
        last_attempt_at=now,
        last_error=None,
        channel=channel,
    )


def register_failure(
    schedule: NotificationSchedule,
    rule: NotificationRule | None,
    error: str | None,
    now: datetime,
    default_delay_minutes: int = 30,
) -> FailureOutcome:
    """Count a failed attempt; retry later or fail for good.

    The retry delay comes from the rule's escalation config, falling back to
    `default_delay_minutes`. Escalation is requested only when attempts are
    exhausted and the rule enables escalation to parents.
    """
    _require_pending(schedule)
    attempts = min(schedule.attempts + 1, schedule.max_attempts)
    escalation = rule.actions.escalation if rule is not None else None

    if attempts >= schedule.max_attempts:
        failed = replace(
            schedule,
            attempts=attempts,
            status=ScheduleStatus.FAILED,
            last_attempt_at=now,
            last_error=error or "Max attempts reached",
        )
        escalate = bool(escalation and escalation.enabled and escalation.escalate_to_parents)
        return FailureOutcome(schedule=failed, exhausted=True, escalate=escalate)

    delay = escalation.delay_minutes if escalation is not None else default_delay_minutes
    retry = replace(
        schedule,
        attempts=attempts,
        status=ScheduleStatus.PENDING,
        scheduled_at=now + timedelta(minutes=delay),
        last_attempt_at=now,
        last_error=error,
    )
    return FailureOutcome(schedule=retry, exhausted=False, escalate=False)


def abandon(schedule: NotificationSchedule, reason: str, now: datetime) -> NotificationSchedule:
    """Fail a schedule that can never be delivered (rule or recipient gone)."""
    _require_pending(schedule)
    return replace(
        schedule,
        status=ScheduleStatus.FAILED,
        last_attempt_at=now,
        last_error=reason,
    )


def defer(schedule: NotificationSchedule, until: datetime) -> NotificationSchedule:
    """Push a schedule back without consuming an attempt (quiet hours, cooldown, rate limit)."""
    _require_pending(schedule)
    return replace(schedule, scheduled_at=until)
