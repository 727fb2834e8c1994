"""
ChoreMinder — Due Chore Scanner.

Raises the reminder events for open chores: `chore_due_soon` once a chore
enters the look-ahead window, `chore_overdue` once its due time has passed.
Each event is raised at most once per chore; the rule engine turns it into
notifications.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from choreminder.data.models import EventType, LifecycleEvent, TaskStatus

if TYPE_CHECKING:
    from choreminder.core.rule_engine import RuleEngine
    from choreminder.data.db import TaskDB
    from choreminder.data.models import NotificationSchedule, TaskInstance

logger = logging.getLogger(__name__)

OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


def event_for(instance: TaskInstance, now: datetime) -> EventType:
    return EventType.CHORE_OVERDUE if instance.due_at <= now else EventType.CHORE_DUE_SOON


class DueScanner:
    """Turns open chores near or past their due time into lifecycle events."""

    def __init__(
        self,
        task_db: TaskDB,
        rule_engine: RuleEngine,
        clock: Callable[[], datetime] = datetime.now,
        window_hours: int = 24,
    ) -> None:
        self._tasks = task_db
        self._rule_engine = rule_engine
        self._clock = clock
        self._window = timedelta(hours=window_hours)

    def scan(self) -> list[NotificationSchedule]:
        """Raise the events not raised yet; returns the notifications they scheduled.

        A chore already overdue when first seen gets only the overdue event.
        A chore whose events fail to schedule is left unmarked and retried on
        the next scan.
        """
        now = self._clock()
        instances = self._tasks.list_instances(end=now + self._window, statuses=OPEN_STATUSES)

        scheduled: list[NotificationSchedule] = []
        for instance in instances:
            event_type = event_for(instance, now)
            if not self._tasks.claim_task_event(instance.id, event_type.value, now):
                continue
            event = LifecycleEvent(
                type=event_type.value,
                recipient_id=instance.assigned_to,
                household_id=instance.household_id,
                task_id=instance.id,
                due_at=instance.due_at,
                priority=instance.priority,
                category=instance.category,
                points=instance.points,
            )
            try:
                scheduled.extend(self._rule_engine.on_event(event))
            except Exception as exc:
                self._tasks.release_task_event(instance.id, event_type.value)
                logger.error(
                    "Could not raise %s for chore #%d: %s", event_type.value, instance.id, exc,
                )

        if scheduled:
            logger.info("Due scan scheduled %d notifications", len(scheduled))
        return scheduled
