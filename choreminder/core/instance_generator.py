"""
ChoreMinder — Instance Generator.

Materializes concrete task instances from recurring schedules up to a
horizon, idempotently: repeated runs never duplicate an occurrence. Also
owns the schedule lifecycle (create, edit, replace pattern, deactivate),
since every one of those ends in a regeneration.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import date, datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING

from choreminder.core.errors import NotFoundError, require_admin
from choreminder.core.recurrence import next_due_date, occurrences
from choreminder.data.models import Actor, Priority, RecurrencePattern, ScheduledTask, TaskInstance

if TYPE_CHECKING:
    from choreminder.data.db import TaskDB

logger = logging.getLogger(__name__)


class InstanceGenerator:
    """Generates task instances for recurring schedules."""

    def __init__(
        self,
        task_db: TaskDB,
        clock: Callable[[], datetime] = datetime.now,
        extra_holidays: Collection[date] = (),
        initial_horizon_days: int = 30,
    ) -> None:
        self._tasks = task_db
        self._clock = clock
        self._holidays = frozenset(extra_holidays)
        self._initial_horizon = initial_horizon_days

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_upcoming(self, schedule_id: int, horizon_days: int) -> list[TaskInstance]:
        """Create the missing instances of a schedule due within the horizon.

        Safe to call repeatedly. Starts from the schedule's high-water mark
        (or now, if it has never generated) and stops at now + horizon_days.
        Persistence failures roll the whole batch back and propagate; the
        high-water mark is then left untouched.
        """
        if horizon_days < 0:
            raise ValueError(f"horizon_days must be >= 0, got {horizon_days}")

        schedule = self._tasks.get_schedule(schedule_id)
        if schedule is None or not schedule.active:
            logger.info("Schedule #%s missing or inactive, nothing to generate", schedule_id)
            return []

        now = self._clock()
        until = now + timedelta(days=horizon_days)
        start = schedule.last_generated or now
        candidates = list(occurrences(schedule.pattern, start, until, self._holidays))
        if not candidates:
            return []

        created = self._tasks.commit_generation(
            schedule_id,
            candidates,
            partial(next_due_date, schedule.pattern, extra_holidays=self._holidays),
        )
        if created:
            logger.info(
                "Generated %d instances for schedule #%d '%s'",
                len(created), schedule_id, schedule.title,
            )
        return created

    def generate_all(self, horizon_days: int) -> dict[int, int]:
        """Daily job: generate for every active schedule.

        One schedule's failure is logged and does not stop the others.
        Returns {schedule_id: instances created} for the schedules processed.
        """
        results: dict[int, int] = {}
        for schedule in self._tasks.list_schedules(active_only=True):
            try:
                results[schedule.id] = len(self.generate_upcoming(schedule.id, horizon_days))
            except Exception as exc:
                logger.error("Generation failed for schedule #%d: %s", schedule.id, exc)
        logger.info(
            "Generation pass done: %d schedules, %d instances",
            len(results), sum(results.values()),
        )
        return results

    # ------------------------------------------------------------------
    # Schedule lifecycle
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        actor: Actor,
        household_id: str,
        title: str,
        assigned_to: str,
        pattern: RecurrencePattern | dict,
        description: str = "",
        category: str = "general",
        points: int = 0,
        estimated_duration: int = 30,
        priority: Priority = Priority.MEDIUM,
    ) -> ScheduledTask:
        """Create a recurring schedule and generate its first instances.

        Raises:
            AuthorizationError: actor is not an admin of the household.
            pydantic.ValidationError: the pattern is malformed.
            ValueError: a non-positive estimated duration.
        """
        require_admin(actor, household_id)
        if not isinstance(pattern, RecurrencePattern):
            pattern = RecurrencePattern.model_validate(pattern)
        if estimated_duration <= 0:
            raise ValueError(f"estimated_duration must be positive, got {estimated_duration}")

        next_due = next_due_date(pattern, self._clock(), self._holidays)
        schedule = self._tasks.add_schedule(
            household_id=household_id,
            title=title,
            assigned_to=assigned_to,
            pattern=pattern,
            next_due=next_due,
            description=description,
            category=category,
            points=points,
            estimated_duration=estimated_duration,
            priority=Priority(priority),
            created_by=actor.member_id,
        )
        self.generate_upcoming(schedule.id, self._initial_horizon)
        return self._tasks.get_schedule(schedule.id)

    def update_schedule(
        self,
        actor: Actor,
        schedule_id: int,
        pattern: RecurrencePattern | dict | None = None,
        **fields,
    ) -> ScheduledTask:
        """Edit a schedule; a new pattern invalidates future (not past) instances.

        Field edits apply to instances generated from now on.
        """
        schedule = self._get_owned(actor, schedule_id)
        if fields:
            self._tasks.update_schedule_fields(schedule_id, **fields)

        if pattern is not None:
            if not isinstance(pattern, RecurrencePattern):
                pattern = RecurrencePattern.model_validate(pattern)
            now = self._clock()
            self._tasks.replace_pattern(
                schedule_id, pattern, next_due_date(pattern, now, self._holidays), now,
            )
            if schedule.active:
                self.generate_upcoming(schedule_id, self._initial_horizon)

        return self._tasks.get_schedule(schedule_id)

    def deactivate_schedule(self, actor: Actor, schedule_id: int) -> str:
        """Deactivate a schedule that has instances, delete one that has none."""
        self._get_owned(actor, schedule_id)
        return self._tasks.deactivate_schedule(schedule_id, self._clock())

    def _get_owned(self, actor: Actor, schedule_id: int) -> ScheduledTask:
        schedule = self._tasks.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        require_admin(actor, schedule.household_id)
        return schedule
