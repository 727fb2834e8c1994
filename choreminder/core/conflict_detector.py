"""
ChoreMinder — Workload Conflict Detector.

Flags days on which a household member has too much to do, and proposes
moving tasks from overloaded members to underloaded ones.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING

from choreminder.data.models import MemberRole, TaskInstance, TaskStatus

if TYPE_CHECKING:
    from choreminder.data.db import MemberDB, TaskDB

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 30
MAX_DAILY_MINUTES = 180
MAX_DAILY_TASKS = 5
HIGH_WORKLOAD_MINUTES = 240
OVERLOAD_FACTOR = 1.5
UNDERLOAD_FACTOR = 0.5

_OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


@dataclass
class DayConflict:
    """One overloaded day for one person."""

    day: date
    instances: list[TaskInstance]
    total_duration: int
    recommendation: str


@dataclass
class MemberWorkload:
    member_id: str
    name: str
    instances: list[TaskInstance] = field(default_factory=list)
    total_duration: int = 0


@dataclass
class Redistribution:
    """A suggested reassignment of one task."""

    instance_id: int
    title: str
    current_assignee: str
    suggested_assignee: str
    reason: str


@dataclass
class HouseholdOptimization:
    day: date
    workloads: list[MemberWorkload]
    overloaded: list[str] = field(default_factory=list)
    underloaded: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    redistributions: list[Redistribution] = field(default_factory=list)


@dataclass
class HouseholdSchedule:
    instances: list[TaskInstance]
    conflicts: dict[str, list[DayConflict]]
    recommendations: list[str]


def duration_of(instance: TaskInstance) -> int:
    return instance.estimated_duration or DEFAULT_DURATION_MINUTES


def conflict_recommendation(count: int, total_duration: int) -> str:
    if total_duration > HIGH_WORKLOAD_MINUTES:
        return (
            f"High workload day ({round(total_duration / 60)}h total). "
            "Consider spreading some chores to other days."
        )
    if count > MAX_DAILY_TASKS:
        return (
            f"Many tasks scheduled ({count} chores). "
            "Group similar tasks together for efficiency."
        )
    return "Manageable workload, but monitor for stress levels."


def detect_day_conflicts(instances: list[TaskInstance]) -> list[DayConflict]:
    """Group open instances by calendar day and flag the overloaded days."""
    by_day: dict[date, list[TaskInstance]] = defaultdict(list)
    for inst in instances:
        if inst.status in _OPEN_STATUSES:
            by_day[inst.due_at.date()].append(inst)

    conflicts: list[DayConflict] = []
    for day in sorted(by_day):
        day_instances = by_day[day]
        total = sum(duration_of(i) for i in day_instances)
        if total > MAX_DAILY_MINUTES or len(day_instances) > MAX_DAILY_TASKS:
            conflicts.append(DayConflict(
                day=day,
                instances=day_instances,
                total_duration=total,
                recommendation=conflict_recommendation(len(day_instances), total),
            ))
    return conflicts


def balance_workloads(day: date, workloads: list[MemberWorkload]) -> HouseholdOptimization:
    """Flag overloaded/underloaded members against the household average.

    Each overloaded member's shortest task is proposed for the currently
    least-loaded underloaded member.
    """
    result = HouseholdOptimization(day=day, workloads=workloads)
    if not workloads:
        return result

    average = sum(w.total_duration for w in workloads) / len(workloads)
    overloaded = [w for w in workloads if w.total_duration > average * OVERLOAD_FACTOR]
    underloaded = [w for w in workloads if w.total_duration < average * UNDERLOAD_FACTOR]
    result.overloaded = [w.member_id for w in overloaded]
    result.underloaded = [w.member_id for w in underloaded]

    if overloaded and underloaded:
        result.recommendations.append(
            "Consider redistributing chores to balance workload across family members."
        )
        # Projected totals so two overloaded members don't both land on one target
        projected = {w.member_id: w.total_duration for w in underloaded}
        for member in sorted(overloaded, key=lambda w: w.total_duration, reverse=True):
            shortest = min(member.instances, key=lambda i: (duration_of(i), i.id))
            target = min(underloaded, key=lambda w: (projected[w.member_id], w.name))
            result.redistributions.append(Redistribution(
                instance_id=shortest.id,
                title=shortest.title,
                current_assignee=member.member_id,
                suggested_assignee=target.member_id,
                reason=(
                    f"Balance workload: {member.name} has {member.total_duration} min, "
                    f"{target.name} has {target.total_duration} min"
                ),
            ))
            projected[target.member_id] += duration_of(shortest)

    if any(w.total_duration > HIGH_WORKLOAD_MINUTES for w in workloads):
        result.recommendations.append(
            "Some family members have over 4 hours of chores scheduled. "
            "Consider spreading tasks across multiple days."
        )
    if all(not w.instances for w in workloads):
        result.recommendations.append(
            "No chores scheduled for this day. Great job staying on top of tasks!"
        )
    return result


class ConflictDetector:
    """Workload analysis over the task store."""

    def __init__(self, task_db: TaskDB, member_db: MemberDB) -> None:
        self._tasks = task_db
        self._members = member_db

    def find_conflicts(
        self, person_id: str, start: datetime, end: datetime,
    ) -> list[DayConflict]:
        """Return the overloaded days of a person between start and end (inclusive).

        Raises:
            ValueError: end is before start.
        """
        if end < start:
            raise ValueError(f"Invalid range: {end} is before {start}")
        instances = self._tasks.list_instances(
            assigned_to=person_id, start=start, end=end, statuses=_OPEN_STATUSES,
        )
        conflicts = detect_day_conflicts(instances)
        if conflicts:
            logger.info(
                "%d overloaded days for %s between %s and %s",
                len(conflicts), person_id, start.date(), end.date(),
            )
        return conflicts

    def optimize_household(self, household_id: str, day: date) -> HouseholdOptimization:
        """Compute per-child workload for one day and suggest reassignments."""
        day_start = datetime.combine(day, time.min)
        day_end = datetime.combine(day, time.max)

        members = self._members.list_members(household_id, role=MemberRole.CHILD)
        workloads = {m.id: MemberWorkload(member_id=m.id, name=m.name) for m in members}

        instances = self._tasks.list_instances(
            household_id=household_id, start=day_start, end=day_end, statuses=_OPEN_STATUSES,
        )
        for inst in instances:
            workload = workloads.get(inst.assigned_to)
            if workload is None:
                continue
            workload.instances.append(inst)
            workload.total_duration += duration_of(inst)

        return balance_workloads(day, list(workloads.values()))

    def household_schedule(
        self, household_id: str, start: datetime, end: datetime,
    ) -> HouseholdSchedule:
        """Instances in range, every child's conflicts, and the first day's advice."""
        if end < start:
            raise ValueError(f"Invalid range: {end} is before {start}")
        instances = [
            i for i in self._tasks.list_instances(household_id=household_id, start=start, end=end)
            if i.status != TaskStatus.CANCELLED
        ]
        conflicts = {
            m.id: self.find_conflicts(m.id, start, end)
            for m in self._members.list_members(household_id, role=MemberRole.CHILD)
        }
        optimization = self.optimize_household(household_id, start.date())
        return HouseholdSchedule(
            instances=instances,
            conflicts={k: v for k, v in conflicts.items() if v},
            recommendations=optimization.recommendations,
        )


def week_range(start: date, days: int = 7) -> tuple[datetime, datetime]:
    """Convenience range from the start of `start` through the end of the last day."""
    return (
        datetime.combine(start, time.min),
        datetime.combine(start + timedelta(days=days - 1), time.max),
    )
