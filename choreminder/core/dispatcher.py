"""
ChoreMinder — Notification Dispatcher and Escalator.

One sweep claims every pending notification that is due, delivers each
through the messaging port, and applies the delivery state machine:
retry after the rule's delay, fail once attempts are exhausted, and then
alert the household's parents when the rule asks for it.

Schedules are processed concurrently; schedules for the same recipient are
serialized so the live cooldown and rate-limit checks stay consistent. One
schedule's failure never stops the others.

Nothing goes out inside the recipient's quiet hours: a due schedule caught
in the window, and any retry or deferral that would land in it, is pushed to
the window's end.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from choreminder.core.delivery_state import abandon, defer, register_failure, register_success
from choreminder.core.messages import message_type_for_event
from choreminder.core.rule_engine import quiet_window
from choreminder.core.send_window import hour_slot, resolve_send_time
from choreminder.data.models import MemberRole, Priority
from choreminder.ports.messaging_port import SendResult

if TYPE_CHECKING:
    from choreminder.data.db import MemberDB, NotificationDB, RuleDB, TaskDB
    from choreminder.data.models import HouseholdMember, NotificationRule, NotificationSchedule
    from choreminder.ports.messaging_port import MessagingPort

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts for one sweep pass."""

    claimed: int = 0
    sent: int = 0
    retried: int = 0
    deferred: int = 0
    failed: int = 0
    escalated: int = 0
    skipped: int = 0
    errors: int = 0


def _task_context(task_db: TaskDB | None, task_id: int | None) -> dict:
    if task_db is None or task_id is None:
        return {}
    instance = task_db.get_instance(task_id)
    if instance is None:
        return {}
    return {
        "id": instance.id,
        "title": instance.title,
        "due_at": instance.due_at.isoformat(),
        "points": instance.points,
        "status": instance.status.value,
    }


class Escalator:
    """Alerts a household's parents about a notification that could not be delivered."""

    def __init__(
        self,
        notification_db: NotificationDB,
        member_db: MemberDB,
        messenger: MessagingPort,
        task_db: TaskDB | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._notifications = notification_db
        self._members = member_db
        self._messenger = messenger
        self._tasks = task_db
        self._clock = clock

    async def escalate(self, schedule: NotificationSchedule, rule: NotificationRule) -> int:
        """Send one high-priority alert to each parent; at most once per schedule.

        Returns the number of parents successfully alerted.
        """
        if not self._notifications.mark_escalated(schedule.id, self._clock()):
            logger.info("Notification #%d already escalated, skipping", schedule.id)
            return 0

        child = self._members.get_member(schedule.recipient_id)
        parents = [
            p for p in self._members.list_members(schedule.household_id, role=MemberRole.PARENT)
            if p.id != schedule.recipient_id
        ]
        if not parents:
            logger.warning("Notification #%d failed but household %s has no parents to alert",
                           schedule.id, schedule.household_id)
            return 0

        child_name = child.name if child is not None else schedule.recipient_id
        task = _task_context(self._tasks, schedule.task_id)
        results = await asyncio.gather(
            *(self._alert(parent, schedule, rule, child_name, task) for parent in parents)
        )
        alerted = sum(results)
        logger.info(
            "Escalated notification #%d to %d/%d parents", schedule.id, alerted, len(parents),
        )
        return alerted

    async def _alert(
        self,
        parent: HouseholdMember,
        schedule: NotificationSchedule,
        rule: NotificationRule,
        child_name: str,
        task: dict,
    ) -> bool:
        context = {
            "recipient_name": parent.name,
            "child_name": child_name,
            "task": task,
            "reason": (
                f"a {schedule.metadata.get('trigger', 'chore')} notification could not be "
                f"delivered after {schedule.attempts} attempts"
            ),
            "original_schedule_id": schedule.id,
            "last_error": schedule.last_error,
        }
        channels = rule.actions.channels
        try:
            result = await self._messenger.send(
                parent.id,
                "escalation",
                Priority.HIGH,
                context,
                preferred_channel=channels[0],
                bypass_quiet_hours=False,
                fallback_channels=channels[1:],
            )
        except Exception as exc:
            result = SendResult(success=False, error=str(exc) or exc.__class__.__name__)

        self._notifications.record_escalation(
            schedule.id, parent.id, result.success, result.error,
        )
        if not result.success:
            logger.error(
                "Escalation of #%d to parent %s failed: %s", schedule.id, parent.id, result.error,
            )
        return result.success


class Dispatcher:
    """Periodic sweep over due notification schedules."""

    def __init__(
        self,
        notification_db: NotificationDB,
        rule_db: RuleDB,
        member_db: MemberDB,
        messenger: MessagingPort,
        task_db: TaskDB | None = None,
        escalator: Escalator | None = None,
        clock: Callable[[], datetime] = datetime.now,
        default_retry_delay_minutes: int = 30,
        claim_timeout_minutes: int = 10,
    ) -> None:
        self._notifications = notification_db
        self._rules = rule_db
        self._members = member_db
        self._messenger = messenger
        self._tasks = task_db
        self._clock = clock
        self._retry_delay = default_retry_delay_minutes
        self._claim_timeout = timedelta(minutes=claim_timeout_minutes)
        self._escalator = escalator or Escalator(
            notification_db, member_db, messenger, task_db=task_db, clock=clock,
        )

    async def run_sweep(self) -> SweepReport:
        """Claim and process every pending schedule due now."""
        now = self._clock()
        token = uuid.uuid4().hex
        claimed = self._notifications.claim_due(now, token, now - self._claim_timeout)
        report = SweepReport(claimed=len(claimed))
        if not claimed:
            return report

        locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        await asyncio.gather(
            *(self._process_safely(s, token, locks[s.recipient_id], report) for s in claimed)
        )
        logger.info(
            "Sweep done: %d claimed, %d sent, %d retried, %d deferred, %d failed, "
            "%d escalated, %d errors",
            report.claimed, report.sent, report.retried, report.deferred,
            report.failed, report.escalated, report.errors,
        )
        return report

    async def _process_safely(
        self,
        schedule: NotificationSchedule,
        token: str,
        lock: asyncio.Lock,
        report: SweepReport,
    ) -> None:
        try:
            await self._process(schedule, token, lock, report)
        except Exception as exc:
            report.errors += 1
            logger.error("Notification #%d crashed during sweep: %s", schedule.id, exc)

    async def _process(
        self,
        schedule: NotificationSchedule,
        token: str,
        lock: asyncio.Lock,
        report: SweepReport,
    ) -> None:
        rule = self._rules.get_rule(schedule.rule_id)
        if rule is None or not rule.active:
            self._notifications.save_attempt(
                abandon(schedule, "Rule not found or inactive", self._clock()), token,
            )
            logger.warning("Notification #%d failed: rule #%d gone", schedule.id, schedule.rule_id)
            report.failed += 1
            return

        recipient = self._members.get_member(schedule.recipient_id)
        if recipient is None:
            self._notifications.save_attempt(
                abandon(schedule, "Recipient not found", self._clock()), token,
            )
            logger.warning("Notification #%d failed: recipient %s gone",
                           schedule.id, schedule.recipient_id)
            report.failed += 1
            return

        async with lock:
            now = self._clock()
            until = self._earliest_send(rule, recipient, now)
            if until > now:
                self._notifications.save_attempt(defer(schedule, until), token)
                logger.info("Notification #%d deferred to %s", schedule.id, until.isoformat())
                report.deferred += 1
                return

            result = await self._deliver(schedule, rule, recipient)
            now = self._clock()
            if result.success:
                channel = result.channel.value if result.channel is not None else None
                if self._notifications.mark_sent(register_success(schedule, now, channel), token):
                    logger.info("Notification #%d sent via %s", schedule.id, channel)
                    report.sent += 1
                else:
                    logger.warning("Notification #%d was no longer claimable", schedule.id)
                    report.skipped += 1
                return

            outcome = register_failure(schedule, rule, result.error, now, self._retry_delay)
            if not outcome.exhausted:
                retry_at = self._earliest_send(rule, recipient, outcome.schedule.scheduled_at)
                outcome = replace(outcome, schedule=defer(outcome.schedule, retry_at))
            self._notifications.save_attempt(outcome.schedule, token)

        if not outcome.exhausted:
            logger.warning(
                "Notification #%d attempt %d/%d failed (%s), retry at %s",
                schedule.id, outcome.schedule.attempts, outcome.schedule.max_attempts,
                result.error, outcome.schedule.scheduled_at.isoformat(),
            )
            report.retried += 1
            return

        logger.error(
            "Notification #%d failed permanently after %d attempts: %s",
            schedule.id, outcome.schedule.attempts, outcome.schedule.last_error,
        )
        report.failed += 1
        if outcome.escalate:
            if await self._escalator.escalate(outcome.schedule, rule):
                report.escalated += 1

    def _earliest_send(
        self, rule: NotificationRule, recipient: HouseholdMember, candidate: datetime,
    ) -> datetime:
        """First moment at or after `candidate` the rule lets a message reach `recipient`.

        Applies the recipient's quiet hours, the rule's weekdays, the cooldown
        since the rule's last delivery and the hourly rate limit, all against
        the live delivery log.
        """
        sched = rule.scheduling
        not_before = None
        if sched.cooldown_minutes:
            last = self._notifications.last_delivery_at(recipient.id, rule.id)
            if last is not None:
                not_before = last + timedelta(minutes=sched.cooldown_minutes)

        def has_capacity(when: datetime) -> bool:
            start, end = hour_slot(when)
            return self._notifications.count_deliveries(recipient.id, start, end) < sched.max_per_hour

        return resolve_send_time(
            candidate,
            quiet_hours=quiet_window(rule, recipient),
            days_of_week=sched.days_of_week,
            not_before=not_before,
            has_capacity=has_capacity,
        )

    async def _deliver(
        self,
        schedule: NotificationSchedule,
        rule: NotificationRule,
        recipient: HouseholdMember,
    ) -> SendResult:
        trigger = schedule.metadata.get("trigger", "")
        context = {
            "recipient_name": recipient.name,
            "task": _task_context(self._tasks, schedule.task_id),
            "event": schedule.metadata.get("event") or {},
            "trigger": trigger,
            "schedule_id": schedule.id,
        }
        channels = rule.actions.channels
        try:
            return await self._messenger.send(
                recipient.id,
                message_type_for_event(trigger),
                rule.actions.priority,
                context,
                preferred_channel=channels[0],
                bypass_quiet_hours=not rule.scheduling.respect_quiet_hours,
                fallback_channels=channels[1:],
            )
        except Exception as exc:
            return SendResult(success=False, error=str(exc) or exc.__class__.__name__)
