"""
ChoreMinder — Notification Rule Engine.

Turns task lifecycle events into pending NotificationSchedule entries:
selects the household's rules that match the event, then computes a send
time that honors the rule's offset, allowed weekdays, quiet hours, cooldown
and per-recipient hourly rate limit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from choreminder.core.errors import NotFoundError, require_admin
from choreminder.core.send_window import hour_slot, parse_hhmm, resolve_send_time
from choreminder.data.models import (
    Actor,
    Channel,
    EscalationConfig,
    EventType,
    HouseholdMember,
    LifecycleEvent,
    NotificationRule,
    NotificationSchedule,
    Priority,
    RuleActions,
    SchedulingConstraints,
    Trigger,
    TriggerConditions,
)

if TYPE_CHECKING:
    from datetime import time

    from choreminder.data.db import MemberDB, NotificationDB, RuleDB

logger = logging.getLogger(__name__)


def default_rules(household_id: str) -> list[NotificationRule]:
    """System rules a household starts with until an admin defines its own."""
    scheduling = SchedulingConstraints(
        respect_quiet_hours=True, max_per_hour=5, cooldown_minutes=30,
    )
    return [
        NotificationRule(
            household_id=household_id,
            name="Chore Due Soon",
            description="Remind when chore is due within 2 hours",
            trigger=Trigger(
                event=EventType.CHORE_DUE_SOON,
                conditions=TriggerConditions(time_offset=-120),
            ),
            actions=RuleActions(
                channels=[Channel.WHATSAPP, Channel.SMS],
                template="chore_reminder",
                priority=Priority.MEDIUM,
            ),
            scheduling=scheduling,
        ),
        NotificationRule(
            household_id=household_id,
            name="Chore Overdue",
            description="Alert when chore is overdue",
            trigger=Trigger(
                event=EventType.CHORE_OVERDUE,
                conditions=TriggerConditions(time_offset=60),
            ),
            actions=RuleActions(
                channels=[Channel.SMS, Channel.EMAIL],
                template="chore_overdue",
                priority=Priority.HIGH,
                escalation=EscalationConfig(
                    enabled=True,
                    delay_minutes=60,
                    escalate_to_parents=True,
                    max_attempts=2,
                ),
            ),
            scheduling=scheduling,
        ),
    ]


def rule_matches(rule: NotificationRule, event_type: EventType, event: LifecycleEvent) -> bool:
    """True when the rule's trigger and every configured condition hold for the event."""
    if not rule.active or rule.trigger.event != event_type:
        return False
    cond = rule.trigger.conditions
    if cond.priorities is not None and event.priority not in cond.priorities:
        return False
    if cond.categories is not None and event.category not in cond.categories:
        return False
    if cond.recipients is not None and event.recipient_id not in cond.recipients:
        return False
    if cond.min_streak is not None and (event.streak or 0) < cond.min_streak:
        return False
    if cond.min_points is not None and (event.points or 0) < cond.min_points:
        return False
    return True


def quiet_window(
    rule: NotificationRule, recipient: HouseholdMember,
) -> tuple[time, time] | None:
    """The quiet-hours window for a delivery: the rule's override, else the recipient's."""
    if not rule.scheduling.respect_quiet_hours:
        return None
    if rule.scheduling.quiet_hours is not None:
        qh = rule.scheduling.quiet_hours
        return parse_hhmm(qh.start), parse_hhmm(qh.end)
    if recipient.quiet_hours_start and recipient.quiet_hours_end:
        return parse_hhmm(recipient.quiet_hours_start), parse_hhmm(recipient.quiet_hours_end)
    return None


class RuleEngine:
    """Selects and schedules notifications for lifecycle events."""

    def __init__(
        self,
        rule_db: RuleDB,
        member_db: MemberDB,
        notification_db: NotificationDB,
        clock: Callable[[], datetime] = datetime.now,
        default_max_attempts: int = 3,
    ) -> None:
        self._rules = rule_db
        self._members = member_db
        self._notifications = notification_db
        self._clock = clock
        self._default_max_attempts = default_max_attempts

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_event(self, event: LifecycleEvent) -> list[NotificationSchedule]:
        """Schedule a notification for every rule that applies to the event.

        Unknown event types, unknown recipients and events without matching
        rules are logged and dropped; they are not errors.
        """
        try:
            event_type = EventType(event.type)
        except ValueError:
            logger.warning("Dropping event with unsupported type %r", event.type)
            return []

        recipient = self._members.get_member(event.recipient_id)
        if recipient is None or recipient.household_id != event.household_id:
            logger.warning(
                "Dropping %s event: recipient %s not in household %s",
                event_type.value, event.recipient_id, event.household_id,
            )
            return []

        rules = [
            r for r in self.rules_for(event.household_id)
            if rule_matches(r, event_type, event)
        ]
        if not rules:
            logger.info("No rule matches %s for %s", event_type.value, event.recipient_id)
            return []

        return [self._schedule(rule, event_type, event, recipient) for rule in rules]

    def rules_for(self, household_id: str) -> list[NotificationRule]:
        """Active rules of a household, seeding the system defaults on first use."""
        if not self._rules.has_rules(household_id):
            return self._rules.seed_rules(household_id, default_rules(household_id))
        return self._rules.list_rules(household_id)

    def compute_send_time(
        self,
        rule: NotificationRule,
        recipient: HouseholdMember,
        due_at: datetime | None = None,
    ) -> datetime:
        """Send time for one delivery of `rule` to `recipient`.

        A negative offset means "before the due date" and anchors on
        `due_at` when the event carries one; otherwise the offset applies to
        now. The result is never in the past.
        """
        now = self._clock()
        offset = timedelta(minutes=rule.trigger.conditions.time_offset)
        anchor = due_at if (offset < timedelta(0) and due_at is not None) else now
        candidate = max(anchor + offset, now)

        sched = rule.scheduling
        not_before = None
        if sched.cooldown_minutes and rule.id is not None:
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

    def _schedule(
        self,
        rule: NotificationRule,
        event_type: EventType,
        event: LifecycleEvent,
        recipient: HouseholdMember,
    ) -> NotificationSchedule:
        scheduled_at = self.compute_send_time(rule, recipient, event.due_at)
        escalation = rule.actions.escalation
        max_attempts = escalation.max_attempts if escalation else self._default_max_attempts

        schedule = self._notifications.add_schedule(
            rule_id=rule.id,
            recipient_id=recipient.id,
            household_id=event.household_id,
            scheduled_at=scheduled_at,
            max_attempts=max_attempts,
            task_id=event.task_id,
            metadata={
                "trigger": event_type.value,
                "event": {
                    **event.data,
                    "due_at": event.due_at.isoformat() if event.due_at else None,
                    "priority": event.priority.value if event.priority else None,
                    "category": event.category,
                    "streak": event.streak,
                    "points": event.points,
                },
            },
        )
        logger.info(
            "Scheduled notification #%d (rule '%s') for %s at %s",
            schedule.id, rule.name, recipient.id, scheduled_at.isoformat(),
        )
        return schedule

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def create_rule(self, actor: Actor, rule: NotificationRule | dict) -> NotificationRule:
        """Persist an admin-authored rule (validated by the model)."""
        if not isinstance(rule, NotificationRule):
            rule = NotificationRule.model_validate(rule)
        require_admin(actor, rule.household_id)
        if not self._rules.has_rules(rule.household_id):
            # Defaults stay active next to admin-authored rules
            self._rules.seed_rules(rule.household_id, default_rules(rule.household_id))
        return self._rules.add_rule(rule.model_copy(update={"created_by": actor.member_id}))

    def deactivate_rule(self, actor: Actor, rule_id: int) -> bool:
        rule = self._rules.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        require_admin(actor, rule.household_id)
        return self._rules.deactivate_rule(rule_id)

    def cancel(self, schedule_id: int) -> bool:
        """Cancel a pending notification before a sweep claims it."""
        cancelled = self._notifications.cancel(schedule_id)
        if cancelled:
            logger.info("Notification #%d cancelled", schedule_id)
        return cancelled

    def cancel_for_task(self, task_id: int) -> int:
        """Cancel every pending notification about a task (e.g. once it is done)."""
        count = self._notifications.cancel_for_task(task_id)
        if count:
            logger.info("Cancelled %d pending notifications for task #%d", count, task_id)
        return count
