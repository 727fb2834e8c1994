"""Tests for choreminder.core.rule_engine — event matching and send-time computation."""

import pytest
from datetime import datetime, timedelta
from pydantic import ValidationError

from choreminder.core.delivery_state import register_success
from choreminder.core.errors import AuthorizationError, NotFoundError
from choreminder.core.rule_engine import (
    RuleEngine,
    default_rules,
    quiet_window,
    rule_matches,
)
from choreminder.data.models import (
    Actor,
    EventType,
    LifecycleEvent,
    NotificationRule,
    Priority,
    ScheduleStatus,
)


@pytest.fixture
def engine(rule_db, member_db, notification_db, clock, household):
    return RuleEngine(rule_db, member_db, notification_db, clock=clock)


def _event(type="chore_overdue", recipient="alice", household="h1", **kwargs):
    return LifecycleEvent(type=type, recipient_id=recipient, household_id=household, **kwargs)


def _record_delivery(notification_db, rule_id, recipient, at):
    s = notification_db.add_schedule(rule_id, recipient, "h1", at, 3)
    token = f"seed-{s.id}"
    notification_db.claim_due(at, token, at)
    notification_db.mark_sent(register_success(s, at, "sms"), token)


def _custom_rule(**overrides):
    data = {
        "household_id": "h1",
        "name": "Kitchen duty",
        "trigger": {"event": "chore_assigned", "conditions": {"categories": ["kitchen"]}},
        "actions": {"channels": ["telegram"]},
    }
    data.update(overrides)
    return data


class TestOnEvent:
    def test_due_soon_seeds_defaults_and_schedules(self, engine, rule_db):
        [s] = engine.on_event(_event("chore_due_soon", due_at=datetime(2026, 3, 1, 18, 0), task_id=5))
        assert s.scheduled_at == datetime(2026, 3, 1, 16, 0)
        assert s.max_attempts == 3
        assert s.task_id == 5
        assert s.status == ScheduleStatus.PENDING
        assert s.metadata["trigger"] == "chore_due_soon"
        assert len(rule_db.list_rules("h1")) == 2

    def test_overdue_uses_positive_offset_and_escalation_attempts(self, engine):
        [s] = engine.on_event(_event())
        assert s.scheduled_at == datetime(2026, 3, 1, 10, 0)
        assert s.max_attempts == 2

    def test_due_soon_never_in_the_past(self, engine, clock):
        [s] = engine.on_event(_event("chore_due_soon", due_at=clock.now - timedelta(hours=1)))
        assert s.scheduled_at == clock.now

    def test_quiet_hours_push_to_morning(self, engine, clock):
        clock.now = datetime(2026, 3, 1, 20, 30)
        [s] = engine.on_event(_event())
        assert s.scheduled_at == datetime(2026, 3, 2, 7, 0)

    def test_member_without_quiet_hours(self, engine, clock):
        clock.now = datetime(2026, 3, 1, 22, 0)
        [s] = engine.on_event(_event(recipient="bob"))
        assert s.scheduled_at == datetime(2026, 3, 1, 23, 0)

    def test_full_hour_pushes_to_next_slot(self, engine, notification_db):
        for minute in range(5):
            _record_delivery(notification_db, 999, "alice", datetime(2026, 3, 1, 10, minute))
        [s] = engine.on_event(_event())
        assert s.scheduled_at == datetime(2026, 3, 1, 11, 0)

    def test_cooldown_since_last_delivery(self, engine, notification_db):
        overdue = engine.rules_for("h1")[1]
        _record_delivery(notification_db, overdue.id, "alice", datetime(2026, 3, 1, 9, 50))
        [s] = engine.on_event(_event())
        assert s.scheduled_at == datetime(2026, 3, 1, 10, 20)

    def test_event_data_kept_in_metadata(self, engine):
        [s] = engine.on_event(_event(priority=Priority.HIGH, category="kitchen", data={"note": "x"}))
        assert s.metadata["event"]["priority"] == "high"
        assert s.metadata["event"]["category"] == "kitchen"
        assert s.metadata["event"]["note"] == "x"

    def test_unknown_type_dropped(self, engine, notification_db):
        assert engine.on_event(_event("chore_exploded")) == []
        assert notification_db.list_schedules() == []

    def test_unknown_recipient_dropped(self, engine):
        assert engine.on_event(_event(recipient="ghost")) == []

    def test_recipient_from_other_household_dropped(self, engine):
        assert engine.on_event(_event(household="h2")) == []

    def test_no_matching_rule(self, engine, rule_db):
        assert engine.on_event(_event("chore_completed")) == []
        assert rule_db.has_rules("h1")

    def test_deactivated_rule_ignored(self, engine, admin):
        overdue = engine.rules_for("h1")[1]
        engine.deactivate_rule(admin, overdue.id)
        assert engine.on_event(_event()) == []


class TestCustomRules:
    def test_create_rule_keeps_defaults(self, engine, rule_db, admin):
        rule = engine.create_rule(admin, _custom_rule())
        assert rule.id is not None
        assert rule.created_by == "mom"
        assert len(rule_db.list_rules("h1")) == 3

    def test_conditions_filter_events(self, engine, admin):
        engine.create_rule(admin, _custom_rule())
        assert engine.on_event(_event("chore_assigned", category="garden")) == []
        assert len(engine.on_event(_event("chore_assigned", category="kitchen"))) == 1

    def test_allowed_days_then_quiet_hours(self, engine, admin):
        engine.create_rule(admin, _custom_rule(scheduling={"days_of_week": [1]}))
        [s] = engine.on_event(_event("chore_assigned", category="kitchen"))
        assert s.scheduled_at == datetime(2026, 3, 2, 7, 0)

    def test_rule_quiet_hours_override(self, engine, admin):
        engine.create_rule(
            admin, _custom_rule(scheduling={"quiet_hours": {"start": "08:00", "end": "12:00"}}),
        )
        [s] = engine.on_event(_event("chore_assigned", recipient="bob", category="kitchen"))
        assert s.scheduled_at == datetime(2026, 3, 1, 12, 0)

    def test_ignoring_quiet_hours(self, engine, admin, clock):
        clock.now = datetime(2026, 3, 1, 22, 0)
        engine.create_rule(admin, _custom_rule(scheduling={"respect_quiet_hours": False}))
        [s] = engine.on_event(_event("chore_assigned", category="kitchen"))
        assert s.scheduled_at == clock.now

    def test_create_rule_requires_admin(self, engine):
        child = Actor(member_id="alice", household_id="h1")
        with pytest.raises(AuthorizationError):
            engine.create_rule(child, _custom_rule())

    def test_create_rule_validates(self, engine, admin):
        with pytest.raises(ValidationError):
            engine.create_rule(admin, _custom_rule(actions={"channels": []}))

    def test_deactivate_unknown_rule(self, engine, admin):
        with pytest.raises(NotFoundError):
            engine.deactivate_rule(admin, 404)


class TestCancel:
    def test_cancel_for_task(self, engine, notification_db):
        engine.on_event(_event(task_id=7))
        engine.on_event(_event("chore_due_soon", task_id=7, due_at=datetime(2026, 3, 1, 18)))
        assert engine.cancel_for_task(7) == 2
        assert notification_db.list_schedules(status=ScheduleStatus.PENDING) == []

    def test_cancel_single(self, engine, notification_db):
        [s] = engine.on_event(_event())
        assert engine.cancel(s.id)
        assert not engine.cancel(s.id)


class TestRuleHelpers:
    def _rule(self, **conditions):
        return NotificationRule.model_validate(_custom_rule(
            trigger={"event": "streak_milestone", "conditions": conditions},
        ))

    def test_priority_condition(self):
        rule = self._rule(priorities=["high", "urgent"])
        assert rule_matches(rule, EventType.STREAK_MILESTONE, _event(priority=Priority.HIGH))
        assert not rule_matches(rule, EventType.STREAK_MILESTONE, _event(priority=Priority.LOW))

    def test_min_streak(self):
        rule = self._rule(min_streak=7)
        assert rule_matches(rule, EventType.STREAK_MILESTONE, _event(streak=7))
        assert not rule_matches(rule, EventType.STREAK_MILESTONE, _event(streak=3))
        assert not rule_matches(rule, EventType.STREAK_MILESTONE, _event())

    def test_recipient_condition(self):
        rule = self._rule(recipients=["bob"])
        assert not rule_matches(rule, EventType.STREAK_MILESTONE, _event())

    def test_event_type_must_match(self):
        assert not rule_matches(self._rule(), EventType.CHORE_OVERDUE, _event())

    def test_quiet_window_prefers_rule(self, household):
        rule = NotificationRule.model_validate(_custom_rule(
            scheduling={"quiet_hours": {"start": "22:00", "end": "06:00"}},
        ))
        start, end = quiet_window(rule, household["alice"])
        assert (start.hour, end.hour) == (22, 6)

    def test_quiet_window_falls_back_to_member(self, household):
        rule = default_rules("h1")[0]
        start, end = quiet_window(rule, household["alice"])
        assert (start.hour, end.hour) == (21, 7)
        assert quiet_window(rule, household["bob"]) is None
