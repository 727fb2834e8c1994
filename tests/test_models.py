"""Tests for choreminder.data.models — validation of patterns and rules."""

import pytest
from pydantic import ValidationError

from choreminder.data.models import (
    Actor,
    Channel,
    EventType,
    HouseholdMember,
    MemberRole,
    NotificationRule,
    Priority,
    QuietHours,
    RecurrenceKind,
    RecurrencePattern,
    SchedulingConstraints,
)


class TestRecurrencePattern:
    def test_defaults(self):
        p = RecurrencePattern(kind="daily")
        assert p.kind == RecurrenceKind.DAILY
        assert p.interval == 1
        assert p.skip_holidays is False

    def test_weekdays_sorted_and_deduplicated(self):
        p = RecurrencePattern(kind="weekly", days_of_week=[4, 1, 1])
        assert p.days_of_week == (1, 4)

    @pytest.mark.parametrize("days", [[7], [-1], []])
    def test_bad_weekdays_rejected(self, days):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="weekly", days_of_week=days)

    def test_zero_interval_rejected(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="daily", interval=0)

    def test_day_of_month_out_of_range(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="monthly", day_of_month=32)

    def test_day_of_month_only_for_monthly(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="weekly", day_of_month=3)

    def test_week_of_month_needs_single_weekday(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="monthly", week_of_month=2)
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="monthly", week_of_month=2, days_of_week=[1, 2])

    def test_week_of_month_range(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="monthly", week_of_month=5, days_of_week=[1])
        p = RecurrencePattern(kind="monthly", week_of_month=-1, days_of_week=[5])
        assert p.week_of_month == -1

    def test_day_and_week_of_month_exclusive(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="monthly", day_of_month=1, week_of_month=1, days_of_week=[1])

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            RecurrencePattern(kind="hourly")

    def test_frozen(self):
        p = RecurrencePattern(kind="daily")
        with pytest.raises(ValidationError):
            p.interval = 3

    def test_json_roundtrip(self):
        p = RecurrencePattern(kind="monthly", week_of_month=2, days_of_week=[2], skip_holidays=True)
        assert RecurrencePattern.model_validate_json(p.model_dump_json()) == p


class TestNotificationRule:
    def _rule(self, **overrides):
        data = {
            "household_id": "h1",
            "name": "Dishes nag",
            "trigger": {"event": "chore_overdue"},
            "actions": {"channels": ["telegram"]},
        }
        data.update(overrides)
        return NotificationRule.model_validate(data)

    def test_defaults(self):
        rule = self._rule()
        assert rule.trigger.event == EventType.CHORE_OVERDUE
        assert rule.actions.channels == [Channel.TELEGRAM]
        assert rule.actions.priority == Priority.MEDIUM
        assert rule.scheduling.respect_quiet_hours is True
        assert rule.scheduling.max_per_hour == 5
        assert rule.active is True
        assert rule.created_by == "system"

    def test_channels_required(self):
        with pytest.raises(ValidationError):
            self._rule(actions={"channels": []})

    def test_unknown_event_rejected(self):
        with pytest.raises(ValidationError):
            self._rule(trigger={"event": "chore_exploded"})

    def test_unknown_channel_rejected(self):
        with pytest.raises(ValidationError):
            self._rule(actions={"channels": ["pager"]})

    def test_escalation_delay_must_be_positive(self):
        with pytest.raises(ValidationError):
            self._rule(actions={"channels": ["sms"], "escalation": {"delay_minutes": 0}})


class TestQuietHours:
    def test_normalizes(self):
        assert QuietHours(start="7:00", end="21:5").start == "07:00"

    @pytest.mark.parametrize("raw", ["25:00", "12:60", "noon", "12"])
    def test_rejects_malformed(self, raw):
        with pytest.raises(ValidationError):
            QuietHours(start=raw, end="07:00")


class TestSchedulingConstraints:
    def test_days_sorted(self):
        assert SchedulingConstraints(days_of_week=[5, 1, 5]).days_of_week == [1, 5]

    def test_days_out_of_range(self):
        with pytest.raises(ValidationError):
            SchedulingConstraints(days_of_week=[8])

    def test_max_per_hour_positive(self):
        with pytest.raises(ValidationError):
            SchedulingConstraints(max_per_hour=0)


class TestMembers:
    def test_parent_is_admin(self):
        m = HouseholdMember(id="p", household_id="h", name="P", role=MemberRole.PARENT)
        assert m.is_admin is True

    def test_child_is_not_admin(self):
        m = HouseholdMember(id="c", household_id="h", name="C")
        assert m.is_admin is False

    def test_actor_defaults_to_non_admin(self):
        assert Actor(member_id="c", household_id="h").is_admin is False
