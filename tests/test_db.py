"""Tests for choreminder.data.db — SQLite stores."""

import pytest
from datetime import datetime, timedelta

from choreminder.core.delivery_state import register_success
from choreminder.core.rule_engine import default_rules
from choreminder.data.models import (
    HouseholdMember,
    MemberRole,
    RecurrencePattern,
    ScheduleStatus,
    TaskStatus,
)

NOW = datetime(2026, 3, 1, 9, 0)
WEEKLY = RecurrencePattern(kind="weekly", days_of_week=[1, 4])


def _add_schedule(task_db, **overrides):
    kwargs = dict(
        household_id="h1", title="Dishes", assigned_to="alice",
        pattern=WEEKLY, next_due=NOW + timedelta(days=1), estimated_duration=20,
    )
    kwargs.update(overrides)
    return task_db.add_schedule(**kwargs)


def _next_day(d):
    return d + timedelta(days=1)


# ---------------------------------------------------------------------------
# TaskDB
# ---------------------------------------------------------------------------


class TestTaskDBSchedules:
    def test_add_and_get(self, task_db):
        s = _add_schedule(task_db)
        loaded = task_db.get_schedule(s.id)
        assert loaded.title == "Dishes"
        assert loaded.pattern == WEEKLY
        assert loaded.next_due == NOW + timedelta(days=1)
        assert loaded.last_generated is None
        assert loaded.active is True

    def test_get_missing(self, task_db):
        assert task_db.get_schedule(999) is None

    def test_list_by_household(self, task_db):
        _add_schedule(task_db)
        _add_schedule(task_db, household_id="h2")
        assert [s.household_id for s in task_db.list_schedules("h1")] == ["h1"]
        assert len(task_db.list_schedules()) == 2

    def test_update_fields(self, task_db):
        s = _add_schedule(task_db)
        assert task_db.update_schedule_fields(s.id, title="Dry dishes", points=5)
        loaded = task_db.get_schedule(s.id)
        assert loaded.title == "Dry dishes"
        assert loaded.points == 5

    def test_update_rejects_unknown_fields(self, task_db):
        s = _add_schedule(task_db)
        with pytest.raises(ValueError):
            task_db.update_schedule_fields(s.id, active=False)


class TestCommitGeneration:
    def test_creates_instances_and_advances_marks(self, task_db):
        s = _add_schedule(task_db)
        dues = [datetime(2026, 3, 2, 9), datetime(2026, 3, 5, 9)]
        created = task_db.commit_generation(s.id, dues, _next_day)
        assert [i.due_at for i in created] == dues
        assert all(i.status == TaskStatus.PENDING for i in created)
        assert created[0].estimated_duration == 20

        loaded = task_db.get_schedule(s.id)
        assert loaded.last_generated == dues[-1]
        assert loaded.next_due == dues[-1] + timedelta(days=1)

    def test_duplicates_skipped(self, task_db):
        s = _add_schedule(task_db)
        dues = [datetime(2026, 3, 2, 9)]
        task_db.commit_generation(s.id, dues, _next_day)
        assert task_db.commit_generation(s.id, dues, _next_day) == []
        # Within the 12h window counts as the same occurrence
        assert task_db.commit_generation(s.id, [datetime(2026, 3, 2, 18)], _next_day) == []
        assert len(task_db.list_instances(schedule_id=s.id)) == 1

    def test_cancelled_instances_do_not_block(self, task_db):
        s = _add_schedule(task_db)
        [inst] = task_db.commit_generation(s.id, [datetime(2026, 3, 2, 9)], _next_day)
        task_db.set_instance_status(inst.id, TaskStatus.CANCELLED)
        assert len(task_db.commit_generation(s.id, [datetime(2026, 3, 2, 9)], _next_day)) == 1

    def test_max_occurrences_cap(self, task_db):
        s = _add_schedule(task_db, pattern=RecurrencePattern(kind="daily", max_occurrences=2))
        dues = [datetime(2026, 3, d, 9) for d in (2, 3, 4, 5)]
        created = task_db.commit_generation(s.id, dues, _next_day)
        assert len(created) == 2
        assert task_db.commit_generation(s.id, [datetime(2026, 3, 6, 9)], _next_day) == []

    def test_inactive_schedule(self, task_db):
        s = _add_schedule(task_db)
        task_db.commit_generation(s.id, [datetime(2026, 3, 2, 9)], _next_day)
        task_db.deactivate_schedule(s.id, NOW)
        assert task_db.commit_generation(s.id, [datetime(2026, 3, 5, 9)], _next_day) == []

    def test_rolls_back_on_error(self, task_db):
        s = _add_schedule(task_db)

        def boom(_):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            task_db.commit_generation(s.id, [datetime(2026, 3, 2, 9)], boom)
        assert task_db.list_instances(schedule_id=s.id) == []
        assert task_db.get_schedule(s.id).last_generated is None


class TestScheduleLifecycle:
    def test_deactivate_without_instances_deletes(self, task_db):
        s = _add_schedule(task_db)
        assert task_db.deactivate_schedule(s.id, NOW) == "deleted"
        assert task_db.get_schedule(s.id) is None

    def test_deactivate_with_instances(self, task_db):
        s = _add_schedule(task_db)
        task_db.commit_generation(s.id, [datetime(2026, 3, 2, 9)], _next_day)
        assert task_db.deactivate_schedule(s.id, NOW) == "deactivated"
        assert task_db.get_schedule(s.id).active is False
        [inst] = task_db.list_instances(schedule_id=s.id)
        assert inst.status == TaskStatus.CANCELLED

    def test_deactivate_unknown(self, task_db):
        assert task_db.deactivate_schedule(42, NOW) is None

    def test_replace_pattern_cancels_only_future_pending(self, task_db):
        s = _add_schedule(task_db)
        past, future = datetime(2026, 2, 26, 9), datetime(2026, 3, 2, 9)
        task_db.commit_generation(s.id, [past, future], _next_day)

        daily = RecurrencePattern(kind="daily")
        cancelled = task_db.replace_pattern(s.id, daily, NOW + timedelta(days=1), NOW)
        assert cancelled == 1

        statuses = {i.due_at: i.status for i in task_db.list_instances(schedule_id=s.id)}
        assert statuses[past] == TaskStatus.PENDING
        assert statuses[future] == TaskStatus.CANCELLED
        loaded = task_db.get_schedule(s.id)
        assert loaded.pattern == daily
        assert loaded.last_generated == NOW


class TestTaskDBInstances:
    def test_list_filters(self, task_db):
        task_db.add_instance("h1", "Trash", "alice", datetime(2026, 3, 2, 9))
        task_db.add_instance("h1", "Laundry", "bob", datetime(2026, 3, 2, 10))
        task_db.add_instance("h1", "Garden", "alice", datetime(2026, 3, 9, 9))

        assert len(task_db.list_instances(assigned_to="alice")) == 2
        in_range = task_db.list_instances(
            household_id="h1", start=datetime(2026, 3, 2), end=datetime(2026, 3, 3),
        )
        assert [i.title for i in in_range] == ["Trash", "Laundry"]

    def test_status_filter(self, task_db):
        a = task_db.add_instance("h1", "Trash", "alice", datetime(2026, 3, 2, 9))
        task_db.add_instance("h1", "Laundry", "alice", datetime(2026, 3, 2, 10))
        task_db.set_instance_status(a.id, TaskStatus.COMPLETED)
        pending = task_db.list_instances(statuses=[TaskStatus.PENDING])
        assert [i.title for i in pending] == ["Laundry"]


# ---------------------------------------------------------------------------
# MemberDB
# ---------------------------------------------------------------------------


class TestMemberDB:
    def test_add_and_get(self, member_db, household):
        alice = member_db.get_member("alice")
        assert alice.name == "Alice"
        assert alice.role == MemberRole.CHILD
        assert alice.quiet_hours_start == "21:00"

    def test_list_by_role(self, member_db, household):
        parents = member_db.list_members("h1", role=MemberRole.PARENT)
        assert {p.id for p in parents} == {"mom", "dad"}
        assert len(member_db.list_members("h1")) == 4

    def test_link_telegram(self, member_db, household):
        assert member_db.set_telegram_chat_id("bob", 444)
        assert member_db.get_member("bob").telegram_chat_id == 444
        assert not member_db.set_telegram_chat_id("nobody", 1)

    def test_quiet_hours(self, member_db):
        member_db.add_member(HouseholdMember(id="z", household_id="h9", name="Z"))
        member_db.set_quiet_hours("z", "22:00", "06:00")
        assert member_db.get_member("z").quiet_hours_end == "06:00"


# ---------------------------------------------------------------------------
# RuleDB
# ---------------------------------------------------------------------------


class TestRuleDB:
    def test_seed_only_once(self, rule_db):
        first = rule_db.seed_rules("h1", default_rules("h1"))
        second = rule_db.seed_rules("h1", default_rules("h1"))
        assert len(first) == 2
        assert [r.id for r in second] == [r.id for r in first]

    def test_roundtrip(self, rule_db):
        [due_soon, overdue] = rule_db.seed_rules("h1", default_rules("h1"))
        loaded = rule_db.get_rule(overdue.id)
        assert loaded.name == "Chore Overdue"
        assert loaded.actions.escalation.max_attempts == 2
        assert loaded.id == overdue.id

    def test_list_by_event(self, rule_db):
        rule_db.seed_rules("h1", default_rules("h1"))
        rules = rule_db.list_rules("h1", event="chore_overdue")
        assert [r.name for r in rules] == ["Chore Overdue"]

    def test_deactivate(self, rule_db):
        [due_soon, _] = rule_db.seed_rules("h1", default_rules("h1"))
        assert rule_db.deactivate_rule(due_soon.id)
        assert not rule_db.deactivate_rule(due_soon.id)
        assert len(rule_db.list_rules("h1")) == 1
        assert rule_db.get_rule(due_soon.id).active is False
        assert rule_db.has_rules("h1")
        assert not rule_db.has_rules("h2")


# ---------------------------------------------------------------------------
# NotificationDB
# ---------------------------------------------------------------------------


def _pending(notification_db, at=NOW, recipient="alice", rule_id=1, task_id=None):
    return notification_db.add_schedule(
        rule_id=rule_id, recipient_id=recipient, household_id="h1",
        scheduled_at=at, max_attempts=3, task_id=task_id, metadata={"trigger": "chore_overdue"},
    )


class TestNotificationDBClaims:
    def test_claims_only_due(self, notification_db):
        due = _pending(notification_db)
        _pending(notification_db, at=NOW + timedelta(hours=1))
        claimed = notification_db.claim_due(NOW, "t1", NOW - timedelta(minutes=10))
        assert [s.id for s in claimed] == [due.id]
        assert claimed[0].metadata == {"trigger": "chore_overdue"}

    def test_claimed_not_reclaimed_while_fresh(self, notification_db):
        _pending(notification_db)
        notification_db.claim_due(NOW, "t1", NOW - timedelta(minutes=10))
        assert notification_db.claim_due(NOW, "t2", NOW - timedelta(minutes=10)) == []

    def test_stale_claim_reclaimed(self, notification_db):
        s = _pending(notification_db)
        notification_db.claim_due(NOW, "t1", NOW - timedelta(minutes=10))
        later = NOW + timedelta(minutes=15)
        claimed = notification_db.claim_due(later, "t2", later - timedelta(minutes=10))
        assert [c.id for c in claimed] == [s.id]
        # The crashed sweep's token no longer works
        assert not notification_db.save_attempt(claimed[0], "t1")

    def test_save_attempt_releases_claim(self, notification_db):
        _pending(notification_db)
        [s] = notification_db.claim_due(NOW, "t1", NOW)
        s.scheduled_at = NOW + timedelta(minutes=30)
        s.attempts = 1
        assert notification_db.save_attempt(s, "t1")
        loaded = notification_db.get_schedule(s.id)
        assert loaded.attempts == 1
        assert loaded.scheduled_at == NOW + timedelta(minutes=30)
        assert notification_db.claim_due(NOW + timedelta(minutes=30), "t2", NOW) != []

    def test_cancel_skips_claimed(self, notification_db):
        a = _pending(notification_db, task_id=7)
        b = _pending(notification_db, at=NOW + timedelta(hours=2), task_id=7)
        notification_db.claim_due(NOW, "t1", NOW)
        assert not notification_db.cancel(a.id)
        assert notification_db.cancel_for_task(7) == 1
        assert notification_db.get_schedule(b.id).status == ScheduleStatus.CANCELLED


class TestNotificationDBDeliveries:
    def test_mark_sent_once(self, notification_db):
        _pending(notification_db)
        [s] = notification_db.claim_due(NOW, "t1", NOW)
        assert notification_db.mark_sent(register_success(s, NOW, "sms"), "t1")
        assert not notification_db.mark_sent(register_success(s, NOW, "sms"), "t1")

        loaded = notification_db.get_schedule(s.id)
        assert loaded.status == ScheduleStatus.SENT
        assert loaded.attempts == 1
        assert loaded.channel == "sms"
        assert notification_db.count_deliveries("alice", NOW, NOW + timedelta(hours=1)) == 1

    def test_mark_sent_requires_claim(self, notification_db):
        s = _pending(notification_db)
        assert not notification_db.mark_sent(register_success(s, NOW, "sms"), "someone-else")
        assert notification_db.get_schedule(s.id).status == ScheduleStatus.PENDING

    def test_mark_sent_rejects_pending_schedule(self, notification_db):
        _pending(notification_db)
        [s] = notification_db.claim_due(NOW, "t1", NOW)
        with pytest.raises(ValueError):
            notification_db.mark_sent(s, "t1")
        assert notification_db.get_schedule(s.id).status == ScheduleStatus.PENDING

    def test_delivery_window_half_open(self, notification_db):
        _pending(notification_db)
        [s] = notification_db.claim_due(NOW, "t1", NOW)
        notification_db.mark_sent(register_success(s, NOW, "sms"), "t1")
        assert notification_db.count_deliveries("alice", NOW - timedelta(hours=1), NOW) == 0
        assert notification_db.count_deliveries("bob", NOW, NOW + timedelta(hours=1)) == 0

    def test_last_delivery_per_rule(self, notification_db):
        assert notification_db.last_delivery_at("alice", 1) is None
        _pending(notification_db, rule_id=1)
        [s] = notification_db.claim_due(NOW, "t1", NOW)
        notification_db.mark_sent(register_success(s, NOW, "sms"), "t1")
        assert notification_db.last_delivery_at("alice", 1) == NOW
        assert notification_db.last_delivery_at("alice", 2) is None


class TestNotificationDBEscalations:
    def test_mark_escalated_once(self, notification_db):
        s = _pending(notification_db)
        assert notification_db.mark_escalated(s.id, NOW)
        assert not notification_db.mark_escalated(s.id, NOW)
        assert notification_db.get_schedule(s.id).escalation_level == 1

    def test_escalation_log_unique_per_parent(self, notification_db):
        s = _pending(notification_db)
        notification_db.record_escalation(s.id, "mom", True)
        notification_db.record_escalation(s.id, "mom", True)
        notification_db.record_escalation(s.id, "dad", False, "no address")
        rows = notification_db.list_escalations(s.id)
        assert [(r["recipient_id"], r["success"]) for r in rows] == [("mom", 1), ("dad", 0)]
