"""
ChoreMinder — SQLite persistence.

Schedules, task instances, household members, notification rules and
notification schedules persist in SQLite across restarts. Each store owns
its tables; all of them may share one database file.

Multi-statement operations (idempotent instance generation, claiming due
notifications, marking a delivery sent) run inside BEGIN IMMEDIATE
transactions so concurrent writers are serialized by SQLite.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from choreminder.data.models import (
    HouseholdMember,
    MemberRole,
    NotificationRule,
    NotificationSchedule,
    Priority,
    RecurrencePattern,
    ScheduledTask,
    ScheduleStatus,
    TaskInstance,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# Two instances of one schedule closer than this are the same occurrence
DUPLICATE_WINDOW = timedelta(hours=12)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


class _SQLiteStore:
    """Connection handling shared by the stores."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from choreminder.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Explicit write transaction: committed on success, rolled back on error."""
        conn = sqlite3.connect(self._db_path, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @staticmethod
    def _add_missing_columns(
        conn: sqlite3.Connection, table: str, columns: dict[str, str],
    ) -> None:
        existing_cols = {
            row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
        }
        for name, ddl in columns.items():
            if name not in existing_cols:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")

    def _init_db(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Scheduled tasks and their instances
# ---------------------------------------------------------------------------


class TaskDB(_SQLiteStore):
    """SQLite-backed storage for recurring task templates and task instances."""

    _EDITABLE_FIELDS = {
        "title", "description", "category", "points",
        "estimated_duration", "assigned_to", "priority",
    }

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_tasks (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    household_id       TEXT    NOT NULL,
                    title              TEXT    NOT NULL,
                    description        TEXT    NOT NULL DEFAULT '',
                    category           TEXT    NOT NULL DEFAULT 'general',
                    points             INTEGER NOT NULL DEFAULT 0,
                    estimated_duration INTEGER NOT NULL DEFAULT 30,
                    assigned_to        TEXT    NOT NULL,
                    created_by         TEXT    NOT NULL DEFAULT '',
                    pattern_json       TEXT    NOT NULL,
                    next_due           TEXT    NOT NULL,
                    last_generated     TEXT,
                    active             INTEGER NOT NULL DEFAULT 1,
                    created_at         TEXT    NOT NULL
                )
            """)
            self._add_missing_columns(conn, "scheduled_tasks", {
                "priority": "TEXT NOT NULL DEFAULT 'medium'",
            })
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_instances (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule_id        INTEGER REFERENCES scheduled_tasks(id),
                    household_id       TEXT    NOT NULL,
                    title              TEXT    NOT NULL,
                    category           TEXT    NOT NULL DEFAULT 'general',
                    points             INTEGER NOT NULL DEFAULT 0,
                    assigned_to        TEXT    NOT NULL,
                    due_at             TEXT    NOT NULL,
                    status             TEXT    NOT NULL DEFAULT 'pending',
                    estimated_duration INTEGER,
                    created_at         TEXT    NOT NULL
                )
            """)
            self._add_missing_columns(conn, "task_instances", {
                "priority": "TEXT NOT NULL DEFAULT 'medium'",
            })
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_instances_schedule_due "
                "ON task_instances (schedule_id, due_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_instances_assignee_due "
                "ON task_instances (assigned_to, due_at)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_events_raised (
                    instance_id INTEGER NOT NULL REFERENCES task_instances(id),
                    event_type  TEXT    NOT NULL,
                    raised_at   TEXT    NOT NULL,
                    PRIMARY KEY (instance_id, event_type)
                )
            """)
        logger.debug("Task tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_schedule(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            household_id=row["household_id"],
            title=row["title"],
            description=row["description"],
            category=row["category"],
            points=row["points"],
            estimated_duration=row["estimated_duration"],
            assigned_to=row["assigned_to"],
            created_by=row["created_by"],
            priority=Priority(row["priority"]),
            pattern=RecurrencePattern.model_validate_json(row["pattern_json"]),
            next_due=_dt(row["next_due"]),
            last_generated=_dt(row["last_generated"]),
            active=bool(row["active"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> TaskInstance:
        return TaskInstance(
            id=row["id"],
            schedule_id=row["schedule_id"],
            household_id=row["household_id"],
            title=row["title"],
            category=row["category"],
            points=row["points"],
            priority=Priority(row["priority"]),
            assigned_to=row["assigned_to"],
            due_at=_dt(row["due_at"]),
            status=TaskStatus(row["status"]),
            estimated_duration=row["estimated_duration"],
            created_at=row["created_at"],
        )

    # -- schedules ---------------------------------------------------------

    def add_schedule(
        self,
        household_id: str,
        title: str,
        assigned_to: str,
        pattern: RecurrencePattern,
        next_due: datetime,
        description: str = "",
        category: str = "general",
        points: int = 0,
        estimated_duration: int = 30,
        priority: Priority = Priority.MEDIUM,
        created_by: str = "",
    ) -> ScheduledTask:
        """Insert a new recurring task template."""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scheduled_tasks
                    (household_id, title, description, category, points,
                     estimated_duration, assigned_to, created_by, priority,
                     pattern_json, next_due, last_generated, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 1, ?)
                """,
                (
                    household_id, title, description, category, points,
                    estimated_duration, assigned_to, created_by, priority.value,
                    pattern.model_dump_json(), _iso(next_due), now,
                ),
            )
            schedule_id = cursor.lastrowid

        logger.info("Schedule added: #%d '%s' (%s)", schedule_id, title, pattern.kind.value)
        return ScheduledTask(
            id=schedule_id,
            household_id=household_id,
            title=title,
            description=description,
            category=category,
            points=points,
            estimated_duration=estimated_duration,
            assigned_to=assigned_to,
            created_by=created_by,
            priority=priority,
            pattern=pattern,
            next_due=next_due,
            last_generated=None,
            active=True,
            created_at=now,
        )

    def get_schedule(self, schedule_id: int) -> ScheduledTask | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE id = ?", (schedule_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_schedule(row)

    def list_schedules(
        self, household_id: str | None = None, active_only: bool = True,
    ) -> list[ScheduledTask]:
        conditions: list[str] = []
        params: list = []
        if active_only:
            conditions.append("active = 1")
        if household_id is not None:
            conditions.append("household_id = ?")
            params.append(household_id)

        query = "SELECT * FROM scheduled_tasks"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_schedule(r) for r in rows]

    def update_schedule_fields(self, schedule_id: int, **fields) -> bool:
        """Update plain template fields (not the pattern)."""
        unknown = set(fields) - self._EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")
        if not fields:
            return False
        if "priority" in fields:
            fields["priority"] = Priority(fields["priority"]).value

        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?",
                (*fields.values(), schedule_id),
            )
        return cursor.rowcount > 0

    def replace_pattern(
        self,
        schedule_id: int,
        pattern: RecurrencePattern,
        next_due: datetime,
        now: datetime,
    ) -> int:
        """Swap the pattern and invalidate future pending instances.

        The high-water mark is reset to `now` so the next generation starts
        from the new rule. Returns the number of cancelled instances.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_tasks
                SET pattern_json = ?, next_due = ?, last_generated = ?
                WHERE id = ?
                """,
                (pattern.model_dump_json(), _iso(next_due), _iso(now), schedule_id),
            )
            if cursor.rowcount == 0:
                return 0
            cancelled = self._cancel_future_instances(conn, schedule_id, now)

        logger.info(
            "Schedule #%d pattern replaced, %d future instances cancelled",
            schedule_id, cancelled,
        )
        return cancelled

    def deactivate_schedule(self, schedule_id: int, now: datetime) -> str | None:
        """Deactivate a schedule with instances, hard-delete one without.

        Returns "deactivated", "deleted", or None when the schedule is unknown.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM scheduled_tasks WHERE id = ?", (schedule_id,)
            ).fetchone()
            if row is None:
                return None
            count = conn.execute(
                "SELECT COUNT(*) FROM task_instances WHERE schedule_id = ?",
                (schedule_id,),
            ).fetchone()[0]
            if count == 0:
                conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (schedule_id,))
                outcome = "deleted"
            else:
                conn.execute(
                    "UPDATE scheduled_tasks SET active = 0 WHERE id = ?", (schedule_id,)
                )
                self._cancel_future_instances(conn, schedule_id, now)
                outcome = "deactivated"

        logger.info("Schedule #%d %s", schedule_id, outcome)
        return outcome

    @staticmethod
    def _cancel_future_instances(
        conn: sqlite3.Connection, schedule_id: int, now: datetime,
    ) -> int:
        cursor = conn.execute(
            """
            UPDATE task_instances SET status = ?
            WHERE schedule_id = ? AND status = ? AND due_at >= ?
            """,
            (TaskStatus.CANCELLED.value, schedule_id, TaskStatus.PENDING.value, _iso(now)),
        )
        return cursor.rowcount

    def commit_generation(
        self,
        schedule_id: int,
        candidates: Iterable[datetime],
        next_due_after: Callable[[datetime], datetime],
    ) -> list[TaskInstance]:
        """Materialize candidate due dates for a schedule in one transaction.

        A candidate is skipped when a non-cancelled instance of the same
        schedule is due within DUPLICATE_WINDOW of it. The high-water mark
        advances to the last candidate processed and next_due to the
        occurrence following it. Either everything commits or nothing does.
        """
        created_at = datetime.now().isoformat()
        created: list[TaskInstance] = []

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE id = ? AND active = 1",
                (schedule_id,),
            ).fetchone()
            if row is None:
                return []
            template = self._row_to_schedule(row)
            limit = template.pattern.max_occurrences
            existing = conn.execute(
                "SELECT COUNT(*) FROM task_instances WHERE schedule_id = ? AND status != ?",
                (schedule_id, TaskStatus.CANCELLED.value),
            ).fetchone()[0]

            high_water: datetime | None = None
            for due in candidates:
                if limit is not None and existing >= limit:
                    break
                high_water = due
                duplicate = conn.execute(
                    """
                    SELECT 1 FROM task_instances
                    WHERE schedule_id = ? AND status != ?
                      AND due_at >= ? AND due_at <= ?
                    LIMIT 1
                    """,
                    (
                        schedule_id, TaskStatus.CANCELLED.value,
                        _iso(due - DUPLICATE_WINDOW), _iso(due + DUPLICATE_WINDOW),
                    ),
                ).fetchone()
                if duplicate is not None:
                    continue

                cursor = conn.execute(
                    """
                    INSERT INTO task_instances
                        (schedule_id, household_id, title, category, points,
                         priority, assigned_to, due_at, status,
                         estimated_duration, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        schedule_id, template.household_id, template.title,
                        template.category, template.points, template.priority.value,
                        template.assigned_to, _iso(due), TaskStatus.PENDING.value,
                        template.estimated_duration, created_at,
                    ),
                )
                existing += 1
                created.append(TaskInstance(
                    id=cursor.lastrowid,
                    schedule_id=schedule_id,
                    household_id=template.household_id,
                    title=template.title,
                    category=template.category,
                    points=template.points,
                    priority=template.priority,
                    assigned_to=template.assigned_to,
                    due_at=due,
                    status=TaskStatus.PENDING,
                    estimated_duration=template.estimated_duration,
                    created_at=created_at,
                ))

            if high_water is not None:
                conn.execute(
                    "UPDATE scheduled_tasks SET last_generated = ?, next_due = ? WHERE id = ?",
                    (_iso(high_water), _iso(next_due_after(high_water)), schedule_id),
                )

        return created

    # -- instances ---------------------------------------------------------

    def add_instance(
        self,
        household_id: str,
        title: str,
        assigned_to: str,
        due_at: datetime,
        category: str = "general",
        points: int = 0,
        priority: Priority = Priority.MEDIUM,
        estimated_duration: int | None = None,
        schedule_id: int | None = None,
    ) -> TaskInstance:
        """Insert a task instance directly (one-off tasks)."""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO task_instances
                    (schedule_id, household_id, title, category, points, priority,
                     assigned_to, due_at, status, estimated_duration, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    schedule_id, household_id, title, category, points, priority.value,
                    assigned_to, _iso(due_at), TaskStatus.PENDING.value,
                    estimated_duration, now,
                ),
            )
            instance_id = cursor.lastrowid

        return TaskInstance(
            id=instance_id,
            schedule_id=schedule_id,
            household_id=household_id,
            title=title,
            category=category,
            points=points,
            priority=priority,
            assigned_to=assigned_to,
            due_at=due_at,
            status=TaskStatus.PENDING,
            estimated_duration=estimated_duration,
            created_at=now,
        )

    def get_instance(self, instance_id: int) -> TaskInstance | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM task_instances WHERE id = ?", (instance_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_instance(row)

    def list_instances(
        self,
        household_id: str | None = None,
        assigned_to: str | None = None,
        schedule_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[TaskInstance]:
        """List instances filtered by owner, assignee, schedule, due range and status."""
        conditions: list[str] = []
        params: list = []
        if household_id is not None:
            conditions.append("household_id = ?")
            params.append(household_id)
        if assigned_to is not None:
            conditions.append("assigned_to = ?")
            params.append(assigned_to)
        if schedule_id is not None:
            conditions.append("schedule_id = ?")
            params.append(schedule_id)
        if start is not None:
            conditions.append("due_at >= ?")
            params.append(_iso(start))
        if end is not None:
            conditions.append("due_at <= ?")
            params.append(_iso(end))
        if statuses is not None:
            values = [TaskStatus(s).value for s in statuses]
            conditions.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        query = "SELECT * FROM task_instances"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY due_at, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def set_instance_status(self, instance_id: int, status: TaskStatus) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE task_instances SET status = ? WHERE id = ?",
                (TaskStatus(status).value, instance_id),
            )
        return cursor.rowcount > 0

    def claim_task_event(self, instance_id: int, event_type: str, now: datetime) -> bool:
        """Record that an event was raised for an instance; False if it already was."""
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO task_events_raised (instance_id, event_type, raised_at) "
                "VALUES (?, ?, ?)",
                (instance_id, event_type, _iso(now)),
            )
        return cursor.rowcount > 0

    def release_task_event(self, instance_id: int, event_type: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM task_events_raised WHERE instance_id = ? AND event_type = ?",
                (instance_id, event_type),
            )


# ---------------------------------------------------------------------------
# Household members
# ---------------------------------------------------------------------------


class MemberDB(_SQLiteStore):
    """SQLite-backed storage for household members."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS household_members (
                    id                TEXT PRIMARY KEY,
                    household_id      TEXT NOT NULL,
                    name              TEXT NOT NULL,
                    role              TEXT NOT NULL DEFAULT 'child',
                    quiet_hours_start TEXT,
                    quiet_hours_end   TEXT,
                    telegram_chat_id  INTEGER,
                    email             TEXT,
                    phone             TEXT
                )
            """)
        logger.debug("Members table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_member(row: sqlite3.Row) -> HouseholdMember:
        return HouseholdMember(
            id=row["id"],
            household_id=row["household_id"],
            name=row["name"],
            role=MemberRole(row["role"]),
            quiet_hours_start=row["quiet_hours_start"],
            quiet_hours_end=row["quiet_hours_end"],
            telegram_chat_id=row["telegram_chat_id"],
            email=row["email"],
            phone=row["phone"],
        )

    def add_member(self, member: HouseholdMember) -> HouseholdMember:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO household_members
                    (id, household_id, name, role, quiet_hours_start,
                     quiet_hours_end, telegram_chat_id, email, phone)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    member.id, member.household_id, member.name,
                    MemberRole(member.role).value, member.quiet_hours_start,
                    member.quiet_hours_end, member.telegram_chat_id,
                    member.email, member.phone,
                ),
            )
        logger.info("Member added: %s '%s' (%s)", member.id, member.name, member.household_id)
        return member

    def get_member(self, member_id: str) -> HouseholdMember | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM household_members WHERE id = ?", (member_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_member(row)

    def list_members(
        self, household_id: str, role: MemberRole | None = None,
    ) -> list[HouseholdMember]:
        query = "SELECT * FROM household_members WHERE household_id = ?"
        params: list = [household_id]
        if role is not None:
            query += " AND role = ?"
            params.append(MemberRole(role).value)
        query += " ORDER BY name"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_member(r) for r in rows]

    def set_telegram_chat_id(self, member_id: str, chat_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE household_members SET telegram_chat_id = ? WHERE id = ?",
                (chat_id, member_id),
            )
        linked = cursor.rowcount > 0
        if linked:
            logger.info("Member %s linked to Telegram chat %d", member_id, chat_id)
        return linked

    def set_quiet_hours(self, member_id: str, start: str | None, end: str | None) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE household_members SET quiet_hours_start = ?, quiet_hours_end = ? "
                "WHERE id = ?",
                (start, end, member_id),
            )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Notification rules
# ---------------------------------------------------------------------------


class RuleDB(_SQLiteStore):
    """SQLite-backed document storage for notification rules."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notification_rules (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    household_id TEXT    NOT NULL,
                    event        TEXT    NOT NULL,
                    active       INTEGER NOT NULL DEFAULT 1,
                    body_json    TEXT    NOT NULL,
                    created_at   TEXT    NOT NULL,
                    updated_at   TEXT    NOT NULL
                )
            """)
        logger.debug("Rules table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> NotificationRule:
        rule = NotificationRule.model_validate_json(row["body_json"])
        return rule.model_copy(update={"id": row["id"], "active": bool(row["active"])})

    def add_rule(self, rule: NotificationRule) -> NotificationRule:
        now = datetime.now().isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notification_rules
                    (household_id, event, active, body_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.household_id, rule.trigger.event.value, int(rule.active),
                    rule.model_dump_json(exclude={"id"}), now, now,
                ),
            )
            rule_id = cursor.lastrowid
        logger.info("Rule added: #%d '%s' on %s", rule_id, rule.name, rule.trigger.event.value)
        return rule.model_copy(update={"id": rule_id})

    def get_rule(self, rule_id: int) -> NotificationRule | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_rules WHERE id = ?", (rule_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def list_rules(
        self,
        household_id: str,
        event: str | None = None,
        active_only: bool = True,
    ) -> list[NotificationRule]:
        query = "SELECT * FROM notification_rules WHERE household_id = ?"
        params: list = [household_id]
        if event is not None:
            query += " AND event = ?"
            params.append(event)
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def has_rules(self, household_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM notification_rules WHERE household_id = ? LIMIT 1",
                (household_id,),
            ).fetchone()
        return row is not None

    def seed_rules(self, household_id: str, rules: list[NotificationRule]) -> list[NotificationRule]:
        """Insert `rules` unless the household already has any; returns its active rules."""
        now = datetime.now().isoformat()
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM notification_rules WHERE household_id = ? LIMIT 1",
                (household_id,),
            ).fetchone()
            if exists is None:
                for rule in rules:
                    conn.execute(
                        """
                        INSERT INTO notification_rules
                            (household_id, event, active, body_json, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            household_id, rule.trigger.event.value, int(rule.active),
                            rule.model_dump_json(exclude={"id"}), now, now,
                        ),
                    )
                logger.info("Seeded %d default rules for household %s", len(rules), household_id)
        return self.list_rules(household_id)

    def deactivate_rule(self, rule_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notification_rules SET active = 0, updated_at = ? "
                "WHERE id = ? AND active = 1",
                (datetime.now().isoformat(), rule_id),
            )
        return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Notification schedules, delivery log, escalations
# ---------------------------------------------------------------------------


class NotificationDB(_SQLiteStore):
    """SQLite-backed storage for notification schedules and delivery history.

    The deliveries table is the per-recipient counter used for rate limits
    and cooldowns; escalations is the audit trail of parent alerts.
    """

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notification_schedules (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_id          INTEGER NOT NULL,
                    recipient_id     TEXT    NOT NULL,
                    household_id     TEXT    NOT NULL,
                    task_id          INTEGER,
                    scheduled_at     TEXT    NOT NULL,
                    attempts         INTEGER NOT NULL DEFAULT 0,
                    max_attempts     INTEGER NOT NULL,
                    status           TEXT    NOT NULL DEFAULT 'pending',
                    escalation_level INTEGER NOT NULL DEFAULT 0,
                    last_attempt_at  TEXT,
                    last_error       TEXT,
                    channel          TEXT,
                    metadata_json    TEXT    NOT NULL DEFAULT '{}',
                    claim_token      TEXT,
                    claimed_at       TEXT,
                    escalated_at     TEXT,
                    created_at       TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_schedules_due "
                "ON notification_schedules (status, scheduled_at)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS deliveries (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule_id  INTEGER NOT NULL,
                    recipient_id TEXT    NOT NULL,
                    rule_id      INTEGER NOT NULL,
                    channel      TEXT,
                    sent_at      TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_deliveries_recipient "
                "ON deliveries (recipient_id, sent_at)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS escalations (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule_id  INTEGER NOT NULL,
                    recipient_id TEXT    NOT NULL,
                    success      INTEGER NOT NULL,
                    error        TEXT,
                    created_at   TEXT    NOT NULL,
                    UNIQUE (schedule_id, recipient_id)
                )
            """)
        logger.debug("Notification tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_schedule(row: sqlite3.Row) -> NotificationSchedule:
        return NotificationSchedule(
            id=row["id"],
            rule_id=row["rule_id"],
            recipient_id=row["recipient_id"],
            household_id=row["household_id"],
            task_id=row["task_id"],
            scheduled_at=_dt(row["scheduled_at"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            status=ScheduleStatus(row["status"]),
            escalation_level=row["escalation_level"],
            last_attempt_at=_dt(row["last_attempt_at"]),
            last_error=row["last_error"],
            channel=row["channel"],
            metadata=json.loads(row["metadata_json"]),
            created_at=row["created_at"],
        )

    def add_schedule(
        self,
        rule_id: int,
        recipient_id: str,
        household_id: str,
        scheduled_at: datetime,
        max_attempts: int,
        task_id: int | None = None,
        metadata: dict | None = None,
    ) -> NotificationSchedule:
        now = datetime.now().isoformat()
        metadata = metadata or {}
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notification_schedules
                    (rule_id, recipient_id, household_id, task_id, scheduled_at,
                     attempts, max_attempts, status, escalation_level,
                     metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, 0, ?, ?)
                """,
                (
                    rule_id, recipient_id, household_id, task_id, _iso(scheduled_at),
                    max_attempts, ScheduleStatus.PENDING.value,
                    json.dumps(metadata, default=str), now,
                ),
            )
            schedule_id = cursor.lastrowid

        return NotificationSchedule(
            id=schedule_id,
            rule_id=rule_id,
            recipient_id=recipient_id,
            household_id=household_id,
            task_id=task_id,
            scheduled_at=scheduled_at,
            max_attempts=max_attempts,
            metadata=metadata,
            created_at=now,
        )

    def get_schedule(self, schedule_id: int) -> NotificationSchedule | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_schedules WHERE id = ?", (schedule_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_schedule(row)

    def list_schedules(
        self,
        household_id: str | None = None,
        recipient_id: str | None = None,
        status: ScheduleStatus | None = None,
    ) -> list[NotificationSchedule]:
        conditions: list[str] = []
        params: list = []
        if household_id is not None:
            conditions.append("household_id = ?")
            params.append(household_id)
        if recipient_id is not None:
            conditions.append("recipient_id = ?")
            params.append(recipient_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(ScheduleStatus(status).value)

        query = "SELECT * FROM notification_schedules"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY scheduled_at, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_schedule(r) for r in rows]

    def cancel(self, schedule_id: int) -> bool:
        """Cancel a pending schedule no sweep has claimed yet."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE notification_schedules SET status = ?
                WHERE id = ? AND status = ? AND claim_token IS NULL
                """,
                (ScheduleStatus.CANCELLED.value, schedule_id, ScheduleStatus.PENDING.value),
            )
        return cursor.rowcount > 0

    def cancel_for_task(self, task_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE notification_schedules SET status = ?
                WHERE task_id = ? AND status = ? AND claim_token IS NULL
                """,
                (ScheduleStatus.CANCELLED.value, task_id, ScheduleStatus.PENDING.value),
            )
        return cursor.rowcount

    def claim_due(
        self, now: datetime, token: str, stale_before: datetime,
    ) -> list[NotificationSchedule]:
        """Claim pending schedules due at `now` for one sweep pass.

        Claims older than `stale_before` (a crashed sweep) are taken over.
        """
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE notification_schedules
                SET claim_token = ?, claimed_at = ?
                WHERE status = ? AND scheduled_at <= ?
                  AND (claim_token IS NULL OR claimed_at < ?)
                """,
                (
                    token, _iso(now), ScheduleStatus.PENDING.value,
                    _iso(now), _iso(stale_before),
                ),
            )
            rows = conn.execute(
                "SELECT * FROM notification_schedules WHERE claim_token = ? "
                "ORDER BY scheduled_at, id",
                (token,),
            ).fetchall()
        return [self._row_to_schedule(r) for r in rows]

    def save_attempt(self, schedule: NotificationSchedule, token: str) -> bool:
        """Persist the state-machine fields of a claimed schedule and release the claim."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE notification_schedules
                SET scheduled_at = ?, attempts = ?, status = ?, escalation_level = ?,
                    last_attempt_at = ?, last_error = ?,
                    claim_token = NULL, claimed_at = NULL
                WHERE id = ? AND claim_token = ?
                """,
                (
                    _iso(schedule.scheduled_at), schedule.attempts,
                    ScheduleStatus(schedule.status).value, schedule.escalation_level,
                    _iso(schedule.last_attempt_at), schedule.last_error,
                    schedule.id, token,
                ),
            )
        return cursor.rowcount > 0

    def mark_sent(self, sent: NotificationSchedule, token: str) -> bool:
        """Persist a sent transition of a claimed schedule and log the delivery, atomically.

        `sent` is the schedule returned by the state machine's success
        transition. Returns False when the stored row is no longer pending
        under this claim, in which case nothing is written.
        """
        if ScheduleStatus(sent.status) != ScheduleStatus.SENT or sent.last_attempt_at is None:
            raise ValueError(f"Notification #{sent.id} has not been through a sent transition")

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE notification_schedules
                SET status = ?, attempts = ?, last_attempt_at = ?,
                    channel = ?, last_error = NULL,
                    claim_token = NULL, claimed_at = NULL
                WHERE id = ? AND status = ? AND claim_token = ?
                """,
                (
                    ScheduleStatus.SENT.value, sent.attempts, _iso(sent.last_attempt_at),
                    sent.channel, sent.id, ScheduleStatus.PENDING.value, token,
                ),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                """
                INSERT INTO deliveries (schedule_id, recipient_id, rule_id, channel, sent_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    sent.id, sent.recipient_id, sent.rule_id, sent.channel,
                    _iso(sent.last_attempt_at),
                ),
            )
        return True

    def count_deliveries(self, recipient_id: str, start: datetime, end: datetime) -> int:
        """Deliveries to a recipient in the half-open window [start, end)."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM deliveries "
                "WHERE recipient_id = ? AND sent_at >= ? AND sent_at < ?",
                (recipient_id, _iso(start), _iso(end)),
            ).fetchone()
        return row[0]

    def last_delivery_at(self, recipient_id: str, rule_id: int) -> datetime | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(sent_at) FROM deliveries WHERE recipient_id = ? AND rule_id = ?",
                (recipient_id, rule_id),
            ).fetchone()
        return _dt(row[0])

    def mark_escalated(self, schedule_id: int, now: datetime) -> bool:
        """Flag a schedule as escalated; False if it already was."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE notification_schedules
                SET escalated_at = ?, escalation_level = escalation_level + 1
                WHERE id = ? AND escalated_at IS NULL
                """,
                (_iso(now), schedule_id),
            )
        return cursor.rowcount > 0

    def record_escalation(
        self, schedule_id: int, recipient_id: str, success: bool, error: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO escalations
                    (schedule_id, recipient_id, success, error, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (schedule_id, recipient_id, int(success), error, datetime.now().isoformat()),
            )

    def list_escalations(self, schedule_id: int) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM escalations WHERE schedule_id = ? ORDER BY id",
                (schedule_id,),
            ).fetchall()
        return [dict(r) for r in rows]
