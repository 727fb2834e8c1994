"""
ChoreMinder — Engine.

Wires the stores and core components together behind the entry points the
host process calls: the periodic sweep, the due-chore scan, the daily
generation pass, and lifecycle events. Constructed explicitly and
started/stopped by the host.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection, Mapping
from datetime import date, datetime
from typing import TYPE_CHECKING

from choreminder.adapters.messenger import RoutingMessenger
from choreminder.core.conflict_detector import ConflictDetector
from choreminder.core.dispatcher import Dispatcher, SweepReport
from choreminder.core.due_scanner import DueScanner
from choreminder.core.instance_generator import InstanceGenerator
from choreminder.core.rule_engine import RuleEngine
from choreminder.data.db import MemberDB, NotificationDB, RuleDB, TaskDB

if TYPE_CHECKING:
    from choreminder.data.models import (
        Channel,
        LifecycleEvent,
        NotificationSchedule,
        TaskInstance,
    )
    from choreminder.ports.messaging_port import MessagingPort
    from choreminder.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class EngineNotRunning(RuntimeError):
    """Raised when a sweep is requested before start() or after shutdown()."""


class Engine:
    """Scheduling and notification engine for all households."""

    def __init__(
        self,
        providers: Mapping[Channel, NotificationPort] | None = None,
        messenger: MessagingPort | None = None,
        db_path: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
        holidays: Collection[date] | None = None,
        default_max_attempts: int | None = None,
        default_retry_delay_minutes: int | None = None,
        claim_timeout_minutes: int | None = None,
        initial_horizon_days: int | None = None,
        generation_horizon_days: int | None = None,
        due_window_hours: int | None = None,
    ) -> None:
        from choreminder.config import settings

        db_path = db_path or settings.DATABASE_PATH
        self.tasks = TaskDB(db_path=db_path)
        self.members = MemberDB(db_path=db_path)
        self.rules = RuleDB(db_path=db_path)
        self.notifications = NotificationDB(db_path=db_path)

        self.messenger = messenger or RoutingMessenger(self.members, providers or {})
        self.generator = InstanceGenerator(
            self.tasks,
            clock=clock,
            extra_holidays=settings.HOLIDAYS if holidays is None else holidays,
            initial_horizon_days=(
                settings.INITIAL_HORIZON_DAYS if initial_horizon_days is None
                else initial_horizon_days
            ),
        )
        self.conflicts = ConflictDetector(self.tasks, self.members)
        self.rule_engine = RuleEngine(
            self.rules,
            self.members,
            self.notifications,
            clock=clock,
            default_max_attempts=default_max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
        )
        self.dispatcher = Dispatcher(
            self.notifications,
            self.rules,
            self.members,
            self.messenger,
            task_db=self.tasks,
            clock=clock,
            default_retry_delay_minutes=(
                default_retry_delay_minutes or settings.DEFAULT_RETRY_DELAY_MINUTES
            ),
            claim_timeout_minutes=claim_timeout_minutes or settings.CLAIM_TIMEOUT_MINUTES,
        )
        self.scanner = DueScanner(
            self.tasks,
            self.rule_engine,
            clock=clock,
            window_hours=due_window_hours or settings.DUE_SOON_WINDOW_HOURS,
        )
        self._generation_horizon = generation_horizon_days or settings.GENERATION_HORIZON_DAYS
        self._sweep_lock = asyncio.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("Engine started")

    async def shutdown(self) -> None:
        """Stop accepting sweeps and wait for the one in flight, if any."""
        self._running = False
        async with self._sweep_lock:
            pass
        logger.info("Engine stopped")

    async def run_sweep(self) -> SweepReport | None:
        """Run one dispatcher sweep; returns None when a sweep is already running."""
        if not self._running:
            raise EngineNotRunning("Engine is not running")
        if self._sweep_lock.locked():
            logger.info("Previous sweep still running, skipping this one")
            return None
        async with self._sweep_lock:
            return await self.dispatcher.run_sweep()

    def generate_upcoming(self, schedule_id: int, horizon_days: int) -> list[TaskInstance]:
        return self.generator.generate_upcoming(schedule_id, horizon_days)

    def generate_all(self, horizon_days: int | None = None) -> dict[int, int]:
        if horizon_days is None:
            horizon_days = self._generation_horizon
        return self.generator.generate_all(horizon_days)

    def on_event(self, event: LifecycleEvent) -> list[NotificationSchedule]:
        return self.rule_engine.on_event(event)

    def scan_due_tasks(self) -> list[NotificationSchedule]:
        """Raise due-soon and overdue events for open chores not yet reminded about."""
        return self.scanner.scan()
