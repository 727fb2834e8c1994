"""
ChoreMinder — Telegram host process.

Hosts the engine: the job queue drives the notification sweep, the due-chore
scan and the daily instance generation, and a handful of admin commands
expose chat linking and the workload reports. Telegram is also a delivery channel for members who
have linked a chat.

Security-first: chats outside ADMIN_CHAT_IDS are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from datetime import time as dt_time
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes
from telegram.helpers import escape_markdown

from choreminder.config import settings
from choreminder.core.conflict_detector import week_range
from choreminder.core.engine import Engine, EngineNotRunning
from choreminder.data.models import Channel

if TYPE_CHECKING:
    from choreminder.core.conflict_detector import DayConflict, HouseholdOptimization

logger = logging.getLogger(__name__)

MAX_REPORT_DAYS = 31


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores commands from chats that are not admins.

    Does NOT send any response to strangers.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        if chat is None or chat.id not in settings.ADMIN_CHAT_IDS:
            cid = chat.id if chat else "unknown"
            logger.warning("Unauthorized command from chat_id=%s", cid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


def _local_now() -> datetime:
    """Naive wall-clock time in the household timezone."""
    return datetime.now(ZoneInfo(settings.TIMEZONE)).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Report formatting
# ---------------------------------------------------------------------------


def _md(text: str) -> str:
    """Escape user-supplied text for parse_mode="Markdown"."""
    return escape_markdown(str(text), version=1)


def format_conflicts(member_name: str, conflicts: list[DayConflict]) -> str:
    member_name = _md(member_name)
    if not conflicts:
        return f"No overloaded days for {member_name}. 👍"
    lines = [f"*Overloaded days for {member_name}:*\n"]
    for c in conflicts:
        lines.append(
            f"• {c.day:%a %d %b}: {len(c.instances)} chores, {c.total_duration} min\n"
            f"  {c.recommendation}"
        )
    return "\n".join(lines)


def format_optimization(opt: HouseholdOptimization) -> str:
    lines = [f"*Workload for {opt.day:%a %d %b}:*\n"]
    for w in opt.workloads:
        lines.append(f"• {_md(w.name)}: {len(w.instances)} chores, {w.total_duration} min")
    if opt.redistributions:
        lines.append("\n*Suggested moves:*")
        names = {w.member_id: w.name for w in opt.workloads}
        for r in opt.redistributions:
            lines.append(
                f"• `{r.instance_id}` {_md(r.title)}: "
                f"{_md(names.get(r.current_assignee, r.current_assignee))} → "
                f"{_md(names.get(r.suggested_assignee, r.suggested_assignee))}"
            )
    if opt.recommendations:
        lines.append("")
        lines.extend(opt.recommendations)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to *ChoreMinder*!\n\n"
        "I send chore reminders to your household and alert you when one "
        "goes unanswered.\n\n"
        "Type /help for the command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/link <member\\_id> [chat\\_id] — Deliver a member's reminders to a chat\n"
        "/conflicts <member\\_id> [days] — Overloaded days ahead for a member\n"
        "/optimize <household\\_id> [YYYY-MM-DD] — Balance a day's chores\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_link(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /link <member_id> [chat_id] — bind a Telegram chat to a member."""
    engine: Engine = context.bot_data["engine"]
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /link <member_id> [chat_id]")
        return

    member_id = args[0]
    try:
        chat_id = int(args[1]) if len(args) > 1 else update.effective_chat.id
    except ValueError:
        await update.message.reply_text("Invalid chat ID, expected a number.")
        return

    member = engine.members.get_member(member_id)
    if member is None:
        await update.message.reply_text(f"Unknown member '{member_id}'.")
        return

    engine.members.set_telegram_chat_id(member_id, chat_id)
    await update.message.reply_text(f"✅ {member.name}'s reminders will be sent to chat {chat_id}.")


@authorized_only
async def cmd_conflicts(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /conflicts <member_id> [days] — overloaded days ahead."""
    engine: Engine = context.bot_data["engine"]
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /conflicts <member_id> [days]")
        return

    member_id = args[0]
    try:
        days = int(args[1]) if len(args) > 1 else 7
    except ValueError:
        await update.message.reply_text("Invalid number of days.")
        return
    if not 1 <= days <= MAX_REPORT_DAYS:
        await update.message.reply_text(f"Days must be between 1 and {MAX_REPORT_DAYS}.")
        return

    member = engine.members.get_member(member_id)
    if member is None:
        await update.message.reply_text(f"Unknown member '{member_id}'.")
        return

    try:
        conflicts = engine.conflicts.find_conflicts(member_id, *week_range(_local_now().date(), days))
    except Exception as exc:
        logger.error("/conflicts error: %s", exc)
        await update.message.reply_text("Couldn't compute conflicts. Please try again.")
        return

    await update.message.reply_text(format_conflicts(member.name, conflicts), parse_mode="Markdown")


@authorized_only
async def cmd_optimize(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /optimize <household_id> [YYYY-MM-DD] — workload balance for a day."""
    engine: Engine = context.bot_data["engine"]
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /optimize <household_id> [YYYY-MM-DD]")
        return

    household_id = args[0]
    try:
        day = date.fromisoformat(args[1]) if len(args) > 1 else _local_now().date()
    except ValueError:
        await update.message.reply_text("Invalid date, expected YYYY-MM-DD.")
        return

    try:
        optimization = engine.conflicts.optimize_household(household_id, day)
    except Exception as exc:
        logger.error("/optimize error: %s", exc)
        await update.message.reply_text("Couldn't analyse the household. Please try again.")
        return

    if not optimization.workloads:
        await update.message.reply_text(f"No children found in household '{household_id}'.")
        return
    await update.message.reply_text(format_optimization(optimization), parse_mode="Markdown")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


async def _sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    engine: Engine = context.bot_data["engine"]
    try:
        await engine.run_sweep()
    except EngineNotRunning:
        logger.debug("Sweep requested while the engine is stopped")
    except Exception as exc:
        logger.error("Sweep failed: %s", exc)


async def _scan_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    engine: Engine = context.bot_data["engine"]
    try:
        engine.scan_due_tasks()
    except Exception as exc:
        logger.error("Due-chore scan failed: %s", exc)


async def _generation_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    engine: Engine = context.bot_data["engine"]
    try:
        engine.generate_all(settings.GENERATION_HORIZON_DAYS)
    except Exception as exc:
        logger.error("Daily generation failed: %s", exc)


def _setup_jobs(app: Application) -> None:
    """Register the notification sweep, the due-chore scan and the daily generation pass."""
    tz = ZoneInfo(settings.TIMEZONE)

    app.job_queue.run_repeating(
        _sweep_job,
        interval=settings.SWEEP_INTERVAL_SECONDS,
        first=settings.SWEEP_INTERVAL_SECONDS,
        name="notification_sweep",
    )
    app.job_queue.run_repeating(
        _scan_job,
        interval=settings.DUE_SCAN_INTERVAL_SECONDS,
        first=0,
        name="due_chore_scan",
    )
    app.job_queue.run_daily(
        _generation_job,
        time=dt_time(hour=settings.GENERATION_HOUR, minute=0, tzinfo=tz),
        name="instance_generation",
    )

    logger.info(
        "Sweep every %ds, due scan every %ds, generation daily at %02d:00 %s",
        settings.SWEEP_INTERVAL_SECONDS,
        settings.DUE_SCAN_INTERVAL_SECONDS,
        settings.GENERATION_HOUR,
        settings.TIMEZONE,
    )


async def _post_init(app: Application) -> None:
    await app.bot_data["engine"].start()


async def _post_shutdown(app: Application) -> None:
    await app.bot_data["engine"].shutdown()


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


def build_app(engine: Engine | None = None) -> Application:
    """Build the Telegram Application with the engine, handlers and jobs.

    Args:
        engine: Engine to host. Defaults to one delivering over this bot's
                Telegram channel, backed by settings.DATABASE_PATH.
    """
    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )

    if engine is None:
        from choreminder.adapters.telegram_notifier import TelegramNotifier
        engine = Engine(providers={Channel.TELEGRAM: TelegramNotifier(app.bot)}, clock=_local_now)

    app.bot_data["engine"] = engine

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("link", cmd_link))
    app.add_handler(CommandHandler("conflicts", cmd_conflicts))
    app.add_handler(CommandHandler("optimize", cmd_optimize))

    _setup_jobs(app)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logger.info("Starting ChoreMinder...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
