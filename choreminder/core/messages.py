"""Message content rendering.

Turns a message type plus a context dict into the text a channel sends.
Kept apart from the delivery state machine so retries and escalation can be
exercised without any particular wording.
"""

from __future__ import annotations

import logging
from datetime import datetime

logger = logging.getLogger(__name__)

EVENT_MESSAGE_TYPES: dict[str, str] = {
    "chore_assigned": "assigned",
    "chore_due_soon": "reminder",
    "chore_overdue": "overdue",
    "chore_completed": "completed",
    "chore_approved": "approved",
    "streak_milestone": "update",
    "points_milestone": "update",
}

_PRIORITY_PREFIX = {
    "high": "❗ ",
    "urgent": "🚨 ",
}


def message_type_for_event(event_type: str) -> str:
    """Map a lifecycle event type to the message type the messenger renders."""
    return EVENT_MESSAGE_TYPES.get(event_type, "update")


def _format_due(raw: datetime | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        try:
            raw = datetime.fromisoformat(raw)
        except ValueError:
            return raw
    return raw.strftime("%a %d %b, %H:%M")


def render_message(message_type: str, context: dict, priority: str = "medium") -> str:
    """Render the text for `message_type`.

    Recognized context keys: recipient_name, task (dict with title, due_at,
    points), event (raw event payload), child_name, reason.
    """
    name = context.get("recipient_name") or "there"
    task = context.get("task") or {}
    title = task.get("title", "your chore")
    due = _format_due(task.get("due_at"))
    points = task.get("points")
    event = context.get("event") or {}

    if message_type == "assigned":
        text = f"Hi {name}! New chore for you: {title}."
        if due:
            text += f" Due {due}."
        if points:
            text += f" Worth {points} points."
    elif message_type == "reminder":
        text = f"Reminder, {name}: {title} is due soon"
        text += f" ({due})." if due else "."
    elif message_type == "overdue":
        text = f"{name}, {title} is overdue"
        text += f" (was due {due})." if due else "."
        text += " Please take care of it as soon as you can."
    elif message_type == "completed":
        text = f"Nice work, {name}! {title} is marked as done."
    elif message_type == "approved":
        text = f"{title} was approved, {name}!"
        if points:
            text += f" You earned {points} points."
    elif message_type == "escalation":
        child = context.get("child_name") or "A family member"
        reason = context.get("reason") or "did not receive a chore reminder"
        text = f"{child} may need attention: {reason}."
        if task:
            text += f" Chore: {title}"
            text += f" (due {due})." if due else "."
    else:
        detail = event.get("message")
        if detail:
            text = f"Hi {name}! {detail}"
        elif "streak" in event:
            text = f"Hi {name}! You're on a {event['streak']}-day streak. Keep going!"
        elif "points" in event:
            text = f"Hi {name}! You've reached {event['points']} points!"
        else:
            text = f"Hi {name}! There's an update on {title}."

    return _PRIORITY_PREFIX.get(getattr(priority, "value", priority), "") + text
