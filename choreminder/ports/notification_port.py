"""Notification port — abstract interface for one raw text delivery channel.

Adapters (Telegram, and any email/SMS provider wired in later) implement
this protocol; the routing messenger picks between them.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract single-channel sender used by the messenger."""

    async def send_message(self, address: str | int, text: str) -> None: ...
