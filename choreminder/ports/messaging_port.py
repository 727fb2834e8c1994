"""Messaging port — the single-call delivery abstraction the core depends on.

Core modules (dispatcher, escalator) depend on this protocol, never on a
specific provider or on message wording.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from choreminder.data.models import Channel, Priority


@dataclass
class SendResult:
    """Outcome of one delivery attempt."""

    success: bool
    channel: Channel | None = None
    error: str | None = None


class MessagingPort(Protocol):
    """Abstract messaging interface used by core modules."""

    async def send(
        self,
        recipient_id: str,
        message_type: str,
        priority: Priority,
        context: dict,
        *,
        preferred_channel: Channel | None = None,
        bypass_quiet_hours: bool = False,
        fallback_channels: Sequence[Channel] = (),
    ) -> SendResult: ...
