"""Routing messenger — implements MessagingPort over raw NotificationPorts.

Resolves the member's address for each channel, renders the message text,
and walks the channel order until one provider accepts the message.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from choreminder.core.messages import render_message
from choreminder.data.models import Channel, HouseholdMember, Priority
from choreminder.ports.messaging_port import SendResult

if TYPE_CHECKING:
    from choreminder.data.db import MemberDB
    from choreminder.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


def address_for(member: HouseholdMember, channel: Channel) -> str | int | None:
    """The member's address on a channel, or None when they have none."""
    if channel == Channel.TELEGRAM:
        return member.telegram_chat_id
    if channel == Channel.EMAIL:
        return member.email
    # SMS and WhatsApp both go to the phone number
    return member.phone


class RoutingMessenger:
    """MessagingPort implementation with per-channel fallback."""

    def __init__(
        self,
        member_db: MemberDB,
        providers: Mapping[Channel, NotificationPort],
    ) -> None:
        self._members = member_db
        self._providers = dict(providers)

    def channel_order(
        self,
        preferred_channel: Channel | None,
        fallback_channels: Sequence[Channel],
    ) -> list[Channel]:
        """Preferred first, then the fallbacks, then any other registered channel."""
        order: list[Channel] = []
        for channel in (preferred_channel, *fallback_channels, *self._providers):
            if channel is not None and channel not in order:
                order.append(Channel(channel))
        return order

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
    ) -> SendResult:
        member = self._members.get_member(recipient_id)
        if member is None:
            return SendResult(success=False, error=f"Unknown recipient {recipient_id}")

        # Quiet hours are already applied when the send time is computed
        if bypass_quiet_hours:
            logger.debug("Sending %s to %s outside the quiet-hours policy", message_type, recipient_id)

        text = render_message(message_type, context, priority)
        errors: list[str] = []
        for channel in self.channel_order(preferred_channel, fallback_channels):
            provider = self._providers.get(channel)
            address = address_for(member, channel)
            if provider is None or address is None:
                continue
            try:
                await provider.send_message(address, text)
            except Exception as exc:
                logger.warning("%s delivery to %s failed: %s", channel.value, recipient_id, exc)
                errors.append(f"{channel.value}: {exc}")
                continue
            return SendResult(success=True, channel=channel)

        if not errors:
            return SendResult(success=False, error=f"No reachable channel for {recipient_id}")
        return SendResult(success=False, error="; ".join(errors))
