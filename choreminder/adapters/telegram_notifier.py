"""Telegram notification adapter — implements NotificationPort.

Delivers rendered chore messages to a member's linked Telegram chat.
"""

from __future__ import annotations

import logging

from telegram import Bot

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, address: str | int, text: str) -> None:
        chat_id = int(address)
        await self._bot.send_message(chat_id=chat_id, text=text)
        logger.debug("Telegram message delivered to chat %d", chat_id)
