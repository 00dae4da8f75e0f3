"""Telegram notification adapter — implements NotificationPort.

Pushes stored notifications to the user's private chat (Telegram user id
doubles as the chat id). Telegram rejects messages over 4096 characters,
so longer text is cut.
"""

from __future__ import annotations

import logging

from telegram import Bot

logger = logging.getLogger(__name__)

_MAX_MESSAGE_CHARS = 4096


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, user_id: int, text: str) -> None:
        if len(text) > _MAX_MESSAGE_CHARS:
            text = text[: _MAX_MESSAGE_CHARS - 1] + "…"
        await self._bot.send_message(chat_id=user_id, text=text)
        logger.debug("Pushed notification to user %d", user_id)
