"""Telegram notification adapter, implements NotificationPort.

ChoreCore users are addressed by uid; ``chat_ids`` maps each uid that
opted in to its Telegram chat. Users without a chat are skipped.
"""

from __future__ import annotations

import logging

from telegram import Bot

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot, chat_ids: dict[str, int] | None = None) -> None:
        if chat_ids is None:
            from chorecore.config import settings

            chat_ids = settings.TELEGRAM_CHAT_IDS
        self._bot = bot
        self._chat_ids = dict(chat_ids)

    def chat_for(self, user_id: str) -> int | None:
        return self._chat_ids.get(user_id)

    async def send_message(self, user_id: str, text: str) -> None:
        chat_id = self.chat_for(user_id)
        if chat_id is None:
            logger.debug("No Telegram chat for user %s; message dropped", user_id)
            return
        await self._bot.send_message(chat_id=chat_id, text=text)
