"""Telegram implementation of NotificationProvider."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from telegram import Bot
from telegram.error import RetryAfter

from willpower.core.config import settings
from willpower.core.errors import RateLimitedError
from willpower.notify.base import Delivery, NotificationProvider

logger = logging.getLogger(__name__)


class TelegramProvider(NotificationProvider):
    """Delivers nudges and invites through a Telegram bot.

    The recipient's ``telegram_chat_id`` on the user record is the address.
    """

    def __init__(self, bot_token: str = "") -> None:
        self._bot_token = bot_token or settings.telegram_bot_token
        self._bot: Bot | None = None

    @property
    def name(self) -> str:
        return "telegram"

    @property
    def bot(self) -> Bot:
        """Return the bot instance, creating lazily if needed."""
        if self._bot is None:
            self._bot = Bot(token=self._bot_token)
        return self._bot

    def set_bot(self, bot: Bot) -> None:
        """Override the bot instance (useful for testing)."""
        self._bot = bot

    def can_reach(self, recipient: Mapping[str, Any]) -> bool:
        return bool(recipient.get("telegram_chat_id")) and (bool(self._bot_token) or self._bot is not None)

    async def initialize(self) -> None:
        if not self._bot_token:
            logger.warning("No Telegram bot token, provider disabled")
            return
        await self.bot.initialize()
        logger.info("TelegramProvider initialized")

    async def shutdown(self) -> None:
        if self._bot is not None and self._bot_token:
            await self._bot.shutdown()
            logger.info("TelegramProvider shut down")

    async def notify(self, recipient: Mapping[str, Any], message: str) -> Delivery:
        chat_id = int(recipient["telegram_chat_id"])
        try:
            sent = await self.bot.send_message(chat_id=chat_id, text=message)
        except RetryAfter as exc:
            wait = exc.retry_after
            seconds = wait.total_seconds() if isinstance(wait, timedelta) else float(wait)
            logger.warning("Telegram rate limit for chat %d, retry after %.0fs", chat_id, seconds)
            msg = f"Too many messages right now. Try again in {seconds:.0f} seconds."
            raise RateLimitedError(msg, retry_after=seconds) from exc
        return Delivery(channel=self.name, recipient_id=str(recipient.get("id", "")), message_id=sent.message_id)
