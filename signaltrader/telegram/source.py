"""Telegram Bot API message source.

Long-polls ``getUpdates`` and yields ``InboundMessage`` objects from
channel posts and group messages, filtered to the configured channels.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx

from signaltrader.config import Config
from signaltrader.signals.models import InboundMessage

logger = logging.getLogger("signaltrader")

_RETRY_BASE_DELAY = 2.0  # seconds; doubles each consecutive failure
_MAX_RETRY_DELAY = 60.0


def parse_update(update: dict) -> Optional[InboundMessage]:
    """Convert one Telegram update into an ``InboundMessage``.

    Returns ``None`` for updates without text.
    """
    post = update.get("channel_post") or update.get("message")
    if not post:
        return None
    text = post.get("text") or post.get("caption")
    if not text:
        return None
    chat = post.get("chat") or {}
    return InboundMessage(
        channel_id=str(chat.get("id", "")),
        text=text,
        timestamp=int(post.get("date", 0)) * 1000,
        message_id=post.get("message_id"),
    )


class TelegramSource:
    """Async iterator of channel messages.

    Args:
        config: Supplies the bot token, API URL, poll interval and the
                allowed channel ids (empty = accept every chat).
    """

    def __init__(self, config: Config) -> None:
        self._base_url = f"{config.telegram_api_url}/bot{config.telegram_bot_token}"
        self._allowed = set(config.telegram_channel_ids)
        self._poll_interval = config.telegram_poll_interval
        self._offset: Optional[int] = None
        self._running = False

    @property
    def offset(self) -> Optional[int]:
        return self._offset

    def stop(self) -> None:
        self._running = False

    async def poll(self, timeout: int = 0) -> list[InboundMessage]:
        """Fetch pending updates once and advance the offset.

        Raises:
            httpx.HTTPError: On transport or HTTP errors.
        """
        params = {"timeout": timeout, "allowed_updates": '["channel_post","message"]'}
        if self._offset is not None:
            params["offset"] = self._offset

        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self._base_url}/getUpdates",
                params=params,
                timeout=timeout + 10.0,
            )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("ok", False):
            raise httpx.HTTPStatusError(
                f"Telegram error: {data.get('description', 'unknown')}",
                request=resp.request,
                response=resp,
            )

        messages: list[InboundMessage] = []
        for update in data.get("result", []):
            self._offset = update["update_id"] + 1
            message = parse_update(update)
            if message is None:
                continue
            if self._allowed and message.channel_id not in self._allowed:
                continue
            messages.append(message)
        return messages

    async def stream(self) -> AsyncIterator[InboundMessage]:
        """Yield messages until :meth:`stop` is called.

        Transport errors back off exponentially and never end the stream.
        """
        self._running = True
        failures = 0
        while self._running:
            try:
                messages = await self.poll()
                failures = 0
            except httpx.HTTPError as exc:
                failures += 1
                delay = min(_RETRY_BASE_DELAY * (2 ** (failures - 1)), _MAX_RETRY_DELAY)
                logger.warning("Telegram poll failed (%s) — retry in %.1fs", exc, delay)
                await asyncio.sleep(delay)
                continue

            for message in messages:
                yield message
            await asyncio.sleep(self._poll_interval)
