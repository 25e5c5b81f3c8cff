"""Outbound chat notifier — immediate and fire-and-forget delayed sends.

Every chat line the bot produces goes through here. Send failures are logged
and swallowed; nothing is retried. Delayed sends run as detached asyncio
tasks so the event loop keeps processing new events during the delay.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import aiohttp

if TYPE_CHECKING:
    from .twitch_client import TwitchApiClient


class ChatNotifier:
    """Sends chat messages to the bound broadcaster channel."""

    def __init__(self, api: TwitchApiClient, logger: logging.Logger | None = None) -> None:
        self._api = api
        self._logger = logger or logging.getLogger("economy.notifier")
        self._pending: set[asyncio.Task] = set()

        # Metrics counters (exposed to metrics_server)
        self.messages_sent: int = 0
        self.send_failures: int = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send(self, text: str) -> bool:
        """Send one chat line. Never raises for transport or API errors."""
        self._logger.info("Sending message: %s", text)
        try:
            sent = await self._api.send_chat_message(text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.send_failures += 1
            self._logger.error("Chat send failed: %s", e)
            return False
        if sent:
            self.messages_sent += 1
        else:
            self.send_failures += 1
        return sent

    def send_delayed(self, text: str, delay_ms: int) -> asyncio.Task:
        """Schedule ``send(text)`` after ``delay_ms`` without blocking the caller."""
        task = asyncio.create_task(self._send_after(text, delay_ms / 1000.0))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send_after(self, text: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.send(text)

    async def stop(self) -> None:
        """Cancel outstanding delayed sends."""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self._logger.info("Cancelled %d pending delayed message(s)", len(pending))
        self._pending.clear()
