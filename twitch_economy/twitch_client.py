"""Twitch API client — async HTTP + WebSocket wrapper around aiohttp.

Covers the four calls the bot needs: token validation, EventSub subscription
creation, sending a chat message, and opening the EventSub WebSocket.
All tests mock the HTTP layer — never call the real Twitch API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

if TYPE_CHECKING:
    from .config import TwitchConfig


class TwitchApiError(Exception):
    """Base class for fatal Twitch API failures."""


class TokenValidationError(TwitchApiError):
    """The OAuth token was rejected or could not be checked."""


class SubscriptionError(TwitchApiError):
    """An EventSub subscription request was not accepted."""


class TwitchApiClient:
    """Async client for the Twitch Helix and EventSub endpoints."""

    def __init__(self, config: TwitchConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("economy.twitch")
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def _helix_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.oauth_token}",
            "Client-Id": self._config.client_id,
            "Content-Type": "application/json",
        }

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("TwitchApiClient.start() has not been called")
        return self._session

    # ══════════════════════════════════════════════════════════
    #  Auth
    # ══════════════════════════════════════════════════════════

    async def validate_token(self) -> dict[str, Any]:
        """Check the OAuth token. Raises TokenValidationError unless HTTP 200."""
        session = self._require_session()
        try:
            async with session.get(
                self._config.validate_url,
                headers={"Authorization": f"OAuth {self._config.oauth_token}"},
            ) as resp:
                if resp.status != 200:
                    raise TokenValidationError(f"Invalid OAuth token (HTTP {resp.status})")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TokenValidationError(f"Error validating OAuth token: {e}") from e

        self._logger.info(
            "OAuth token validated for %s (expires in %ss)",
            data.get("login", "?"), data.get("expires_in", "?"),
        )
        return data

    # ══════════════════════════════════════════════════════════
    #  EventSub
    # ══════════════════════════════════════════════════════════

    async def create_eventsub_subscription(
        self,
        event_type: str,
        session_id: str,
        condition: dict[str, str],
        version: str = "1",
    ) -> dict[str, Any]:
        """Subscribe the WebSocket session to one event type.

        Raises SubscriptionError on anything other than HTTP 202.
        """
        session = self._require_session()
        body = {
            "type": event_type,
            "version": version,
            "condition": condition,
            "transport": {"method": "websocket", "session_id": session_id},
        }
        try:
            async with session.post(
                f"{self._config.api_base_url}/helix/eventsub/subscriptions",
                headers=self._helix_headers(),
                json=body,
            ) as resp:
                if resp.status != 202:
                    detail = await resp.text()
                    raise SubscriptionError(
                        f"Failed to subscribe to {event_type} (HTTP {resp.status}): {detail}"
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SubscriptionError(f"Error subscribing to {event_type}: {e}") from e

    def ws_connect(self, url: str, heartbeat: float | None = None):
        """Open the EventSub WebSocket. Use as ``async with``."""
        return self._require_session().ws_connect(url, heartbeat=heartbeat)

    # ══════════════════════════════════════════════════════════
    #  Chat
    # ══════════════════════════════════════════════════════════

    async def send_chat_message(self, message: str) -> bool:
        """Send a chat line as the bot user. Returns Twitch's is_sent flag.

        Raises aiohttp.ClientError on transport or HTTP errors.
        """
        session = self._require_session()
        body = {
            "broadcaster_id": self._config.broadcaster_user_id,
            "sender_id": self._config.bot_user_id,
            "message": message,
        }
        async with session.post(
            f"{self._config.api_base_url}/helix/chat/messages",
            headers=self._helix_headers(),
            json=body,
        ) as resp:
            resp.raise_for_status()
            data = await resp.json()

        entries = data.get("data") or [{}]
        result = entries[0]
        if not result.get("is_sent", False):
            reason = result.get("drop_reason") or {}
            self._logger.warning(
                "Chat message dropped by Twitch: %s", reason.get("message", "unknown reason"),
            )
            return False
        return True
