"""EventSub WebSocket session manager.

State machine::

    DISCONNECTED → CONNECTING → WELCOMED → SUBSCRIBED
          ↑______________________________________|   (any close / error)

The run loop is an explicit retry loop: every closure, voluntary or not,
leads to a fixed delay and a fresh connection, forever. Only ``stop()`` or
a fatal ``SubscriptionError`` ends it. Envelopes are processed one at a time
to completion before the next frame is read.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aiohttp

if TYPE_CHECKING:
    from .config import EconomyConfig
    from .twitch_client import TwitchApiClient


EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WELCOMED = "welcomed"
    SUBSCRIBED = "subscribed"


class SessionManager:
    """Owns the single live EventSub WebSocket session."""

    def __init__(
        self,
        config: EconomyConfig,
        api: TwitchApiClient,
        on_event: EventHandler,
        logger: logging.Logger | None = None,
    ) -> None:
        self._twitch = config.twitch
        self._heartbeat = config.session.heartbeat_seconds
        self._reconnect_delay = config.session.reconnect_delay_seconds
        self._api = api
        self._on_event = on_event
        self._logger = logger or logging.getLogger("economy.session")

        self.state = ConnectionState.DISCONNECTED
        self.session_id: str | None = None

        self._running = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        # Replaced in tests to avoid real delays
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

        # Metrics counters (exposed to metrics_server)
        self.connections_total: int = 0
        self.reconnects_total: int = 0
        self.notifications_total: int = 0
        self.malformed_envelopes_total: int = 0

    @property
    def running(self) -> bool:
        return self._running

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def run(self) -> None:
        """Connect and keep reconnecting until stopped or a fatal error."""
        self._running = True
        try:
            while self._running:
                await self._connect_once()
                if not self._running:
                    break
                self.reconnects_total += 1
                self._logger.warning(
                    "WebSocket disconnected. Reconnecting in %.1f seconds...",
                    self._reconnect_delay,
                )
                await self._sleep(self._reconnect_delay)
        finally:
            self._running = False
            self._reset()

    async def stop(self) -> None:
        """End the run loop and close the active socket."""
        self._running = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    async def _connect_once(self) -> None:
        """One connection lifetime. Transient errors are logged, not raised."""
        self._reset()
        self.state = ConnectionState.CONNECTING
        self.connections_total += 1
        try:
            async with self._api.ws_connect(
                self._twitch.eventsub_url, heartbeat=self._heartbeat,
            ) as ws:
                self._ws = ws
                self._logger.info("WebSocket connected to %s", self._twitch.eventsub_url)
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self.handle_envelope(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        self._logger.error("WebSocket error: %s", ws.exception())
                        break
                    else:
                        self._logger.debug("Ignoring WebSocket frame of type %s", msg.type)
                self._logger.info("WebSocket closed (code %s)", ws.close_code)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            self._logger.error("WebSocket connection error: %s", e)
        finally:
            self._ws = None
            self._reset()

    def _reset(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        self.session_id = None

    # ══════════════════════════════════════════════════════════
    #  Envelopes
    # ══════════════════════════════════════════════════════════

    async def handle_envelope(self, raw: str | bytes) -> None:
        """Decode and route one EventSub envelope. Malformed input is dropped."""
        try:
            envelope = json.loads(raw)
            message_type = envelope["metadata"]["message_type"]
        except (ValueError, KeyError, TypeError) as e:
            self._drop_malformed("unparsable envelope", e)
            return

        if message_type == "session_welcome":
            try:
                session_id = envelope["payload"]["session"]["id"]
            except (KeyError, TypeError) as e:
                self._drop_malformed("welcome without session id", e)
                return
            if not isinstance(session_id, str) or not session_id:
                self._drop_malformed("welcome without session id", session_id)
                return
            await self._on_welcome(session_id)

        elif message_type == "notification":
            payload = envelope.get("payload")
            event = payload.get("event") if isinstance(payload, dict) else None
            if not isinstance(event, dict):
                self._logger.warning("Notification received with no event payload.")
                self.malformed_envelopes_total += 1
                return
            self.notifications_total += 1
            await self._on_event(event)

        elif message_type == "session_keepalive":
            self._logger.debug("Keepalive received")

        else:
            self._logger.warning("Unhandled WebSocket message type: %s", message_type)

    def _drop_malformed(self, reason: str, detail: Any) -> None:
        self.malformed_envelopes_total += 1
        self._logger.warning("Dropping malformed envelope (%s): %s", reason, detail)

    async def _on_welcome(self, session_id: str) -> None:
        if self.session_id and self.session_id != session_id:
            self._logger.info("Discarding stale session id %s", self.session_id)
        self.session_id = session_id
        self.state = ConnectionState.WELCOMED
        self._logger.info("Session welcome received. Session ID: %s", session_id)
        await self.subscribe()

    # ══════════════════════════════════════════════════════════
    #  Subscriptions
    # ══════════════════════════════════════════════════════════

    def _condition(self) -> dict[str, str]:
        condition = {"broadcaster_user_id": self._twitch.broadcaster_user_id}
        if self._twitch.bot_user_id:
            condition["user_id"] = self._twitch.bot_user_id
        return condition

    async def subscribe(self) -> None:
        """Subscribe the held session to every configured event type.

        Raises SubscriptionError (fatal) on the first rejected request.
        """
        if self.state is not ConnectionState.WELCOMED or not self.session_id:
            raise RuntimeError(f"Cannot subscribe in state {self.state.value}")

        for event_type in self._twitch.event_types:
            await self._api.create_eventsub_subscription(
                event_type,
                self.session_id,
                self._condition(),
                version=self._twitch.event_version,
            )
            self._logger.info("Subscribed to %s", event_type)

        self.state = ConnectionState.SUBSCRIBED
