"""Service orchestrator — EconomyBot.

Owns every piece of mutable state (store, emote counters, session) and wires
the components together:
HTTP session → token validation → store load → metrics → session loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from . import __version__
from .classifier import AutoResponseMatch, CommandInvocation, EmoteMention, MessageClassifier
from .commands import CommandDispatcher
from .config import EconomyConfig, load_config
from .emotes import EmoteTracker
from .metrics_server import EconomyMetricsServer
from .notifier import ChatNotifier
from .rewards import WatchTimeRewarder
from .session import SessionManager
from .store import EconomyStore
from .twitch_client import TwitchApiClient


class EconomyBot:
    """Top-level application orchestrator."""

    _MAINTENANCE_INTERVAL = 300  # seconds

    def __init__(
        self,
        config: EconomyConfig,
        api: TwitchApiClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("economy")
        self._bot_username = config.bot.username.lower()
        self._bot_user_id = config.twitch.bot_user_id

        # Components
        self.api = api or TwitchApiClient(config.twitch, logging.getLogger("economy.twitch"))
        self.store = EconomyStore(
            config.storage.points_file,
            config.storage.commands_file,
            logging.getLogger("economy.store"),
        )
        self.notifier = ChatNotifier(self.api, logging.getLogger("economy.notifier"))
        self.emotes = EmoteTracker(config.emotes.names)
        self.classifier = MessageClassifier(
            prefix=config.commands.prefix,
            auto_responses=config.auto_responses,
            emotes=self.emotes if len(self.emotes) else None,
            logger=logging.getLogger("economy.classifier"),
        )
        self.dispatcher = CommandDispatcher(
            store=self.store,
            notifier=self.notifier,
            moderators=config.bot.moderators,
            prefix=config.commands.prefix,
            currency=config.commands.currency_name,
            rate_limit_per_minute=config.commands.rate_limit_per_minute,
            logger=logging.getLogger("economy.commands"),
        )
        self.rewarder = WatchTimeRewarder(
            config.watch_rewards,
            self.store,
            bot_username=self._bot_username,
            logger=logging.getLogger("economy.rewards"),
        )
        self.session = SessionManager(
            config, self.api, self.handle_chat_event, logging.getLogger("economy.session"),
        )
        self.metrics_server: EconomyMetricsServer | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._maintenance_task: asyncio.Task | None = None

        # Counters (for metrics)
        self.events_processed: int = 0
        self.auto_responses_total: int = 0
        self.emote_mentions_total: int = 0

    @classmethod
    def from_config_file(cls, config_path: str) -> EconomyBot:
        return cls(load_config(config_path))

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the bot and block on the session loop.

        Raises TokenValidationError / SubscriptionError on fatal failures.
        """
        self.logger.info("Starting twitch-economy...")
        self._start_time = time.time()

        # 1. HTTP session + credential check (fatal on failure)
        await self.api.start()
        await self.api.validate_token()

        # 2. Load persisted state
        await self.store.load()

        # 3. Metrics server
        if self.config.metrics.enabled:
            self.metrics_server = EconomyMetricsServer(
                self,
                host=self.config.metrics.host,
                port=self.config.metrics.port,
                logger=logging.getLogger("economy.metrics"),
            )
            await self.metrics_server.start()

        # 4. Periodic housekeeping
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        self._running = True
        self.logger.info("twitch-economy started successfully (v%s)", __version__)

        # 5. Block on the session loop
        await self.session.run()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if self._start_time is None:
            return
        self.logger.info("Shutting down twitch-economy...")
        self._running = False
        self._start_time = None

        await self.session.stop()
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        await self.notifier.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        await self.api.stop()

        self.logger.info("twitch-economy stopped.")

    async def _maintenance_loop(self) -> None:
        """Periodically prune rate-limiter windows."""
        try:
            while True:
                await asyncio.sleep(self._MAINTENANCE_INTERVAL)
                self.dispatcher.cleanup()
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Chat events
    # ------------------------------------------------------------------

    def _is_self(self, event: dict[str, Any], speaker: str) -> bool:
        if self._bot_user_id and event.get("chatter_user_id") == self._bot_user_id:
            return True
        return speaker == self._bot_username

    async def handle_chat_event(self, event: dict[str, Any]) -> None:
        """Process one chat notification to completion."""
        try:
            self.events_processed += 1
            message = event.get("message")
            text = message.get("text") if isinstance(message, dict) else None
            speaker, text = MessageClassifier.normalize(event.get("chatter_user_login"), text)

            if not speaker or not text:
                self.logger.warning("Received invalid message event: %s", event)
                return

            # Our own lines come back through EventSub; never react to them
            if self._is_self(event, speaker):
                return

            self.logger.info('Received message from %s: "%s"', speaker, text)

            await self.rewarder.on_message(speaker)

            result = self.classifier.classify(speaker, text)
            if result is None:
                return

            if isinstance(result, AutoResponseMatch):
                self.auto_responses_total += 1
                self.logger.info('Auto-response "%s" recognized', result.trigger)
                if result.delay_ms > 0:
                    self.notifier.send_delayed(result.response, result.delay_ms)
                else:
                    await self.notifier.send(result.response)
            elif isinstance(result, EmoteMention):
                self.emote_mentions_total += 1
                count = self.emotes.record(result.emote, speaker)
                self.logger.debug("Emote %s used by %s (%d total)", result.emote, speaker, count)
            elif isinstance(result, CommandInvocation):
                self.logger.info(
                    "Command %r with arguments %s from %s", result.name, result.args, speaker,
                )
                await self.dispatcher.dispatch(result)
        except Exception:
            self.logger.exception(
                "chat handler error for %s", event.get("chatter_user_login", "?"),
            )
