"""Prometheus metrics server for twitch-economy.

Serves ``/metrics`` (Prometheus text exposition) and ``/health`` (JSON)
from an aiohttp web app running inside the bot's event loop.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from .main import EconomyBot


def _escape_label(value: str) -> str:
    """Escape a Prometheus label value (backslash, quote, newline)."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class EconomyMetricsServer:
    """Economy-specific Prometheus metrics endpoint."""

    def __init__(
        self,
        bot: EconomyBot,
        host: str = "0.0.0.0",
        port: int = 28290,
        logger: logging.Logger | None = None,
    ) -> None:
        self._bot = bot
        self._host = host
        self._port = port
        self._logger = logger or logging.getLogger("economy.metrics")
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        self._logger.info("Metrics server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ─────────────────────────────────────────────

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        body = "\n".join(self.collect_metrics()) + "\n"
        return web.Response(text=body, content_type="text/plain")

    async def _handle_health(self, request: web.Request) -> web.Response:
        details = self.get_health_details()
        status = 200 if details["status"] == "healthy" else 503
        return web.json_response(details, status=status)

    # ── Collection ───────────────────────────────────────────

    def collect_metrics(self) -> list[str]:
        """Collect economy-specific Prometheus metrics."""
        bot = self._bot
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"economy_events_processed_total {bot.events_processed}")
        lines.append(f"economy_auto_responses_total {bot.auto_responses_total}")
        lines.append(f"economy_commands_processed_total {bot.dispatcher.commands_processed}")
        lines.append(f"economy_commands_denied_total {bot.dispatcher.commands_denied}")
        lines.append(f"economy_commands_rate_limited_total {bot.dispatcher.commands_rate_limited}")
        lines.append(f"economy_custom_commands_served_total {bot.dispatcher.custom_commands_served}")
        lines.append(f"economy_messages_sent_total {bot.notifier.messages_sent}")
        lines.append(f"economy_send_failures_total {bot.notifier.send_failures}")
        lines.append(f"economy_store_flush_failures_total {bot.store.flush_failures}")
        lines.append(f"economy_watch_points_awarded_total {bot.rewarder.points_awarded}")

        session = bot.session
        lines.append(f"economy_ws_connections_total {session.connections_total}")
        lines.append(f"economy_ws_reconnects_total {session.reconnects_total}")
        lines.append(f"economy_ws_notifications_total {session.notifications_total}")
        lines.append(f"economy_ws_malformed_envelopes_total {session.malformed_envelopes_total}")

        # ── Gauges ───────────────────────────────────────────
        lines.append(f"economy_total_accounts {bot.store.account_count}")
        lines.append(f"economy_total_points {bot.store.total_points}")
        lines.append(f"economy_custom_commands {len(bot.store.command_names())}")
        lines.append(f"economy_pending_delayed_messages {bot.notifier.pending_count}")
        lines.append(f"economy_uptime_seconds {bot.uptime_seconds:.0f}")
        for state in type(session.state):
            value = 1 if session.state is state else 0
            lines.append(f'economy_ws_state{{state="{state.value}"}} {value}')

        for emote, count in bot.emotes.top(10):
            lines.append(f'economy_emote_uses_total{{emote="{_escape_label(emote)}"}} {count}')

        return lines

    def get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        state = self._bot.session.state
        return {
            "status": "healthy" if self._bot.session.running else "stopped",
            "connection_state": state.value,
            "session_id": self._bot.session.session_id,
            "accounts": self._bot.store.account_count,
            "custom_commands": len(self._bot.store.command_names()),
        }
