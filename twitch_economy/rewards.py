"""Watch-time rewards — passive points for taking part in chat.

Applies to every inbound chat message regardless of classification. A user
is credited at most once per configured interval; the last reward time is
stored on the account so the interval survives restarts.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .utils import now_utc

if TYPE_CHECKING:
    from .config import WatchRewardsConfig
    from .store import EconomyStore


class WatchTimeRewarder:
    """Credits chatters on a fixed interval."""

    def __init__(
        self,
        config: WatchRewardsConfig,
        store: EconomyStore,
        bot_username: str = "",
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._interval = timedelta(minutes=config.interval_minutes)
        self._excluded: set[str] = set(config.excluded_users)
        if bot_username:
            self._excluded.add(bot_username.lower())
        self._logger = logger or logging.getLogger("economy.rewards")

        # Metrics counters (exposed to metrics_server)
        self.points_awarded: int = 0

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def is_due(self, username: str, now: datetime | None = None) -> bool:
        """True when the user is eligible for a reward right now."""
        if not self._config.enabled or username in self._excluded:
            return False
        now = now or now_utc()
        # Peek without creating an account for users who are never credited
        if not self._store.has_account(username):
            return True
        last = self._store.get_account(username).last_reward
        return last is None or now - last >= self._interval

    async def on_message(self, username: str, now: datetime | None = None) -> int:
        """Credit the user if due. Returns the points awarded (0 if none)."""
        username = username.lower()
        now = now or now_utc()
        if not self.is_due(username, now):
            return 0

        amount = self._config.points
        balance = await self._store.record_reward(username, amount, now)
        self.points_awarded += amount
        self._logger.debug("Watch reward: %s +%d (balance %d)", username, amount, balance)
        return amount
