"""JSON-backed persistence for the points ledger and custom commands.

Follows the same executor pattern as a blocking database layer: each public
coroutine snapshots the in-memory state on the event loop and hands the
blocking file I/O to ``loop.run_in_executor(None, ...)``. Both documents are
loaded whole at startup and rewritten whole after every mutation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .utils import normalize_username, parse_timestamp


@dataclass
class UserAccount:
    """A single viewer's balance. Identity is the lowercased chat handle."""

    username: str
    points: int = 0
    last_reward: datetime | None = None

    def to_json(self) -> int | dict[str, Any]:
        # Plain balances stay plain ints; reward tracking needs the richer record
        if self.last_reward is None:
            return self.points
        return {"points": self.points, "last_reward": self.last_reward.isoformat()}


class EconomyStore:
    """In-memory ledger + custom command table with durable JSON flushes."""

    def __init__(
        self,
        points_path: str,
        commands_path: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self._points_path = Path(points_path)
        self._commands_path = Path(commands_path)
        self._logger = logger or logging.getLogger("economy.store")

        self._accounts: dict[str, UserAccount] = {}
        self._commands: dict[str, str] = {}

        # Serializes whole-document writes
        self._write_lock = asyncio.Lock()

        # Metrics counters (exposed to metrics_server)
        self.flush_failures: int = 0

    # ══════════════════════════════════════════════════════════
    #  Loading
    # ══════════════════════════════════════════════════════════

    async def load(self) -> None:
        """Load both documents. Missing or corrupt files load as empty."""
        loop = asyncio.get_running_loop()
        raw_points = await loop.run_in_executor(None, self._read_json, self._points_path)
        raw_commands = await loop.run_in_executor(None, self._read_json, self._commands_path)

        self._accounts = {}
        for name, value in raw_points.items():
            account = self._parse_account(name, value)
            if account is None:
                self._logger.warning("Skipping malformed points entry for %r: %r", name, value)
                continue
            self._accounts[account.username] = account

        self._commands = {
            str(name).lower(): value
            for name, value in raw_commands.items()
            if isinstance(value, str)
        }
        self._logger.info(
            "Loaded %d account(s) from %s and %d custom command(s) from %s",
            len(self._accounts), self._points_path,
            len(self._commands), self._commands_path,
        )

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self._logger.error("Error reading %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            self._logger.error("Expected a JSON object in %s, got %s", path, type(data).__name__)
            return {}
        return data

    @staticmethod
    def _parse_account(name: str, value: Any) -> UserAccount | None:
        username = normalize_username(name)
        if not username:
            return None
        # bool is an int subclass; reject it explicitly
        if isinstance(value, int) and not isinstance(value, bool):
            return UserAccount(username, value)
        if isinstance(value, dict):
            points = value.get("points", 0)
            if not isinstance(points, int) or isinstance(points, bool):
                return None
            return UserAccount(username, points, parse_timestamp(value.get("last_reward")))
        return None

    # ══════════════════════════════════════════════════════════
    #  Points ledger
    # ══════════════════════════════════════════════════════════

    def get_points(self, username: str) -> int:
        """Return a balance without creating an account."""
        account = self._accounts.get(normalize_username(username))
        return account.points if account else 0

    def get_account(self, username: str) -> UserAccount:
        """Return the account, creating an in-memory default on first reference."""
        key = normalize_username(username)
        account = self._accounts.get(key)
        if account is None:
            account = UserAccount(key)
            self._accounts[key] = account
        return account

    def has_account(self, username: str) -> bool:
        return normalize_username(username) in self._accounts

    @property
    def account_count(self) -> int:
        return len(self._accounts)

    @property
    def total_points(self) -> int:
        return sum(a.points for a in self._accounts.values())

    async def adjust_points(self, username: str, delta: int) -> int:
        """Apply a signed delta, flush, and return the new balance."""
        account = self.get_account(username)
        account.points += delta
        await self.save_points()
        return account.points

    async def transfer_points(self, sender: str, target: str, amount: int) -> bool:
        """Move points between two accounts. False if the sender is short."""
        if self.get_points(sender) < amount:
            return False
        source = self.get_account(sender)
        dest = self.get_account(target)
        source.points -= amount
        dest.points += amount
        await self.save_points()
        return True

    async def record_reward(self, username: str, amount: int, at: datetime) -> int:
        """Credit a passive reward and stamp the reward time."""
        account = self.get_account(username)
        account.points += amount
        account.last_reward = at
        await self.save_points()
        return account.points

    # ══════════════════════════════════════════════════════════
    #  Custom commands
    # ══════════════════════════════════════════════════════════

    def get_command(self, name: str) -> str | None:
        return self._commands.get(name.lower())

    def command_names(self) -> list[str]:
        return sorted(self._commands)

    async def set_command(self, name: str, response: str) -> None:
        self._commands[name.lower()] = response
        await self.save_commands()

    async def delete_command(self, name: str) -> bool:
        if self._commands.pop(name.lower(), None) is None:
            return False
        await self.save_commands()
        return True

    # ══════════════════════════════════════════════════════════
    #  Flushing
    # ══════════════════════════════════════════════════════════

    async def save_points(self) -> bool:
        snapshot = {name: acct.to_json() for name, acct in self._accounts.items()}
        return await self._flush(self._points_path, snapshot)

    async def save_commands(self) -> bool:
        return await self._flush(self._commands_path, dict(self._commands))

    async def _flush(self, path: Path, data: dict[str, Any]) -> bool:
        """Write a whole document. Failures are logged; memory is kept as-is."""
        async with self._write_lock:
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write_json, path, data)
                return True
            except (OSError, TypeError, ValueError):
                self.flush_failures += 1
                self._logger.exception("Error writing %s", path)
                return False

    @staticmethod
    def _write_json(path: Path, data: dict[str, Any]) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
