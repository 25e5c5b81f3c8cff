"""Chat command dispatcher — points economy and custom text commands.

Each built-in command is a ``Command`` object with the same contract:
authorization flags, ``parse(ctx, args)`` which raises ``UsageError`` on bad
arguments, and ``execute(ctx, parsed)`` which mutates state through the store
(flushing before it returns) and produces the reply line. Names that are not
built in fall back to the custom command table.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from .utils import normalize_username, parse_positive_int

if TYPE_CHECKING:
    from .classifier import CommandInvocation
    from .notifier import ChatNotifier
    from .store import EconomyStore


# ══════════════════════════════════════════════════════════
#  Rate limiter
# ══════════════════════════════════════════════════════════

class CommandRateLimiter:
    """Sliding-window rate limiter for chat commands per user."""

    def __init__(self, max_per_minute: int = 10) -> None:
        self._max = max_per_minute
        self._counters: dict[str, list[float]] = {}

    def check(self, username: str) -> bool:
        """Return True if the command should be allowed."""
        now = datetime.now(timezone.utc).timestamp()
        window = self._counters.get(username, [])

        # Prune old entries
        cutoff = now - 60
        window = [t for t in window if t > cutoff]

        if len(window) >= self._max:
            self._counters[username] = window
            return False

        window.append(now)
        self._counters[username] = window
        return True

    def cleanup(self) -> None:
        """Remove stale entries."""
        now = datetime.now(timezone.utc).timestamp()
        cutoff = now - 120
        stale = [k for k, v in self._counters.items() if all(t < cutoff for t in v)]
        for k in stale:
            del self._counters[k]


# ══════════════════════════════════════════════════════════
#  Command contract
# ══════════════════════════════════════════════════════════

class UsageError(Exception):
    """Bad or missing arguments; the message is sent back to chat."""


@dataclass
class CommandContext:
    speaker: str
    is_moderator: bool
    store: EconomyStore
    prefix: str
    currency: str
    builtin_names: frozenset[str] = frozenset()


class Command:
    """Base class for built-in commands."""

    name: str = ""
    aliases: tuple[str, ...] = ()
    syntax: str = ""
    moderator_only: bool = False
    # None means unauthorized callers get no reply at all
    denied_message: str | None = None

    def usage(self, ctx: CommandContext) -> str:
        return f"Usage: {ctx.prefix}{self.name} {self.syntax}".rstrip()

    def parse(self, ctx: CommandContext, args: list[str]) -> Any:
        return args

    async def execute(self, ctx: CommandContext, parsed: Any) -> str | None:
        raise NotImplementedError

    def _target_and_amount(self, ctx: CommandContext, args: list[str]) -> tuple[str, int]:
        if len(args) < 2:
            raise UsageError(self.usage(ctx))
        target = normalize_username(args[0])
        if not target:
            raise UsageError(self.usage(ctx))
        amount = parse_positive_int(args[1])
        if amount is None:
            raise UsageError(f"Invalid amount. {self.usage(ctx)}")
        return target, amount


# ══════════════════════════════════════════════════════════
#  Economy commands
# ══════════════════════════════════════════════════════════

class AddPointsCommand(Command):
    name = "addpoints"
    syntax = "<user> <amount>"
    moderator_only = True
    denied_message = "@{user}, you do not have permission to add points."

    def parse(self, ctx: CommandContext, args: list[str]) -> tuple[str, int]:
        return self._target_and_amount(ctx, args)

    async def execute(self, ctx: CommandContext, parsed: tuple[str, int]) -> str:
        target, amount = parsed
        await ctx.store.adjust_points(target, amount)
        return f"@{target} has been given {amount} {ctx.currency}! 🎉"


class PointsCommand(Command):
    name = "points"
    aliases = ("bal",)
    syntax = "[user]"

    def parse(self, ctx: CommandContext, args: list[str]) -> str:
        target = normalize_username(args[0]) if args else ""
        return target or ctx.speaker

    async def execute(self, ctx: CommandContext, parsed: str) -> str:
        # Read-only: never creates an account
        return f"@{parsed} has {ctx.store.get_points(parsed)} {ctx.currency}."


class GivePointsCommand(Command):
    name = "givepoints"
    aliases = ("give",)
    syntax = "<user> <amount>"

    def parse(self, ctx: CommandContext, args: list[str]) -> tuple[str, int]:
        return self._target_and_amount(ctx, args)

    async def execute(self, ctx: CommandContext, parsed: tuple[str, int]) -> str:
        target, amount = parsed
        if target == ctx.speaker:
            return f"@{ctx.speaker}, you can't give {ctx.currency} to yourself."
        if not await ctx.store.transfer_points(ctx.speaker, target, amount):
            balance = ctx.store.get_points(ctx.speaker)
            return f"@{ctx.speaker}, you only have {balance} {ctx.currency}."
        return f"@{ctx.speaker} gave {amount} {ctx.currency} to @{target}!"


class GambleCommand(Command):
    name = "gamble"
    syntax = "<amount|all>"
    win_chance = 0.5

    def parse(self, ctx: CommandContext, args: list[str]) -> int:
        if not args:
            raise UsageError(self.usage(ctx))
        if args[0].lower() == "all":
            stake = ctx.store.get_points(ctx.speaker)
            if stake <= 0:
                raise UsageError(f"@{ctx.speaker}, you have no {ctx.currency} to gamble.")
            return stake
        stake = parse_positive_int(args[0])
        if stake is None:
            raise UsageError(f"Invalid amount. {self.usage(ctx)}")
        return stake

    async def execute(self, ctx: CommandContext, parsed: int) -> str:
        stake = parsed
        balance = ctx.store.get_points(ctx.speaker)
        if stake > balance:
            return f"@{ctx.speaker}, you don't have enough {ctx.currency} (balance: {balance})."

        if random.random() < self.win_chance:
            new_balance = await ctx.store.adjust_points(ctx.speaker, stake)
            return (
                f"🎲 @{ctx.speaker} gambled {stake} and won! "
                f"New balance: {new_balance} {ctx.currency}."
            )
        new_balance = await ctx.store.adjust_points(ctx.speaker, -stake)
        return (
            f"🎲 @{ctx.speaker} gambled {stake} and lost. "
            f"New balance: {new_balance} {ctx.currency}."
        )


# ══════════════════════════════════════════════════════════
#  Custom command management
# ══════════════════════════════════════════════════════════

class AddCustomCommand(Command):
    name = "addcmd"
    syntax = "<command> <response>"
    moderator_only = True

    def parse(self, ctx: CommandContext, args: list[str]) -> tuple[str, str]:
        cmd_name = args[0].lstrip(ctx.prefix).lower() if args else ""
        response = " ".join(args[1:])
        if not cmd_name or not response:
            raise UsageError(self.usage(ctx))
        return cmd_name, response

    async def execute(self, ctx: CommandContext, parsed: tuple[str, str]) -> str:
        cmd_name, response = parsed
        if cmd_name in ctx.builtin_names:
            return f'Command "{ctx.prefix}{cmd_name}" is built in and cannot be replaced.'
        await ctx.store.set_command(cmd_name, response)
        return f'Command "{ctx.prefix}{cmd_name}" added!'


class RemoveCustomCommand(Command):
    name = "delcmd"
    syntax = "<command>"
    moderator_only = True

    def parse(self, ctx: CommandContext, args: list[str]) -> str:
        cmd_name = args[0].lstrip(ctx.prefix).lower() if args else ""
        if not cmd_name:
            raise UsageError(self.usage(ctx))
        return cmd_name

    async def execute(self, ctx: CommandContext, parsed: str) -> str:
        if not await ctx.store.delete_command(parsed):
            return f'Command "{ctx.prefix}{parsed}" does not exist.'
        return f'Command "{ctx.prefix}{parsed}" removed!'


class ListCommandsCommand(Command):
    name = "commands"

    async def execute(self, ctx: CommandContext, parsed: Any) -> str:
        builtins = ", ".join(f"{ctx.prefix}{c.name}" for c in BUILTIN_COMMANDS)
        custom = ctx.store.command_names()
        if not custom:
            return f"Commands: {builtins}"
        return f"Commands: {builtins} | Custom: " + ", ".join(f"{ctx.prefix}{c}" for c in custom)


BUILTIN_COMMANDS: tuple[Command, ...] = (
    AddPointsCommand(),
    PointsCommand(),
    GivePointsCommand(),
    GambleCommand(),
    AddCustomCommand(),
    RemoveCustomCommand(),
    ListCommandsCommand(),
)


def build_command_map(commands: Iterable[Command]) -> dict[str, Command]:
    """Index commands by name and alias."""
    command_map: dict[str, Command] = {}
    for command in commands:
        for key in (command.name, *command.aliases):
            if key in command_map:
                raise ValueError(f"Duplicate command name: {key}")
            command_map[key] = command
    return command_map


# ══════════════════════════════════════════════════════════
#  Dispatcher
# ══════════════════════════════════════════════════════════

class CommandDispatcher:
    """Routes classified command invocations to their handlers."""

    def __init__(
        self,
        store: EconomyStore,
        notifier: ChatNotifier,
        moderators: Iterable[str],
        prefix: str = "-",
        currency: str = "points",
        rate_limit_per_minute: int = 0,
        logger: logging.Logger | None = None,
        commands: Iterable[Command] = BUILTIN_COMMANDS,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._moderators: frozenset[str] = frozenset(m.lower() for m in moderators)
        self._prefix = prefix
        self._currency = currency
        self._logger = logger or logging.getLogger("economy.commands")
        self._command_map = build_command_map(commands)
        self._builtin_names = frozenset(self._command_map)
        self._rate_limiter = (
            CommandRateLimiter(max_per_minute=rate_limit_per_minute)
            if rate_limit_per_minute > 0
            else None
        )

        # Metrics counters (exposed to metrics_server)
        self.commands_processed: int = 0
        self.commands_denied: int = 0
        self.commands_rate_limited: int = 0
        self.custom_commands_served: int = 0

    def is_moderator(self, username: str) -> bool:
        return username.lower() in self._moderators

    async def dispatch(self, invocation: CommandInvocation) -> None:
        """Handle an invocation and send its reply, if any."""
        reply = await self.handle(invocation.name, invocation.speaker, invocation.args)
        if reply:
            await self._notifier.send(reply)

    async def handle(self, name: str, speaker: str, args: list[str]) -> str | None:
        """Run a command and return its reply line without sending it."""
        speaker = speaker.lower()
        is_mod = self.is_moderator(speaker)

        command = self._command_map.get(name)

        if command is not None and command.moderator_only and not is_mod:
            self.commands_denied += 1
            self._logger.warning("User %s is not authorized to use %s%s", speaker, self._prefix, name)
            if command.denied_message is None:
                return None
            return command.denied_message.format(user=speaker)

        if self._is_rate_limited(speaker, is_mod):
            self.commands_rate_limited += 1
            self._logger.info("Rate limited %s on %s%s", speaker, self._prefix, name)
            return None

        if command is None:
            return self._handle_custom(name)

        ctx = CommandContext(
            speaker=speaker,
            is_moderator=is_mod,
            store=self._store,
            prefix=self._prefix,
            currency=self._currency,
            builtin_names=self._builtin_names,
        )

        try:
            parsed = command.parse(ctx, args)
        except UsageError as e:
            self._logger.info("Rejected %s%s %s from %s: %s", self._prefix, name, args, speaker, e)
            return str(e)

        try:
            reply = await command.execute(ctx, parsed)
        except Exception:
            self._logger.exception("Command handler error for %s/%s", speaker, name)
            return "❌ Something went wrong processing that command."

        self.commands_processed += 1
        self._logger.info("Command %s%s %s from %s handled", self._prefix, name, args, speaker)
        return reply

    def _is_rate_limited(self, speaker: str, is_mod: bool) -> bool:
        if self._rate_limiter is None or is_mod:
            return False
        return not self._rate_limiter.check(speaker)

    def _handle_custom(self, name: str) -> str | None:
        response = self._store.get_command(name)
        if response is None:
            self._logger.warning("Unknown command: %s", name)
            return None
        self.custom_commands_served += 1
        return response

    def cleanup(self) -> None:
        if self._rate_limiter is not None:
            self._rate_limiter.cleanup()
