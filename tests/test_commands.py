"""Tests for twitch_economy.commands — dispatcher and built-in commands."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import MODERATOR, sent_messages
from twitch_economy.classifier import CommandInvocation
from twitch_economy.commands import (
    BUILTIN_COMMANDS,
    Command,
    CommandDispatcher,
    CommandRateLimiter,
    build_command_map,
)
from twitch_economy.store import EconomyStore


class TestAddPoints:
    """Moderator-only grant."""

    async def test_moderator_grants_points(self, dispatcher: CommandDispatcher, store: EconomyStore):
        reply = await dispatcher.handle("addpoints", MODERATOR, ["bob", "100"])
        assert store.get_points("bob") == 100
        assert "100" in reply
        assert "bob" in reply

    async def test_grant_is_persisted_before_reply(
        self, dispatcher: CommandDispatcher, tmp_path: Path,
    ):
        await dispatcher.handle("addpoints", MODERATOR, ["bob", "100"])
        data = json.loads((tmp_path / "points.json").read_text())
        assert data["bob"] == 100

    async def test_grant_accumulates(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await dispatcher.handle("addpoints", MODERATOR, ["bob", "100"])
        await dispatcher.handle("addpoints", MODERATOR, ["Bob", "25"])
        assert store.get_points("bob") == 125

    async def test_target_mention_marker_stripped(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await dispatcher.handle("addpoints", MODERATOR, ["@Bob", "5"])
        assert store.get_points("bob") == 5

    @pytest.mark.parametrize("args", [
        ["bob", "100"],
        ["rando", "1"],
        ["bob", "-5"],
        ["bob", "abc"],
        [],
    ])
    async def test_non_moderator_never_changes_balances(
        self, dispatcher: CommandDispatcher, store: EconomyStore, args: list[str],
    ):
        await store.adjust_points("bob", 7)
        reply = await dispatcher.handle("addpoints", "rando", args)
        assert store.get_points("bob") == 7
        assert store.get_points("rando") == 0
        assert "permission" in reply
        assert dispatcher.commands_denied == 1

    async def test_missing_args_usage(self, dispatcher: CommandDispatcher):
        reply = await dispatcher.handle("addpoints", MODERATOR, ["bob"])
        assert reply == "Usage: -addpoints <user> <amount>"

    @pytest.mark.parametrize("amount", ["0", "-10", "ten", "1.5", ""])
    async def test_invalid_amount(self, dispatcher: CommandDispatcher, store: EconomyStore, amount: str):
        reply = await dispatcher.handle("addpoints", MODERATOR, ["bob", amount])
        assert reply.startswith("Invalid amount.")
        assert store.get_points("bob") == 0


class TestCheckPoints:
    async def test_unseen_user_has_zero(self, dispatcher: CommandDispatcher, store: EconomyStore, tmp_path: Path):
        reply = await dispatcher.handle("points", "alice", ["ghost"])
        assert reply == "@ghost has 0 points."
        assert not store.has_account("ghost")
        assert not (tmp_path / "points.json").exists()

    async def test_defaults_to_speaker(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 42)
        reply = await dispatcher.handle("points", "Alice", [])
        assert reply == "@alice has 42 points."

    async def test_alias(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 3)
        reply = await dispatcher.handle("bal", "alice", [])
        assert "3" in reply


class TestGivePoints:
    async def test_transfer_preserves_sum(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 100)
        await store.adjust_points("bob", 10)
        before = store.get_points("alice") + store.get_points("bob")

        reply = await dispatcher.handle("givepoints", "alice", ["bob", "30"])

        assert store.get_points("alice") == 70
        assert store.get_points("bob") == 40
        assert store.get_points("alice") + store.get_points("bob") == before
        assert "30" in reply

    async def test_insufficient_balance_refused(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 10)
        reply = await dispatcher.handle("givepoints", "alice", ["bob", "11"])
        assert "only have 10" in reply
        assert store.get_points("alice") == 10
        assert store.get_points("bob") == 0

    async def test_exact_balance_allowed(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 10)
        await dispatcher.handle("give", "alice", ["bob", "10"])
        assert store.get_points("alice") == 0
        assert store.get_points("bob") == 10

    async def test_self_transfer_refused(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 10)
        reply = await dispatcher.handle("givepoints", "alice", ["@Alice", "5"])
        assert "yourself" in reply
        assert store.get_points("alice") == 10

    async def test_bad_args_usage(self, dispatcher: CommandDispatcher):
        reply = await dispatcher.handle("givepoints", "alice", ["bob", "zero"])
        assert "Usage: -givepoints" in reply


class TestGamble:
    async def test_win_adds_stake(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 100)
        with patch("random.random", return_value=0.1):
            reply = await dispatcher.handle("gamble", "alice", ["40"])
        assert store.get_points("alice") == 140
        assert "won" in reply
        assert "140" in reply

    async def test_loss_removes_stake(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 100)
        with patch("random.random", return_value=0.9):
            reply = await dispatcher.handle("gamble", "alice", ["40"])
        assert store.get_points("alice") == 60
        assert "lost" in reply

    async def test_stake_above_balance_rejected(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 10)
        reply = await dispatcher.handle("gamble", "alice", ["11"])
        assert "enough" in reply
        assert store.get_points("alice") == 10

    async def test_all_in(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 50)
        with patch("random.random", return_value=0.9):
            await dispatcher.handle("gamble", "alice", ["all"])
        assert store.get_points("alice") == 0

    async def test_all_in_with_nothing(self, dispatcher: CommandDispatcher, store: EconomyStore):
        reply = await dispatcher.handle("gamble", "alice", ["all"])
        assert "no points" in reply

    @pytest.mark.parametrize("args", [[], ["0"], ["-3"], ["lots"]])
    async def test_invalid_stake(self, dispatcher: CommandDispatcher, store: EconomyStore, args: list[str]):
        await store.adjust_points("alice", 10)
        reply = await dispatcher.handle("gamble", "alice", args)
        assert "Usage: -gamble" in reply
        assert store.get_points("alice") == 10

    async def test_outcome_is_exactly_plus_or_minus_stake(self, store: EconomyStore, notifier):
        """Over many trials each change is ±stake and both sides occur about equally."""
        dispatcher = CommandDispatcher(
            store, notifier, [MODERATOR], rate_limit_per_minute=10_000,
            logger=logging.getLogger("test"),
        )
        await store.adjust_points("alice", 10_000)
        wins = losses = 0
        for _ in range(400):
            before = store.get_points("alice")
            await dispatcher.handle("gamble", "alice", ["5"])
            delta = store.get_points("alice") - before
            assert delta in (5, -5)
            if delta > 0:
                wins += 1
            else:
                losses += 1
        assert 120 < wins < 280
        assert wins + losses == 400


class TestCustomCommands:
    async def test_add_then_invoke_then_remove(self, dispatcher: CommandDispatcher, store: EconomyStore):
        reply = await dispatcher.handle("addcmd", MODERATOR, ["hello", "hi", "there"])
        assert reply == 'Command "-hello" added!'
        assert store.get_command("hello") == "hi there"

        assert await dispatcher.handle("hello", "anyone", []) == "hi there"

        reply = await dispatcher.handle("delcmd", MODERATOR, ["hello"])
        assert reply == 'Command "-hello" removed!'
        assert await dispatcher.handle("hello", "anyone", []) is None

    async def test_add_overwrites(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await dispatcher.handle("addcmd", MODERATOR, ["Hello", "one"])
        await dispatcher.handle("addcmd", MODERATOR, ["hello", "two"])
        assert store.get_command("hello") == "two"
        assert store.command_names() == ["hello"]

    async def test_name_prefix_is_stripped(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await dispatcher.handle("addcmd", MODERATOR, ["-discord", "join", "us"])
        assert store.get_command("discord") == "join us"

    async def test_non_moderator_add_is_silent(self, dispatcher: CommandDispatcher, store: EconomyStore):
        reply = await dispatcher.handle("addcmd", "rando", ["hello", "hi"])
        assert reply is None
        assert store.get_command("hello") is None

    async def test_non_moderator_delete_is_silent(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.set_command("hello", "hi")
        reply = await dispatcher.handle("delcmd", "rando", ["hello"])
        assert reply is None
        assert store.get_command("hello") == "hi"

    async def test_add_missing_text_usage(self, dispatcher: CommandDispatcher):
        reply = await dispatcher.handle("addcmd", MODERATOR, ["hello"])
        assert reply == "Usage: -addcmd <command> <response>"

    async def test_add_builtin_name_refused(self, dispatcher: CommandDispatcher, store: EconomyStore):
        reply = await dispatcher.handle("addcmd", MODERATOR, ["points", "nope"])
        assert "built in" in reply
        assert store.get_command("points") is None

    async def test_delete_absent(self, dispatcher: CommandDispatcher):
        reply = await dispatcher.handle("delcmd", MODERATOR, ["nothing"])
        assert reply == 'Command "-nothing" does not exist.'

    async def test_unknown_command_ignored(self, dispatcher: CommandDispatcher):
        assert await dispatcher.handle("nosuch", "alice", ["x"]) is None

    async def test_commands_listing(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.set_command("hello", "hi")
        reply = await dispatcher.handle("commands", "alice", [])
        assert "-addpoints" in reply
        assert "Custom: -hello" in reply


class TestDispatch:
    async def test_dispatch_sends_reply(self, dispatcher: CommandDispatcher, mock_api: MagicMock):
        await dispatcher.dispatch(CommandInvocation(name="points", speaker="alice", args=[]))
        assert sent_messages(mock_api) == ["@alice has 0 points."]

    async def test_dispatch_silent_sends_nothing(self, dispatcher: CommandDispatcher, mock_api: MagicMock):
        await dispatcher.dispatch(CommandInvocation(name="nosuch", speaker="alice", args=[]))
        mock_api.send_chat_message.assert_not_called()

    async def test_handler_exception_reported(self, store: EconomyStore, notifier):
        class Boom(Command):
            name = "boom"

            async def execute(self, ctx, parsed):
                raise RuntimeError("kaboom")

        dispatcher = CommandDispatcher(store, notifier, [], commands=[Boom()])
        reply = await dispatcher.handle("boom", "alice", [])
        assert "went wrong" in reply

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError):
            build_command_map([*BUILTIN_COMMANDS, BUILTIN_COMMANDS[0]])


class TestDispatcherRateLimit:
    """Per-user command cap (disabled unless configured)."""

    @pytest.fixture
    def limited(self, store: EconomyStore, notifier) -> CommandDispatcher:
        return CommandDispatcher(
            store, notifier, [MODERATOR], rate_limit_per_minute=10,
            logger=logging.getLogger("test"),
        )

    async def test_unlimited_by_default(self, dispatcher: CommandDispatcher, store: EconomyStore):
        await store.adjust_points("alice", 50)
        for _ in range(20):
            assert await dispatcher.handle("points", "alice", []) is not None
        reply = await dispatcher.handle("givepoints", "alice", ["bob", "5"])
        assert "gave 5" in reply
        assert store.get_points("alice") == 45
        assert dispatcher.commands_rate_limited == 0

    async def test_limit_drops_excess(self, limited: CommandDispatcher):
        replies = [await limited.handle("points", "alice", []) for _ in range(12)]
        assert all(replies[:10])
        assert replies[10:] == [None, None]
        assert limited.commands_rate_limited == 2

    async def test_denied_user_still_gets_refusal(self, limited: CommandDispatcher, store: EconomyStore):
        replies = [await limited.handle("addpoints", "rando", ["bob", "100"]) for _ in range(11)]
        assert replies[10] == "@rando, you do not have permission to add points."
        assert limited.commands_rate_limited == 0
        assert store.get_points("bob") == 0

    async def test_moderators_not_rate_limited(self, limited: CommandDispatcher):
        replies = [await limited.handle("points", MODERATOR, []) for _ in range(15)]
        assert all(replies)

    def test_cleanup_without_limiter(self, dispatcher: CommandDispatcher):
        dispatcher.cleanup()


class TestCommandRateLimiter:
    def test_window_reset(self):
        from datetime import datetime, timezone

        limiter = CommandRateLimiter(max_per_minute=2)
        assert limiter.check("alice") is True
        assert limiter.check("alice") is True
        assert limiter.check("alice") is False

        now = datetime.now(timezone.utc).timestamp()
        limiter._counters["alice"] = [now - 61] * 2
        assert limiter.check("alice") is True

    def test_cleanup_removes_stale(self):
        from datetime import datetime, timezone

        limiter = CommandRateLimiter()
        now = datetime.now(timezone.utc).timestamp()
        limiter._counters["old"] = [now - 300]
        limiter._counters["new"] = [now]
        limiter.cleanup()
        assert "old" not in limiter._counters
        assert "new" in limiter._counters
