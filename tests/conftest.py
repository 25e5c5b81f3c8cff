"""Shared test fixtures for twitch-economy."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from twitch_economy.commands import CommandDispatcher
from twitch_economy.config import EconomyConfig
from twitch_economy.main import EconomyBot
from twitch_economy.notifier import ChatNotifier
from twitch_economy.store import EconomyStore
from twitch_economy.twitch_client import TwitchApiClient


MODERATOR = "xtlos"


# ── Minimal config dict matching EconomyConfig schema ────────

def make_config_dict(tmp_path: Path | None = None, **overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base_dir = tmp_path or Path(".")
    base = {
        "twitch": {
            "client_id": "test-client-id",
            "oauth_token": "test-token",
            "bot_user_id": "1000",
            "broadcaster_user_id": "2000",
        },
        "bot": {"username": "TestBot", "moderators": ["XTLOS", "othermod"]},
        "storage": {
            "points_file": str(base_dir / "points.json"),
            "commands_file": str(base_dir / "commands.json"),
        },
        "session": {"reconnect_delay_seconds": 5.0},
        "commands": {"prefix": "-", "currency_name": "points"},
        "metrics": {"enabled": False},
    }
    base.update(overrides)
    return base


def make_chat_event(username: str, text: str, user_id: str = "42") -> dict:
    """Build a channel.chat.message event payload."""
    return {
        "broadcaster_user_id": "2000",
        "chatter_user_id": user_id,
        "chatter_user_login": username,
        "chatter_user_name": username,
        "message": {"text": text, "fragments": []},
    }


@pytest.fixture
def sample_config_dict(tmp_path: Path) -> dict:
    return make_config_dict(tmp_path)


@pytest.fixture
def sample_config(sample_config_dict: dict) -> EconomyConfig:
    return EconomyConfig(**sample_config_dict)


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncGenerator[EconomyStore, None]:
    """Provide a loaded store backed by temp files."""
    s = EconomyStore(
        str(tmp_path / "points.json"),
        str(tmp_path / "commands.json"),
        logging.getLogger("test"),
    )
    await s.load()
    yield s


@pytest.fixture
def mock_api() -> MagicMock:
    """Return a mock TwitchApiClient with async methods."""
    api = MagicMock(spec=TwitchApiClient)
    api.start = AsyncMock()
    api.stop = AsyncMock()
    api.validate_token = AsyncMock(return_value={"login": "testbot", "expires_in": 3600})
    api.create_eventsub_subscription = AsyncMock(return_value={"data": [{"status": "enabled"}]})
    api.send_chat_message = AsyncMock(return_value=True)
    return api


@pytest.fixture
def notifier(mock_api: MagicMock) -> ChatNotifier:
    return ChatNotifier(mock_api, logging.getLogger("test"))


@pytest.fixture
def dispatcher(store: EconomyStore, notifier: ChatNotifier) -> CommandDispatcher:
    return CommandDispatcher(
        store=store,
        notifier=notifier,
        moderators=[MODERATOR],
        prefix="-",
        currency="points",
        logger=logging.getLogger("test"),
    )


@pytest.fixture
def bot(sample_config: EconomyConfig, mock_api: MagicMock) -> EconomyBot:
    """EconomyBot wired to a mock API (not started)."""
    return EconomyBot(sample_config, api=mock_api, logger=logging.getLogger("test"))


def sent_messages(mock_api: MagicMock) -> list[str]:
    return [c.args[0] for c in mock_api.send_chat_message.call_args_list]
