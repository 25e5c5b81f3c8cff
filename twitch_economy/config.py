"""Configuration system for twitch-economy.

All Pydantic models are defined here with sensible defaults. Secrets are
normally supplied through ``${VAR}`` references that are expanded from the
process environment at load time.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


# ═══════════════════════════════════════════════════════════════
#  Twitch connection & identity
# ═══════════════════════════════════════════════════════════════

class TwitchConfig(BaseModel):
    client_id: str
    oauth_token: str
    bot_user_id: str
    broadcaster_user_id: str
    eventsub_url: str = "wss://eventsub.wss.twitch.tv/ws"
    api_base_url: str = "https://api.twitch.tv"
    validate_url: str = "https://id.twitch.tv/oauth2/validate"
    event_types: list[str] = Field(
        default=["channel.chat.message"],
        description="EventSub subscription types requested after every welcome",
    )
    event_version: str = "1"
    request_timeout_seconds: float = 10.0

    @field_validator("oauth_token")
    @classmethod
    def _strip_oauth_prefix(cls, v: str) -> str:
        # Tokens copied from chat tooling often carry an "oauth:" prefix
        return v[len("oauth:"):] if v.startswith("oauth:") else v


class BotConfig(BaseModel):
    username: str = "pointsbot"
    moderators: list[str] = Field(default_factory=list)

    @field_validator("moderators")
    @classmethod
    def _lower_moderators(cls, v: list[str]) -> list[str]:
        return [m.strip().lower() for m in v if m.strip()]


class StorageConfig(BaseModel):
    points_file: str = "points.json"
    commands_file: str = "commands.json"


class SessionConfig(BaseModel):
    reconnect_delay_seconds: float = 5.0
    heartbeat_seconds: float = 30.0


# ═══════════════════════════════════════════════════════════════
#  Chat behaviour
# ═══════════════════════════════════════════════════════════════

class CommandsConfig(BaseModel):
    prefix: str = "-"
    rate_limit_per_minute: int = Field(default=0, ge=0)  # 0 = unlimited
    currency_name: str = "points"

    @field_validator("prefix")
    @classmethod
    def _single_char_prefix(cls, v: str) -> str:
        if len(v) != 1 or v.isspace():
            raise ValueError("commands.prefix must be a single non-space character")
        return v


class AutoResponse(BaseModel):
    response: str
    delay_ms: int = Field(default=0, ge=0)


def _default_auto_responses() -> dict[str, AutoResponse]:
    return {
        "LOL": AutoResponse(response="LOL", delay_ms=1000),
        "WOW": AutoResponse(response="WOW", delay_ms=2000),
        "GG": AutoResponse(response="GG", delay_ms=500),
    }


class EmotesConfig(BaseModel):
    """Read-only emote names; an exact chat match counts as an emote use."""
    names: list[str] = Field(default_factory=list)


class WatchRewardsConfig(BaseModel):
    """Passive reward for chatting, at most once per interval per user."""
    enabled: bool = False
    points: int = Field(default=1, ge=1)
    interval_minutes: int = Field(default=5, ge=1)
    excluded_users: list[str] = Field(default_factory=list)

    @field_validator("excluded_users")
    @classmethod
    def _lower_excluded(cls, v: list[str]) -> list[str]:
        return [u.strip().lower() for u in v if u.strip()]


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 28290


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class EconomyConfig(BaseModel):
    """Full bot config."""

    twitch: TwitchConfig
    bot: BotConfig = Field(default_factory=BotConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    auto_responses: dict[str, AutoResponse] = Field(default_factory=_default_auto_responses)
    emotes: EmotesConfig = Field(default_factory=EmotesConfig)
    watch_rewards: WatchRewardsConfig = Field(default_factory=WatchRewardsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> EconomyConfig:
    """Load and validate YAML config file into EconomyConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return EconomyConfig(**raw)
