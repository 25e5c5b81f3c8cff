"""Shared utility helpers for twitch-economy."""

from __future__ import annotations

from datetime import datetime, timezone


def normalize_username(name: str | None) -> str:
    """Lowercase a chat handle and drop a leading '@' mention marker."""
    if not name:
        return ""
    return name.strip().lstrip("@").lower()


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse an ISO timestamp string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # Naive timestamps are stored as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def parse_positive_int(value: str) -> int | None:
    """Parse a base-10 integer argument; None unless it is strictly positive."""
    try:
        amount = int(value, 10)
    except (ValueError, TypeError):
        return None
    return amount if amount > 0 else None
