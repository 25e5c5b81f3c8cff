"""Emote tracker — read-only emote set plus in-memory usage counts."""

from __future__ import annotations

from collections import Counter
from typing import Iterable


class EmoteTracker:
    """Answers "is this exact text an emote?" and counts uses."""

    def __init__(self, names: Iterable[str]) -> None:
        self._names: frozenset[str] = frozenset(n for n in names if n)
        self._usage: Counter[str] = Counter()
        self._users: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._names)

    def contains(self, text: str) -> bool:
        # Emote names are case-sensitive on Twitch
        return text in self._names

    def record(self, emote: str, username: str) -> int:
        """Count one use; returns the new total for that emote."""
        self._usage[emote] += 1
        self._users.setdefault(emote, set()).add(username.lower())
        return self._usage[emote]

    def usage(self, emote: str) -> int:
        return self._usage.get(emote, 0)

    def unique_users(self, emote: str) -> int:
        return len(self._users.get(emote, ()))

    def top(self, n: int = 5) -> list[tuple[str, int]]:
        return self._usage.most_common(n)

    @property
    def total_uses(self) -> int:
        return sum(self._usage.values())
