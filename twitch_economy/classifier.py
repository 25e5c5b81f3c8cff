"""Message classifier — turns a raw chat line into one trigger category.

Order is fixed, first match wins: exact auto-response, emote mention,
prefixed command, plain text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .config import AutoResponse
    from .emotes import EmoteTracker


@dataclass(frozen=True)
class AutoResponseMatch:
    trigger: str
    response: str
    delay_ms: int


@dataclass(frozen=True)
class EmoteMention:
    emote: str


@dataclass(frozen=True)
class CommandInvocation:
    name: str
    speaker: str
    args: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlainText:
    text: str


Classification = Union[AutoResponseMatch, EmoteMention, CommandInvocation, PlainText]


class MessageClassifier:
    """Classifies (speaker, text) pairs. Stateless apart from its tables."""

    def __init__(
        self,
        prefix: str,
        auto_responses: dict[str, AutoResponse],
        emotes: EmoteTracker | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._prefix = prefix
        self._auto_responses = auto_responses
        self._emotes = emotes
        self._logger = logger or logging.getLogger("economy.classifier")

    @staticmethod
    def normalize(speaker: str | None, text: str | None) -> tuple[str, str]:
        return (speaker or "").strip().lower(), (text or "").strip()

    def classify(self, speaker: str | None, text: str | None) -> Classification | None:
        """Return the classification, or None when there is nothing to act on."""
        speaker, text = self.normalize(speaker, text)
        if not speaker or not text:
            return None

        # Exact, case-sensitive
        auto = self._auto_responses.get(text)
        if auto is not None:
            return AutoResponseMatch(trigger=text, response=auto.response, delay_ms=auto.delay_ms)

        if self._emotes is not None and self._emotes.contains(text):
            return EmoteMention(emote=text)

        if text.startswith(self._prefix):
            tokens = text[len(self._prefix):].split()
            if not tokens:
                self._logger.warning("No command found after prefix in message: %r", text)
                return None
            return CommandInvocation(name=tokens[0].lower(), speaker=speaker, args=tokens[1:])

        return PlainText(text=text)
