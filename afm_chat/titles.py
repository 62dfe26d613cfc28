"""
Conversation titles: a deterministic fallback plus best-effort AI titles.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from .protocols import ProviderProtocol, SessionProtocol

logger = logging.getLogger("afm_chat")

__all__ = ["MAX_TITLE_LENGTH", "TITLE_INSTRUCTIONS", "TitleGenerator", "fallback_title"]

FALLBACK_TITLE_WORDS = 4
# Messages up to this many words are used whole.
FALLBACK_KEEP_WHOLE_WORDS = 5
ELLIPSIS = "..."

MAX_TITLE_LENGTH = 50
TITLE_TEMPERATURE = 0.3

TITLE_INSTRUCTIONS = (
    "You write titles for chat conversations. Given the first message of a "
    "conversation, reply with a short title of at most six words that captures "
    "its topic. Use the same language as the message and Title Case. Reply with "
    "the title only: no quotes, no trailing punctuation, no explanation."
)

_QUOTE_CHARS = "\"'`“”‘’"


def fallback_title(text: str) -> str:
    """Derive an immediate title from the first user message."""
    words = text.split()
    if len(words) <= FALLBACK_KEEP_WHOLE_WORDS:
        return text.strip()
    return " ".join(words[:FALLBACK_TITLE_WORDS]) + ELLIPSIS


def clean_title(raw: str) -> str | None:
    """Normalise a generated title, or return ``None`` if it is unusable."""
    title = raw.strip().strip(_QUOTE_CHARS).strip()
    if not title or len(title) > MAX_TITLE_LENGTH:
        return None
    return title


class TitleGenerator:
    """Generates conversation titles on one long-lived auxiliary session.

    Failures never surface: the caller's fallback title simply stays.
    """

    def __init__(self, provider: ProviderProtocol, temperature: float = TITLE_TEMPERATURE) -> None:
        self._provider = provider
        self._temperature = temperature
        self._session: SessionProtocol | None = None

    @property
    def session(self) -> SessionProtocol:
        if self._session is None:
            self._session = self._provider.create_session(TITLE_INSTRUCTIONS, [])
        return self._session

    async def generate_title(self, first_message: str) -> str | None:
        """Ask the model for a title; ``None`` when the result is unusable."""
        prompt = f"First message:\n{first_message.strip()}"
        try:
            raw = await self.session.respond(prompt, self._temperature)
        except Exception as exc:
            logger.info("[AFMChat Titles] Title generation failed: %s", exc)
            return None
        title = clean_title(str(raw))
        if title is None:
            logger.debug("[AFMChat Titles] Discarding unusable title %r", raw)
        return title

    def generate(
        self,
        conversation_id: str,
        first_message: str,
        on_title: Callable[[str, str], None],
    ) -> asyncio.Task[None]:
        """Fire-and-forget: call ``on_title(conversation_id, title)`` on success."""

        async def run() -> None:
            title = await self.generate_title(first_message)
            if title is not None:
                on_title(conversation_id, title)

        return asyncio.get_running_loop().create_task(run(), name=f"title-{conversation_id}")
