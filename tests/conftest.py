"""
Shared fixtures and fakes for the afm-chat test suite.

The real provider needs macOS 26+ on Apple Silicon with Apple Intelligence
enabled, so chat tests run against ``ScriptedProvider``: every session it
creates replays a scripted list of stream steps. Apple FM adapter tests mock
``apple_fm_sdk`` at the lazy import boundary instead.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from afm_chat.manager import ChatManager
from afm_chat.protocols import Availability, ContentUpdated, UnavailableReason
from afm_chat.store import MemoryByteStore
from afm_chat.titles import TITLE_INSTRUCTIONS

# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedSession:
    """Replays one script per turn.

    A script is a list of steps: a ``str`` becomes ``ContentUpdated``, an
    ``asyncio.Event`` is awaited (to hold a turn open), an exception is
    raised, and anything else is yielded as-is.
    """

    def __init__(self, provider, instructions, tools):
        self.provider = provider
        self.instructions = instructions
        self.tools = list(tools)
        self.prompts = []

    async def respond(self, prompt, temperature):
        self.provider.title_prompts.append(prompt)
        if isinstance(self.provider.title, BaseException):
            raise self.provider.title
        return self.provider.title

    async def stream_response(self, prompt, temperature):
        self.prompts.append((prompt, temperature))
        for step in self.provider.next_script():
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, asyncio.Event):
                await step.wait()
            elif isinstance(step, str):
                yield ContentUpdated(step)
            else:
                yield step
            await asyncio.sleep(0)


class ScriptedProvider:
    """In-memory :class:`ProviderProtocol` implementation."""

    def __init__(self, replies=None, title="Scripted Title", available=True):
        self.replies = list(replies or [])
        self.title = title
        self.available = available
        self.sessions = []
        self.title_prompts = []

    def availability(self):
        if self.available:
            return Availability.ok()
        return Availability.unavailable(UnavailableReason.NOT_ENABLED)

    def create_session(self, instructions, tools):
        session = ScriptedSession(self, instructions, tools)
        self.sessions.append(session)
        return session

    def next_script(self):
        return self.replies.pop(0) if self.replies else ["OK"]

    @property
    def chat_sessions(self):
        return [s for s in self.sessions if s.instructions != TITLE_INSTRUCTIONS]


# ---------------------------------------------------------------------------
# Mock factory functions (Apple FM SDK boundary)
# ---------------------------------------------------------------------------


def make_mock_model(available=True, reason=None):
    """Create a mock SystemLanguageModel with configurable availability."""
    model = MagicMock()
    model.is_available.return_value = (available, reason)
    return model


def make_mock_stream(*snapshots):
    """Return a callable producing an async iterator over *snapshots*."""

    async def _stream(prompt, **kwargs):
        for snapshot in snapshots:
            yield snapshot

    return _stream


def make_mock_sdk(model=None, session=None):
    """Create a mock ``apple_fm_sdk`` module."""
    fm = MagicMock()
    fm.SystemLanguageModel.return_value = model or make_mock_model()
    if session is None:
        session = MagicMock()
        session.respond = AsyncMock(return_value="ok")
        session.transcript = []
    fm.LanguageModelSession.return_value = session
    return fm


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return MemoryByteStore()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
async def manager(provider, store):
    mgr = ChatManager.from_store(provider, store)
    yield mgr
    await mgr.close()
