"""
Pluggable model-provider protocols for afm-chat.

The chat core talks to the language model only through
:class:`ProviderProtocol` and :class:`SessionProtocol`, so the Apple
Foundation Models runtime can be swapped for any other backend (or a
scripted fake in tests).

Usage:
    from afm_chat.protocols import get_provider, set_provider

    provider = get_provider()              # AppleFMProvider by default
    session = provider.create_session("Be brief.", tools=[])
    async for event in session.stream_response("Hi", temperature=0.7):
        ...

    set_provider(my_custom_provider)
"""

from __future__ import annotations

import enum
import importlib
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol, Union, cast, runtime_checkable

from .models import ToolCallRecord, ToolKind
from .transcript import TranscriptEntry, reconcile_transcript

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping, Sequence

logger = logging.getLogger("afm_chat")

__all__ = [
    "AppleFMProvider",
    "AppleFMSession",
    "Availability",
    "ContentUpdated",
    "ProviderProtocol",
    "SessionProtocol",
    "StreamEvent",
    "ToolCallsUpdated",
    "ToolHandle",
    "UnavailableReason",
    "enabled_tools",
    "get_provider",
    "set_provider",
]


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


class UnavailableReason(str, enum.Enum):
    DEVICE_NOT_ELIGIBLE = "deviceNotEligible"
    NOT_ENABLED = "notEnabled"
    MODEL_NOT_READY = "modelNotReady"
    OTHER = "other"


@dataclass(frozen=True)
class Availability:
    """Whether the model can be used, and why not when it cannot."""

    available: bool
    reason: UnavailableReason | None = None
    detail: str = ""

    @classmethod
    def ok(cls) -> Availability:
        return cls(True)

    @classmethod
    def unavailable(cls, reason: UnavailableReason, detail: str = "") -> Availability:
        return cls(False, reason, detail)

    def __str__(self) -> str:
        if self.available:
            return "available"
        if self.reason is UnavailableReason.OTHER and self.detail:
            return f"unavailable ({self.detail})"
        return f"unavailable ({self.reason.value if self.reason else 'unknown'})"


@dataclass(frozen=True)
class ToolHandle:
    """An external tool the provider may invoke mid-generation.

    ``payload`` carries the provider-native tool object (for Apple FM, an
    ``apple_fm_sdk.Tool`` instance). The chat core never calls it.
    """

    name: str
    description: str
    kind: ToolKind | None = None
    payload: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class ContentUpdated:
    """The complete response text so far (not a delta)."""

    full_text: str


@dataclass(frozen=True)
class ToolCallsUpdated:
    """The authoritative list of tool calls made so far in the turn."""

    calls: tuple[ToolCallRecord, ...]


StreamEvent = Union[ContentUpdated, ToolCallsUpdated]


def enabled_tools(
    tools: Iterable[ToolHandle],
    tools_enabled: bool,
    tool_settings: Mapping[ToolKind, bool] | None = None,
) -> list[ToolHandle]:
    """Filter *tools* down to the ones a conversation's settings allow."""
    if not tools_enabled:
        return []
    settings = tool_settings or {}
    return [tool for tool in tools if tool.kind is None or settings.get(tool.kind, True)]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class SessionProtocol(Protocol):
    """Structural interface for a live model session."""

    async def respond(self, prompt: str, temperature: float) -> str:
        """Return the complete response to *prompt*."""
        ...

    def stream_response(self, prompt: str, temperature: float) -> AsyncIterator[StreamEvent]:
        """Start a new turn and yield cumulative stream events."""
        ...


@runtime_checkable
class ProviderProtocol(Protocol):
    """Structural interface for a model runtime."""

    def availability(self) -> Availability: ...

    def create_session(self, instructions: str, tools: Sequence[ToolHandle]) -> SessionProtocol: ...


# ---------------------------------------------------------------------------
# Apple FM concrete provider
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _import_apple_fm_sdk() -> Any:
    """Import ``apple_fm_sdk`` lazily so protocol import does not hard-require it."""
    return importlib.import_module("apple_fm_sdk")


_REASON_MARKERS = (
    ("devicenoteligible", UnavailableReason.DEVICE_NOT_ELIGIBLE),
    ("appleintelligencenotenabled", UnavailableReason.NOT_ENABLED),
    ("notenabled", UnavailableReason.NOT_ENABLED),
    ("modelnotready", UnavailableReason.MODEL_NOT_READY),
)


def _availability_from_sdk(available: bool, reason: Any) -> Availability:
    if available:
        return Availability.ok()
    detail = "" if reason is None else str(reason)
    compact = detail.replace("_", "").replace(" ", "").lower()
    for marker, mapped in _REASON_MARKERS:
        if marker in compact:
            return Availability.unavailable(mapped, detail)
    return Availability.unavailable(UnavailableReason.OTHER, detail)


_ENTRY_KINDS = {
    "instructions": "instructions",
    "prompt": "prompt",
    "response": "response",
    "toolcalls": "tool_calls",
    "tool_calls": "tool_calls",
    "tooloutput": "tool_output",
    "tool_output": "tool_output",
}


def _segments_text(entry: Any, separator: str) -> str:
    segments = getattr(entry, "segments", None)
    if segments is None:
        return str(getattr(entry, "content", "") or "")
    parts = []
    for segment in segments:
        value = getattr(segment, "content", segment)
        parts.append(str(value))
    return separator.join(part for part in parts if part)


def _entry_from_sdk(entry: Any) -> TranscriptEntry | None:
    """Map one SDK transcript entry onto the neutral :class:`TranscriptEntry`."""
    raw_kind = getattr(entry, "kind", None) or type(entry).__name__
    kind = _ENTRY_KINDS.get(str(raw_kind).lower())
    if kind is None:
        return None
    if kind == "tool_calls":
        source = getattr(entry, "calls", None)
        try:
            raw_calls = list(entry if source is None else source)
        except TypeError:
            raw_calls = []
        calls = tuple(
            (str(getattr(call, "tool_name", "tool")), str(getattr(call, "arguments", "")))
            for call in raw_calls
        )
        return TranscriptEntry(kind, calls=calls)
    separator = "\n" if kind == "tool_output" else ""
    return TranscriptEntry(kind, text=_segments_text(entry, separator))


class AppleFMSession:
    """Wraps ``apple_fm_sdk.LanguageModelSession`` behind :class:`SessionProtocol`."""

    def __init__(self, raw_session: Any, tools: Sequence[ToolHandle] = ()) -> None:
        self._session = raw_session
        self._descriptions = {tool.name: tool.description for tool in tools}

    def _options(self, temperature: float) -> dict[str, Any]:
        fm_sdk = _import_apple_fm_sdk()
        options_cls = getattr(fm_sdk, "GenerationOptions", None)
        if options_cls is None:
            return {}
        return {"options": options_cls(temperature=temperature)}

    async def respond(self, prompt: str, temperature: float) -> str:
        response = await self._session.respond(prompt, **self._options(temperature))
        return str(getattr(response, "content", response))

    def _reconcile(self) -> tuple[list[ToolCallRecord], str]:
        transcript = getattr(self._session, "transcript", None)
        if transcript is None:
            return [], ""
        entries = [mapped for mapped in map(_entry_from_sdk, transcript) if mapped is not None]
        return reconcile_transcript(entries, self._descriptions)

    async def stream_response(self, prompt: str, temperature: float) -> AsyncIterator[StreamEvent]:
        best_text = ""
        last_calls: tuple[ToolCallRecord, ...] = ()
        stream = self._session.stream_response(prompt, **self._options(temperature))
        async for snapshot in stream:
            text = str(getattr(snapshot, "content", snapshot))
            if len(text) > len(best_text):
                best_text = text

            calls, transcript_text = self._reconcile()
            full_text = transcript_text if len(transcript_text) >= len(best_text) else best_text
            yield ContentUpdated(full_text)

            current_calls = tuple(calls)
            if current_calls != last_calls:
                last_calls = current_calls
                yield ToolCallsUpdated(current_calls)


class AppleFMProvider:
    """Default provider that delegates to ``apple_fm_sdk``.

    The SDK model object is created on first use, so constructing the
    provider never requires the SDK to be importable.
    """

    def __init__(self) -> None:
        self._model: Any = None

    @property
    def raw_model(self) -> Any:
        """Access the underlying SDK model object."""
        if self._model is None:
            self._model = _import_apple_fm_sdk().SystemLanguageModel()
        return self._model

    def availability(self) -> Availability:
        available, reason = self.raw_model.is_available()
        return _availability_from_sdk(bool(available), reason)

    def create_session(self, instructions: str, tools: Sequence[ToolHandle] = ()) -> AppleFMSession:
        fm_sdk = _import_apple_fm_sdk()
        native_tools = [tool.payload for tool in tools if tool.payload is not None]
        kwargs: dict[str, Any] = {"model": self.raw_model, "instructions": instructions}
        if native_tools:
            kwargs["tools"] = native_tools
        return AppleFMSession(fm_sdk.LanguageModelSession(**kwargs), tools)


# ---------------------------------------------------------------------------
# Module-level provider registry
# ---------------------------------------------------------------------------

_provider: Any = None


def set_provider(provider: Any) -> None:
    """Replace the active provider (module-level singleton)."""
    global _provider
    _provider = provider
    logger.info("[AFMChat] Provider set to %s", type(provider).__name__)


def get_provider() -> ProviderProtocol:
    """Return the active provider, creating the Apple FM default on first use."""
    global _provider
    if _provider is None:
        _provider = AppleFMProvider()
    return cast("ProviderProtocol", _provider)
