"""
Value types for conversations, messages and tool-call telemetry.

Messages are plain dataclasses mutated in place while a response streams in.
Every timestamp comes from :class:`MonotonicClock`, so list order, creation
order and timestamp order always agree.
"""

from __future__ import annotations

import enum
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

__all__ = [
    "DEFAULT_INSTRUCTIONS",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_TITLE",
    "MAX_TEMPERATURE",
    "MIN_TEMPERATURE",
    "ChatError",
    "ChatErrorKind",
    "Conversation",
    "Message",
    "MonotonicClock",
    "ToolCallRecord",
    "ToolCallStatus",
    "ToolKind",
    "clamp_temperature",
    "default_clock",
    "new_id",
    "parse_timestamp",
]

DEFAULT_INSTRUCTIONS = "You are a helpful assistant."
DEFAULT_TEMPERATURE = 1.0
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0
DEFAULT_TITLE = "New Chat"


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid.uuid4().hex


def clamp_temperature(value: Any) -> float:
    """Coerce *value* to a float within the supported sampling range."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TEMPERATURE
    if number != number:  # NaN
        return DEFAULT_TEMPERATURE
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, number))


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse an ISO-8601 string or a unix epoch number into an aware datetime."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(float(raw), tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class MonotonicClock:
    """Issues strictly increasing UTC timestamps.

    Two messages created within the same clock tick (or across a wall-clock
    step backwards) still get distinct, ordered timestamps: each reading is
    bumped one microsecond past the previous one when needed.
    """

    _STEP = timedelta(microseconds=1)

    def __init__(self) -> None:
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(UTC)
            if self._last is not None and current <= self._last:
                current = self._last + self._STEP
            self._last = current
            return current

    def observe(self, timestamp: datetime) -> None:
        """Make sure later readings sort after *timestamp* (used after loading)."""
        with self._lock:
            if self._last is None or timestamp > self._last:
                self._last = timestamp


_default_clock = MonotonicClock()


def default_clock() -> MonotonicClock:
    """Return the process-wide clock."""
    return _default_clock


class ToolKind(str, enum.Enum):
    """Kinds of external tools the model runtime may call."""

    CODE_INTERPRETER = "codeInterpreter"
    LOCATION = "location"
    WEB_FETCH = "webFetch"
    WEB_SEARCH = "webSearch"


class ToolCallStatus(str, enum.Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED)


@dataclass
class ToolCallRecord:
    """One invocation of an external tool observed during a turn."""

    tool_name: str
    tool_description: str = ""
    arguments: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "toolName": self.tool_name,
            "toolDescription": self.tool_description,
            "arguments": self.arguments,
            "status": self.status.value,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRecord:
        """Load a record, falling back to safe defaults for missing fields."""
        name = str(data.get("toolName", "") or "tool")
        try:
            status = ToolCallStatus(str(data.get("status", "completed")))
        except ValueError:
            status = ToolCallStatus.COMPLETED
        result = data.get("result")
        error = data.get("error")
        return cls(
            tool_name=name,
            tool_description=str(data.get("toolDescription", name)),
            arguments=str(data.get("arguments", "")),
            status=status,
            result=None if result is None else str(result),
            error=None if error is None else str(error),
        )


class ChatErrorKind(str, enum.Enum):
    """Classes of provider failure shown to the user instead of a reply."""

    GUARDRAIL_VIOLATION = "guardrailViolation"
    CONTEXT_WINDOW_EXCEEDED = "contextWindowExceeded"
    UNSUPPORTED_FEATURE = "unsupportedFeature"
    RESPONSE_DECODING_FAILURE = "responseDecodingFailure"
    PROVIDER_UNAVAILABLE = "providerUnavailable"
    UNKNOWN = "unknown"


_NON_RECOVERABLE = frozenset(
    {
        ChatErrorKind.GUARDRAIL_VIOLATION,
        ChatErrorKind.CONTEXT_WINDOW_EXCEEDED,
        ChatErrorKind.UNSUPPORTED_FEATURE,
    }
)

_ERROR_MESSAGES = {
    ChatErrorKind.GUARDRAIL_VIOLATION: (
        "The request was declined by the model's safety guardrails."
    ),
    ChatErrorKind.CONTEXT_WINDOW_EXCEEDED: (
        "This conversation is too long for the model. Start a new chat to continue."
    ),
    ChatErrorKind.UNSUPPORTED_FEATURE: "The model does not support this request.",
    ChatErrorKind.RESPONSE_DECODING_FAILURE: (
        "The model returned a response that could not be read."
    ),
    ChatErrorKind.PROVIDER_UNAVAILABLE: "The on-device model is temporarily unavailable.",
    ChatErrorKind.UNKNOWN: "Something went wrong while generating a response.",
}


@dataclass(frozen=True)
class ChatError:
    """Structured, non-fatal error attached to an assistant message."""

    kind: ChatErrorKind
    detail: str = ""

    @property
    def recoverable(self) -> bool:
        """Whether a retry is worth offering."""
        return self.kind not in _NON_RECOVERABLE

    @property
    def message(self) -> str:
        base = _ERROR_MESSAGES[self.kind]
        if self.kind is ChatErrorKind.UNKNOWN and self.detail:
            return f"{base} ({self.detail})"
        return base

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "detail": self.detail}

    @classmethod
    def from_dict(cls, data: Any) -> ChatError:
        if isinstance(data, str):
            return cls(ChatErrorKind.UNKNOWN, data)
        if not isinstance(data, dict):
            return cls(ChatErrorKind.UNKNOWN)
        try:
            kind = ChatErrorKind(str(data.get("kind", "unknown")))
        except ValueError:
            kind = ChatErrorKind.UNKNOWN
        return cls(kind, str(data.get("detail", "")))


@dataclass
class Message:
    """A single chat message; assistant messages grow in place while streaming."""

    content: str
    is_user: bool
    timestamp: datetime = field(default_factory=lambda: default_clock().now())
    id: str = field(default_factory=new_id)
    error: ChatError | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        """An assistant reply that has not received any output yet."""
        return (
            not self.is_user and not self.content and self.error is None and not self.tool_calls
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "isUser": self.is_user,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.tool_calls:
            payload["toolCalls"] = [call.to_dict() for call in self.tool_calls]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Load a message. ``content`` and ``isUser`` are required."""
        if "content" not in data or "isUser" not in data:
            raise KeyError("message requires 'content' and 'isUser'")
        timestamp = parse_timestamp(data.get("timestamp")) or default_clock().now()
        error = data.get("error")
        raw_calls = data.get("toolCalls") or []
        return cls(
            content=str(data["content"]),
            is_user=bool(data["isUser"]),
            timestamp=timestamp,
            id=str(data.get("id") or new_id()),
            error=None if error is None else ChatError.from_dict(error),
            tool_calls=[
                ToolCallRecord.from_dict(call) for call in raw_calls if isinstance(call, dict)
            ],
        )


def _tool_settings_from_raw(raw: Any) -> dict[ToolKind, bool]:
    if not isinstance(raw, dict):
        return {}
    settings: dict[ToolKind, bool] = {}
    for key, value in raw.items():
        try:
            settings[ToolKind(str(key))] = bool(value)
        except ValueError:
            continue
    return settings


@dataclass
class Conversation:
    """An ordered message list plus the settings it is generated with."""

    id: str = field(default_factory=new_id)
    title: str = DEFAULT_TITLE
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: default_clock().now())
    system_prompt: str = DEFAULT_INSTRUCTIONS
    temperature: float = DEFAULT_TEMPERATURE
    tools_enabled: bool = True
    tool_settings: dict[ToolKind, bool] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.temperature = clamp_temperature(self.temperature)

    @property
    def user_message_count(self) -> int:
        return sum(1 for message in self.messages if message.is_user)

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def last_assistant_message(self) -> Message | None:
        """Most recent assistant message by list order."""
        for message in reversed(self.messages):
            if not message.is_user:
                return message
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "createdAt": self.created_at.isoformat(),
            "systemPrompt": self.system_prompt,
            "temperature": self.temperature,
            "toolsEnabled": self.tools_enabled,
        }
        if self.tool_settings:
            payload["toolSettings"] = {
                kind.value: enabled for kind, enabled in self.tool_settings.items()
            }
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        """Load a conversation. Only ``id`` is required; the rest defaults."""
        if not data.get("id"):
            raise KeyError("conversation requires 'id'")
        raw_messages = data.get("messages") or []
        if not isinstance(raw_messages, list):
            raise TypeError("'messages' must be a list")
        messages = [Message.from_dict(item) for item in raw_messages]
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or DEFAULT_TITLE),
            messages=messages,
            created_at=parse_timestamp(data.get("createdAt")) or default_clock().now(),
            system_prompt=str(data.get("systemPrompt", DEFAULT_INSTRUCTIONS)),
            temperature=clamp_temperature(data.get("temperature", DEFAULT_TEMPERATURE)),
            tools_enabled=bool(data.get("toolsEnabled", True)),
            tool_settings=_tool_settings_from_raw(data.get("toolSettings")),
        )
