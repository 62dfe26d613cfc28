"""
JSON persistence for the conversation list and user defaults.

The conversation list is stored as one JSON array under a single key and is
rewritten in full on every save. Decoding is tolerant of missing optional
fields; a blob that still cannot be decoded is backed up under a timestamped
key before the live list is reset, and recovery is attempted from the backup
with a lenient decoder that drops individual broken entries.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .exceptions import ConversationDecodeError
from .models import (
    DEFAULT_INSTRUCTIONS,
    DEFAULT_TEMPERATURE,
    Conversation,
    Message,
    ToolKind,
    clamp_temperature,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .store import ByteStore

logger = logging.getLogger("afm_chat")

__all__ = [
    "BACKUP_PREFIX",
    "CONVERSATIONS_KEY",
    "ChatDefaults",
    "ConversationRepository",
    "SettingsStore",
    "decode_conversations",
    "encode_conversations",
]

CONVERSATIONS_KEY = "savedChats"
BACKUP_PREFIX = f"{CONVERSATIONS_KEY}_backup_"

SYSTEM_PROMPT_KEY = "systemPrompt"
TEMPERATURE_KEY = "temperature"
TOOLS_ENABLED_KEY = "toolsEnabled"
TOOL_SETTINGS_KEY = "toolSettings"
CURRENT_CHAT_KEY = "currentChatId"


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


def encode_conversations(conversations: Iterable[Conversation]) -> bytes:
    """Serialise conversations to the persisted JSON array."""
    payload = [conversation.to_dict() for conversation in conversations]
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def _lenient_conversation(data: dict[str, Any]) -> Conversation:
    messages: list[Message] = []
    raw_messages = data.get("messages")
    for item in raw_messages if isinstance(raw_messages, list) else []:
        if not isinstance(item, dict):
            continue
        try:
            messages.append(Message.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("[AFMChat Persistence] Dropping unreadable message: %s", exc)
    stripped = {key: value for key, value in data.items() if key != "messages"}
    conversation = Conversation.from_dict(stripped)
    conversation.messages = messages
    return conversation


def decode_conversations(raw: bytes, *, lenient: bool = False) -> list[Conversation]:
    """Decode the persisted JSON array.

    In strict mode any unreadable conversation or message fails the whole
    blob with :class:`ConversationDecodeError`. In lenient mode broken
    entries are dropped and the rest is returned; only a blob that is not a
    JSON array at all still raises.
    """
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConversationDecodeError(f"invalid conversation JSON: {exc}") from exc
    if not isinstance(payload, list):
        raise ConversationDecodeError(
            f"expected a JSON array of conversations, got {type(payload).__name__}"
        )

    conversations: list[Conversation] = []
    for item in payload:
        try:
            if not isinstance(item, dict):
                raise TypeError(f"conversation entry is {type(item).__name__}, not an object")
            if lenient:
                conversations.append(_lenient_conversation(item))
            else:
                conversations.append(Conversation.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            if not lenient:
                raise ConversationDecodeError(f"unreadable conversation: {exc}") from exc
            logger.warning("[AFMChat Persistence] Dropping unreadable conversation: %s", exc)
    return conversations


# ---------------------------------------------------------------------------
# Conversation repository
# ---------------------------------------------------------------------------


class ConversationRepository:
    """Loads and saves the full conversation list through a :class:`ByteStore`."""

    def __init__(self, store: ByteStore) -> None:
        self._store = store

    @property
    def store(self) -> ByteStore:
        return self._store

    def save(self, conversations: Iterable[Conversation]) -> None:
        """Overwrite the persisted list with a full snapshot."""
        self._store.set(CONVERSATIONS_KEY, encode_conversations(conversations))

    def load(self) -> list[Conversation]:
        """Return the persisted list, backing up and recovering on corruption."""
        raw = self._store.get(CONVERSATIONS_KEY)
        if raw is None:
            return []
        try:
            return decode_conversations(raw)
        except ConversationDecodeError as exc:
            logger.error("[AFMChat Persistence] Saved conversations are unreadable: %s", exc)

        backup_key = self._backup(raw)
        self._store.set(CONVERSATIONS_KEY, b"[]")
        recovered = self._recover_from(backup_key)
        return recovered if recovered is not None else []

    def backup_keys(self) -> list[str]:
        """Backup keys, newest first."""

        def stamp(key: str) -> tuple[int, str]:
            suffix = key[len(BACKUP_PREFIX) :]
            head = suffix.split("_", 1)[0]
            return (int(head) if head.isdigit() else -1, suffix)

        keys = [key for key in self._store.all_keys() if key.startswith(BACKUP_PREFIX)]
        return sorted(keys, key=stamp, reverse=True)

    def recover_from_backups(self) -> list[Conversation] | None:
        """Try every backup, newest first; persist and return the first that decodes."""
        for key in self.backup_keys():
            recovered = self._recover_from(key)
            if recovered is not None:
                return recovered
        logger.warning("[AFMChat Persistence] No recoverable backup found.")
        return None

    def _backup(self, raw: bytes) -> str:
        millis = time.time_ns() // 1_000_000
        existing = self._store.all_keys()
        key = f"{BACKUP_PREFIX}{millis}"
        counter = 1
        while key in existing:
            key = f"{BACKUP_PREFIX}{millis}_{counter}"
            counter += 1
        self._store.set(key, raw)
        logger.warning("[AFMChat Persistence] Backed up unreadable conversations to %s", key)
        return key

    def _recover_from(self, key: str) -> list[Conversation] | None:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            conversations = decode_conversations(raw, lenient=True)
        except ConversationDecodeError as exc:
            logger.warning("[AFMChat Persistence] Backup %s is not recoverable: %s", key, exc)
            return None
        if not conversations:
            return None
        self.save(conversations)
        logger.info(
            "[AFMChat Persistence] Recovered %d conversation(s) from %s", len(conversations), key
        )
        return conversations


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class ChatDefaults:
    """Settings applied to newly created conversations."""

    system_prompt: str = DEFAULT_INSTRUCTIONS
    temperature: float = DEFAULT_TEMPERATURE
    tools_enabled: bool = True
    tool_settings: dict[ToolKind, bool] = field(default_factory=dict)


class SettingsStore:
    """User defaults and the last active conversation id, JSON-encoded per key."""

    def __init__(self, store: ByteStore) -> None:
        self._store = store

    def _read(self, key: str, default: Any) -> Any:
        raw = self._store.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("[AFMChat Settings] Ignoring unreadable value for %s", key)
            return default

    def _write(self, key: str, value: Any) -> None:
        self._store.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))

    def defaults(self) -> ChatDefaults:
        raw_tools = self._read(TOOL_SETTINGS_KEY, {})
        tool_settings: dict[ToolKind, bool] = {}
        if isinstance(raw_tools, dict):
            for key, value in raw_tools.items():
                try:
                    tool_settings[ToolKind(key)] = bool(value)
                except ValueError:
                    continue
        prompt = self._read(SYSTEM_PROMPT_KEY, DEFAULT_INSTRUCTIONS)
        return ChatDefaults(
            system_prompt=prompt if isinstance(prompt, str) else DEFAULT_INSTRUCTIONS,
            temperature=clamp_temperature(self._read(TEMPERATURE_KEY, DEFAULT_TEMPERATURE)),
            tools_enabled=bool(self._read(TOOLS_ENABLED_KEY, True)),
            tool_settings=tool_settings,
        )

    def save_defaults(self, defaults: ChatDefaults) -> None:
        self._write(SYSTEM_PROMPT_KEY, defaults.system_prompt)
        self._write(TEMPERATURE_KEY, clamp_temperature(defaults.temperature))
        self._write(TOOLS_ENABLED_KEY, bool(defaults.tools_enabled))
        self._write(
            TOOL_SETTINGS_KEY,
            {kind.value: enabled for kind, enabled in defaults.tool_settings.items()},
        )

    @property
    def last_active_id(self) -> str | None:
        value = self._read(CURRENT_CHAT_KEY, None)
        return value if isinstance(value, str) and value else None

    @last_active_id.setter
    def last_active_id(self, conversation_id: str | None) -> None:
        if conversation_id is None:
            self._store.remove(CURRENT_CHAT_KEY)
        else:
            self._write(CURRENT_CHAT_KEY, conversation_id)
