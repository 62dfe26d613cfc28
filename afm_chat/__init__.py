"""
afm-chat public API.

Importing the package never requires the Apple Foundation Models SDK; the
``apple_fm_sdk`` module is loaded only when :class:`AppleFMProvider` first
talks to the model.
"""

from __future__ import annotations

from .exceptions import AppleFMSetupError, ProviderError, classify_provider_error
from .manager import ChatManager, SessionBinding, SessionCache
from .models import (
    ChatError,
    ChatErrorKind,
    Conversation,
    Message,
    ToolCallRecord,
    ToolCallStatus,
    ToolKind,
)
from .persistence import ChatDefaults, ConversationRepository, SettingsStore
from .protocols import (
    AppleFMProvider,
    Availability,
    ContentUpdated,
    ToolCallsUpdated,
    ToolHandle,
    UnavailableReason,
    get_provider,
    set_provider,
)
from .store import MemoryByteStore, SqliteByteStore
from .titles import TitleGenerator, fallback_title

__all__ = [
    "AppleFMProvider",
    "AppleFMSetupError",
    "Availability",
    "ChatDefaults",
    "ChatError",
    "ChatErrorKind",
    "ChatManager",
    "ContentUpdated",
    "Conversation",
    "ConversationRepository",
    "MemoryByteStore",
    "Message",
    "ProviderError",
    "SessionBinding",
    "SessionCache",
    "SettingsStore",
    "SqliteByteStore",
    "TitleGenerator",
    "ToolCallRecord",
    "ToolCallStatus",
    "ToolCallsUpdated",
    "ToolHandle",
    "ToolKind",
    "UnavailableReason",
    "classify_provider_error",
    "fallback_title",
    "get_provider",
    "set_provider",
]
