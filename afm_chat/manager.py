"""
Conversation session manager, the single owner of chat state.

``ChatManager`` maps every conversation to a live model session
(:class:`SessionBinding`), runs the send / edit / retry / cancel protocol and
folds streamed response events back into message state.

Concurrency model: every public method is called on the event-loop thread.
Streaming turns and title generation run as independent asyncio tasks and
never touch conversation state directly; they post mutations onto a
single-consumer mailbox that applies them in order on the loop.

A conversation accepts one turn at a time: ``send_message`` and
``retry_message`` return ``False`` while a turn for the active conversation
is still streaming. Different conversations stream concurrently.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sqlite3
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

from .exceptions import classify_provider_error
from .models import (
    ChatError,
    Conversation,
    Message,
    MonotonicClock,
    ToolCallRecord,
    ToolCallStatus,
    ToolKind,
    clamp_temperature,
    default_clock,
)
from .persistence import ChatDefaults, ConversationRepository, SettingsStore
from .protocols import ContentUpdated, ToolCallsUpdated, enabled_tools
from .titles import TitleGenerator, fallback_title

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from .protocols import ProviderProtocol, SessionProtocol, StreamEvent, ToolHandle
    from .store import ByteStore

logger = logging.getLogger("afm_chat")

__all__ = [
    "ChatManager",
    "SessionBinding",
    "SessionCache",
    "compose_instructions",
    "render_history",
]

HISTORY_HEADER = "Conversation so far:"
INTERRUPTED_TOOL_ERROR = "The response failed before this tool finished."


def render_history(messages: Iterable[Message]) -> str:
    """Render prior exchanges for a fresh session's instructions."""
    lines: list[str] = []
    for message in messages:
        text = message.content.strip()
        if message.error is not None or not text:
            continue
        speaker = "USER" if message.is_user else "ASSISTANT"
        lines.append(f"{speaker}: {text}")
    return "\n\n".join(lines)


def compose_instructions(system_prompt: str, history: Iterable[Message]) -> str:
    rendered = render_history(history)
    if not rendered:
        return system_prompt
    return f"{system_prompt}\n\n{HISTORY_HEADER}\n{rendered}"


def _merge_tool_calls(
    existing: Sequence[ToolCallRecord], incoming: Sequence[ToolCallRecord]
) -> list[ToolCallRecord]:
    """Take *incoming* as authoritative, except that finished records stay finished."""
    merged: list[ToolCallRecord] = []
    for index, call in enumerate(incoming):
        prior = existing[index] if index < len(existing) else None
        if prior is not None and prior.status.is_terminal and prior.tool_name == call.tool_name:
            merged.append(prior)
        else:
            merged.append(dataclasses.replace(call))
    return merged


# ---------------------------------------------------------------------------
# Session bindings
# ---------------------------------------------------------------------------


@dataclass
class SessionBinding:
    """A live session plus the settings baked into it at creation."""

    conversation_id: str
    session: SessionProtocol
    system_prompt: str
    tool_names: tuple[str, ...]
    instructions: str

    def matches(self, conversation: Conversation, tools: Sequence[ToolHandle]) -> bool:
        """True while the conversation's settings still equal the baked-in ones."""
        return self.system_prompt == conversation.system_prompt and self.tool_names == tuple(
            tool.name for tool in tools
        )


class SessionCache:
    """Conversation id -> :class:`SessionBinding`."""

    def __init__(self) -> None:
        self._bindings: dict[str, SessionBinding] = {}

    def get(self, conversation_id: str) -> SessionBinding | None:
        return self._bindings.get(conversation_id)

    def put(self, binding: SessionBinding) -> None:
        self._bindings[binding.conversation_id] = binding

    def invalidate(self, conversation_id: str) -> SessionBinding | None:
        return self._bindings.pop(conversation_id, None)

    def clear(self) -> None:
        self._bindings.clear()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)


# ---------------------------------------------------------------------------
# ChatManager
# ---------------------------------------------------------------------------


class ChatManager:
    """Owns the conversation list, the draft slot and every session binding."""

    def __init__(
        self,
        provider: ProviderProtocol,
        repository: ConversationRepository,
        settings: SettingsStore,
        *,
        tools: Iterable[ToolHandle] = (),
        title_generator: TitleGenerator | None = None,
        clock: MonotonicClock | None = None,
    ) -> None:
        self._provider = provider
        self._repository = repository
        self._settings = settings
        self._tools = tuple(tools)
        self._titles = title_generator if title_generator is not None else TitleGenerator(provider)
        self._clock = clock if clock is not None else default_clock()

        self.sessions = SessionCache()
        self.conversations: list[Conversation] = []
        self.draft: Conversation | None = None
        self.active_id: str | None = None
        self.input_text = ""
        self.editing_message_id: str | None = None
        self.hidden_messages: list[Message] = []

        self._turns: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._mailbox: asyncio.Queue[Callable[[], None]] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None

        self._load()

    @classmethod
    def from_store(cls, provider: ProviderProtocol, store: ByteStore, **kwargs) -> ChatManager:
        """Build a manager whose conversations and settings share one byte store."""
        return cls(provider, ConversationRepository(store), SettingsStore(store), **kwargs)

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def settings(self) -> SettingsStore:
        return self._settings

    @property
    def repository(self) -> ConversationRepository:
        return self._repository

    @property
    def active_conversation(self) -> Conversation | None:
        if self.active_id is None:
            return None
        return self.conversation(self.active_id)

    @property
    def messages(self) -> list[Message]:
        conversation = self.active_conversation
        return conversation.messages if conversation is not None else []

    @property
    def is_busy(self) -> bool:
        """True while the active conversation has a turn in flight."""
        return self.active_id is not None and self.active_id in self._turns

    @property
    def is_editing(self) -> bool:
        return self.editing_message_id is not None

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._turns

    def conversation(self, conversation_id: str) -> Conversation | None:
        """Look up a persisted conversation or the draft by id."""
        if self.draft is not None and self.draft.id == conversation_id:
            return self.draft
        return self._find_persisted(conversation_id)

    def _find_persisted(self, conversation_id: str) -> Conversation | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def is_persisted(self, conversation_id: str) -> bool:
        return self._find_persisted(conversation_id) is not None

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    def select_conversation(self, conversation_id: str) -> None:
        conversation = self._find_persisted(conversation_id)
        if conversation is None:
            logger.debug("[AFMChat] Ignoring selection of unknown conversation %s", conversation_id)
            return
        if self.is_editing:
            self.cancel_editing()
        self._discard_draft()
        self.active_id = conversation.id
        self._settings.last_active_id = conversation.id
        self._binding_for(conversation)

    def create_draft_conversation(self) -> str:
        """Start an unsaved conversation from the current defaults and activate it."""
        if self.is_editing:
            self.cancel_editing()
        defaults = self._settings.defaults()
        self._discard_draft()
        draft = Conversation(
            created_at=self._clock.now(),
            system_prompt=defaults.system_prompt,
            temperature=defaults.temperature,
            tools_enabled=defaults.tools_enabled,
            tool_settings=dict(defaults.tool_settings),
        )
        self.draft = draft
        self.active_id = draft.id
        self._rebuild_binding(draft, [])
        return draft.id

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation. The last persisted conversation cannot be deleted."""
        if self.draft is not None and self.draft.id == conversation_id:
            self._discard_draft()
            if self.active_id == conversation_id:
                self._clear_edit_state()
                self.active_id = None
            return True

        conversation = self._find_persisted(conversation_id)
        if conversation is None:
            return False
        if len(self.conversations) <= 1:
            logger.info("[AFMChat] Refusing to delete the last conversation %s", conversation_id)
            return False

        turn = self._turns.pop(conversation_id, None)
        if turn is not None:
            turn.cancel()
        self.conversations = [c for c in self.conversations if c is not conversation]
        self.sessions.invalidate(conversation_id)

        if self.active_id == conversation_id:
            self._clear_edit_state()
            self.active_id = None
            if self.conversations:
                self.select_conversation(self.conversations[0].id)
            else:
                self._settings.last_active_id = None
        self._persist()
        return True

    def update_settings(
        self,
        instructions: str,
        temperature: float,
        tools_enabled: bool,
        tool_settings: Mapping[ToolKind, bool] | None = None,
    ) -> None:
        """Apply settings to the active conversation and remember them as defaults."""
        conversation = self.active_conversation
        if conversation is None:
            return
        conversation.system_prompt = instructions
        conversation.temperature = clamp_temperature(temperature)
        conversation.tools_enabled = bool(tools_enabled)
        if tool_settings is not None:
            conversation.tool_settings = dict(tool_settings)

        # A turn still streaming on the old binding is not cancelled.
        self._rebuild_binding(conversation, conversation.messages)
        self._settings.save_defaults(
            ChatDefaults(
                system_prompt=conversation.system_prompt,
                temperature=conversation.temperature,
                tools_enabled=conversation.tools_enabled,
                tool_settings=dict(conversation.tool_settings),
            )
        )
        self._persist()

    # ------------------------------------------------------------------
    # Send / edit / retry
    # ------------------------------------------------------------------

    def send_message(self, text: str | None = None) -> bool:
        """Send the input buffer (or *text*) and start streaming the reply.

        Returns ``False`` when there is nothing to send, no active
        conversation, or a turn for it is already in flight.
        """
        if text is not None:
            self.input_text = text
        content = self.input_text.strip()
        conversation = self.active_conversation
        if not content or conversation is None:
            return False
        if conversation.id in self._turns:
            logger.info("[AFMChat] A response is still streaming for %s", conversation.id)
            return False

        if self.is_editing:
            self.hidden_messages = []
            binding = self._rebuild_binding(conversation, conversation.messages)
        else:
            binding = self._binding_for(conversation)

        conversation.messages.append(
            Message(content=content, is_user=True, timestamp=self._clock.now())
        )
        if conversation.user_message_count == 1:
            conversation.title = fallback_title(content)
            self._start_title_generation(conversation.id, content)

        if self.draft is conversation:
            self.conversations.insert(0, conversation)
            self.draft = None
            self._settings.last_active_id = conversation.id
            logger.info("[AFMChat] Saved new conversation %s", conversation.id)

        conversation.messages.append(
            Message(content="", is_user=False, timestamp=self._clock.now())
        )

        self.input_text = ""
        self.editing_message_id = None
        self._start_turn(conversation, binding.session, content)
        self._persist()
        return True

    def edit_message(self, message_id: str) -> bool:
        """Move a user message back into the input buffer and hide it and everything after."""
        conversation = self.active_conversation
        if conversation is None or conversation.id in self._turns:
            return False
        target = conversation.find_message(message_id)
        if target is None or not target.is_user:
            return False
        if self.is_editing:
            self.cancel_editing()

        self.input_text = target.content
        self.editing_message_id = target.id
        self.hidden_messages = [m for m in conversation.messages if m.timestamp >= target.timestamp]
        conversation.messages[:] = [
            m for m in conversation.messages if m.timestamp < target.timestamp
        ]
        self._rebuild_binding(conversation, conversation.messages)
        return True

    def cancel_editing(self) -> None:
        """Abort an edit, restoring the hidden messages."""
        if not self.is_editing:
            return
        conversation = self.active_conversation
        if conversation is not None and conversation.id in self._turns:
            logger.info("[AFMChat] Not cancelling edit while %s is streaming", conversation.id)
            return
        if conversation is not None:
            conversation.messages.extend(self.hidden_messages)
            self._rebuild_binding(conversation, conversation.messages)
        self._clear_edit_state()
        self.input_text = ""
        self._persist()

    def retry_message(self, message_id: str) -> bool:
        """Regenerate a failed assistant reply from the user message before it.

        Refused while an edit is open; the edit has to be sent or cancelled first.
        """
        conversation = self.active_conversation
        if conversation is None or conversation.id in self._turns or self.is_editing:
            return False
        failed = conversation.find_message(message_id)
        if failed is None or failed.is_user or failed.error is None:
            return False
        earlier = [m for m in conversation.messages if m.is_user and m.timestamp < failed.timestamp]
        if not earlier:
            return False
        prompt_message = max(earlier, key=lambda m: m.timestamp)

        conversation.messages[:] = [m for m in conversation.messages if m is not failed]
        history = [m for m in conversation.messages if m.timestamp < prompt_message.timestamp]
        binding = self._rebuild_binding(conversation, history)

        conversation.messages.append(
            Message(content="", is_user=False, timestamp=self._clock.now())
        )
        self._start_turn(conversation, binding.session, prompt_message.content)
        self._persist()
        return True

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def wait_until_idle(self) -> None:
        """Wait for every in-flight turn, title task and queued mutation."""
        while True:
            pending = [
                task
                for task in (*self._turns.values(), *self._background)
                if not task.done()
            ]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        await self._mailbox.join()

    async def close(self) -> None:
        """Cancel background work and write a final snapshot."""
        tasks = [*self._turns.values(), *self._background]
        if self._consumer is not None:
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._turns.clear()
        self._background.clear()
        self._consumer = None
        self._persist()

    def _post(self, mutation: Callable[[], None]) -> None:
        if self._consumer is None or self._consumer.done():
            loop = asyncio.get_running_loop()
            self._consumer = loop.create_task(self._drain_mailbox(), name="afm-chat-mailbox")
        self._mailbox.put_nowait(mutation)

    async def _drain_mailbox(self) -> None:
        while True:
            mutation = await self._mailbox.get()
            try:
                mutation()
            except Exception:
                logger.exception("[AFMChat] Failed to apply queued update")
            finally:
                self._mailbox.task_done()

    def _start_turn(
        self, conversation: Conversation, session: SessionProtocol, prompt: str
    ) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(
            self._run_turn(conversation.id, session, prompt, conversation.temperature),
            name=f"turn-{conversation.id}",
        )
        self._turns[conversation.id] = task
        task.add_done_callback(partial(self._forget_cancelled_turn, conversation.id))

    def _forget_cancelled_turn(self, conversation_id: str, task: asyncio.Task[None]) -> None:
        if task.cancelled() and self._turns.get(conversation_id) is task:
            del self._turns[conversation_id]

    async def _run_turn(
        self,
        conversation_id: str,
        session: SessionProtocol,
        prompt: str,
        temperature: float,
    ) -> None:
        turn = asyncio.current_task()
        try:
            async for event in session.stream_response(prompt, temperature):
                self._post(partial(self._apply_stream_event, conversation_id, event))
        except Exception as exc:
            error = classify_provider_error(exc)
            logger.warning(
                "[AFMChat Turn] Response for %s failed (%s): %s",
                conversation_id,
                error.kind.value,
                exc,
            )
            self._post(partial(self._fail_turn, conversation_id, turn, error))
        else:
            self._post(partial(self._finish_turn, conversation_id, turn))

    def _start_title_generation(self, conversation_id: str, first_message: str) -> None:
        task = self._titles.generate(conversation_id, first_message, self._on_title)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_title(self, conversation_id: str, title: str) -> None:
        self._post(partial(self._apply_title, conversation_id, title))

    # ------------------------------------------------------------------
    # Mutations (run on the mailbox consumer)
    # ------------------------------------------------------------------

    def _apply_stream_event(self, conversation_id: str, event: StreamEvent) -> None:
        conversation = self.conversation(conversation_id)
        if conversation is None:
            return
        target = conversation.last_assistant_message()
        if target is None:
            return
        if isinstance(event, ContentUpdated):
            # Providers occasionally emit a shorter snapshot after a longer one.
            if len(event.full_text) >= len(target.content):
                target.content = event.full_text
        elif isinstance(event, ToolCallsUpdated):
            target.tool_calls = _merge_tool_calls(target.tool_calls, event.calls)

    def _settle_turn(self, conversation_id: str, turn: asyncio.Task[None] | None) -> None:
        if turn is None or self._turns.get(conversation_id) is turn:
            self._turns.pop(conversation_id, None)

    def _finish_turn(self, conversation_id: str, turn: asyncio.Task[None] | None) -> None:
        self._settle_turn(conversation_id, turn)
        logger.debug("[AFMChat Turn] Response for %s complete", conversation_id)
        self._persist()

    def _fail_turn(
        self, conversation_id: str, turn: asyncio.Task[None] | None, error: ChatError
    ) -> None:
        self._settle_turn(conversation_id, turn)
        conversation = self.conversation(conversation_id)
        target = conversation.last_assistant_message() if conversation is not None else None
        if target is not None:
            target.content = ""
            target.error = error
            for call in target.tool_calls:
                if not call.status.is_terminal:
                    call.status = ToolCallStatus.FAILED
                    call.error = INTERRUPTED_TOOL_ERROR
        self._persist()

    def _apply_title(self, conversation_id: str, title: str) -> None:
        conversation = self.conversation(conversation_id)
        if conversation is None:
            return
        conversation.title = title
        if self.is_persisted(conversation_id):
            self._persist()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self) -> None:
        self.conversations = self._repository.load()
        for conversation in self.conversations:
            self._clock.observe(conversation.created_at)
            for message in conversation.messages:
                self._clock.observe(message.timestamp)

        last_active = self._settings.last_active_id
        if last_active is not None and self._find_persisted(last_active) is not None:
            self.active_id = last_active
        elif self.conversations:
            self.active_id = self.conversations[0].id
        logger.debug("[AFMChat] Loaded %d conversation(s)", len(self.conversations))

    def reload(self) -> None:
        """Re-read conversations from the repository, dropping all bindings."""
        self.sessions.clear()
        self._discard_draft()
        self._clear_edit_state()
        self.active_id = None
        self._load()

    def _tools_for(self, conversation: Conversation) -> list[ToolHandle]:
        return enabled_tools(self._tools, conversation.tools_enabled, conversation.tool_settings)

    def _binding_for(self, conversation: Conversation) -> SessionBinding:
        """Return the current binding, creating it if missing or stale."""
        binding = self.sessions.get(conversation.id)
        if binding is not None and binding.matches(conversation, self._tools_for(conversation)):
            return binding
        return self._rebuild_binding(conversation, conversation.messages)

    def _rebuild_binding(
        self, conversation: Conversation, history: Sequence[Message]
    ) -> SessionBinding:
        tools = self._tools_for(conversation)
        instructions = compose_instructions(conversation.system_prompt, history)
        binding = SessionBinding(
            conversation_id=conversation.id,
            session=self._provider.create_session(instructions, tools),
            system_prompt=conversation.system_prompt,
            tool_names=tuple(tool.name for tool in tools),
            instructions=instructions,
        )
        self.sessions.put(binding)
        logger.debug(
            "[AFMChat] New session for %s (%d prior message(s), %d tool(s))",
            conversation.id,
            len(history),
            len(tools),
        )
        return binding

    def _discard_draft(self) -> None:
        if self.draft is not None:
            self.sessions.invalidate(self.draft.id)
            self.draft = None

    def _clear_edit_state(self) -> None:
        self.editing_message_id = None
        self.hidden_messages = []

    def _snapshot(self) -> list[Conversation]:
        """The conversation list as it should be saved.

        An open edit is not committed yet, so the conversation being edited
        is saved with its hidden messages still in place.
        """
        if not self.is_editing or self.active_id is None:
            return list(self.conversations)
        return [
            dataclasses.replace(c, messages=[*c.messages, *self.hidden_messages])
            if c.id == self.active_id
            else c
            for c in self.conversations
        ]

    def _persist(self) -> None:
        try:
            self._repository.save(self._snapshot())
        except (OSError, sqlite3.Error) as exc:
            logger.error("[AFMChat Persistence] Could not save conversations: %s", exc)
