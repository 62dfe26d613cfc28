"""Tests for afm_chat.models value types and their JSON form."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from afm_chat.models import (
    DEFAULT_INSTRUCTIONS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TITLE,
    ChatError,
    ChatErrorKind,
    Conversation,
    Message,
    MonotonicClock,
    ToolCallRecord,
    ToolCallStatus,
    ToolKind,
    clamp_temperature,
    parse_timestamp,
)

# ============================================================================
# Helpers
# ============================================================================


class TestClampTemperature:
    @pytest.mark.parametrize(
        "value, expected",
        [(0.7, 0.7), (-1, 0.0), (9, 2.0), ("0.5", 0.5), (None, DEFAULT_TEMPERATURE)],
    )
    def test_clamps_and_coerces(self, value, expected):
        assert clamp_temperature(value) == expected

    def test_nan_falls_back_to_default(self):
        assert clamp_temperature(math.nan) == DEFAULT_TEMPERATURE


class TestParseTimestamp:
    def test_iso_with_z_suffix(self):
        parsed = parse_timestamp("2025-03-01T12:00:00Z")
        assert parsed == datetime(2025, 3, 1, 12, tzinfo=UTC)

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2025-03-01T12:00:00").tzinfo is UTC

    def test_epoch_seconds(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("raw", [None, "", "yesterday", True, [1]])
    def test_unparseable(self, raw):
        assert parse_timestamp(raw) is None

    @pytest.mark.parametrize("raw", [1e20, -1e20, math.inf, math.nan])
    def test_out_of_range_epoch(self, raw):
        assert parse_timestamp(raw) is None


class TestMonotonicClock:
    def test_readings_strictly_increase_when_clock_stalls(self):
        frozen = datetime(2025, 1, 1, tzinfo=UTC)
        clock = MonotonicClock()
        with patch("afm_chat.models.datetime") as fake:
            fake.now.return_value = frozen
            readings = [clock.now() for _ in range(3)]
        assert readings[0] < readings[1] < readings[2]
        assert readings[2] - readings[0] == timedelta(microseconds=2)

    def test_observe_pushes_past_loaded_timestamps(self):
        clock = MonotonicClock()
        future = datetime.now(UTC) + timedelta(days=1)
        clock.observe(future)
        assert clock.now() > future


# ============================================================================
# Tool calls and errors
# ============================================================================


class TestToolCallRecord:
    def test_terminal_statuses(self):
        assert ToolCallStatus.COMPLETED.is_terminal
        assert ToolCallStatus.FAILED.is_terminal
        assert not ToolCallStatus.EXECUTING.is_terminal
        assert not ToolCallStatus.PENDING.is_terminal

    def test_to_dict_omits_missing_result(self):
        record = ToolCallRecord("search", "Search the web", '{"q": "x"}', ToolCallStatus.EXECUTING)
        assert record.to_dict() == {
            "toolName": "search",
            "toolDescription": "Search the web",
            "arguments": '{"q": "x"}',
            "status": "executing",
        }

    def test_from_dict_defaults(self):
        record = ToolCallRecord.from_dict({"toolName": "fetch", "status": "bogus"})
        assert record.tool_description == "fetch"
        assert record.status is ToolCallStatus.COMPLETED
        assert record.result is None


class TestChatError:
    @pytest.mark.parametrize(
        "kind, recoverable",
        [
            (ChatErrorKind.GUARDRAIL_VIOLATION, False),
            (ChatErrorKind.CONTEXT_WINDOW_EXCEEDED, False),
            (ChatErrorKind.UNSUPPORTED_FEATURE, False),
            (ChatErrorKind.RESPONSE_DECODING_FAILURE, True),
            (ChatErrorKind.PROVIDER_UNAVAILABLE, True),
            (ChatErrorKind.UNKNOWN, True),
        ],
    )
    def test_recoverable(self, kind, recoverable):
        assert ChatError(kind).recoverable is recoverable

    def test_unknown_message_includes_detail(self):
        assert "(socket reset)" in ChatError(ChatErrorKind.UNKNOWN, "socket reset").message

    def test_from_plain_string(self):
        error = ChatError.from_dict("legacy failure text")
        assert error.kind is ChatErrorKind.UNKNOWN
        assert error.detail == "legacy failure text"

    def test_from_dict_unknown_kind(self):
        assert ChatError.from_dict({"kind": "meteor"}).kind is ChatErrorKind.UNKNOWN


# ============================================================================
# Messages and conversations
# ============================================================================


class TestMessage:
    def test_placeholder(self):
        assert Message("", is_user=False).is_placeholder
        assert not Message("", is_user=True).is_placeholder
        assert not Message("hi", is_user=False).is_placeholder
        assert not Message("", is_user=False, error=ChatError(ChatErrorKind.UNKNOWN)).is_placeholder

    def test_to_dict_shape(self):
        message = Message("hi", is_user=True, timestamp=datetime(2025, 1, 1, tzinfo=UTC), id="m1")
        assert message.to_dict() == {
            "id": "m1",
            "content": "hi",
            "isUser": True,
            "timestamp": "2025-01-01T00:00:00+00:00",
        }

    def test_from_dict_requires_content_and_author(self):
        with pytest.raises(KeyError):
            Message.from_dict({"id": "m1", "content": "hi"})

    def test_from_dict_defaults_tool_calls(self):
        message = Message.from_dict({"content": "hi", "isUser": False})
        assert message.tool_calls == []
        assert message.error is None
        assert message.id

    def test_ids_are_unique(self):
        assert Message("a", is_user=True).id != Message("a", is_user=True).id


class TestConversation:
    def test_defaults(self):
        conversation = Conversation()
        assert conversation.title == DEFAULT_TITLE
        assert conversation.system_prompt == DEFAULT_INSTRUCTIONS
        assert conversation.tools_enabled is True
        assert conversation.tool_settings == {}

    def test_temperature_clamped_on_construction(self):
        assert Conversation(temperature=3.5).temperature == 2.0

    def test_from_dict_missing_optional_fields(self):
        conversation = Conversation.from_dict(
            {"id": "c1", "messages": [{"content": "hi", "isUser": True}]}
        )
        assert conversation.tools_enabled is True
        assert conversation.messages[0].tool_calls == []
        assert conversation.title == DEFAULT_TITLE

    def test_from_dict_requires_id(self):
        with pytest.raises(KeyError):
            Conversation.from_dict({"title": "orphan"})

    def test_tool_settings_round_trip_skips_unknown_kinds(self):
        conversation = Conversation.from_dict(
            {"id": "c1", "toolSettings": {"webSearch": False, "teleport": True}}
        )
        assert conversation.tool_settings == {ToolKind.WEB_SEARCH: False}
        assert conversation.to_dict()["toolSettings"] == {"webSearch": False}

    def test_last_assistant_message_and_user_count(self):
        reply = Message("answer", is_user=False)
        conversation = Conversation(messages=[Message("q", is_user=True), reply])
        assert conversation.last_assistant_message() is reply
        assert conversation.user_message_count == 1
        assert conversation.find_message(reply.id) is reply
        assert conversation.find_message("missing") is None
