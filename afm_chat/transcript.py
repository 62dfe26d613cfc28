"""
Reconstruct tool-call telemetry and full response text from a session transcript.

The Apple FM runtime streams only the assistant's text; tool invocations and
their outputs are visible only in the session transcript. After every stream
snapshot the transcript is re-scanned from the most recent prompt onwards.

Tool outputs carry no call identifier, so they are matched to calls by
position: the n-th output completes the n-th call. This misattributes results
if a runtime ever interleaves concurrent tool calls out of order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from .models import ToolCallRecord, ToolCallStatus

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

EntryKind = Literal["instructions", "prompt", "response", "tool_calls", "tool_output"]

_ERROR_OUTPUT_PREFIX = "error:"


@dataclass(frozen=True)
class TranscriptEntry:
    """Provider-neutral view of one transcript entry."""

    kind: EntryKind
    text: str = ""
    calls: tuple[tuple[str, str], ...] = ()


def reconcile_transcript(
    entries: Sequence[TranscriptEntry],
    descriptions: Mapping[str, str] | None = None,
) -> tuple[list[ToolCallRecord], str]:
    """Return ``(tool_calls, full_text)`` for the turn after the last prompt."""
    descriptions = descriptions or {}

    last_prompt = -1
    for index in range(len(entries) - 1, -1, -1):
        if entries[index].kind == "prompt":
            last_prompt = index
            break
    if last_prompt < 0:
        return [], ""

    calls: list[ToolCallRecord] = []
    outputs: list[str] = []
    text_parts: list[str] = []

    for entry in entries[last_prompt + 1 :]:
        if entry.kind == "response":
            if entry.text:
                text_parts.append(entry.text)
        elif entry.kind == "tool_calls":
            for name, arguments in entry.calls:
                calls.append(
                    ToolCallRecord(
                        tool_name=name,
                        tool_description=descriptions.get(name, name),
                        arguments=arguments,
                        status=ToolCallStatus.EXECUTING,
                    )
                )
        elif entry.kind == "tool_output":
            outputs.append(entry.text)

    for call, output in zip(calls, outputs):
        if output.strip().lower().startswith(_ERROR_OUTPUT_PREFIX):
            call.status = ToolCallStatus.FAILED
            call.error = output.strip()
        else:
            call.status = ToolCallStatus.COMPLETED
            call.result = output

    return calls, "\n\n".join(text_parts)
