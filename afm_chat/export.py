"""Export a single conversation as JSONL or a Markdown transcript."""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from .models import Conversation, Message

__all__ = ["export_jsonl", "export_markdown", "slugify_filename"]


def slugify_filename(value: str) -> str:
    """Convert title to a filesystem-safe stem."""
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or "chat-export"


def _display_time(value: datetime) -> str:
    return value.astimezone().strftime("%b %d, %Y %I:%M:%S %p %Z").replace(" 0", " ")


def _body(message: Message) -> str:
    if message.error is not None:
        return f"_{message.error.message}_"
    return message.content


def export_jsonl(conversation: Conversation, target: Path) -> None:
    """Write a metadata line followed by one line per message."""
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        metadata = {
            "type": "chat_metadata",
            "chat_id": conversation.id,
            "title": conversation.title,
            "exported_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
            "system_prompt": conversation.system_prompt,
            "temperature": conversation.temperature,
        }
        handle.write(json.dumps(metadata, ensure_ascii=False) + "\n")
        for message in conversation.messages:
            record = {"type": "message", **message.to_dict()}
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")


def export_markdown(conversation: Conversation, target: Path) -> None:
    """Write a human-readable transcript, including tool calls."""
    target.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        f"# {conversation.title}",
        "",
        f"Exported: {_display_time(datetime.now(UTC))}",
        "",
    ]
    for message in conversation.messages:
        role = "User" if message.is_user else "Assistant"
        lines.append(f"## {role} ({_display_time(message.timestamp)})")
        lines.append("")
        for call in message.tool_calls:
            lines.append(f"> Tool `{call.tool_name}` ({call.status.value}): {call.arguments}")
        if message.tool_calls:
            lines.append("")
        lines.append(_body(message))
        lines.append("")

    target.write_text("\n".join(lines), encoding="utf-8")
