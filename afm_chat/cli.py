"""
afm-chat CLI: chat with the on-device model and manage saved conversations.

Registered as `afm-chat` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from .exceptions import AppleFMSetupError, ensure_model_available
from .export import export_jsonl, export_markdown, slugify_filename
from .manager import ChatManager
from .persistence import ConversationRepository
from .protocols import get_provider
from .store import DEFAULT_DB_PATH, SqliteByteStore

REPL_HELP = """\
Commands:
  /help         Show this help.
  /new          Start a new conversation.
  /retry        Regenerate the last failed reply.
  /edit N       Rewrite your N-th message (the next line you type replaces it).
  /cancel       Abandon the current edit.
  /quit         Leave the chat."""

_STREAM_POLL_SECONDS = 0.05


def _open_store(ctx: click.Context) -> SqliteByteStore:
    return SqliteByteStore(ctx.obj["db_path"])


# ── Main group ────────────────────────────────────────────────────────────────


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="afm-chat")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_DB_PATH,
    show_default=True,
    help="Path to the conversation store.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log diagnostics to stderr.")
@click.pass_context
def cli(ctx: click.Context, db_path: Path, verbose: bool) -> None:
    """afm-chat: multi-conversation chat on Apple's on-device Foundation Model."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# ── Doctor ────────────────────────────────────────────────────────────────────


@cli.command()
def doctor() -> None:
    """Check that the Foundation Model SDK is installed and the model is ready."""
    provider = get_provider()
    ensure_model_available(provider, context="afm-chat doctor")
    click.secho(f"Foundation Model: {provider.availability()}", fg="green")


# ── Saved conversations ───────────────────────────────────────────────────────


@cli.command(name="list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List saved conversations, newest first."""
    store = _open_store(ctx)
    try:
        conversations = ConversationRepository(store).load()
    finally:
        store.close()
    if not conversations:
        click.echo("No saved conversations.")
        return
    for conversation in conversations:
        created = conversation.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
        click.echo(
            f"{conversation.id}  {created}  {len(conversation.messages):>3} msg  "
            f"{conversation.title}"
        )


@cli.command(name="export")
@click.argument("chat_id")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Destination file (defaults to a name derived from the title).",
)
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["jsonl", "md"]),
    default=None,
    help="Output format; inferred from the file suffix when omitted.",
)
@click.pass_context
def export_cmd(ctx: click.Context, chat_id: str, output: Path | None, fmt: str | None) -> None:
    """Export one saved conversation as JSONL or Markdown."""
    store = _open_store(ctx)
    try:
        conversations = ConversationRepository(store).load()
    finally:
        store.close()

    matches = [c for c in conversations if c.id == chat_id] or [
        c for c in conversations if c.id.startswith(chat_id)
    ]
    if len(matches) != 1:
        problem = "No conversation" if not matches else "Ambiguous conversation id"
        click.secho(f"Error: {problem} matching {chat_id!r}", fg="red", err=True)
        raise SystemExit(1)
    conversation = matches[0]

    if fmt is None:
        is_markdown = output is not None and output.suffix.lower() in (".md", ".markdown")
        fmt = "md" if is_markdown else "jsonl"
    if output is None:
        output = Path(f"{slugify_filename(conversation.title)}.{fmt}")

    if fmt == "md":
        export_markdown(conversation, output)
    else:
        export_jsonl(conversation, output)
    click.secho(f"Exported {len(conversation.messages)} message(s) to {output}", fg="green")


@cli.command()
@click.pass_context
def recover(ctx: click.Context) -> None:
    """Restore conversations from the newest readable backup."""
    store = _open_store(ctx)
    try:
        repository = ConversationRepository(store)
        keys = repository.backup_keys()
        if not keys:
            click.echo("No backups found.")
            return
        recovered = repository.recover_from_backups()
    finally:
        store.close()

    if recovered is None:
        click.secho(f"None of the {len(keys)} backup(s) could be read.", fg="red", err=True)
        raise SystemExit(1)
    click.secho(f"Recovered {len(recovered)} conversation(s).", fg="green")


# ── Interactive chat ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--chat-id", default=None, help="Resume this saved conversation.")
@click.option("--new", "start_new", is_flag=True, help="Start with a fresh conversation.")
@click.option("-s", "--system", "system_prompt", default=None, help="Instructions for the model.")
@click.option(
    "-t",
    "--temperature",
    type=click.FloatRange(0.0, 2.0),
    default=None,
    help="Sampling temperature (0.0-2.0).",
)
@click.option("--no-tools", is_flag=True, help="Disable tool calling for this conversation.")
@click.pass_context
def chat(
    ctx: click.Context,
    chat_id: str | None,
    start_new: bool,
    system_prompt: str | None,
    temperature: float | None,
    no_tools: bool,
) -> None:
    """Chat interactively. Type /help for commands.

    \b
    Examples:
        afm-chat chat
        afm-chat chat --new -s "Answer in French." -t 0.4
        afm-chat chat --chat-id 3f2a
    """
    provider = get_provider()
    ensure_model_available(provider, context="afm-chat chat")

    store = _open_store(ctx)
    try:
        asyncio.run(
            _run_repl(
                ChatManager.from_store(provider, store),
                chat_id=chat_id,
                start_new=start_new,
                system_prompt=system_prompt,
                temperature=temperature,
                no_tools=no_tools,
            )
        )
    finally:
        store.close()


async def _run_repl(
    manager: ChatManager,
    *,
    chat_id: str | None = None,
    start_new: bool = False,
    system_prompt: str | None = None,
    temperature: float | None = None,
    no_tools: bool = False,
) -> None:
    if chat_id is not None:
        match = next((c for c in manager.conversations if c.id.startswith(chat_id)), None)
        if match is None:
            click.secho(f"No conversation matching {chat_id!r}; starting a new one.", fg="yellow")
            start_new = True
        else:
            manager.select_conversation(match.id)
    if start_new or manager.active_conversation is None:
        manager.create_draft_conversation()

    active = manager.active_conversation
    if active is not None and (
        system_prompt is not None or temperature is not None or no_tools
    ):
        manager.update_settings(
            system_prompt if system_prompt is not None else active.system_prompt,
            temperature if temperature is not None else active.temperature,
            False if no_tools else active.tools_enabled,
        )

    _print_history(manager)
    click.echo("Type /help for commands.")
    stdin = click.get_text_stream("stdin")
    try:
        while True:
            click.echo("edit> " if manager.is_editing else "you> ", nl=False)
            line = await asyncio.to_thread(stdin.readline)
            if not line:
                click.echo()
                break
            text = line.strip()
            if not text:
                continue
            if text.startswith("/"):
                if not await _run_command(manager, text):
                    break
                continue
            if manager.send_message(text):
                await _stream_reply(manager)
    finally:
        await manager.close()


async def _run_command(manager: ChatManager, text: str) -> bool:
    """Handle one slash command; ``False`` ends the session."""
    command, _, argument = text.partition(" ")
    command = command.lower()
    if command in ("/quit", "/exit"):
        return False
    if command == "/help":
        click.echo(REPL_HELP)
    elif command == "/new":
        manager.create_draft_conversation()
        click.secho("Started a new conversation.", fg="cyan")
    elif command == "/cancel":
        if manager.is_editing:
            manager.cancel_editing()
            click.secho("Edit cancelled.", fg="cyan")
        else:
            click.echo("Nothing to cancel.")
    elif command == "/edit":
        _start_edit(manager, argument.strip())
    elif command == "/retry":
        failed = next((m for m in reversed(manager.messages) if m.error is not None), None)
        if failed is None or not manager.retry_message(failed.id):
            click.echo("Nothing to retry.")
        else:
            await _stream_reply(manager)
    else:
        click.secho(f"Unknown command {command}. Type /help.", fg="yellow")
    return True


def _start_edit(manager: ChatManager, argument: str) -> None:
    user_messages = [m for m in manager.messages if m.is_user]
    try:
        index = int(argument) - 1 if argument else len(user_messages) - 1
    except ValueError:
        click.secho("Usage: /edit N", fg="yellow")
        return
    if not 0 <= index < len(user_messages):
        click.secho(f"No message number {index + 1}.", fg="yellow")
        return
    if manager.edit_message(user_messages[index].id):
        click.echo(f"Editing: {manager.input_text}")
        click.echo("Type the replacement, or /cancel.")


async def _stream_reply(manager: ChatManager) -> None:
    conversation = manager.active_conversation
    if conversation is None:
        return
    printed = ""
    click.echo("assistant> ", nl=False)
    while manager.is_streaming(conversation.id):
        printed = _echo_progress(manager, printed)
        await asyncio.sleep(_STREAM_POLL_SECONDS)
    await manager.wait_until_idle()
    printed = _echo_progress(manager, printed)

    reply = conversation.last_assistant_message()
    click.echo()
    if reply is None:
        return
    for call in reply.tool_calls:
        click.secho(f"  [{call.tool_name}: {call.status.value}]", fg="blue")
    if reply.error is not None:
        hint = " Type /retry to try again." if reply.error.recoverable else ""
        click.secho(f"{reply.error.message}{hint}", fg="red")


def _echo_progress(manager: ChatManager, printed: str) -> str:
    conversation = manager.active_conversation
    reply = conversation.last_assistant_message() if conversation is not None else None
    if reply is None or reply.error is not None:
        return printed
    text = reply.content
    if text.startswith(printed):
        click.echo(text[len(printed) :], nl=False)
    elif text != printed:
        click.echo("\n" + text, nl=False)
    return text


def _print_history(manager: ChatManager) -> None:
    conversation = manager.active_conversation
    if conversation is None:
        return
    click.secho(f"── {conversation.title} ──", bold=True)
    for message in conversation.messages:
        if message.is_user:
            click.echo(f"you> {message.content}")
        elif message.error is not None:
            click.secho(f"assistant> {message.error.message}", fg="red")
        else:
            click.echo(f"assistant> {message.content}")


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except AppleFMSetupError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
