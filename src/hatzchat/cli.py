"""CLI interface for hatzchat."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import uuid
from pathlib import Path

import click

from . import __version__
from .client import HatzClient
from .config import CHATS_FILENAME, DATA_DIR, SETTINGS_FILENAME
from .credentials import CredentialStore, KeyringCredentialStore, MemoryCredentialStore
from .errors import HatzError
from .models import Role
from .sender import Sender
from .storage import ChatPersistence, SettingsPersistence
from .store import CONVERSATIONS_CHANGED, ChatStore

API_KEY_ENV = "HATZCHAT_API_KEY"

_ROLE_LABELS = {Role.SYSTEM: "System", Role.USER: "You", Role.ASSISTANT: "Hatz"}


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    kb = size / 1024
    if kb < 1024:
        return f"{kb:.1f} KB"
    mb = kb / 1024
    if mb < 1024:
        return f"{mb:.1f} MB"
    return f"{mb / 1024:.2f} GB"


def _open_store(ctx: click.Context, credentials: CredentialStore | None = None) -> ChatStore:
    data_dir: Path = ctx.obj["data_dir"]
    if credentials is None:
        env_key = os.environ.get(API_KEY_ENV)
        credentials = MemoryCredentialStore(env_key) if env_key else KeyringCredentialStore()

    store = ChatStore(
        ChatPersistence(data_dir / CHATS_FILENAME),
        SettingsPersistence(data_dir / SETTINGS_FILENAME),
        credentials,
        client_factory=HatzClient,
    )
    store.load()
    return store


def _resolve(store: ChatStore, ref: str | None) -> uuid.UUID:
    """Map a full or abbreviated chat id to a conversation, defaulting to the selection."""
    if ref is None:
        if store.selected_id is None:
            raise click.ClickException("No chats yet. Create one with: hatzchat new")
        return store.selected_id

    matches = [c.id for c in store.conversations if str(c.id).startswith(ref.lower())]
    if not matches:
        raise click.ClickException(f"Chat not found: {ref}")
    if len(matches) > 1:
        raise click.ClickException(f"Ambiguous chat id: {ref}")
    return matches[0]


def _run(coro):
    try:
        return asyncio.run(coro)
    except HatzError as e:
        raise click.ClickException(str(e)) from e


def _require_key(store: ChatStore):
    if not store.api_key:
        raise click.ClickException(
            f"No API key set. Run 'hatzchat set-key' or export {API_KEY_ENV}."
        )


@click.group()
@click.version_option(version=__version__, prog_name="hatzchat")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DATA_DIR,
    envvar="HATZCHAT_DATA_DIR",
    show_default=True,
    help="Where chats and settings are stored.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path, verbose: bool):
    """hatzchat: chat with Hatz AI models from your terminal.

    Conversations are kept locally; replies stream in as they are generated.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir


@cli.command()
@click.pass_context
def chats(ctx: click.Context):
    """List saved chats, most recent first."""
    store = _open_store(ctx)
    conversations = store.conversations
    if not conversations:
        click.echo("No chats yet. Create one with: hatzchat new")
        return

    for c in conversations:
        marker = "*" if c.id == store.selected_id else " "
        updated = c.updated_at.astimezone().strftime("%Y-%m-%d %H:%M")
        click.echo(
            f"{marker} {str(c.id)[:8]}  {click.style(c.title, bold=True)}  "
            f"({c.model}, {len(c.messages)} msgs, {updated})"
        )


@cli.command()
@click.option("--model", help="Model to use (defaults to the last used model).")
@click.pass_context
def new(ctx: click.Context, model: str | None):
    """Start a new chat."""
    store = _open_store(ctx)
    convo = store.new_conversation()
    if model:
        store.set_model(convo.id, model)
    click.echo(f"Created chat {str(convo.id)[:8]} ({model or convo.model})")


@cli.command()
@click.argument("chat", required=False)
@click.pass_context
def show(ctx: click.Context, chat: str | None):
    """Print a chat transcript."""
    store = _open_store(ctx)
    convo = store.get(_resolve(store, chat))

    click.echo(click.style(convo.title, bold=True) + f"  [{convo.model}]")
    click.echo()
    for msg in convo.messages:
        click.echo(click.style(f"{_ROLE_LABELS[msg.role]}:", bold=True))
        click.echo(msg.content or "…")
        click.echo()

    if convo.attachments:
        click.echo(click.style("Attachments", bold=True))
        for a in convo.attachments:
            ref = a.file_uuid or "(no UUID found)"
            click.echo(f"  {str(a.id)[:8]}  {a.display_name}  {ref}")


@cli.command()
@click.argument("chat")
@click.argument("title")
@click.pass_context
def rename(ctx: click.Context, chat: str, title: str):
    """Rename a chat."""
    store = _open_store(ctx)
    if not store.rename(_resolve(store, chat), title):
        raise click.ClickException("Title cannot be empty.")
    click.echo(f"Renamed to: {title.strip()}")


@cli.command()
@click.argument("chat")
@click.pass_context
def delete(ctx: click.Context, chat: str):
    """Delete a chat."""
    store = _open_store(ctx)
    store.delete_conversation(_resolve(store, chat))
    click.echo("Deleted.")


@cli.command()
@click.argument("message", nargs=-1, required=True)
@click.option("--chat", help="Chat id (defaults to the most recent chat).")
@click.pass_context
def send(ctx: click.Context, message: tuple[str, ...], chat: str | None):
    """Send a message and stream the reply. Ctrl-C stops the reply."""
    store = _open_store(ctx)
    _require_key(store)
    text = " ".join(message)

    if chat is None and store.selected_id is None:
        store.new_conversation()
    convo_id = _resolve(store, chat)

    printed = ""

    def render(event: str):
        nonlocal printed
        if event != CONVERSATIONS_CHANGED:
            return
        convo = store.get(convo_id)
        if not convo or not convo.messages or convo.messages[-1].role != Role.ASSISTANT:
            return
        content = convo.messages[-1].content
        if content.startswith(printed):
            click.echo(content[len(printed):], nl=False)
            printed = content

    async def run():
        sender = Sender(store)
        task = sender.start(convo_id, text)
        if task is None:
            raise click.ClickException(store.last_error or "Nothing to send.")

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, sender.stop, convo_id)
        except NotImplementedError:
            pass

        try:
            await task
        except asyncio.CancelledError:
            click.echo("\n[stopped]", err=True)

    unsubscribe = store.subscribe(render)
    try:
        _run(run())
    finally:
        unsubscribe()
    click.echo()

    if store.last_error:
        # The failure text was already streamed into the transcript
        if printed == f"Error: {store.last_error}":
            ctx.exit(1)
        raise click.ClickException(store.last_error)


@cli.command()
@click.pass_context
def models(ctx: click.Context):
    """List the models available to your API key."""
    store = _open_store(ctx)
    _require_key(store)
    _run(store.refresh_models())
    if store.last_error:
        raise click.ClickException(store.last_error)

    for m in store.available_models:
        marker = "*" if m.name == store.last_used_model else " "
        vision = " [vision]" if m.vision else ""
        click.echo(
            f"{marker} {m.name}  {m.display_name} ({m.developer}, "
            f"{m.max_tokens:,} tokens){vision}"
        )


@cli.command()
@click.pass_context
def files(ctx: click.Context):
    """List files already uploaded to Hatz."""
    store = _open_store(ctx)
    _require_key(store)
    remote = _run(store.list_remote_files())
    if not remote:
        click.echo("No uploaded files.")
        return

    for f in remote:
        details = []
        if f.bytes is not None:
            details.append(format_bytes(f.bytes))
        if f.tokens is not None:
            details.append(f"{f.tokens:,} tokens")
        suffix = f"  ({', '.join(details)})" if details else ""
        click.echo(f"{f.file_uuid}  {f.file_name}{suffix}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--chat", help="Chat id (defaults to the most recent chat).")
@click.pass_context
def upload(ctx: click.Context, path: Path, chat: str | None):
    """Upload a file and attach it to a chat."""
    store = _open_store(ctx)
    _require_key(store)
    convo_id = _resolve(store, chat)

    attachment, warning = _run(store.upload_file(convo_id, path))
    if warning is not None:
        click.echo(click.style("Warning: ", fg="yellow", bold=True) + str(warning), err=True)
    else:
        click.echo(f"Attached {attachment.display_name} ({attachment.file_uuid})")


@cli.command()
@click.argument("file_uuid")
@click.option("--chat", help="Chat id (defaults to the most recent chat).")
@click.pass_context
def attach(ctx: click.Context, file_uuid: str, chat: str | None):
    """Attach a previously uploaded file to a chat."""
    store = _open_store(ctx)
    _require_key(store)
    convo_id = _resolve(store, chat)

    remote = _run(store.list_remote_files())
    match = next((f for f in remote if f.file_uuid.lower() == file_uuid.lower()), None)
    if match is None:
        raise click.ClickException(f"No uploaded file with id {file_uuid}")

    if store.attach_remote_file(convo_id, match):
        click.echo(f"Attached {match.file_name}")
    else:
        click.echo(f"{match.file_name} is already attached.")


@cli.command()
@click.argument("attachment")
@click.option("--chat", help="Chat id (defaults to the most recent chat).")
@click.pass_context
def detach(ctx: click.Context, attachment: str, chat: str | None):
    """Remove an attachment from a chat (the remote file is kept)."""
    store = _open_store(ctx)
    convo = store.get(_resolve(store, chat))
    match = next((a for a in convo.attachments if str(a.id).startswith(attachment.lower())), None)
    if match is None or not store.remove_attachment(convo.id, match.id):
        raise click.ClickException(f"Attachment not found: {attachment}")
    click.echo(f"Removed {match.display_name}")


def _keychain_store(ctx: click.Context) -> ChatStore:
    """Open the store against the keychain, refusing when the env var would shadow it."""
    if os.environ.get(API_KEY_ENV):
        raise click.ClickException(
            f"{API_KEY_ENV} is set and overrides the keychain. Unset it to manage the stored key."
        )
    return _open_store(ctx, credentials=KeyringCredentialStore())


@cli.command("set-key")
@click.option("--key", prompt="Hatz API key", hide_input=True)
@click.pass_context
def set_key(ctx: click.Context, key: str):
    """Store your Hatz API key in the system keychain."""
    store = _keychain_store(ctx)
    store.set_api_key(key)
    click.echo("API key saved." if store.api_key else "API key cleared.")


@cli.command("clear-key")
@click.confirmation_option(prompt="Remove the stored API key?")
@click.pass_context
def clear_key(ctx: click.Context):
    """Remove the stored API key."""
    store = _keychain_store(ctx)
    store.set_api_key("")
    click.echo("API key cleared.")
