"""CLI entry points: tm replay, tm history, tm status."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import click

from .backends import JsonFileStore
from .config import Config
from .session import ChatSession
from .transcripts import NormalizedMessage
from .transcripts.claude import load_records, summarize_tool_use


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log skipped payloads and session switches")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """transcript-merge: rebuild chat transcripts from live events and history."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        Config().load_env_file()  # Seed os.environ before constructing final config
        config = Config()
    except ValueError as e:
        raise click.ClickException(str(e))
    ctx.obj["config"] = config


@cli.command()
@click.argument("events", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--session", "session_id", default=None, help="Session id the client already tracks")
@click.option("--provider", type=click.Choice(["claude", "cursor"]), default=None, help="Backend the events came from")
@click.option("--json", "as_json", is_flag=True, help="Output the transcript as JSON")
@click.pass_context
def replay(ctx: click.Context, events: Path, session_id: str | None, provider: str | None, as_json: bool) -> None:
    """Replay recorded channel events (JSON list or JSONL) into a transcript."""
    config = ctx.obj["config"]
    if provider:
        config.provider = provider
    # No event loop here: flush every fragment as it arrives
    config.stream_debounce = 0

    session = ChatSession(config)
    session.session_id = session_id
    for event in load_records(events):
        session.handle_event(event)

    _emit(session.messages, as_json)
    if not as_json:
        if session.pending_session_id:
            click.echo(f"\nPending session: {session.pending_session_id}")
        if session.session_id != session_id:
            click.echo(f"\nSession switched to: {session.session_id}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--source", type=click.Choice(["claude", "cursor"]), default="claude", help="Shape of the history dump")
@click.option("--project-path", default=None, help="Resolve relative tool paths against this directory")
@click.option("--json", "as_json", is_flag=True, help="Output the transcript as JSON")
@click.pass_context
def history(ctx: click.Context, path: Path, source: str, project_path: str | None, as_json: bool) -> None:
    """Normalize a history dump (Claude records or Cursor blobs)."""
    config = ctx.obj["config"]
    if project_path:
        config.project_path = project_path

    session = ChatSession(config)
    session.merge_history(load_records(path), source)

    _emit(session.messages, as_json)
    pending = session.correlator.pending()
    if pending and not as_json:
        click.echo(f"\n{len(pending)} tool call(s) without a result: {', '.join(pending)}")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show resolved configuration and persisted state."""
    config = ctx.obj["config"]

    click.echo("transcript-merge status")
    click.echo("=" * 40)
    click.echo(f"\nProvider: {config.provider}")
    if config.provider == "cursor":
        click.echo(f"Cursor model: {config.cursor_model}")
    click.echo(f"Permission mode: {config.permission_mode}")
    click.echo(f"Page size: {config.page_size}")
    click.echo(f"Stream debounce: {config.stream_debounce:.3f}s")

    click.echo(f"\nState file: {config.kv_path}")
    if config.kv_path.exists():
        kv = JsonFileStore(config.kv_path)
        snapshots = [k for k in kv.keys() if k.startswith("chat_messages_")]
        drafts = [k for k in kv.keys() if k.startswith("draft_input_")]
        click.echo(f"  Snapshots: {len(snapshots)}, Drafts: {len(drafts)}")
    else:
        click.echo("  Exists: no")

    click.echo(f"\nEnv file: {config.env_file}")
    click.echo(f"  Exists: {'yes' if config.env_file.exists() else 'no'}")


def _format_transcript(messages: tuple[NormalizedMessage, ...]) -> str:
    """Format messages into a readable transcript."""
    lines = []
    for msg in messages:
        ts = msg.timestamp[:19] if msg.timestamp else "??:??"
        prefix = msg.role.value.upper()
        source_tag = f"[{msg.source}]" if msg.source else ""
        if msg.is_tool_use:
            body = summarize_tool_use(msg.tool_name, msg.tool_input)
            if msg.tool_result is not None:
                label = "error" if msg.tool_result.is_error else "result"
                result = str(msg.tool_result.content)
                body += f" [{label}: {result[:200]}]"
        else:
            body = msg.content
        if msg.reasoning:
            body = f"(reasoning: {msg.reasoning[:200]}) {body}".rstrip()
        if msg.is_streaming:
            body += " …"
        lines.append(f"[{ts}] {prefix} {source_tag}: {body}")
    return "\n\n".join(lines)


def _emit(messages: tuple[NormalizedMessage, ...], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps([m.to_dict() for m in messages], indent=2, default=str))
    elif messages:
        click.echo(_format_transcript(messages))
    else:
        click.echo("No messages.")
