"""CLI entry point for aichat-session."""

import logging
import os

import click
import uvicorn

from .history import SessionStore, TranscriptReader


@click.group()
def main():
    """Drive Claude Code sessions with live subagent tracking."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
    help="Log level.",
)
def serve(port: int, host: str, log_level: str):
    """Start the HTTP control surface."""
    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    click.echo(f"Starting aichat-session on http://{host}:{port}")
    uvicorn.run("aichat_session.server:app", host=host, port=port, reload=False, log_level=log_level)


@main.command()
@click.option("--workspace", default=None, help="Workspace path (defaults to the current directory).")
def sessions(workspace: str | None):
    """List resumable sessions of a workspace."""
    workspace = workspace or os.getcwd()
    saved = SessionStore().list_saved(workspace)
    if not saved:
        click.echo(f"No saved sessions for {workspace}")
        return
    for s in saved:
        click.echo(f"{s.last_used:%Y-%m-%d %H:%M}  {s.session_id}  {s.title}")


@main.command()
@click.argument("session_id")
@click.option("--workspace", default=None, help="Workspace path of the session.")
def transcript(session_id: str, workspace: str | None):
    """Print the messages of a Claude Code transcript."""
    messages = TranscriptReader().read_transcript(session_id, workspace)
    if not messages:
        raise click.ClickException(f"Transcript not found: {session_id}")
    for msg in messages:
        click.echo(f"## {msg.role}")
        click.echo(msg.content)
        if msg.blocks:
            for block in msg.blocks:
                if block.type == "tool_use":
                    click.echo(f"[tool: {block.name}]")
        click.echo()
