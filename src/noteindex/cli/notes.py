"""Typer commands for adding notes and searching them semantically."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from noteindex.modules.vdb import VdbProviderError, VectorIndexError

from .runtime import CLIContext, open_context

_WORKSPACE_HELP = (
    "Override workspace directory (defaults to NOTEINDEX_WORKSPACE or "
    "~/.noteindex)."
)

_note_app = typer.Typer(
    name="note",
    help="Add notes to the workspace database.",
    no_args_is_help=True,
    invoke_without_command=False,
)


def _require_context(ctx: typer.Context) -> CLIContext:
    context = getattr(ctx, "obj", None)
    if not isinstance(context, CLIContext):
        typer.secho(
            "Internal error: note context not initialized.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return context


@_note_app.callback()
def configure_note_commands(
    ctx: typer.Context,
    workspace: Path | None = typer.Option(
        None,
        "--workspace",
        "-w",
        help=_WORKSPACE_HELP,
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Override log level for note commands.",
    ),
) -> None:
    """Initialize common note CLI context."""

    ctx.obj = open_context(workspace=workspace, log_level=log_level, command="note")


@_note_app.command(
    "add",
    help=(
        "Store a note. Attachment paths are relative to "
        "<workspace>/attachments; text files are embedded, images skipped."
    ),
)
def add_note(
    ctx: typer.Context,
    content: str = typer.Argument(..., metavar="TEXT", help="Note text."),
    attachment: list[str] = typer.Option(
        None,
        "--attachment",
        "-a",
        metavar="PATH",
        help="Attachment path; repeat for several files.",
    ),
    account: int = typer.Option(1, "--account", min=1, help="Owning account id."),
) -> None:
    context = _require_context(ctx)
    note = context.runtime.notes.add_note(
        content,
        attachments=attachment or (),
        account_id=account,
    )
    typer.secho(f"Added note {note.id}", fg=typer.colors.GREEN)
    context.logger.info(
        "note-added",
        note_id=note.id,
        account_id=account,
        attachments=len(note.attachments),
    )


def search_command(
    query: str = typer.Argument(..., metavar="QUERY", help="Search text."),
    account: int = typer.Option(1, "--account", min=1, help="Account id to search."),
    top_k: int | None = typer.Option(
        None,
        "--top-k",
        "-k",
        min=1,
        help="Nearest neighbours to fetch (defaults to embedding.top_k).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit matching notes and the AI context as JSON.",
    ),
    workspace: Path | None = typer.Option(
        None,
        "--workspace",
        "-w",
        help=_WORKSPACE_HELP,
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Override log level for this command.",
    ),
) -> None:
    """Semantic search over the indexed notes of one account."""

    context = open_context(workspace=workspace, log_level=log_level, command="search")
    try:
        result = context.runtime.index.search_notes(query, account, top_k=top_k)
    except (VectorIndexError, VdbProviderError) as exc:
        typer.secho(f"Search failed: {exc}", fg=typer.colors.RED)
        context.logger.error("search-failed", error=str(exc))
        raise typer.Exit(code=1) from exc

    if json_output:
        payload = {
            "notes": [
                {
                    "id": item.note.id,
                    "score": item.score,
                    "content": item.note.content,
                }
                for item in result.notes
            ],
            "aiContext": result.ai_context,
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    if not result.notes:
        typer.secho("No matching notes.", fg=typer.colors.YELLOW)
        return
    for item in result.notes:
        typer.secho(f"Note {item.note.id} ({item.score:.3f})", fg=typer.colors.CYAN, bold=True)
        typer.echo(f"  {item.note.preview(80)}")


def create_note_app() -> typer.Typer:
    """Return the Typer sub-application for note commands."""

    return _note_app


__all__ = ["create_note_app", "search_command"]
