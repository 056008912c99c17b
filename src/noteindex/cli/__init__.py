"""Command-line interface primitives for :mod:`noteindex`.

This module exposes the Typer application behind the ``noteindex`` console
script and wires the ``init`` command into the workspace bootstrap helpers.

Example:
    >>> import typer
    >>> from noteindex.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

from pathlib import Path

import typer

from noteindex.cli.init import init_workspace
from noteindex.cli.notes import create_note_app, search_command
from noteindex.cli.rebuild import create_rebuild_app
from noteindex.core.config import DEFAULTS_RESOURCE_NAME
from noteindex.core.logging import configure_logging, get_logger

_app_help = (
    "Resumable embedding index for a personal notes knowledge base."
    "\n\n"
    "Use `noteindex init` to bootstrap a workspace and populate "
    "`noteindex.toml`."
)


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``noteindex`` CLI.

    Returns:
        A configured Typer application ready to be invoked by ``noteindex``.
    """

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    app.add_typer(create_rebuild_app(), name="rebuild")
    app.add_typer(create_note_app(), name="note")
    app.command(
        "search",
        help="Semantic search over indexed notes.",
    )(search_command)

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Bootstrap a workspace and seed configuration files.",
    )
    def init_command(
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to "
                "$HOME/.noteindex or NOTEINDEX_WORKSPACE)."
            ),
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Initialize the local workspace.

        Example:
            >>> from typer.testing import CliRunner
            >>> runner = CliRunner()
            >>> app = create_app()
            >>> result = runner.invoke(app, ["init", "--help"])
            >>> result.exit_code
            0
        """

        try:
            config, created = init_workspace(
                workspace=workspace,
                log_level=log_level,
            )
        except Exception as exc:  # pragma: no cover
            typer.secho(
                f"Failed to initialize workspace: {exc}",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1) from exc

        configure_logging(
            level=config.log_level,
            log_dir=config.workspace / "logs",
        )
        logger = get_logger(__name__, command="init")
        logger.info(
            "init-complete",
            workspace=str(config.workspace),
            created_config=created,
        )

        typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  workspace: {config.workspace}")
        typer.echo(f"  config: {config.workspace / 'noteindex.toml'}")
        typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
        typer.echo(f"  log level: {config.log_level}")
        typer.echo(f"  embedding model: {config.embedding.model}")
        typer.echo(f"  schedule: {config.rebuild.schedule}")
        if not created:
            typer.echo("  note: existing config detected; file left untouched")

    return app


__all__ = ["create_app"]
