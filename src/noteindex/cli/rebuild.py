"""Typer command group controlling the embedding rebuild job."""

from __future__ import annotations

import queue
import threading
import time
from pathlib import Path
from typing import Callable

import typer

from noteindex.modules.rebuild import RebuildProgress, ResultType

from .runtime import CLIContext, open_context

_POLL_SECONDS = 0.2
_TASK_FAILED = "Task failed with error"

_rebuild_app = typer.Typer(
    name="rebuild",
    help=(
        "Rebuild the note embedding index.\n\n"
        "Runs are checkpointed after every note, so a stopped or crashed run "
        "resumes where it left off."
    ),
    no_args_is_help=True,
    invoke_without_command=False,
)


def _require_context(ctx: typer.Context) -> CLIContext:
    context = getattr(ctx, "obj", None)
    if not isinstance(context, CLIContext):
        typer.secho(
            "Internal error: rebuild context not initialized.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return context


def _require_provider(context: CLIContext) -> None:
    reason = context.runtime.provider_error
    if reason is None:
        return
    typer.secho(f"Embedding provider unavailable: {reason}", fg=typer.colors.RED)
    context.logger.error("rebuild-provider-unavailable", error=reason)
    raise typer.Exit(code=1)


def _echo_progress(progress: RebuildProgress) -> None:
    state = "running" if progress.is_running else "idle"
    mode = "incremental" if progress.is_incremental else "full"
    typer.echo(
        f"[{progress.current}/{progress.total}] {progress.percentage}% "
        f"({state}, {mode}, failed: {len(progress.failed_note_ids)})"
    )


def _run_foreground(
    context: CLIContext,
    action: Callable[[], bool],
    *,
    name: str,
) -> None:
    """Run ``action`` and stream checkpoints until the triggered run ends."""

    coordinator = context.runtime.coordinator
    scheduler = context.runtime.scheduler
    workers: list[threading.Thread] = []
    coordinator.set_trigger(lambda: workers.append(scheduler.fire_now()))
    channel = coordinator.subscribe()
    try:
        if not action():
            typer.secho(
                f"Rebuild {name} failed: checkpoint could not be saved.",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1)
        try:
            for worker in workers:
                while worker.is_alive() or not channel.empty():
                    try:
                        progress = channel.get(timeout=_POLL_SECONDS)
                    except queue.Empty:
                        continue
                    _echo_progress(progress)
        except KeyboardInterrupt:
            typer.secho("Stopping rebuild...", fg=typer.colors.YELLOW)
            coordinator.stop_rebuild()
            for worker in workers:
                worker.join()
    finally:
        coordinator.unsubscribe(channel)

    _report_outcome(context, name=name)


def _report_outcome(context: CLIContext, *, name: str) -> None:
    task = context.runtime.progress.get(context.config.rebuild.task_name)
    progress = task.output if task else None
    if progress is None:
        typer.secho("No rebuild has been recorded.", fg=typer.colors.YELLOW)
        return

    last = progress.results[-1] if progress.results else None
    if (
        last is not None
        and last.type is ResultType.ERROR
        and last.content == _TASK_FAILED
        and not progress.is_running
    ):
        typer.secho(f"Rebuild {name} failed: {last.error}", fg=typer.colors.RED)
        context.logger.error("rebuild-cli-failed", action=name, error=last.error)
        raise typer.Exit(code=1)

    if progress.is_running:
        typer.secho(
            "Rebuild is held by another process; use `noteindex rebuild progress`.",
            fg=typer.colors.YELLOW,
        )
    elif progress.percentage < 100:
        typer.secho(
            f"Rebuild stopped at {progress.current}/{progress.total}; "
            "use `noteindex rebuild resume` to continue.",
            fg=typer.colors.YELLOW,
        )
    else:
        typer.secho(
            f"Rebuild complete: {progress.current}/{progress.total} notes, "
            f"{len(progress.failed_note_ids)} failed.",
            fg=typer.colors.GREEN,
        )
    context.logger.info(
        "rebuild-cli-finished",
        action=name,
        current=progress.current,
        total=progress.total,
        failed=len(progress.failed_note_ids),
    )


@_rebuild_app.callback()
def configure_rebuild_commands(
    ctx: typer.Context,
    workspace: Path | None = typer.Option(
        None,
        "--workspace",
        "-w",
        help=(
            "Override workspace directory (defaults to "
            "NOTEINDEX_WORKSPACE or ~/.noteindex)."
        ),
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Override log level for rebuild commands.",
    ),
) -> None:
    """Initialize common rebuild CLI context."""

    ctx.obj = open_context(
        workspace=workspace,
        log_level=log_level,
        command="rebuild",
    )


@_rebuild_app.command(
    "start",
    help=(
        "Start a rebuild and follow it in the foreground. A full rebuild "
        "recreates the index; --incremental keeps already processed notes."
    ),
)
def start_rebuild(
    ctx: typer.Context,
    incremental: bool = typer.Option(
        False,
        "--incremental",
        "-i",
        help="Skip notes recorded as processed by the previous run.",
    ),
    force: bool = typer.Option(
        True,
        "--force/--no-force",
        help="Stop a run marked as running before starting over.",
    ),
) -> None:
    context = _require_context(ctx)
    _require_provider(context)
    coordinator = context.runtime.coordinator
    _run_foreground(
        context,
        lambda: coordinator.force_rebuild(force=force, incremental=incremental),
        name="start",
    )


@_rebuild_app.command(
    "resume",
    help="Continue the last run from its checkpoint.",
)
def resume_rebuild(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    _require_provider(context)
    _run_foreground(
        context,
        context.runtime.coordinator.resume_rebuild,
        name="resume",
    )


@_rebuild_app.command(
    "retry-failed",
    help="Re-run only the notes recorded as failed.",
)
def retry_failed(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    _require_provider(context)
    coordinator = context.runtime.coordinator
    if not coordinator.get_failed_notes():
        typer.secho("No failed notes to retry.", fg=typer.colors.YELLOW)
        return
    _run_foreground(context, coordinator.retry_failed_notes, name="retry-failed")


@_rebuild_app.command(
    "run",
    help=(
        "Execute the currently seeded run in the foreground (no-op when "
        "nothing is marked as running)."
    ),
)
def run_rebuild(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    _require_provider(context)
    coordinator = context.runtime.coordinator

    def fire() -> bool:
        coordinator.fire()
        return True

    _run_foreground(context, fire, name="run")


@_rebuild_app.command(
    "stop",
    help="Ask the active run (in any process) to stop after the current note.",
)
def stop_rebuild(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    if not context.runtime.coordinator.stop_rebuild():
        typer.secho("Rebuild stop failed.", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.secho("Stop requested.", fg=typer.colors.GREEN)


@_rebuild_app.command(
    "progress",
    help="Show the persisted checkpoint of the rebuild task.",
)
def show_progress(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the checkpoint as camelCase JSON.",
    ),
) -> None:
    context = _require_context(ctx)
    progress = context.runtime.coordinator.get_progress()
    if progress is None:
        progress = RebuildProgress()

    if json_output:
        typer.echo(progress.model_dump_json(by_alias=True, indent=2))
        return

    _echo_progress(progress)
    for record in progress.results[-10:]:
        suffix = f" - {record.error}" if record.error else ""
        typer.echo(f"  {record.type.value}: {record.content}{suffix}")


@_rebuild_app.command(
    "failed",
    help="List the ids of notes that failed in the last run.",
)
def list_failed(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    failed = context.runtime.coordinator.get_failed_notes()
    if not failed:
        typer.secho("No failed notes.", fg=typer.colors.GREEN)
        return
    for note_id in failed:
        typer.echo(str(note_id))


@_rebuild_app.command(
    "serve",
    help=(
        "Recover an interrupted run, then keep firing the rebuild on the "
        "configured cron schedule until interrupted."
    ),
)
def serve(ctx: typer.Context) -> None:
    context = _require_context(ctx)
    _require_provider(context)
    scheduler = context.runtime.scheduler
    action = scheduler.initialize_on_boot()
    next_run = scheduler.next_dates(1)[0]
    typer.secho(
        f"Scheduler armed ({scheduler.schedule}); boot action: {action.value}; "
        f"next run at {next_run.isoformat()}",
        fg=typer.colors.GREEN,
    )
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        typer.secho("Shutting down scheduler...", fg=typer.colors.YELLOW)
    finally:
        scheduler.stop()
        if context.runtime.coordinator.is_active:
            context.runtime.coordinator.stop_rebuild()


def create_rebuild_app() -> typer.Typer:
    """Return the Typer sub-application for rebuild commands."""

    return _rebuild_app


__all__ = ["create_rebuild_app"]
