"""Workspace loading and service wiring shared by the CLI commands."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import typer

from noteindex.core.config import (
    AppConfig,
    env_config_from,
    load_config,
    load_packaged_defaults,
    load_user_config,
)
from noteindex.core.logging import Logger, configure_logging, get_logger
from noteindex.core.paths import WorkspacePaths, resolve_workspace
from noteindex.modules.db import Database
from noteindex.modules.notes import (
    FileAttachmentStore,
    SqliteNoteStore,
    SqliteNotificationSink,
)
from noteindex.modules.rebuild import (
    BatchProcessor,
    JobScheduler,
    ProgressStore,
    RebuildCoordinator,
)
from noteindex.modules.vdb import (
    EmbeddingService,
    EmbeddingsProvider,
    ProviderRegistry,
    VdbProviderError,
    VectorIndexManager,
    VectorStore,
    create_default_provider_registry,
)
from noteindex.modules.vdb.providers import ProviderRegistryError

__all__ = [
    "CLIContext",
    "NoteIndexRuntime",
    "build_runtime",
    "load_workspace_config",
    "open_context",
    "resolve_workspace_override",
]


@dataclass(slots=True)
class NoteIndexRuntime:
    """Fully wired services for one workspace."""

    database: Database
    notes: SqliteNoteStore
    progress: ProgressStore
    index: VectorIndexManager
    embedding: EmbeddingService
    coordinator: RebuildCoordinator
    scheduler: JobScheduler
    provider_error: str | None = None


@dataclass(slots=True)
class CLIContext:
    """Shared context carried across `noteindex` commands."""

    paths: WorkspacePaths
    config: AppConfig
    runtime: NoteIndexRuntime
    logger: Logger


def resolve_workspace_override(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("NOTEINDEX_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def load_workspace_config(
    paths: WorkspacePaths,
    *,
    log_level: str | None = None,
) -> AppConfig:
    """Apply defaults < noteindex.toml < environment < CLI flags."""

    cli_overrides: dict[str, object] = {"workspace": {"root": str(paths.workspace)}}
    if log_level:
        cli_overrides["log_level"] = log_level
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=load_user_config(paths.config_file),
        env_config=env_config_from(os.environ),
        cli_overrides=cli_overrides,
    )


def _create_provider(
    registry: ProviderRegistry,
    config: AppConfig,
    logger: Logger,
) -> tuple[EmbeddingsProvider | None, str | None]:
    try:
        provider = registry.create(
            config.embedding.provider,
            logger=logger.bind(component="provider"),
            config={
                "dimensions": config.embedding.dimensions,
                "timeout": config.embedding.timeout,
            },
        )
    except (ProviderRegistryError, VdbProviderError, ValueError) as exc:
        logger.warning(
            "embedding-provider-unavailable",
            provider=config.embedding.provider,
            error=str(exc),
        )
        return None, str(exc)
    return provider, None


def build_runtime(
    *,
    paths: WorkspacePaths,
    config: AppConfig,
    logger: Logger,
    providers: ProviderRegistry | None = None,
    vector_store: VectorStore | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> NoteIndexRuntime:
    """Assemble stores, index manager, coordinator and scheduler.

    The embedding provider is optional at wiring time so read-only commands
    work without credentials; ``provider_error`` explains why it is missing.
    """

    database = Database(paths.database_path).ensure()
    notes = SqliteNoteStore(database)
    attachments = FileAttachmentStore(paths.attachments_dir)
    notifications = SqliteNotificationSink(
        database,
        logger.bind(component="notifications"),
    )
    settings = config.rebuild
    progress = ProgressStore(
        database,
        lease_seconds=settings.lease_seconds,
        logger=logger.bind(component="progress-store"),
    )

    if vector_store is None:
        from noteindex.modules.vdb import FaissVectorStore

        vector_store = FaissVectorStore(
            database=database,
            paths=paths,
            index_type=config.vector.index_type,
            logger=logger.bind(component="vector-store"),
        )

    provider, provider_error = _create_provider(
        providers or create_default_provider_registry(),
        config,
        logger,
    )
    index = VectorIndexManager(
        store=vector_store,
        provider=provider,
        embedding=config.embedding,
        vector=config.vector,
        notes=notes,
        logger=logger.bind(component="vector-index"),
    )
    embedding = EmbeddingService(
        manager=index,
        notes=notes,
        attachments=attachments,
        settings=config.embedding,
        logger=logger.bind(component="embedding"),
    )
    processor = BatchProcessor(
        embedder=embedding,
        store=progress,
        max_retries=settings.max_retries,
        backoff_seconds=settings.retry_backoff_seconds,
        results_limit=settings.results_limit,
        image_extensions=settings.image_extensions,
        sleep=sleep,
        logger=logger.bind(component="rebuild"),
    )
    coordinator = RebuildCoordinator(
        store=progress,
        notes=notes,
        index=index,
        processor=processor,
        notifications=notifications,
        settings=settings,
        sleep=sleep,
        logger=logger.bind(component="rebuild"),
    )
    scheduler = JobScheduler(
        coordinator.run_task,
        store=progress,
        task_name=settings.task_name,
        default_schedule=settings.schedule,
        boot_delay_seconds=settings.boot_delay_seconds,
        resume_delay_seconds=settings.resume_delay_seconds,
        sleep=sleep,
        logger=logger.bind(component="scheduler"),
    )
    coordinator.set_trigger(scheduler.fire_now)

    logger.debug(
        "runtime-configured",
        database=str(paths.database_path),
        provider=config.embedding.provider,
        model=config.embedding.model,
        provider_ready=provider is not None,
    )
    return NoteIndexRuntime(
        database=database,
        notes=notes,
        progress=progress,
        index=index,
        embedding=embedding,
        coordinator=coordinator,
        scheduler=scheduler,
        provider_error=provider_error,
    )


def open_context(
    *,
    workspace: Path | None,
    log_level: str | None,
    command: str,
) -> CLIContext:
    """Resolve the workspace, configure logging and wire the runtime.

    Exits with code 1 (after printing a red message) when the workspace is
    unusable or has not been initialized.
    """

    try:
        paths = resolve_workspace_override(workspace)
    except ValueError as exc:
        typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    if not paths.config_file.exists():
        typer.secho(
            (
                "Workspace config not found at "
                f"{paths.config_file}. Run `noteindex init` first."
            ),
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)

    try:
        config = load_workspace_config(paths, log_level=log_level)
    except ValueError as exc:
        typer.secho(f"Failed to load workspace config: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    configure_logging(level=config.log_level, log_dir=paths.logs_dir)
    logger = get_logger(__name__, command=command)

    try:
        runtime = build_runtime(paths=paths, config=config, logger=logger)
    except ImportError as exc:
        typer.secho(
            f"Vector index support unavailable ({exc}). "
            "Install with `pip install noteindex[vdb]`.",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1) from exc

    return CLIContext(paths=paths, config=config, runtime=runtime, logger=logger)
