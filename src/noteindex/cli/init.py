"""Helpers for the ``noteindex init`` command."""

from __future__ import annotations

from pathlib import Path

from noteindex.core.config import AppConfig, render_user_config
from noteindex.modules.db import Database

from .runtime import load_workspace_config, resolve_workspace_override


def init_workspace(
    *,
    workspace: Path | None = None,
    log_level: str | None = None,
) -> tuple[AppConfig, bool]:
    """Bootstrap the workspace directory, config file and database.

    Example:
        >>> from pathlib import Path
        >>> config, created = init_workspace(workspace=Path("/tmp/ni-example"))
        >>> str(config.workspace).endswith("ni-example")
        True

    Args:
        workspace: Target directory for the workspace.
        log_level: Optional override for the configured logging level.

    Returns:
        The resolved configuration and whether ``noteindex.toml`` was written.
        An existing config file is left untouched.
    """

    paths = resolve_workspace_override(workspace)
    paths.ensure_directories()

    config = load_workspace_config(paths, log_level=log_level)

    created = False
    if not paths.config_file.exists():
        paths.config_file.write_text(render_user_config(config), encoding="utf-8")
        created = True

    Database(paths.database_path).ensure()
    return config, created


__all__ = ["init_workspace"]
