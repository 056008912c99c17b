"""Core utilities shared across :mod:`noteindex` modules.

The core namespace provides cohesive seams for configuration loading, logging
setup, workspace path resolution and file locking so feature modules remain
lightweight.
"""

from __future__ import annotations

from .config import AppConfig, load_config
from .locks import FileLock, FileLockError, FileLockTimeoutError
from .logging import bound_run_context, configure_logging, get_logger
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "FileLock",
    "FileLockError",
    "FileLockTimeoutError",
    "WorkspacePaths",
    "bound_run_context",
    "configure_logging",
    "get_logger",
    "load_config",
    "resolve_workspace",
]
