"""Workspace path helpers for :mod:`noteindex`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "WorkspacePaths",
    "resolve_workspace",
]


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths.for_root(Path("/tmp/noteindex"))
        >>> paths.database_path.name
        'noteindex.sqlite3'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    indexes_dir: Path
    attachments_dir: Path
    database_path: Path

    @classmethod
    def for_root(cls, root: Path) -> "WorkspacePaths":
        """Derive the canonical layout below ``root``."""

        return cls(
            workspace=root,
            config_file=root / "noteindex.toml",
            logs_dir=root / "logs",
            indexes_dir=root / "indexes",
            attachments_dir=root / "attachments",
            database_path=root / "noteindex.sqlite3",
        )

    def iter_directories(self) -> Iterable[Path]:
        """Yield every directory managed within the workspace."""

        yield from (
            self.workspace,
            self.logs_dir,
            self.indexes_dir,
            self.attachments_dir,
        )

    def ensure_directories(self) -> None:
        for directory in self.iter_directories():
            directory.mkdir(parents=True, exist_ok=True)

    def index_dir(self, name: str) -> Path:
        """Return the directory holding artifacts for vector index ``name``."""

        return self.indexes_dir / name

    def index_path(self, name: str) -> Path:
        """Return the FAISS file path for vector index ``name``."""

        return self.index_dir(name) / "index.faiss"


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    Args:
        workspace_override: Optional override provided by CLI flags.
        env_override: Optional override from environment variables.

    Returns:
        Resolved workspace paths after precedence rules are applied.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = workspace_override or env_override or Path.home() / ".noteindex"
    raw = Path(base).expanduser()
    if raw.is_absolute():
        workspace = raw.resolve(strict=False)
    else:
        workspace = (Path.cwd() / raw).resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.for_root(workspace)
