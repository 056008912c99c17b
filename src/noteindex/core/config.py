"""Configuration models and loaders for :mod:`noteindex`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import Any, Mapping

import tomllib
import tomlkit
from croniter import croniter
from pydantic import BaseModel, Field, field_validator, model_validator

from noteindex.resources import get_resource


class EmbeddingSettings(BaseModel):
    """Embedding model selection and retrieval tuning."""

    provider: str = Field(
        default="openai",
        description="Registered embedding provider key.",
    )
    model: str = Field(
        default="text-embedding-3-small",
        description="Embedding model identifier passed to the provider.",
    )
    dimensions: int = Field(
        default=0,
        ge=0,
        description=(
            "Explicit vector dimension; 0 derives it from the known model "
            "table."
        ),
    )
    top_k: int = Field(
        default=3,
        ge=1,
        description="Nearest neighbours fetched from the index per query.",
    )
    min_score: float = Field(
        default=0.4,
        ge=-1.0,
        le=1.0,
        description="Minimum similarity score kept after the topK query.",
    )
    exclude_tag: str | None = Field(
        default=None,
        description="Notes carrying this tag are never embedded.",
    )
    chunk_size: int = Field(
        default=1000,
        ge=64,
        description="Maximum characters per embedded chunk.",
    )
    batch_size: int = Field(
        default=64,
        ge=1,
        description="Maximum texts sent in one provider request.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds before a provider request times out.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("embedding.provider cannot be blank")
        return normalized

    @field_validator("exclude_tag")
    @classmethod
    def _normalize_tag(cls, value: str | None) -> str | None:
        if value is None:
            return None
        tag = value.strip().lstrip("#")
        return tag or None

    @property
    def dimension_override(self) -> int | None:
        return self.dimensions or None


class VectorSettings(BaseModel):
    """Vector index naming and FAISS layout."""

    index_name: str = Field(
        default="notes",
        description="Name of the vector index holding note embeddings.",
    )
    metric: str = Field(
        default="cosine",
        description="Similarity metric (cosine, ip or l2).",
    )
    index_type: str = Field(
        default="IDMap,Flat",
        description="FAISS factory string wrapped in an IDMap.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("metric")
    @classmethod
    def _validate_metric(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"cosine", "ip", "l2"}:
            raise ValueError(f"Unsupported vector metric: {value!r}")
        return normalized


_DEFAULT_IMAGE_EXTENSIONS: tuple[str, ...] = (
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".bmp",
    ".webp",
    ".svg",
)


class RebuildSettings(BaseModel):
    """Tuning for the embedding rebuild job."""

    task_name: str = Field(
        default="rebuildEmbedding",
        description="Name of the scheduled task row holding the checkpoint.",
    )
    schedule: str = Field(
        default="0 0 * * *",
        description="Cron expression for periodic rebuilds.",
    )
    batch_size: int = Field(
        default=5,
        ge=1,
        description="Notes handled between cancellation checks.",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per note or attachment before giving up.",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Linear backoff unit; attempt N waits N times this.",
    )
    results_limit: int = Field(
        default=50,
        ge=1,
        description="Result records retained in the persisted checkpoint.",
    )
    stop_settle_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Pause after a forced stop before a restart.",
    )
    boot_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay before boot-time recovery inspects the task.",
    )
    resume_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay before an interrupted run is resumed on boot.",
    )
    lease_seconds: float = Field(
        default=600.0,
        gt=0.0,
        description=(
            "Seconds without a checkpoint write before another process may "
            "take over a claimed run."
        ),
    )
    image_extensions: tuple[str, ...] = Field(
        default=_DEFAULT_IMAGE_EXTENSIONS,
        description="Attachment suffixes skipped as non-text.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("schedule")
    @classmethod
    def _validate_schedule(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value

    @field_validator("image_extensions")
    @classmethod
    def _normalize_extensions(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        normalized = []
        for item in value:
            suffix = item.strip().lower()
            if not suffix:
                continue
            if not suffix.startswith("."):
                suffix = f".{suffix}"
            normalized.append(suffix)
        return tuple(dict.fromkeys(normalized))


class WorkspaceSettings(BaseModel):
    """Workspace-level configuration values."""

    root: Path = Field(
        default_factory=lambda: Path("~/.noteindex").expanduser(),
        description="Absolute path to the workspace root.",
    )

    model_config = {
        "validate_assignment": True,
    }

    @model_validator(mode="before")
    @classmethod
    def _coerce_raw(cls, value: Any) -> Any:
        """Accept a bare path string in place of the table."""

        if isinstance(value, (str, Path)):
            return {"root": value}
        return value

    @model_validator(mode="after")
    def _normalize(self) -> "WorkspaceSettings":
        object.__setattr__(self, "root", self.root.expanduser())
        return self


class AppConfig(BaseModel):
    """Root configuration for the :mod:`noteindex` application."""

    workspace_settings: WorkspaceSettings = Field(
        default_factory=WorkspaceSettings,
        description="Workspace-level configuration.",
        alias="workspace",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    vector: VectorSettings = Field(default_factory=VectorSettings)
    rebuild: RebuildSettings = Field(default_factory=RebuildSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        return self

    @property
    def workspace(self) -> Path:
        """Return the configured workspace root path."""

        return self.workspace_settings.root


DEFAULTS_RESOURCE_NAME = "noteindex.defaults.toml"

ENV_PREFIX = "NOTEINDEX_"


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> defaults = load_packaged_defaults()
        >>> defaults["rebuild"]["batch_size"]
        5
    """

    return tomllib.loads(read_packaged_defaults_text())


def load_user_config(path: Path) -> dict[str, Any]:
    """Parse the user's ``noteindex.toml``; a missing file is an empty layer."""

    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def env_config_from(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``NOTEINDEX_*`` environment variables into a config layer."""

    layer: dict[str, Any] = {}
    workspace = environ.get(f"{ENV_PREFIX}WORKSPACE")
    if workspace:
        layer["workspace"] = {"root": workspace}
    log_level = environ.get(f"{ENV_PREFIX}LOG_LEVEL")
    if log_level:
        layer["log_level"] = log_level
    model = environ.get(f"{ENV_PREFIX}EMBEDDING_MODEL")
    if model:
        layer["embedding"] = {"model": model}
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed user ``noteindex.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Returns:
        A validated :class:`AppConfig` instance.

    Raises:
        pydantic.ValidationError: If any layer carries invalid values.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig(**stack)


def render_user_config(config: AppConfig) -> str:
    """Render a ``noteindex.toml`` document for users to customize."""

    document = tomlkit.document()
    document.add(tomlkit.comment("Generated by noteindex init"))
    document.add(
        tomlkit.comment("Precedence: CLI flags > env vars > noteindex.toml")
    )
    document.add(tomlkit.comment("Environment overrides:"))
    document.add(tomlkit.comment("  NOTEINDEX_WORKSPACE=/path/to/workspace"))
    document.add(tomlkit.comment("  NOTEINDEX_LOG_LEVEL=info"))
    document.add(tomlkit.comment("  NOTEINDEX_EMBEDDING_MODEL=<model>"))
    document.add(tomlkit.nl())

    document["log_level"] = config.log_level

    workspace_table = tomlkit.table()
    workspace_table["root"] = str(config.workspace)
    document["workspace"] = workspace_table

    embedding = config.embedding.model_dump(mode="json")
    embedding_table = tomlkit.table()
    for key, value in embedding.items():
        if value is None:
            continue
        embedding_table[key] = value
    embedding_table["dimensions"].comment("0 = derive from model name")
    document["embedding"] = embedding_table

    vector_table = tomlkit.table()
    for key, value in config.vector.model_dump(mode="json").items():
        vector_table[key] = value
    document["vector"] = vector_table

    rebuild_table = tomlkit.table()
    for key, value in config.rebuild.model_dump(mode="json").items():
        rebuild_table[key] = list(value) if isinstance(value, tuple) else value
    document["rebuild"] = rebuild_table

    return tomlkit.dumps(document)


__all__ = [
    "AppConfig",
    "DEFAULTS_RESOURCE_NAME",
    "ENV_PREFIX",
    "EmbeddingSettings",
    "RebuildSettings",
    "VectorSettings",
    "WorkspaceSettings",
    "env_config_from",
    "load_config",
    "load_packaged_defaults",
    "load_user_config",
    "read_packaged_defaults_text",
    "render_user_config",
]
