"""Configuration models and loaders for :mod:`vecdex`."""

from __future__ import annotations

import os
from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from vecdex.resources import get_resource

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from vecdex.core.logging import Logger
    from vecdex.modules.db.pool import PoolConfig
    from vecdex.modules.vdb.config import IndexConfig
    from vecdex.modules.vdb.providers import EmbeddingModel, ProviderRegistry

ENV_PREFIX = "VECDEX_"
"""Prefix for environment overrides; ``__`` separates nested sections."""

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET")


class PoolSettings(BaseModel):
    """Connection pool sizing and timing values."""

    max_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of connections checked out at once.",
    )
    min_idle: int = Field(
        default=1,
        ge=0,
        description="Idle connections kept open when evicting stale ones.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds to wait for a free connection.",
    )
    max_lifetime: float = Field(
        default=3600.0,
        gt=0.0,
        description="Seconds before a connection is retired.",
    )
    idle_timeout: float = Field(
        default=600.0,
        gt=0.0,
        description="Seconds an idle connection may sit before eviction.",
    )
    busy_timeout: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds SQLite waits on a locked database.",
    )

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _check_idle(self) -> "PoolSettings":
        if self.min_idle > self.max_size:
            raise ValueError("pool.min_idle cannot exceed pool.max_size")
        return self

    def to_pool_config(self) -> "PoolConfig":
        from vecdex.modules.db.pool import PoolConfig

        return PoolConfig(
            max_size=self.max_size,
            min_idle=self.min_idle,
            timeout=self.timeout,
            max_lifetime=self.max_lifetime,
            idle_timeout=self.idle_timeout,
        )


class IndexSettings(BaseModel):
    """Defaults applied to indexes created from configuration."""

    embedding_property: str = Field(
        default="embedding",
        description="Column that stores vectors in each collection.",
    )
    similarity_function: str = Field(
        default="cosine",
        description="Similarity metric used for ranking.",
    )
    index_type: str = Field(
        default="brute_force",
        description="One of hnsw, ivf, flat or brute_force.",
    )
    dimensions: int | None = Field(
        default=None,
        ge=1,
        description="Vector length; defaults to the embedding model's.",
    )
    max_elements: int = Field(default=1_000_000, ge=1)
    batch_size: int = Field(default=100, ge=1, le=1000)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay: int = Field(
        default=100,
        ge=0,
        description="Milliseconds between retry attempts.",
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("similarity_function")
    @classmethod
    def _validate_similarity(cls, value: str) -> str:
        from vecdex.modules.vdb.config import SimilarityFunction

        normalized = value.lower()
        if normalized not in {item.value for item in SimilarityFunction}:
            raise ValueError(f"Unknown similarity function: {value!r}")
        return normalized

    @field_validator("index_type")
    @classmethod
    def _validate_index_type(cls, value: str) -> str:
        from vecdex.modules.vdb.config import IndexKind

        normalized = value.lower().replace("-", "_")
        if normalized not in {item.value for item in IndexKind}:
            raise ValueError(f"Unknown index type: {value!r}")
        return normalized

    def to_index_config(
        self,
        index_name: str,
        *,
        dimensions: int | None = None,
    ) -> "IndexConfig":
        """Build a validated :class:`IndexConfig` named ``index_name``.

        ``dimensions`` wins over the configured value.

        Raises:
            IndexConfigurationError: If the resulting config is invalid.
        """

        from vecdex.modules.vdb.config import (
            IndexConfig,
            SimilarityFunction,
            index_type_from_mapping,
        )

        config = IndexConfig(
            index_name=index_name,
            embedding_property=self.embedding_property,
            similarity_function=SimilarityFunction(self.similarity_function),
            index_type=index_type_from_mapping({"kind": self.index_type}),
            dimensions=dimensions or self.dimensions or 0,
            max_elements=self.max_elements,
            batch_size=self.batch_size,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
        )
        config.validate()
        return config


class EmbeddingSettings(BaseModel):
    """Embedding provider selection and client options."""

    provider: str = Field(
        default="openai",
        description="Registry key of the embedding provider.",
    )
    model: str = Field(default="text-embedding-3-small")
    dimensions: int | None = Field(default=None, ge=1)
    api_key: SecretStr | None = Field(
        default=None,
        description="Provider API key; falls back to the provider's env var.",
    )
    base_url: str | None = None
    organization: str | None = None
    timeout: float = Field(default=30.0, gt=0.0)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.lower()
        if not normalized:
            raise ValueError("embedding.provider cannot be blank")
        return normalized

    def provider_options(self) -> dict[str, object]:
        """Return the mapping handed to the provider factory.

        The API key, when present, is wrapped in a
        :class:`~vecdex.core.secrets.SecureCredential`.
        """

        from vecdex.core.secrets import SecureCredential

        options: dict[str, object] = {
            "model": self.model,
            "timeout": self.timeout,
        }
        if self.dimensions is not None:
            options["dimensions"] = self.dimensions
        if self.base_url:
            options["base_url"] = self.base_url
        if self.organization:
            options["organization"] = self.organization
        if self.api_key is not None:
            options["api_key"] = SecureCredential(
                self.api_key.get_secret_value()
            )
        return options


class AppConfig(BaseModel):
    """Root configuration for :mod:`vecdex`."""

    database: str = Field(
        default="vecdex.db",
        description="SQLite database path or ':memory:'.",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the runtime.",
    )
    pool: PoolSettings = Field(default_factory=PoolSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value!r}")
        return normalized

    @property
    def database_path(self) -> str | Path:
        """Return the database target with ``~`` expanded for file paths."""

        if self.database == ":memory:" or self.database.startswith("file:"):
            return self.database
        return Path(self.database).expanduser()


DEFAULTS_RESOURCE_NAME = "vecdex.defaults.toml"


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content.

    Example:
        >>> text = read_packaged_defaults_text()
        >>> text.startswith("#")
        True
    """

    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["log_level"]
        'INFO'
    """

    data: dict[str, Any] = tomllib.loads(read_packaged_defaults_text())
    return data


def load_user_config(path: str | Path) -> dict[str, Any]:
    """Parse a user ``vecdex.toml``; a missing file yields an empty mapping."""

    target = Path(path).expanduser()
    if not target.exists():
        return {}
    with target.open("rb") as handle:
        return tomllib.load(handle)


def env_config_from_environ(
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Collect ``VECDEX_*`` variables into a nested configuration mapping.

    ``VECDEX_LOG_LEVEL`` sets ``log_level`` and ``VECDEX_POOL__MAX_SIZE`` sets
    ``pool.max_size``. Values stay strings; pydantic coerces them.

    Example:
        >>> env_config_from_environ({"VECDEX_POOL__MAX_SIZE": "4"})
        {'pool': {'max_size': '4'}}
    """

    source = os.environ if environ is None else environ
    config: dict[str, Any] = {}
    for key, value in source.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = [
            part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part
        ]
        if not parts:
            continue
        target = config
        for part in parts[:-1]:
            nested = target.setdefault(part, {})
            if not isinstance(nested, dict):
                raise ValueError(
                    f"Environment variable {key} conflicts with "
                    f"{ENV_PREFIX}{part.upper()}"
                )
            target = nested
        target[parts[-1]] = value
    return config


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
    defaults: Mapping[str, Any] | None = None,
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults; loaded from the package when omitted.
        user_config: Parsed user ``vecdex.toml`` content.
        env_config: Settings derived from ``VECDEX_*`` variables.
        overrides: Explicit settings supplied by the caller.

    Returns:
        A validated :class:`AppConfig` instance.

    Raises:
        pydantic.ValidationError: If the merged values are invalid.
    """

    stack = dict(load_packaged_defaults() if defaults is None else defaults)
    for layer in (user_config, env_config, overrides):
        if layer:
            stack = _deep_merge(stack, layer)
    return AppConfig.model_validate(stack)


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``vecdex.toml`` template for users to customize.

    The embedding API key is never written out.
    """

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by vecdex"))
        document.add(
            tomlkit.comment(
                "Precedence: overrides > env vars > vecdex.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Environment overrides:"))
        document.add(tomlkit.comment("  VECDEX_DATABASE=/path/to/vectors.db"))
        document.add(tomlkit.comment("  VECDEX_LOG_LEVEL=info"))
        document.add(tomlkit.comment("  VECDEX_POOL__MAX_SIZE=4"))
        document.add(tomlkit.nl())

    document["database"] = config.database
    document["log_level"] = config.log_level

    pool_table = tomlkit.table()
    for key, value in config.pool.model_dump().items():
        pool_table[key] = value
    document["pool"] = pool_table

    index_table = tomlkit.table()
    for key, value in config.index.model_dump(exclude_none=True).items():
        index_table[key] = value
    document["index"] = index_table

    embedding_table = tomlkit.table()
    embedding = config.embedding.model_dump(
        exclude={"api_key"},
        exclude_none=True,
    )
    for key, value in embedding.items():
        embedding_table[key] = value
    if include_defaults:
        embedding_table.add(
            tomlkit.comment("api_key is read from OPENAI_API_KEY when unset")
        )
    document["embedding"] = embedding_table

    return tomlkit.dumps(document)


def build_embedding_model(
    settings: EmbeddingSettings,
    *,
    registry: "ProviderRegistry | None" = None,
    logger: "Logger | None" = None,
) -> "EmbeddingModel":
    """Instantiate the configured provider through ``registry``.

    Raises:
        ProviderNotRegisteredError: If ``settings.provider`` is unknown.
    """

    from vecdex.core.logging import get_logger
    from vecdex.modules.vdb.providers import create_default_provider_registry

    active = registry or create_default_provider_registry()
    return active.create(
        settings.provider,
        logger=logger or get_logger(__name__, provider=settings.provider),
        config=settings.provider_options(),
    )


__all__ = [
    "AppConfig",
    "DEFAULTS_RESOURCE_NAME",
    "ENV_PREFIX",
    "EmbeddingSettings",
    "IndexSettings",
    "PoolSettings",
    "build_embedding_model",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "load_user_config",
    "read_packaged_defaults_text",
    "render_user_config",
]
