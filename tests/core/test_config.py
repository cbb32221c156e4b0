"""Tests for :mod:`vecdex.core.config`."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest
from pydantic import ValidationError

from vecdex.core.config import (
    AppConfig,
    EmbeddingSettings,
    IndexSettings,
    PoolSettings,
    build_embedding_model,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    load_user_config,
    read_packaged_defaults_text,
    render_user_config,
)
from vecdex.core.errors import IndexConfigurationError
from vecdex.core.secrets import SecureCredential
from vecdex.modules.db.pool import PoolConfig
from vecdex.modules.vdb.config import HnswConfig, SimilarityFunction
from vecdex.modules.vdb.providers import ProviderInitContext, ProviderRegistry


def test_packaged_defaults_match_model_defaults() -> None:
    defaults = load_packaged_defaults()

    config = load_config(defaults=defaults)

    assert read_packaged_defaults_text().startswith("#")
    assert config == AppConfig()
    assert config.pool.max_size == 10
    assert config.index.batch_size == 100
    assert config.embedding.model == "text-embedding-3-small"


def test_precedence_stack_orders_layers() -> None:
    config = load_config(
        defaults={"log_level": "INFO", "pool": {"max_size": 10, "timeout": 30}},
        user_config={"log_level": "warning", "pool": {"max_size": 6}},
        env_config={"pool": {"max_size": "4"}},
        overrides={"log_level": "debug"},
    )

    assert config.log_level == "DEBUG"
    assert config.pool.max_size == 4
    assert config.pool.timeout == 30.0


def test_env_config_nests_on_double_underscore() -> None:
    environ = {
        "VECDEX_LOG_LEVEL": "error",
        "VECDEX_POOL__MAX_SIZE": "2",
        "VECDEX_EMBEDDING__MODEL": "text-embedding-3-large",
        "UNRELATED": "ignored",
    }

    env = env_config_from_environ(environ)

    assert env == {
        "log_level": "error",
        "pool": {"max_size": "2"},
        "embedding": {"model": "text-embedding-3-large"},
    }
    config = load_config(env_config=env)
    assert config.log_level == "ERROR"
    assert config.pool.max_size == 2


def test_env_config_rejects_scalar_section_conflicts() -> None:
    with pytest.raises(ValueError):
        env_config_from_environ(
            {"VECDEX_POOL": "x", "VECDEX_POOL__MAX_SIZE": "2"},
        )


def test_load_user_config_reads_toml(tmp_path: Path) -> None:
    path = tmp_path / "vecdex.toml"
    path.write_text('database = "other.db"\n[index]\nbatch_size = 50\n')

    assert load_user_config(tmp_path / "missing.toml") == {}
    config = load_config(user_config=load_user_config(path))
    assert config.database == "other.db"
    assert config.index.batch_size == 50


@pytest.mark.parametrize(
    "payload",
    [
        {"log_level": "loud"},
        {"pool": {"max_size": 0}},
        {"pool": {"max_size": 2, "min_idle": 3}},
        {"index": {"batch_size": 5000}},
        {"index": {"similarity_function": "chebyshev"}},
        {"index": {"index_type": "lsh"}},
    ],
)
def test_invalid_values_fail_validation(payload: dict) -> None:
    with pytest.raises(ValidationError):
        load_config(overrides=payload)


def test_pool_settings_convert_to_pool_config() -> None:
    settings = PoolSettings(max_size=3, min_idle=0, timeout=1.5)

    assert settings.to_pool_config() == PoolConfig(
        max_size=3,
        min_idle=0,
        timeout=1.5,
        max_lifetime=3600.0,
        idle_timeout=600.0,
    )


def test_index_settings_build_validated_index_config() -> None:
    settings = IndexSettings(
        similarity_function="Euclidean",
        index_type="hnsw",
        batch_size=10,
    )

    config = settings.to_index_config("movies", dimensions=8)

    assert config.index_name == "movies"
    assert config.similarity_function is SimilarityFunction.EUCLIDEAN
    assert isinstance(config.index_type, HnswConfig)
    assert config.dimensions == 8
    assert config.batch_size == 10


def test_index_settings_without_dimensions_fail_validation() -> None:
    with pytest.raises(IndexConfigurationError) as excinfo:
        IndexSettings().to_index_config("movies")

    assert excinfo.value.field == "dimensions"


def test_render_user_config_round_trips_without_api_key() -> None:
    config = load_config(
        overrides={
            "database": "vectors.db",
            "embedding": {"api_key": "sk-secret", "dimensions": 256},
        },
    )

    rendered = render_user_config(config)

    assert "sk-secret" not in rendered
    assert "VECDEX_POOL__MAX_SIZE" in rendered
    parsed = tomllib.loads(rendered)
    reloaded = load_config(user_config=parsed)
    assert reloaded.database == "vectors.db"
    assert reloaded.embedding.dimensions == 256
    assert reloaded.embedding.api_key is None
    assert reloaded.pool == config.pool


def test_app_config_repr_hides_api_key() -> None:
    config = AppConfig(embedding=EmbeddingSettings(api_key="sk-secret"))

    assert "sk-secret" not in repr(config)
    assert "sk-secret" not in str(config.model_dump())


def test_database_path_expands_user_paths() -> None:
    assert AppConfig(database=":memory:").database_path == ":memory:"
    assert AppConfig(database="~/v.db").database_path == Path("~/v.db").expanduser()


def test_build_embedding_model_passes_secure_credential() -> None:
    captured: list[ProviderInitContext] = []

    class _Model:
        dimensions = 4

        async def embed_text(self, text: str) -> list[float]:
            return [0.0] * 4

    def _factory(context: ProviderInitContext) -> _Model:
        captured.append(context)
        return _Model()

    registry = ProviderRegistry({"fake": _factory})
    settings = EmbeddingSettings(
        provider="FAKE",
        model="m",
        dimensions=4,
        api_key="sk-secret",
    )

    model = build_embedding_model(settings, registry=registry)

    assert model.dimensions == 4
    options = captured[0].config
    assert options["model"] == "m"
    assert options["dimensions"] == 4
    assert options["api_key"] == SecureCredential("sk-secret")
