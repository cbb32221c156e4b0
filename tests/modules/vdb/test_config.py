"""Tests for :mod:`vecdex.modules.vdb.config`."""

from __future__ import annotations

from dataclasses import FrozenInstanceError, replace

import pytest

from vecdex.core.errors import IndexConfigurationError
from vecdex.modules.vdb.config import (
    AdvancedIndexConfig,
    BruteForceConfig,
    FlatConfig,
    HnswConfig,
    IndexConfig,
    IvfConfig,
    QuantizationConfig,
    SearchParams,
    SearchType,
    SimilarityFunction,
    index_type_from_mapping,
)


def _valid(**overrides) -> IndexConfig:
    return replace(IndexConfig("movies", dimensions=4), **overrides)


def test_defaults_validate() -> None:
    config = _valid()

    config.validate()

    assert config.embedding_property == "embedding"
    assert config.similarity_function is SimilarityFunction.COSINE
    assert isinstance(config.index_type, BruteForceConfig)
    assert (config.batch_size, config.max_retries, config.retry_delay) == (100, 3, 100)


def test_config_is_immutable() -> None:
    config = _valid()

    with pytest.raises(FrozenInstanceError):
        config.dimensions = 8  # type: ignore[misc]


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"index_name": ""}, "index_name"),
        ({"index_name": "   "}, "index_name"),
        ({"embedding_property": ""}, "embedding_property"),
        ({"embedding_property": "my vector"}, "embedding_property"),
        ({"embedding_property": "metadata"}, "embedding_property"),
        ({"dimensions": 0}, "dimensions"),
        ({"dimensions": 70_000}, "dimensions"),
        ({"max_elements": 0}, "max_elements"),
        ({"batch_size": 0}, "batch_size"),
        ({"batch_size": 1001}, "batch_size"),
        ({"max_retries": 11}, "max_retries"),
        ({"max_retries": -1}, "max_retries"),
        ({"advanced_config": AdvancedIndexConfig(max_connections=0)}, "max_connections"),
        ({"advanced_config": AdvancedIndexConfig(max_connections=101)}, "max_connections"),
        ({"advanced_config": AdvancedIndexConfig(num_threads=0)}, "num_threads"),
        ({"advanced_config": AdvancedIndexConfig(num_threads=65)}, "num_threads"),
        ({"retry_delay": -5}, "retry_delay"),
        (
            {"advanced_config": AdvancedIndexConfig(quantization=QuantizationConfig(bits=3))},
            "quantization",
        ),
        (
            {
                "advanced_config": AdvancedIndexConfig(
                    quantization=QuantizationConfig(quantizer_type="product"),
                )
            },
            "quantization",
        ),
    ],
)
def test_validate_names_the_failing_field(overrides: dict, field: str) -> None:
    with pytest.raises(IndexConfigurationError) as excinfo:
        _valid(**overrides).validate()

    assert excinfo.value.field == field


def test_validate_reports_first_failure_in_order() -> None:
    config = IndexConfig(
        "",
        embedding_property="",
        dimensions=0,
        max_elements=0,
        batch_size=0,
    )

    with pytest.raises(IndexConfigurationError) as excinfo:
        config.validate()

    assert excinfo.value.field == "index_name"

    with pytest.raises(IndexConfigurationError) as excinfo:
        replace(config, index_name="movies").validate()

    assert excinfo.value.field == "embedding_property"

    with pytest.raises(IndexConfigurationError) as excinfo:
        replace(config, index_name="movies", embedding_property="vec").validate()

    assert excinfo.value.field == "dimensions"


@pytest.mark.parametrize(
    "bound",
    [
        {"batch_size": 1},
        {"batch_size": 1000},
        {"max_retries": 0},
        {"max_retries": 10},
        {"advanced_config": AdvancedIndexConfig(max_connections=1, num_threads=64)},
        {"advanced_config": AdvancedIndexConfig(max_connections=100, num_threads=1)},
    ],
)
def test_validate_accepts_inclusive_bounds(bound: dict) -> None:
    _valid(**bound).validate()


def test_similarity_function_coerces_text() -> None:
    assert _valid(similarity_function="Dot_Product").similarity_function is (
        SimilarityFunction.DOT_PRODUCT
    )
    with pytest.raises(IndexConfigurationError) as excinfo:
        _valid(similarity_function="chebyshev")
    assert excinfo.value.field == "similarity_function"


def test_variant_parameters_are_checked_on_construction() -> None:
    with pytest.raises(IndexConfigurationError):
        HnswConfig(max_connections=1)
    with pytest.raises(IndexConfigurationError):
        IvfConfig(ncentroids=0)


def test_advanced_overrides_win_over_variant_parameters() -> None:
    config = _valid(
        index_type=HnswConfig(ef_construction=64, max_connections=8),
        advanced_config=AdvancedIndexConfig(max_connections=32),
    )

    assert config.hnsw == HnswConfig(ef_construction=64, max_connections=32)

    ivf = _valid(
        index_type=IvfConfig(ncentroids=10),
        advanced_config=AdvancedIndexConfig(ivf=IvfConfig(ncentroids=4, niter=5)),
    )
    assert ivf.ivf == IvfConfig(ncentroids=4, niter=5)
    assert _valid().ivf == IvfConfig()


def test_mapping_round_trip_preserves_every_field() -> None:
    config = _valid(
        embedding_property="vec",
        similarity_function=SimilarityFunction.MANHATTAN,
        index_type=IvfConfig(ncentroids=8, niter=4),
        advanced_config=AdvancedIndexConfig(
            hnsw=HnswConfig(ef_construction=10),
            flat=FlatConfig(dimension=4),
            quantization=QuantizationConfig(bits=4),
            num_threads=2,
            allow_replace_deleted=True,
            min_connections=1,
        ),
        batch_size=7,
        max_retries=2,
        retry_delay=25,
    )

    assert IndexConfig.from_mapping(config.to_mapping()) == config


def test_index_type_from_mapping_rejects_unknown_kind() -> None:
    with pytest.raises(IndexConfigurationError) as excinfo:
        index_type_from_mapping({"kind": "lsh"})

    assert excinfo.value.field == "index_type"
    assert index_type_from_mapping({"kind": "BRUTE_FORCE"}) == BruteForceConfig()


@pytest.mark.parametrize(("bits", "code"), [(4, "SQ4"), (6, "SQ6"), (8, "SQ8"), (16, "SQfp16")])
def test_quantization_factory_codes(bits: int, code: str) -> None:
    assert QuantizationConfig(bits=bits).factory_code == code


def test_search_params_defaults_and_limit() -> None:
    params = SearchParams()

    assert params.search_type is SearchType.SIMILARITY
    assert params.effective_limit(5) == 5
    assert SearchParams(limit=3).effective_limit(5) == 3
    assert SearchParams(limit=0).effective_limit(5) == 0


def test_search_params_reject_negative_limit() -> None:
    with pytest.raises(IndexConfigurationError) as excinfo:
        SearchParams(limit=-1)

    assert excinfo.value.field == "limit"


def test_search_params_freeze_params_mapping() -> None:
    raw = {"alpha": 0.3}
    params = SearchParams(params=raw, search_type="exact")

    raw["alpha"] = 0.9

    assert params.param("alpha") == 0.3
    assert params.param("missing", 7) == 7
    assert params.search_type is SearchType.EXACT
    with pytest.raises(TypeError):
        params.params["alpha"] = 1.0  # type: ignore[index]
