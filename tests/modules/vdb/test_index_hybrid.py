"""Hybrid, full-text and re-ranking behaviour of :class:`VectorIndex`."""

from __future__ import annotations

import math

import pytest

from vecdex.core.errors import InvalidDataError
from vecdex.modules.vdb.config import SearchParams
from vecdex.modules.vdb.index import SearchHit, VectorIndex


async def _seed(index: VectorIndex) -> None:
    await index.create_vector("a", [1.0, 0.0, 0.0], {"title": "red apple"})
    await index.create_vector("b", [0.0, 1.0, 0.0], {"title": "north star"})


def _alpha(value) -> SearchParams:
    return SearchParams(params={"alpha": value})


@pytest.mark.asyncio
async def test_alpha_one_matches_vector_ranking(vector_index: VectorIndex) -> None:
    await _seed(vector_index)

    hits = await vector_index.hybrid_search("north", 2, search_params=_alpha(1.0))

    assert [hit.id for hit in hits] == ["a", "b"]
    assert hits[0].score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_alpha_zero_ranks_by_lexical_overlap(vector_index: VectorIndex) -> None:
    await _seed(vector_index)

    hits = await vector_index.hybrid_search("north", 2, search_params=_alpha(0.0))

    assert [hit.id for hit in hits] == ["b", "a"]
    assert [hit.score for hit in hits] == pytest.approx([1.0, 0.0])


@pytest.mark.asyncio
async def test_default_alpha_blends_both_scores(vector_index: VectorIndex) -> None:
    await _seed(vector_index)

    hits = await vector_index.hybrid_search("north", 2)

    assert [hit.score for hit in hits] == pytest.approx([0.5, 0.5])
    assert [hit.id for hit in hits] == ["a", "b"]


@pytest.mark.asyncio
async def test_hybrid_respects_pre_filter(vector_index: VectorIndex) -> None:
    from vecdex.modules.vdb.filters import FilterBuilder

    await _seed(vector_index)
    only_b = FilterBuilder().field("id").operator("=").value("'b'").build()

    hits = await vector_index.hybrid_search(
        "north",
        5,
        search_params=SearchParams(pre_filter=only_b, params={"alpha": 0.2}),
    )

    assert [hit.id for hit in hits] == ["b"]
    assert hits[0].score == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_hybrid_rejects_empty_query(vector_index: VectorIndex) -> None:
    with pytest.raises(InvalidDataError) as excinfo:
        await vector_index.hybrid_search("", 5, "docs", SearchParams())

    assert excinfo.value.field == "query"


@pytest.mark.asyncio
async def test_hybrid_with_zero_n_returns_empty(vector_index: VectorIndex) -> None:
    await _seed(vector_index)

    assert await vector_index.hybrid_search("north", 0, "docs", SearchParams()) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("alpha", [-0.1, 1.5, "heavy", math.nan])
async def test_hybrid_rejects_invalid_alpha(vector_index: VectorIndex, alpha) -> None:
    with pytest.raises(InvalidDataError) as excinfo:
        await vector_index.hybrid_search("north", 2, search_params=_alpha(alpha))

    assert excinfo.value.field == "alpha"


@pytest.mark.asyncio
async def test_full_text_search_requires_every_token(vector_index: VectorIndex) -> None:
    await vector_index.create_vector("1", [1.0, 0.0, 0.0], {"title": "The quick brown fox"})
    await vector_index.create_vector("2", [1.0, 0.0, 0.0], {"title": "A quick hare"})
    await vector_index.create_vector(
        "3", [1.0, 0.0, 0.0], {"title": "Fox", "body": {"text": "quick"}}
    )

    hits = await vector_index.full_text_search("Quick FOX")

    assert [hit.id for hit in hits] == ["1", "3"]
    assert {hit.score for hit in hits} == {1.0}
    assert hits[0].payload["title"] == "The quick brown fox"

    titled = await vector_index.full_text_search("quick fox", field="metadata.title")
    assert [hit.id for hit in titled] == ["1"]

    limited = await vector_index.full_text_search("quick", limit=2)
    assert [hit.id for hit in limited] == ["1", "2"]
    assert await vector_index.full_text_search("quick", limit=0) == []


@pytest.mark.asyncio
async def test_full_text_search_validates_input(vector_index: VectorIndex) -> None:
    with pytest.raises(InvalidDataError):
        await vector_index.full_text_search("   ")
    with pytest.raises(InvalidDataError):
        await vector_index.full_text_search("?!")
    with pytest.raises(InvalidDataError):
        await vector_index.full_text_search("fox", limit=-1)

    assert await vector_index.full_text_search("fox", table="empty_table") == []


@pytest.mark.asyncio
async def test_rerank_sorts_by_new_score_and_keeps_ties_stable(vector_index: VectorIndex) -> None:
    results = [
        SearchHit(0.9, "a", {"rank": 1}),
        SearchHit(0.8, "b", {"rank": 3}),
        (0.7, "c", {"rank": 1}),
        SearchHit(0.6, "d", {"rank": 2}),
    ]

    reranked = vector_index.rerank(results, lambda payload: payload["rank"])

    assert [hit.id for hit in reranked] == ["b", "d", "a", "c"]
    assert [hit.score for hit in reranked] == [3.0, 2.0, 1.0, 1.0]
    assert all(isinstance(hit, SearchHit) for hit in reranked)


@pytest.mark.asyncio
async def test_rerank_rejects_nan_scores(vector_index: VectorIndex) -> None:
    with pytest.raises(InvalidDataError):
        vector_index.rerank([SearchHit(1.0, "a", None)], lambda payload: math.nan)


@pytest.mark.asyncio
async def test_rerank_of_empty_results_is_empty(vector_index: VectorIndex) -> None:
    assert vector_index.rerank([], lambda payload: 1.0) == []
