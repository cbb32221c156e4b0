"""Similarity and lexical scoring shared by the exact and hybrid search paths."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator, Sequence
from typing import Any

import numpy as np

from vecdex.modules.vdb.config import SimilarityFunction

__all__ = [
    "as_vector",
    "lexical_score",
    "lexical_scorer",
    "score",
    "similarity_scorer",
    "tokenize",
]

_TOKEN = re.compile(r"\w+", re.UNICODE)


def as_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(values, dtype="float64").reshape(-1)


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def _dot(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b))


def _euclidean(a: np.ndarray, b: np.ndarray) -> float:
    return 1.0 / (1.0 + float(np.linalg.norm(a - b)))


def _manhattan(a: np.ndarray, b: np.ndarray) -> float:
    return 1.0 / (1.0 + float(np.abs(a - b).sum()))


def _jaccard(a: np.ndarray, b: np.ndarray) -> float:
    # Weighted Jaccard over non-negative parts.
    left = np.clip(a, 0.0, None)
    right = np.clip(b, 0.0, None)
    denom = float(np.maximum(left, right).sum())
    if denom == 0.0:
        return 0.0
    return float(np.minimum(left, right).sum()) / denom


def _hamming(a: np.ndarray, b: np.ndarray) -> float:
    if a.size == 0:
        return 0.0
    differing = int(np.count_nonzero((a > 0) != (b > 0)))
    return 1.0 - differing / a.size


_SCORERS: dict[SimilarityFunction, Callable[[np.ndarray, np.ndarray], float]] = {
    SimilarityFunction.COSINE: _cosine,
    SimilarityFunction.DOT_PRODUCT: _dot,
    SimilarityFunction.EUCLIDEAN: _euclidean,
    SimilarityFunction.MANHATTAN: _manhattan,
    SimilarityFunction.JACCARD: _jaccard,
    SimilarityFunction.HAMMING: _hamming,
}


def score(
    function: SimilarityFunction,
    a: Sequence[float] | np.ndarray,
    b: Sequence[float] | np.ndarray,
) -> float:
    """Return the similarity of ``a`` and ``b``; higher means closer.

    Raises:
        ValueError: If the vectors differ in length.
    """

    left = as_vector(a)
    right = as_vector(b)
    if left.shape != right.shape:
        raise ValueError(
            f"Vector dimensionality mismatch: {left.size} != {right.size}",
        )
    return _SCORERS[function](left, right)


def similarity_scorer(
    function: SimilarityFunction,
    query: Sequence[float] | np.ndarray,
) -> Callable[[str | None], float | None]:
    """Return a one-argument SQL function scoring stored JSON vectors."""

    target = as_vector(query)
    scorer = _SCORERS[function]

    def _score(stored: str | None) -> float | None:
        if stored is None:
            return None
        vector = as_vector(json.loads(stored))
        if vector.shape != target.shape:
            raise ValueError(
                f"Stored vector has {vector.size} dimensions, "
                f"expected {target.size}",
            )
        return scorer(target, vector)

    return _score


def tokenize(text: str) -> list[str]:
    return [token.lower() for token in _TOKEN.findall(text)]


def _walk_text(value: Any) -> Iterator[str]:
    if value is None or isinstance(value, bool):
        return
    if isinstance(value, str):
        yield value
    elif isinstance(value, (int, float)):
        yield str(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _walk_text(item)
    elif isinstance(value, list):
        for item in value:
            yield from _walk_text(item)


def _select(metadata: Any, field: str | None) -> Any:
    if field is None:
        return metadata
    current = metadata
    for segment in field.split("."):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def lexical_score(
    query_tokens: Sequence[str],
    metadata: Any,
    *,
    field: str | None = None,
) -> float:
    """Fraction of distinct query tokens present in the metadata text."""

    wanted = set(query_tokens)
    if not wanted:
        return 0.0
    present: set[str] = set()
    for text in _walk_text(_select(metadata, field)):
        present.update(tokenize(text))
    return len(wanted & present) / len(wanted)


def lexical_scorer(
    query: str,
    *,
    field: str | None = None,
) -> Callable[[str | None], float]:
    """Return a one-argument SQL function scoring stored JSON metadata."""

    tokens = tokenize(query)

    def _score(stored: str | None) -> float:
        if stored is None:
            return 0.0
        return lexical_score(tokens, json.loads(stored), field=field)

    return _score
