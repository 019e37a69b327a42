"""
Vector math helpers used for in-memory ranking.

The database ranks stored chunks with pgvector's cosine distance; these helpers
give the same measure for vectors already held in memory.
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import numpy as np

from kidcare.core.exceptions import DimensionMismatchError


@dataclass
class SimilarityMatch:
    vector: List[float]
    similarity: float
    metadata: Any = None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Raises DimensionMismatchError when the lengths differ. Returns 0.0 when
    either vector has zero norm.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))


def normalize_vector(vector: Sequence[float]) -> List[float]:
    """Scale to unit length. An all-zero vector is returned unchanged."""
    v = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(v)
    if norm == 0:
        return list(vector)
    return (v / norm).tolist()


def sort_by_similarity(
    query: Sequence[float],
    vectors: Sequence[Sequence[float]],
    metadata: Optional[Sequence[Any]] = None,
) -> List[SimilarityMatch]:
    """
    Rank every candidate against ``query``, most similar first.

    ``metadata[i]`` travels with ``vectors[i]``. Equal scores keep their input
    order.
    """
    matches = [
        SimilarityMatch(
            vector=list(vector),
            similarity=cosine_similarity(query, vector),
            metadata=metadata[i] if metadata is not None and i < len(metadata) else None,
        )
        for i, vector in enumerate(vectors)
    ]
    # sorted() is stable
    return sorted(matches, key=lambda m: m.similarity, reverse=True)


def find_most_similar(
    query: Sequence[float],
    vectors: Sequence[Sequence[float]],
    metadata: Optional[Sequence[Any]] = None,
    top_k: int = 1,
    min_similarity: float = 0.0,
) -> List[SimilarityMatch]:
    """Return at most ``top_k`` matches with ``similarity >= min_similarity``."""
    if top_k <= 0:
        return []
    ranked = sort_by_similarity(query, vectors, metadata)
    return [m for m in ranked if m.similarity >= min_similarity][:top_k]
