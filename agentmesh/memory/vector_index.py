"""Fixed-dimension vector index with cosine-similarity search."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from agentmesh.core.errors import DimensionMismatchError, NotFoundError


@dataclass(slots=True)
class VectorSearchResult:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; any comparison involving a zero vector scores 0."""
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(a, b) / (norm_a * norm_b))


def matches_filter(metadata: Mapping[str, Any], filter: Optional[Mapping[str, Any]]) -> bool:
    if not filter:
        return True
    return all(key in metadata and metadata[key] == value for key, value in filter.items())


class VectorIndex:
    """Named vectors of one shared dimension plus per-vector metadata."""

    def __init__(self, dimension: int = 384) -> None:
        if dimension < 1:
            raise ValueError("dimension must be positive")
        self._dimension = dimension
        self._vectors: Dict[str, np.ndarray] = {}
        self._metadata: Dict[str, Dict[str, Any]] = {}

    @property
    def dimension(self) -> int:
        return self._dimension

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, vector_id: str) -> bool:
        return vector_id in self._vectors

    def validate(self, vector: Sequence[float]) -> None:
        """Raise ``DimensionMismatchError`` unless ``vector`` fits this index."""
        self._coerce(vector)

    def add(self, vector_id: str, vector: Sequence[float], metadata: Optional[Mapping[str, Any]] = None) -> None:
        self._vectors[vector_id] = self._coerce(vector)
        self._metadata[vector_id] = dict(metadata or {})

    def update(
        self, vector_id: str, vector: Sequence[float], metadata: Optional[Mapping[str, Any]] = None
    ) -> None:
        if vector_id not in self._vectors:
            raise NotFoundError("Vector", vector_id)
        self._vectors[vector_id] = self._coerce(vector)
        if metadata is not None:
            self._metadata[vector_id] = dict(metadata)

    def delete(self, vector_id: str) -> bool:
        self._metadata.pop(vector_id, None)
        return self._vectors.pop(vector_id, None) is not None

    def clear(self) -> None:
        self._vectors.clear()
        self._metadata.clear()

    def get(self, vector_id: str) -> Optional[np.ndarray]:
        vector = self._vectors.get(vector_id)
        return None if vector is None else vector.copy()

    def search_similar(
        self,
        vector: Sequence[float],
        k: int,
        filter: Optional[Mapping[str, Any]] = None,
    ) -> List[VectorSearchResult]:
        """Return at most ``k`` entries ordered by descending cosine similarity."""
        query = self._coerce(vector)
        if k <= 0:
            return []
        results = [
            VectorSearchResult(id=vector_id, score=cosine_similarity(query, stored), metadata=dict(self._metadata[vector_id]))
            for vector_id, stored in self._vectors.items()
            if matches_filter(self._metadata[vector_id], filter)
        ]
        results.sort(key=lambda result: result.score, reverse=True)
        return results[:k]

    def _coerce(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float64)
        if array.ndim != 1 or array.shape[0] != self._dimension:
            actual = array.shape[0] if array.ndim == 1 else array.size
            raise DimensionMismatchError(self._dimension, int(actual))
        return array
