"""
FAISS ANN Index

This module wraps a FAISS HNSW index used for approximate cosine-similarity
search over chunk embeddings.

Key Properties
--------------
- Labels are implicit and sequential: the label of a point is the element
  count at insertion time, so labels are dense in [0, count)
- Vectors are L2-normalized on insertion and queried by inner product,
  which makes scores cosine similarities
- Capacity is a logical bound kept by this wrapper: HNSW storage grows on
  its own, so `resize` only raises `max_elements`. Inserting into a full
  index fails until the bound is raised, and the store caps growth at a
  configured ceiling
- `compacted` rebuilds the index from a subset of labels, renumbering
  them densely in the given order
- Single-file persistence via faiss.write_index / faiss.read_index

The wrapper is not thread-safe on its own; the vector store serializes access.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence, Tuple

import faiss
import numpy as np

from ..core.errors import (
    AnnPersistenceError,
    DimensionMismatchError,
    IndexCapacityError,
)

logger = logging.getLogger("codeindex.ann")


class AnnIndex:
    """
    Fixed-dimension HNSW index with an explicit element capacity.
    """

    def __init__(
        self,
        dimension: int,
        max_elements: int,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 64,
    ) -> None:
        if dimension <= 0:
            raise ValueError("ANN index dimension must be positive.")
        if max_elements <= 0:
            raise ValueError("ANN index capacity must be positive.")

        self.dimension = dimension
        self.max_elements = max_elements
        self._m = m
        self._ef_construction = ef_construction
        self._ef_search = ef_search

        self._index = self._build()

    def _build(self) -> faiss.IndexHNSWFlat:
        index = faiss.IndexHNSWFlat(self.dimension, self._m, faiss.METRIC_INNER_PRODUCT)
        index.hnsw.efConstruction = self._ef_construction
        index.hnsw.efSearch = self._ef_search
        return index

    def clear(self) -> None:
        """Drop every point; labels restart at 0. Capacity is kept."""
        self._index = self._build()

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    @property
    def count(self) -> int:
        return int(self._index.ntotal)

    @property
    def is_full(self) -> bool:
        return self.count >= self.max_elements

    def resize(self, new_max_elements: int) -> None:
        """Grow the capacity. Shrinking below the current count is rejected."""
        if new_max_elements < self.count:
            raise IndexCapacityError(self.max_elements, new_max_elements)
        logger.info(
            "Resizing ANN index capacity %d -> %d",
            self.max_elements,
            new_max_elements,
        )
        self.max_elements = new_max_elements

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    def _as_matrix(self, vector: Sequence[float]) -> np.ndarray:
        matrix = np.asarray([vector], dtype="float32")
        if matrix.shape[1] != self.dimension:
            raise DimensionMismatchError(self.dimension, matrix.shape[1])
        return np.ascontiguousarray(matrix)

    def add_point(self, vector: Sequence[float]) -> Tuple[int, float]:
        """
        Insert one vector and return (label, norm).

        The caller must make room with `resize` first when `is_full`.
        """
        if self.is_full:
            raise IndexCapacityError(self.max_elements, self.max_elements)

        matrix = self._as_matrix(vector)
        norm = float(np.linalg.norm(matrix[0]))
        faiss.normalize_L2(matrix)

        label = self.count
        self._index.add(matrix)
        return label, norm

    def compacted(self, labels: Sequence[int]) -> "AnnIndex":
        """
        Return a new index holding only `labels`, with capacity kept.

        The point stored under labels[i] gets label i in the new index.
        """
        rebuilt = AnnIndex(
            self.dimension,
            self.max_elements,
            m=self._m,
            ef_construction=self._ef_construction,
            ef_search=self._ef_search,
        )
        if labels:
            matrix = np.vstack([self._index.reconstruct(int(label)) for label in labels])
            rebuilt._index.add(np.ascontiguousarray(matrix, dtype="float32"))
        return rebuilt

    def get_point(self, label: int) -> List[float]:
        """Return the stored (unit-length) vector for a label."""
        if label < 0 or label >= self.count:
            raise KeyError(label)
        return self._index.reconstruct(int(label)).tolist()

    def search(self, query: Sequence[float], k: int) -> List[Tuple[int, float]]:
        """
        Return up to k (label, cosine_distance) pairs, nearest first.
        """
        if self.count == 0 or k <= 0:
            return []

        q = self._as_matrix(query)
        faiss.normalize_L2(q)

        k = min(k, self.count)
        self._index.hnsw.efSearch = max(self._ef_search, k)
        similarities, labels = self._index.search(q, k)

        results: List[Tuple[int, float]] = []
        for similarity, label in zip(similarities[0], labels[0]):
            label = int(label)
            if label == -1:
                continue
            results.append((label, 1.0 - float(similarity)))
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: str | Path) -> None:
        index_path = Path(path)
        index_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            faiss.write_index(self._index, str(index_path))
        except Exception as exc:
            raise AnnPersistenceError(
                f"Failed to write ANN index: {type(exc).__name__}"
            ) from exc

    def load(self, path: str | Path) -> None:
        """
        Replace the in-memory index with the one stored at `path`.

        Raises AnnPersistenceError on I/O failure or dimension mismatch; the
        current index is left untouched in that case.
        """
        try:
            loaded = faiss.read_index(str(path))
        except Exception as exc:
            raise AnnPersistenceError(
                f"Failed to read ANN index: {type(exc).__name__}"
            ) from exc

        if loaded.d != self.dimension:
            raise AnnPersistenceError(
                f"ANN index on disk has dimension {loaded.d}, expected {self.dimension}."
            )

        self._index = loaded
        if hasattr(self._index, "hnsw"):
            self._index.hnsw.efSearch = self._ef_search
        if self.count > self.max_elements:
            self.max_elements = self.count
