"""
Retrieval & Context Reconstruction

Runs similarity search and widens each raw hit into a more useful piece of
context:

1. The hit is a fragment of a split structure: all fragments are joined in
   structure order and the score is boosted.
2. Otherwise neighbouring chunks in the same file are merged around it, with
   an elision marker wherever the spans are not contiguous, and the score is
   slightly lowered.
3. Otherwise the hit is kept as is.

Enhancement never fails a search: a hit whose reconstruction raises is kept
unchanged.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from ..config import settings
from ..core.cancellation import CancellationToken
from ..embeddings.runner import EmbeddingRunner
from ..models import ChunkRecord, SimilaritySearchOptions, SimilaritySearchResult
from ..storage.vector_store import VectorStore
from ..utils import quick_hash

logger = logging.getLogger("codeindex.retrieval")

ELISION_MARKER = "\n// ...\n"


class ContextRetriever:
    def __init__(
        self,
        store: VectorStore,
        runner: Optional[EmbeddingRunner] = None,
        structure_boost: Optional[float] = None,
        adjacent_penalty: Optional[float] = None,
        adjacent_window: Optional[int] = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.structure_boost = structure_boost or settings.structure_score_boost
        self.adjacent_penalty = adjacent_penalty or settings.adjacent_score_penalty
        self.adjacent_window = (
            settings.adjacent_chunk_window if adjacent_window is None else adjacent_window
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(
        self,
        query_vector: Sequence[float],
        options: Optional[SimilaritySearchOptions] = None,
    ) -> List[SimilaritySearchResult]:
        hits = self.store.find_similar_code(query_vector, options)
        if not hits:
            return []
        return self.enhance_results(hits)

    async def find_relevant_context(
        self,
        query_text: str,
        options: Optional[SimilaritySearchOptions] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[SimilaritySearchResult]:
        """
        Embed `query_text` and return reconstructed context for it.

        Returns [] when the query cannot be embedded.
        """
        if self.runner is None:
            logger.error("No embedding runner configured for text queries")
            return []

        vector = await self.runner.embed_query(query_text, cancel)
        if vector is None:
            return []
        return self.search(vector, options)

    def enhance_results(
        self,
        hits: Sequence[SimilaritySearchResult],
    ) -> List[SimilaritySearchResult]:
        enhanced: List[SimilaritySearchResult] = []
        for hit in hits:
            try:
                enhanced.append(self._enhance(hit))
            except Exception:
                logger.exception("Error enhancing result for chunk %s", hit.chunk_id)
                enhanced.append(hit)

        unique = self._dedupe(enhanced)
        unique.sort(key=lambda r: r.score, reverse=True)
        return unique

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _enhance(self, hit: SimilaritySearchResult) -> SimilaritySearchResult:
        structure = self.store.get_structure_chunks(hit.chunk_id)
        if len(structure) > 1:
            return hit.model_copy(
                update={
                    "content": "\n".join(c.content for c in structure),
                    "start_offset": min(c.start_offset for c in structure),
                    "end_offset": max(c.end_offset for c in structure),
                    "score": min(1.0, hit.score * self.structure_boost),
                }
            )

        if self.adjacent_window > 0:
            adjacent = self.store.get_adjacent_chunks(hit.chunk_id, self.adjacent_window)
            if adjacent:
                content, start, end = self._merge_spans(hit, adjacent)
                return hit.model_copy(
                    update={
                        "content": content,
                        "start_offset": start,
                        "end_offset": end,
                        "score": hit.score * self.adjacent_penalty,
                    }
                )

        return hit

    @staticmethod
    def _merge_spans(
        hit: SimilaritySearchResult,
        adjacent: Sequence[ChunkRecord],
    ) -> Tuple[str, int, int]:
        spans = [(hit.start_offset, hit.end_offset, hit.content)]
        spans.extend((c.start_offset, c.end_offset, c.content) for c in adjacent)
        spans.sort(key=lambda s: s[0])

        parts: List[str] = []
        cursor: Optional[int] = None
        for start, end, content in spans:
            if cursor is None:
                parts.append(content)
            elif start > cursor:
                parts.append(ELISION_MARKER)
                parts.append(content)
            elif end > cursor:
                # Overlapping span: keep only the part past what we have
                parts.append(content[cursor - start:])
            else:
                continue
            cursor = end if cursor is None else max(cursor, end)

        return "".join(parts), spans[0][0], cursor

    @staticmethod
    def _dedupe(results: Sequence[SimilaritySearchResult]) -> List[SimilaritySearchResult]:
        seen = set()
        unique: List[SimilaritySearchResult] = []
        for result in results:
            key = (result.file_path, quick_hash(result.content))
            if key in seen:
                continue
            seen.add(key)
            unique.append(result)
        return unique
