"""
Retrieval & Context Reconstruction Tests

The vector store is mocked so each reconstruction path can be driven
directly.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from code_context_index.embeddings.runner import EmbeddingRunner
from code_context_index.models import ChunkRecord, SimilaritySearchOptions, SimilaritySearchResult
from code_context_index.retrieval.context import ELISION_MARKER, ContextRetriever
from code_context_index.storage.vector_store import VectorStore
from code_context_index.utils import quick_hash


def _hit(chunk_id="c1", content="hit", start=10, score=0.8, path="a.py"):
    return SimilaritySearchResult(
        chunk_id=chunk_id,
        file_id="f1",
        file_path=path,
        content=content,
        start_offset=start,
        end_offset=start + len(content),
        score=score,
    )


def _chunk(chunk_id, content, start, parent=None, order=None):
    return ChunkRecord(
        id=chunk_id,
        file_id="f1",
        content=content,
        start_offset=start,
        end_offset=start + len(content),
        parent_structure_id=parent,
        structure_order=order,
    )


@pytest.fixture
def store():
    mock = MagicMock(spec=VectorStore)
    mock.get_structure_chunks.return_value = []
    mock.get_adjacent_chunks.return_value = []
    return mock


@pytest.fixture
def retriever(store):
    return ContextRetriever(store, structure_boost=1.05, adjacent_penalty=0.95, adjacent_window=2)


def test_split_structure_is_reassembled(store, retriever):
    store.get_structure_chunks.return_value = [
        _chunk("c0", "def f():", 0, parent="s", order=0),
        _chunk("c1", "    x = 1", 9, parent="s", order=1),
        _chunk("c2", "    return x", 19, parent="s", order=2),
    ]

    [result] = retriever.enhance_results([_hit(content="    x = 1", start=9, score=0.8)])

    assert result.content == "def f():\n    x = 1\n    return x"
    assert result.start_offset == 0
    assert result.end_offset == 31
    assert result.score == pytest.approx(0.84)
    assert result.chunk_id == "c1"
    store.get_adjacent_chunks.assert_not_called()


def test_structure_boost_is_capped_at_one(store, retriever):
    store.get_structure_chunks.return_value = [
        _chunk("c0", "a", 0, parent="s", order=0),
        _chunk("c1", "b", 2, parent="s", order=1),
    ]
    [result] = retriever.enhance_results([_hit(content="b", start=2, score=0.99)])
    assert result.score == 1.0


def test_adjacent_chunks_merge_with_elision(store, retriever):
    store.get_adjacent_chunks.return_value = [
        _chunk("c0", "before", 0),   # [0, 6), gap before the hit
        _chunk("c2", "after", 13),   # contiguous with the hit
    ]

    [result] = retriever.enhance_results([_hit(content="hit", start=10, score=0.8)])

    assert result.content == "before" + ELISION_MARKER + "hitafter"
    assert result.start_offset == 0
    assert result.end_offset == 18
    assert result.score == pytest.approx(0.76)
    store.get_adjacent_chunks.assert_called_once_with("c1", 2)


def test_overlapping_adjacent_chunk_is_not_repeated(store, retriever):
    store.get_adjacent_chunks.return_value = [_chunk("c2", "t-more", 12)]
    [result] = retriever.enhance_results([_hit(content="hit", start=10)])
    assert result.content == "hit-more"
    assert result.end_offset == 18


def test_hit_without_context_is_unchanged(store, retriever):
    hit = _hit()
    assert retriever.enhance_results([hit]) == [hit]


def test_enhancement_failure_falls_back_to_hit(store, retriever):
    store.get_structure_chunks.side_effect = RuntimeError("db gone")
    hit = _hit()
    assert retriever.enhance_results([hit]) == [hit]


def test_duplicates_removed_and_sorted(store, retriever):
    hits = [
        _hit(chunk_id="c1", content="same", score=0.7),
        _hit(chunk_id="c2", content="same", score=0.9),
        _hit(chunk_id="c3", content="other", score=0.95),
        _hit(chunk_id="c4", content="same", score=0.9, path="b.py"),
    ]

    results = retriever.enhance_results(hits)

    assert [r.chunk_id for r in results] == ["c3", "c4", "c1"]


@pytest.mark.asyncio
async def test_find_relevant_context_embeds_and_searches(store, retriever):
    runner = MagicMock(spec=EmbeddingRunner)
    runner.embed_query = AsyncMock(return_value=[0.1, 0.2])
    retriever.runner = runner
    store.find_similar_code.return_value = [_hit()]
    options = SimilaritySearchOptions(limit=3, min_score=0.1)

    results = await retriever.find_relevant_context("where is x", options)

    assert [r.chunk_id for r in results] == ["c1"]
    store.find_similar_code.assert_called_once_with([0.1, 0.2], options)


@pytest.mark.asyncio
async def test_failed_query_embedding_returns_empty(store, retriever):
    runner = MagicMock(spec=EmbeddingRunner)
    runner.embed_query = AsyncMock(return_value=None)
    retriever.runner = runner

    assert await retriever.find_relevant_context("query") == []
    store.find_similar_code.assert_not_called()


def test_quick_hash_matches_classic_string_hash():
    assert quick_hash("") == 0
    assert quick_hash("a") == 97
    assert quick_hash("ab") == 3105
    assert quick_hash("hello") == 99162322
    # Wraps to a signed 32-bit value
    assert quick_hash("polygenelubricants") == -2147483648
