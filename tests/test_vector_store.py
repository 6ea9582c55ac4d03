"""
Vector Store Tests

Covers the ANN state machine, embedding storage and search, persistence and
recovery of the index file, and the file/chunk bookkeeping.
"""

import random

import pytest

from code_context_index.core.errors import (
    ConfigurationError,
    DimensionMismatchError,
    IndexCapacityError,
)
from code_context_index.models import (
    ChunkingMetadata,
    EmbeddingInput,
    SimilaritySearchOptions,
)
from code_context_index.storage.vector_store import AnnState, VectorStore

from conftest import add_file_with_chunks


def _random_vector(rng, dimension=8):
    return [rng.uniform(-1.0, 1.0) for _ in range(dimension)]


class TestAnnState:
    def test_starts_uninitialized(self, store):
        assert store.state is AnnState.UNINITIALIZED
        assert store.dimension is None
        assert store.find_similar_code([0.1] * 8) == []

    def test_set_dimension_twice_keeps_instance(self, store):
        store.set_dimension(8)
        first = store.ann_index
        store.set_dimension(8)
        assert store.ann_index is first
        assert store.ann_index.max_elements == 64

    def test_dimension_change_is_hard_reset(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["x = 1"])
        store.set_dimension(3)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.0, 0.0])])

        store.set_dimension(4)
        assert store.dimension == 4
        assert store.ann_index.count == 0
        assert store.get_embedding(chunks[0].id) is None
        assert store.get_file_by_path("a.py").is_indexed is False

    def test_clear_dimension_deletes_index_file(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["x = 1"])
        store.set_dimension(3)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 2.0, 3.0])])
        assert store.index_path.exists()

        store.set_dimension(None)
        assert store.state is AnnState.UNINITIALIZED
        assert not store.index_path.exists()


class TestStoreEmbeddings:
    def test_requires_dimension(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["x = 1"])
        with pytest.raises(ConfigurationError):
            store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.0])])

    def test_rejects_wrong_dimension_before_inserting(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["a", "b"])
        store.set_dimension(3)
        batch = [
            EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.0, 0.0]),
            EmbeddingInput(chunk_id=chunks[1].id, vector=[1.0, 0.0]),
        ]
        with pytest.raises(DimensionMismatchError) as excinfo:
            store.store_embeddings(batch)

        assert excinfo.value.expected == 3
        assert excinfo.value.actual == 2
        assert store.ann_index.count == 0
        assert store.get_embedding(chunks[0].id) is None

    def test_round_trip_returns_original_vector(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["x = 1"])
        vector = [0.5, -2.0, 3.25, 0.0]
        store.set_dimension(4)
        assert store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=vector)]) == 1

        record = store.get_embedding(chunks[0].id)
        assert record is not None
        assert record.label == 0
        assert record.vector == pytest.approx(vector, rel=1e-5, abs=1e-5)

    def test_get_embedding_unknown_chunk(self, store):
        assert store.get_embedding("missing") is None

    def test_labels_are_sequential(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["a", "b", "c"])
        store.set_dimension(2)
        store.store_embeddings(
            [EmbeddingInput(chunk_id=c.id, vector=[1.0, float(i)]) for i, c in enumerate(chunks)]
        )
        assert [store.get_embedding(c.id).label for c in chunks] == [0, 1, 2]

    def test_grows_until_ceiling_then_fails(self, tmp_path):
        store = VectorStore(
            database_path=str(tmp_path / "db.sqlite"),
            max_elements=2,
            capacity_ceiling=4,
        )
        try:
            _, chunks = add_file_with_chunks(store, "a.py", ["a", "b", "c", "d", "e"])
            store.set_dimension(2)
            store.store_embeddings(
                [EmbeddingInput(chunk_id=c.id, vector=[1.0, float(i)]) for i, c in enumerate(chunks[:4])]
            )
            assert store.ann_index.max_elements == 4
            assert store.ann_index.count == 4

            with pytest.raises(IndexCapacityError) as excinfo:
                store.store_embeddings([EmbeddingInput(chunk_id=chunks[4].id, vector=[0.0, 1.0])])
            assert excinfo.value.retryable is False
            assert store.get_embedding(chunks[4].id) is None
        finally:
            store.dispose()


class TestFindSimilarCode:
    def test_results_respect_limit_score_and_order(self, store):
        rng = random.Random(7)
        _, chunks = add_file_with_chunks(store, "a.py", [f"chunk {i}\n" for i in range(30)])
        store.set_dimension(8)
        store.store_embeddings(
            [EmbeddingInput(chunk_id=c.id, vector=_random_vector(rng)) for c in chunks]
        )

        for _ in range(5):
            query = _random_vector(rng)
            for limit, min_score in [(1, 0.0), (5, 0.2), (10, 0.5), (3, 0.9)]:
                results = store.find_similar_code(
                    query, SimilaritySearchOptions(limit=limit, min_score=min_score)
                )
                assert len(results) <= limit
                assert all(r.score >= min_score for r in results)
                scores = [r.score for r in results]
                assert scores == sorted(scores, reverse=True)

    def test_exact_match_scores_one(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["alpha", "beta"])
        store.set_dimension(3)
        store.store_embeddings([
            EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.0, 0.0]),
            EmbeddingInput(chunk_id=chunks[1].id, vector=[0.0, 1.0, 0.0]),
        ])

        results = store.find_similar_code(
            [2.0, 0.0, 0.0], SimilaritySearchOptions(limit=5, min_score=0.5)
        )
        assert [r.chunk_id for r in results] == [chunks[0].id]
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[0].file_path == "a.py"
        assert results[0].content == "alpha"

    def test_file_and_language_filters(self, store):
        _, py_chunks = add_file_with_chunks(store, "a.py", ["def a(): pass"])
        _, js_chunks = add_file_with_chunks(store, "b.js", ["function b() {}"])
        store.set_dimension(2)
        store.store_embeddings([
            EmbeddingInput(chunk_id=py_chunks[0].id, vector=[1.0, 0.1]),
            EmbeddingInput(chunk_id=js_chunks[0].id, vector=[1.0, 0.2]),
        ])

        by_language = store.find_similar_code(
            [1.0, 0.1], SimilaritySearchOptions(min_score=0.0, language_filter=["javascript"])
        )
        assert [r.file_path for r in by_language] == ["b.js"]

        by_file = store.find_similar_code(
            [1.0, 0.1], SimilaritySearchOptions(min_score=0.0, file_filter=["a.py"])
        )
        assert [r.file_path for r in by_file] == ["a.py"]

    def test_query_dimension_mismatch(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["a"])
        store.set_dimension(3)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.0, 0.0])])
        with pytest.raises(DimensionMismatchError):
            store.find_similar_code([1.0, 0.0])


class TestDeleteAll:
    def test_search_empty_after_delete(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", ["a", "b"])
        store.set_dimension(2)
        store.store_embeddings(
            [EmbeddingInput(chunk_id=c.id, vector=[1.0, float(i)]) for i, c in enumerate(chunks)]
        )

        store.delete_all_embeddings_and_chunks()

        assert store.state is AnnState.READY
        assert store.ann_index.count == 0
        assert store.find_similar_code([1.0, 0.0], SimilaritySearchOptions(min_score=0.0)) == []
        stats = store.get_storage_stats()
        assert stats.file_count == 0
        assert stats.chunk_count == 0
        assert stats.embedding_count == 0
        assert stats.ann_dimension == 2

    def test_delete_without_dimension_removes_index_file(self, store):
        store.index_path.parent.mkdir(parents=True, exist_ok=True)
        store.index_path.write_bytes(b"stale")
        store.delete_all_embeddings_and_chunks()
        assert not store.index_path.exists()


class TestPersistence:
    def test_reopen_restores_index(self, tmp_path):
        db_path = str(tmp_path / "db.sqlite")
        store = VectorStore(database_path=db_path, max_elements=16)
        _, chunks = add_file_with_chunks(store, "a.py", ["alpha"])
        store.set_dimension(3)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[0.0, 0.0, 1.0])])
        store.dispose()

        reopened = VectorStore(database_path=db_path, max_elements=16)
        try:
            assert reopened.restore_dimension() == 3
            results = reopened.find_similar_code(
                [0.0, 0.0, 1.0], SimilaritySearchOptions(min_score=0.5)
            )
            assert [r.chunk_id for r in results] == [chunks[0].id]
        finally:
            reopened.dispose()

    def test_corrupt_index_file_is_discarded(self, tmp_path):
        db_path = str(tmp_path / "db.sqlite")
        store = VectorStore(database_path=db_path, max_elements=16)
        record, chunks = add_file_with_chunks(store, "a.py", ["alpha"])
        store.set_dimension(3)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[0.0, 0.0, 1.0])])
        store.mark_file_indexed(record.id)
        store.dispose()

        (tmp_path / "embeddings.ann.idx").write_bytes(b"not a faiss index")

        reopened = VectorStore(database_path=db_path, max_elements=16)
        try:
            reopened.set_dimension(3)
            assert reopened.ann_index.count == 0
            assert reopened.get_embedding(chunks[0].id) is None
            assert reopened.get_file_by_path("a.py").is_indexed is False
            assert [f.path for f in reopened.get_files_to_index()] == ["a.py"]
        finally:
            reopened.dispose()

    def test_dimension_mismatch_on_disk_is_discarded(self, tmp_path):
        db_path = str(tmp_path / "db.sqlite")
        store = VectorStore(database_path=db_path, max_elements=16)
        _, chunks = add_file_with_chunks(store, "a.py", ["alpha"])
        store.set_dimension(3)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[0.0, 0.0, 1.0])])
        store.dispose()

        reopened = VectorStore(database_path=db_path, max_elements=16)
        try:
            reopened.set_dimension(5)
            assert reopened.dimension == 5
            assert reopened.ann_index.count == 0
            assert reopened.get_embedding(chunks[0].id) is None
        finally:
            reopened.dispose()


class TestFilesAndChunks:
    def test_language_detection(self, store):
        assert store.store_file("src/app.tsx", "x").language == "typescript"
        assert store.store_file("tool.PY", "x").language == "python"
        assert store.store_file("notes.xyz", "x").language == "unknown"

    def test_unchanged_file_is_returned_as_is(self, store):
        first = store.store_file("a.py", "x = 1", last_modified=1.0)
        store.mark_file_indexed(first.id)
        again = store.store_file("a.py", "x = 1", last_modified=2.0)
        assert again.id == first.id
        assert again.is_indexed is True
        assert store.needs_reindexing("a.py", "x = 1") is False

    def test_changed_file_drops_chunks_and_embeddings(self, store):
        record, chunks = add_file_with_chunks(store, "a.py", ["a", "b"])
        store.set_dimension(2)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.0])])
        store.mark_file_indexed(record.id)

        assert store.needs_reindexing("a.py", "changed") is True
        updated = store.store_file("a.py", "changed", last_modified=1.0)

        assert updated.id == record.id
        assert updated.is_indexed is False
        assert store.get_file_chunks(record.id) == []
        assert store.get_embedding(chunks[0].id) is None

    def test_delete_file_cascades(self, store):
        record, chunks = add_file_with_chunks(store, "a.py", ["a", "b"])
        assert store.delete_file("a.py") is True
        assert store.delete_file("a.py") is False
        assert store.get_file_by_path("a.py") is None
        assert store.get_chunk(chunks[0].id) is None

    def test_delete_chunks_for_file_drops_embeddings(self, store):
        record, chunks = add_file_with_chunks(store, "a.py", ["a", "b"])
        store.set_dimension(2)
        store.store_embeddings([EmbeddingInput(chunk_id=chunks[1].id, vector=[0.0, 1.0])])

        assert store.delete_chunks_for_file(record.id) == 2
        assert store.get_file_chunks(record.id) == []
        assert store.get_embedding(chunks[1].id) is None
        assert store.get_file_by_path("a.py") is not None

    def test_store_chunks_rejects_misaligned_offsets(self, store):
        record = store.store_file("a.py", "abc", last_modified=0.0)
        with pytest.raises(ValueError):
            store.store_chunks(record.id, ["a", "b"], [0])

    def test_adjacent_chunks_window(self, store):
        _, chunks = add_file_with_chunks(store, "a.py", [f"c{i}" for i in range(7)])
        middle = chunks[3]

        adjacent = store.get_adjacent_chunks(middle.id, window=2)
        assert [c.content for c in adjacent] == ["c1", "c2", "c4", "c5"]

        edge = store.get_adjacent_chunks(chunks[0].id, window=2)
        assert [c.content for c in edge] == ["c1", "c2"]

    def test_structure_chunks_in_order(self, store):
        metadata = ChunkingMetadata(
            parent_structure_ids=[None, "s1", "s1", "s1"],
            structure_orders=[None, 2, 0, 1],
            is_oversized_flags=[False, True, True, True],
            structure_types=["block", "function", "function", "function"],
        )
        _, chunks = add_file_with_chunks(store, "a.py", ["head", "C", "A", "B"], metadata)

        fragments = store.get_structure_chunks(chunks[1].id)
        assert [c.content for c in fragments] == ["A", "B", "C"]
        assert store.get_structure_chunks(chunks[0].id) == []

    def test_metadata_and_stats(self, store):
        assert store.get_embedding_model() is None
        store.set_embedding_model("model-a")
        store.update_last_indexing_timestamp()
        add_file_with_chunks(store, "a.py", ["a", "b"])

        stats = store.get_storage_stats()
        assert stats.embedding_model == "model-a"
        assert stats.last_indexed is not None
        assert stats.file_count == 1
        assert stats.chunk_count == 2

    def test_optimize_runs(self, store):
        add_file_with_chunks(store, "a.py", ["a"])
        store.optimize()
        assert store.get_file_by_path("a.py") is not None


class TestOrphanedPoints:
    def test_search_reaches_past_orphaned_points(self, tmp_path):
        store = VectorStore(
            database_path=str(tmp_path / "db.sqlite"),
            max_elements=64,
            capacity_ceiling=1024,
            compact_orphan_ratio=1.0,
        )
        try:
            store.set_dimension(2)
            for i in range(20):
                _, chunks = add_file_with_chunks(store, "a.py", [f"version {i}"])
                store.store_embeddings(
                    [EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, 0.001 * i])]
                )
            _, other = add_file_with_chunks(store, "b.py", ["other"])
            store.store_embeddings([EmbeddingInput(chunk_id=other[0].id, vector=[1.0, 0.11])])
            assert store.ann_index.count == 21

            results = store.find_similar_code(
                [1.0, 0.0], SimilaritySearchOptions(limit=2, min_score=0.5)
            )

            assert [r.file_path for r in results] == ["a.py", "b.py"]
            assert results[0].chunk_id == chunks[0].id
        finally:
            store.dispose()

    def test_full_index_compacts_before_growing(self, tmp_path):
        store = VectorStore(
            database_path=str(tmp_path / "db.sqlite"),
            max_elements=4,
            capacity_ceiling=4,
            compact_orphan_ratio=1.0,
        )
        try:
            store.set_dimension(2)
            _, a_chunks = add_file_with_chunks(store, "a.py", ["first 0\n", "second 0\n"])
            store.store_embeddings(
                [EmbeddingInput(chunk_id=c.id, vector=[1.0, 0.1 * j]) for j, c in enumerate(a_chunks)]
            )
            _, b_chunks = add_file_with_chunks(store, "b.py", ["other"])
            store.store_embeddings([EmbeddingInput(chunk_id=b_chunks[0].id, vector=[0.0, 3.0])])
            assert store.get_embedding(b_chunks[0].id).label == 2

            for i in range(1, 6):
                _, a_chunks = add_file_with_chunks(store, "a.py", [f"first {i}\n", f"second {i}\n"])
                store.store_embeddings(
                    [EmbeddingInput(chunk_id=c.id, vector=[1.0, 0.1 * j]) for j, c in enumerate(a_chunks)]
                )

            assert store.ann_index.max_elements == 4
            assert store.ann_index.count == 3

            b = store.get_embedding(b_chunks[0].id)
            assert b.label == 0
            assert b.vector == pytest.approx([0.0, 3.0], abs=1e-5)
            assert sorted(store.get_embedding(c.id).label for c in a_chunks) == [1, 2]

            results = store.find_similar_code(
                [0.0, 1.0], SimilaritySearchOptions(limit=1, min_score=0.0)
            )
            assert results[0].chunk_id == b_chunks[0].id
        finally:
            store.dispose()

    def test_orphan_share_triggers_compaction(self, store):
        store.set_dimension(2)
        for i in range(5):
            _, chunks = add_file_with_chunks(store, "a.py", [f"version {i}"])
            store.store_embeddings([EmbeddingInput(chunk_id=chunks[0].id, vector=[1.0, float(i)])])
            assert store.ann_index.count == 1
        assert store.get_embedding(chunks[0].id).label == 0

    def test_compacted_index_survives_reopen(self, tmp_path):
        db = str(tmp_path / "db.sqlite")
        store = VectorStore(database_path=db, max_elements=8, compact_orphan_ratio=1.0)
        _, a_chunks = add_file_with_chunks(store, "a.py", ["alpha"])
        _, b_chunks = add_file_with_chunks(store, "b.py", ["beta"])
        store.set_dimension(2)
        store.store_embeddings([
            EmbeddingInput(chunk_id=a_chunks[0].id, vector=[1.0, 0.0]),
            EmbeddingInput(chunk_id=b_chunks[0].id, vector=[0.0, 2.0]),
        ])
        store.delete_file("a.py")

        assert store.compact() == 1
        assert store.compact() == 0
        store.dispose()

        reopened = VectorStore(database_path=db, max_elements=8)
        try:
            assert reopened.restore_dimension() == 2
            assert reopened.ann_index.count == 1
            record = reopened.get_embedding(b_chunks[0].id)
            assert record.label == 0
            assert record.vector == pytest.approx([0.0, 2.0], abs=1e-5)
        finally:
            reopened.dispose()

    def test_optimize_compacts(self, store):
        _, a_chunks = add_file_with_chunks(store, "a.py", ["alpha"])
        _, b_chunks = add_file_with_chunks(store, "b.py", ["beta"])
        store.set_dimension(2)
        store.store_embeddings([
            EmbeddingInput(chunk_id=a_chunks[0].id, vector=[1.0, 0.0]),
            EmbeddingInput(chunk_id=b_chunks[0].id, vector=[0.0, 1.0]),
        ])
        store.delete_file("a.py")

        store.optimize()

        assert store.ann_index.count == 1
        assert store.get_embedding(b_chunks[0].id).label == 0
