"""
Vector Store

This module pairs the relational index (files, chunks, embedding rows,
metadata) with the FAISS ANN index holding the vectors.

ANN State
---------
- Uninitialized : no dimension configured, no index in memory
- Ready(dim)    : an AnnIndex of that dimension is live

`set_dimension` drives the transitions. Moving to a different dimension is a
hard reset: the old index is torn down without being saved.

Concurrency
-----------
Every ANN mutation (check capacity, maybe resize, insert, persist) runs under
one re-entrant lock. Relational multi-row writes run in a single transaction.

Orphaned Points
---------------
Re-indexing or deleting a file removes its embedding rows but not its ANN
points. Search widens its candidate window past them, and `compact` rebuilds
the index without them once they pass a configured share or before the
index would have to grow.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import List, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, select, text, update

from ..config import settings
from ..core.errors import (
    AnnPersistenceError,
    ConfigurationError,
    DimensionMismatchError,
    IndexCapacityError,
)
from ..models import (
    ChunkingMetadata,
    ChunkRecord,
    EmbeddingInput,
    EmbeddingRecord,
    FileRecord,
    SimilaritySearchOptions,
    SimilaritySearchResult,
    StorageStats,
)
from ..utils import content_hash, estimate_tokens, language_for_path
from .ann_index import AnnIndex
from .models import ChunkRow, EmbeddingRow, FileRow, MetadataRow
from .session import create_session_factory, create_sqlite_engine, session_scope

logger = logging.getLogger("codeindex.store")

META_EMBEDDING_MODEL = "embedding_model"
META_LAST_INDEXED = "last_indexed"
META_ANN_DIMENSION = "ann_dimension"
META_ANN_CAPACITY = "ann_capacity"


class AnnState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class VectorStore:
    """
    Durable store for chunk metadata and their embeddings.

    Parameters
    ----------
    database_path:
        SQLite file path, or ":memory:". Defaults to settings.database_path.
    index_path:
        ANN index file. Defaults to `ann_index_filename` next to the database.
    max_elements / capacity_ceiling:
        Initial ANN capacity and the bound for automatic growth.
    compact_orphan_ratio:
        Share of ANN points without an embedding row above which the index
        is rebuilt before the next insert. 1.0 or more disables it; a full
        index holding orphans is always compacted before it grows.
    """

    def __init__(
        self,
        database_path: Optional[str] = None,
        index_path: Optional[str | Path] = None,
        max_elements: Optional[int] = None,
        capacity_ceiling: Optional[int] = None,
        hnsw_m: Optional[int] = None,
        ef_construction: Optional[int] = None,
        ef_search: Optional[int] = None,
        oversample_factor: Optional[int] = None,
        compact_orphan_ratio: Optional[float] = None,
    ) -> None:
        self.database_path = database_path or settings.database_path

        if index_path is None:
            base = Path(".") if self.database_path == ":memory:" else Path(self.database_path).parent
            index_path = base / settings.ann_index_filename
        self.index_path = Path(index_path)

        self._max_elements = max_elements or settings.ann_max_elements
        self._capacity_ceiling = max(
            capacity_ceiling or settings.ann_capacity_ceiling,
            self._max_elements,
        )
        self._hnsw_m = hnsw_m or settings.ann_hnsw_m
        self._ef_construction = ef_construction or settings.ann_ef_construction
        self._ef_search = ef_search or settings.ann_ef_search
        self._oversample = oversample_factor or settings.search_oversample_factor
        self._compact_ratio = (
            settings.ann_compact_orphan_ratio
            if compact_orphan_ratio is None
            else compact_orphan_ratio
        )

        self._lock = RLock()
        self._ann: Optional[AnnIndex] = None

        self._engine = create_sqlite_engine(self.database_path)
        self._sessions = create_session_factory(self._engine)

    # ------------------------------------------------------------------
    # ANN state
    # ------------------------------------------------------------------

    @property
    def state(self) -> AnnState:
        return AnnState.READY if self._ann is not None else AnnState.UNINITIALIZED

    @property
    def dimension(self) -> Optional[int]:
        ann = self._ann
        return ann.dimension if ann is not None else None

    @property
    def ann_index(self) -> Optional[AnnIndex]:
        return self._ann

    def _new_index(self, dimension: int) -> AnnIndex:
        return AnnIndex(
            dimension,
            self._max_elements,
            m=self._hnsw_m,
            ef_construction=self._ef_construction,
            ef_search=self._ef_search,
        )

    def _teardown_index(self) -> None:
        if self._ann is not None:
            logger.debug("Tearing down ANN index (dimension=%d)", self._ann.dimension)
        self._ann = None

    def set_dimension(self, dimension: Optional[int]) -> None:
        """
        Configure the embedding dimension, loading the on-disk index if any.

        Passing None returns the store to the uninitialized state and
        deletes the index file. A load failure or a dimension mismatch on
        disk never raises: the index starts empty and the embedding rows
        that pointed into the old one are purged so their files get
        re-indexed.
        """
        with self._lock:
            if dimension is None:
                self._teardown_index()
                if self.index_path.exists():
                    self.index_path.unlink()
                self._delete_metadata(META_ANN_DIMENSION)
                return

            if dimension <= 0:
                raise ValueError("Embedding dimension must be positive.")

            if self._ann is not None and self._ann.dimension == dimension:
                return

            if self._ann is not None:
                logger.warning(
                    "Embedding dimension changed %d -> %d; discarding the ANN index",
                    self._ann.dimension,
                    dimension,
                )
                self._teardown_index()

            ann = self._new_index(dimension)
            if self.index_path.exists():
                try:
                    ann.load(self.index_path)
                    stored_capacity = self._get_int_metadata(META_ANN_CAPACITY)
                    if stored_capacity and stored_capacity > ann.max_elements:
                        ann.resize(min(stored_capacity, self._capacity_ceiling))
                    logger.info(
                        "Loaded ANN index from %s (%d elements, dimension=%d)",
                        self.index_path,
                        ann.count,
                        dimension,
                    )
                except AnnPersistenceError as exc:
                    logger.warning(
                        "Discarding ANN index at %s: %s. Stored embeddings are "
                        "lost and affected files will be re-indexed.",
                        self.index_path,
                        exc,
                    )
                    ann = self._new_index(dimension)

            self._reconcile_labels(ann.count)
            self._ann = ann
            self._set_metadata(META_ANN_DIMENSION, str(dimension))

    def restore_dimension(self) -> Optional[int]:
        """Re-enter Ready with the dimension recorded by a previous run, if any."""
        dimension = self._get_int_metadata(META_ANN_DIMENSION)
        if dimension:
            self.set_dimension(dimension)
        return dimension

    def _reconcile_labels(self, count: int) -> None:
        """Drop embedding rows whose label is not in an index of `count` points."""
        with session_scope(self._sessions) as session:
            file_ids = session.scalars(
                select(ChunkRow.file_id)
                .join(EmbeddingRow, EmbeddingRow.chunk_id == ChunkRow.id)
                .where(EmbeddingRow.label >= count)
                .distinct()
            ).all()
            if not file_ids:
                return

            removed = session.execute(
                delete(EmbeddingRow).where(EmbeddingRow.label >= count)
            ).rowcount
            session.execute(
                update(FileRow)
                .where(FileRow.id.in_(file_ids))
                .values(is_indexed=False)
            )
        logger.warning(
            "Purged %d embedding rows without ANN points; %d files marked for re-indexing",
            removed,
            len(file_ids),
        )

    def _grow(self, ann: AnnIndex) -> None:
        new_capacity = min(ann.max_elements * 2, self._capacity_ceiling)
        if new_capacity <= ann.max_elements:
            logger.error(
                "ANN index full at %d elements (ceiling %d)",
                ann.max_elements,
                self._capacity_ceiling,
            )
            raise IndexCapacityError(ann.max_elements, self._capacity_ceiling)
        ann.resize(new_capacity)
        self._set_metadata(META_ANN_CAPACITY, str(new_capacity))

    def _persist_index(self) -> None:
        if self._ann is not None:
            self._ann.save(self.index_path)

    def compact(self) -> int:
        """
        Rebuild the ANN index from the points that still have an embedding row.

        Re-indexed and deleted files leave their old points behind. Compaction
        drops them and renumbers the surviving labels densely; the label
        updates and the index file write happen in one transaction.

        Returns
        -------
        int
            Number of orphaned points removed.
        """
        with self._lock:
            ann = self._ann
            if ann is None:
                return 0

            with session_scope(self._sessions) as session:
                rows = session.execute(
                    select(EmbeddingRow.id, EmbeddingRow.label).order_by(EmbeddingRow.label)
                ).all()
                dropped = ann.count - len(rows)
                if dropped <= 0:
                    return 0

                rebuilt = ann.compacted([label for _, label in rows])
                # New labels never exceed old ones, so ascending updates keep
                # the unique constraint satisfied row by row
                for new_label, (row_id, old_label) in enumerate(rows):
                    if new_label != old_label:
                        session.execute(
                            update(EmbeddingRow)
                            .where(EmbeddingRow.id == row_id)
                            .values(label=new_label)
                        )
                rebuilt.save(self.index_path)

            self._ann = rebuilt

        logger.info(
            "Compacted ANN index: dropped %d orphaned points, %d remain",
            dropped,
            rebuilt.count,
        )
        return dropped

    def _compact_if_needed(self, ann: AnnIndex, incoming: int) -> None:
        if ann.count == 0:
            return
        with session_scope(self._sessions) as session:
            live = session.scalar(select(func.count()).select_from(EmbeddingRow)) or 0
        orphans = ann.count - live
        if orphans <= 0:
            return
        if ann.count + incoming > ann.max_elements or orphans / ann.count > self._compact_ratio:
            self.compact()

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def store_embeddings(self, batch: Sequence[EmbeddingInput]) -> int:
        """
        Insert vectors into the ANN index and record their labels.

        Every vector is checked against the dimension before anything is
        inserted. Returns the number of stored embeddings.
        """
        if not batch:
            return 0

        with self._lock:
            ann = self._ann
            if ann is None:
                raise ConfigurationError(
                    "No embedding dimension configured; call set_dimension() first."
                )

            for item in batch:
                if len(item.vector) != ann.dimension:
                    raise DimensionMismatchError(ann.dimension, len(item.vector), item.chunk_id)

            self._compact_if_needed(ann, len(batch))
            ann = self._ann

            rows: List[EmbeddingRow] = []
            try:
                for item in batch:
                    if ann.is_full:
                        self._grow(ann)
                    label, norm = ann.add_point(item.vector)
                    rows.append(
                        EmbeddingRow(
                            id=str(uuid.uuid4()),
                            chunk_id=item.chunk_id,
                            label=label,
                            norm=norm,
                        )
                    )

                # Points added above stay in the index if this fails; their
                # labels resolve to no row and search skips them.
                with session_scope(self._sessions) as session:
                    session.add_all(rows)
            finally:
                if rows:
                    self._persist_index()

        logger.debug("Stored %d embeddings", len(rows))
        return len(rows)

    def find_similar_code(
        self,
        query_vector: Sequence[float],
        options: Optional[SimilaritySearchOptions] = None,
    ) -> List[SimilaritySearchResult]:
        if options is None:
            options = SimilaritySearchOptions(
                limit=settings.default_search_limit,
                min_score=settings.default_min_score,
            )

        # Labels are resolved under the lock so a compaction cannot renumber
        # them between the ANN search and the row lookup
        with self._lock:
            ann = self._ann
            if ann is None or ann.count == 0:
                return []
            if len(query_vector) != ann.dimension:
                raise DimensionMismatchError(ann.dimension, len(query_vector))

            # Orphaned points can fill the oversampled window, so widen it
            # until enough live rows resolve or no better candidates remain
            k = min(options.limit * self._oversample, ann.count)
            while True:
                neighbours = ann.search(query_vector, k)

                scores = {}
                for label, distance in neighbours:
                    score = min(1.0, max(0.0, 1.0 - distance))
                    if score >= options.min_score:
                        scores[label] = score

                results = self._resolve_hits(scores, options) if scores else []
                exhausted = (
                    k >= ann.count
                    or len(neighbours) < k
                    or len(scores) < len(neighbours)
                )
                if len(results) >= options.limit or exhausted:
                    break
                k = min(k * 2, ann.count)

        results.sort(key=lambda r: r.score, reverse=True)
        return results[: options.limit]

    def _resolve_hits(
        self,
        scores: dict,
        options: SimilaritySearchOptions,
    ) -> List[SimilaritySearchResult]:
        with session_scope(self._sessions) as session:
            stmt = (
                select(EmbeddingRow.label, ChunkRow, FileRow.path)
                .join(ChunkRow, EmbeddingRow.chunk_id == ChunkRow.id)
                .join(FileRow, ChunkRow.file_id == FileRow.id)
                .where(EmbeddingRow.label.in_(list(scores)))
            )
            if options.file_filter:
                stmt = stmt.where(FileRow.path.in_(options.file_filter))
            if options.language_filter:
                stmt = stmt.where(FileRow.language.in_(options.language_filter))
            rows = session.execute(stmt).all()

        return [
            SimilaritySearchResult(
                chunk_id=chunk.id,
                file_id=chunk.file_id,
                file_path=path,
                content=chunk.content,
                start_offset=chunk.start_offset,
                end_offset=chunk.end_offset,
                score=scores[label],
            )
            for label, chunk, path in rows
        ]

    def get_embedding(self, chunk_id: str) -> Optional[EmbeddingRecord]:
        with session_scope(self._sessions) as session:
            row = session.scalars(
                select(EmbeddingRow).where(EmbeddingRow.chunk_id == chunk_id)
            ).first()
            if row is None:
                return None
            record = EmbeddingRecord(
                id=row.id,
                chunk_id=row.chunk_id,
                label=row.label,
                created_at=row.created_at,
            )
            norm = row.norm

        with self._lock:
            ann = self._ann
            if ann is None:
                return record
            try:
                unit = ann.get_point(record.label)
            except KeyError:
                logger.debug("ANN point %d for chunk %s is unavailable", record.label, chunk_id)
                return record

        record.vector = (np.asarray(unit, dtype="float64") * norm).tolist()
        return record

    def delete_all_embeddings_and_chunks(self) -> None:
        """Wipe every file, chunk, embedding and metadata row and empty the index."""
        with self._lock:
            with session_scope(self._sessions) as session:
                session.execute(delete(EmbeddingRow))
                session.execute(delete(ChunkRow))
                session.execute(delete(FileRow))
                session.execute(delete(MetadataRow))

            if self._ann is not None:
                self._ann.clear()
                self._persist_index()
                self._set_metadata(META_ANN_DIMENSION, str(self._ann.dimension))
            elif self.index_path.exists():
                self.index_path.unlink()

        logger.info("Deleted all embeddings and chunks")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def store_file(
        self,
        path: str,
        content: str,
        last_modified: Optional[float] = None,
    ) -> FileRecord:
        """
        Upsert a file row.

        An unchanged file (same content hash) is returned as is. A changed
        file has its chunks (and through them its embedding rows) removed
        and is marked as not indexed.
        """
        digest = content_hash(content)

        if last_modified is None:
            try:
                last_modified = os.path.getmtime(path)
            except OSError:
                last_modified = time.time()

        with session_scope(self._sessions) as session:
            row = session.scalars(select(FileRow).where(FileRow.path == path)).first()
            if row is not None and row.hash == digest:
                return FileRecord.model_validate(row)

            if row is None:
                row = FileRow(id=str(uuid.uuid4()), path=path)
                session.add(row)
            else:
                session.execute(delete(ChunkRow).where(ChunkRow.file_id == row.id))

            row.hash = digest
            row.last_modified = last_modified
            row.language = language_for_path(path)
            row.is_indexed = False
            row.size = len(content.encode("utf-8"))
            session.flush()
            return FileRecord.model_validate(row)

    def mark_file_indexed(self, file_id: str, indexed: bool = True) -> None:
        with session_scope(self._sessions) as session:
            session.execute(
                update(FileRow).where(FileRow.id == file_id).values(is_indexed=indexed)
            )

    def get_file_by_path(self, path: str) -> Optional[FileRecord]:
        with session_scope(self._sessions) as session:
            row = session.scalars(select(FileRow).where(FileRow.path == path)).first()
            return FileRecord.model_validate(row) if row is not None else None

    def get_files_to_index(self) -> List[FileRecord]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(FileRow).where(FileRow.is_indexed.is_(False)).order_by(FileRow.path)
            ).all()
            return [FileRecord.model_validate(r) for r in rows]

    def needs_reindexing(self, path: str, content: str) -> bool:
        record = self.get_file_by_path(path)
        if record is None:
            return True
        return record.hash != content_hash(content) or not record.is_indexed

    def delete_file(self, path: str) -> bool:
        with session_scope(self._sessions) as session:
            removed = session.execute(delete(FileRow).where(FileRow.path == path)).rowcount
        return bool(removed)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def store_chunks(
        self,
        file_id: str,
        chunks: Sequence[str],
        offsets: Sequence[int],
        metadata: Optional[ChunkingMetadata] = None,
    ) -> List[ChunkRecord]:
        """
        Insert the chunks of one file in a single transaction.

        `offsets` are start offsets; each end offset is start + len(chunk).
        """
        if len(chunks) != len(offsets):
            raise ValueError(
                f"Got {len(chunks)} chunks but {len(offsets)} offsets."
            )
        if metadata is None:
            metadata = ChunkingMetadata.empty_for(len(chunks))

        def at(values: list, i: int):
            return values[i] if i < len(values) else None

        rows = [
            ChunkRow(
                id=str(uuid.uuid4()),
                file_id=file_id,
                content=content,
                start_offset=start,
                end_offset=start + len(content),
                token_count=estimate_tokens(content),
                parent_structure_id=at(metadata.parent_structure_ids, i),
                structure_order=at(metadata.structure_orders, i),
                is_oversized=at(metadata.is_oversized_flags, i),
                structure_type=at(metadata.structure_types, i),
            )
            for i, (content, start) in enumerate(zip(chunks, offsets))
        ]

        with session_scope(self._sessions) as session:
            session.add_all(rows)
            session.flush()
            return [ChunkRecord.model_validate(r) for r in rows]

    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        with session_scope(self._sessions) as session:
            row = session.get(ChunkRow, chunk_id)
            return ChunkRecord.model_validate(row) if row is not None else None

    def get_file_chunks(self, file_id: str) -> List[ChunkRecord]:
        with session_scope(self._sessions) as session:
            rows = session.scalars(
                select(ChunkRow)
                .where(ChunkRow.file_id == file_id)
                .order_by(ChunkRow.start_offset)
            ).all()
            return [ChunkRecord.model_validate(r) for r in rows]

    def get_adjacent_chunks(self, chunk_id: str, window: int = 2) -> List[ChunkRecord]:
        """
        Up to `window` chunks before and after the given chunk in the same
        file, ordered by offset. The chunk itself is not included.
        """
        with session_scope(self._sessions) as session:
            chunk = session.get(ChunkRow, chunk_id)
            if chunk is None or window <= 0:
                return []

            before = session.scalars(
                select(ChunkRow)
                .where(
                    ChunkRow.file_id == chunk.file_id,
                    ChunkRow.id != chunk.id,
                    ChunkRow.start_offset < chunk.start_offset,
                )
                .order_by(ChunkRow.start_offset.desc())
                .limit(window)
            ).all()
            after = session.scalars(
                select(ChunkRow)
                .where(
                    ChunkRow.file_id == chunk.file_id,
                    ChunkRow.id != chunk.id,
                    ChunkRow.start_offset > chunk.start_offset,
                )
                .order_by(ChunkRow.start_offset)
                .limit(window)
            ).all()

            rows = sorted([*before, *after], key=lambda r: r.start_offset)
            return [ChunkRecord.model_validate(r) for r in rows]

    def get_structure_chunks(self, chunk_id: str) -> List[ChunkRecord]:
        """
        All fragments of the structure the chunk belongs to, in
        structure order. Empty when the chunk is not a fragment.
        """
        with session_scope(self._sessions) as session:
            chunk = session.get(ChunkRow, chunk_id)
            if chunk is None or chunk.parent_structure_id is None:
                return []

            rows = session.scalars(
                select(ChunkRow)
                .where(
                    ChunkRow.file_id == chunk.file_id,
                    ChunkRow.parent_structure_id == chunk.parent_structure_id,
                )
                .order_by(ChunkRow.structure_order, ChunkRow.start_offset)
            ).all()
            return [ChunkRecord.model_validate(r) for r in rows]

    def delete_chunks_for_file(self, file_id: str) -> int:
        with session_scope(self._sessions) as session:
            return session.execute(
                delete(ChunkRow).where(ChunkRow.file_id == file_id)
            ).rowcount

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def get_metadata(self, key: str) -> Optional[str]:
        with session_scope(self._sessions) as session:
            row = session.get(MetadataRow, key)
            return row.value if row is not None else None

    def _set_metadata(self, key: str, value: str) -> None:
        with session_scope(self._sessions) as session:
            session.merge(MetadataRow(key=key, value=value))

    def _delete_metadata(self, key: str) -> None:
        with session_scope(self._sessions) as session:
            session.execute(delete(MetadataRow).where(MetadataRow.key == key))

    def _get_int_metadata(self, key: str) -> Optional[int]:
        value = self.get_metadata(key)
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    def set_embedding_model(self, model_name: str) -> None:
        self._set_metadata(META_EMBEDDING_MODEL, model_name)

    def get_embedding_model(self) -> Optional[str]:
        return self.get_metadata(META_EMBEDDING_MODEL)

    def update_last_indexing_timestamp(self) -> None:
        self._set_metadata(META_LAST_INDEXED, datetime.now(timezone.utc).isoformat())

    # ------------------------------------------------------------------
    # Stats / maintenance
    # ------------------------------------------------------------------

    def get_storage_stats(self) -> StorageStats:
        with session_scope(self._sessions) as session:
            file_count = session.scalar(select(func.count()).select_from(FileRow)) or 0
            chunk_count = session.scalar(select(func.count()).select_from(ChunkRow)) or 0
            embedding_count = session.scalar(select(func.count()).select_from(EmbeddingRow)) or 0

        last_indexed = self.get_metadata(META_LAST_INDEXED)

        database_size = 0
        if self.database_path != ":memory:" and os.path.exists(self.database_path):
            database_size = os.path.getsize(self.database_path)

        with self._lock:
            ann = self._ann
            ann_count = ann.count if ann is not None else 0
            ann_capacity = ann.max_elements if ann is not None else 0
            ann_dimension = ann.dimension if ann is not None else None

        return StorageStats(
            file_count=file_count,
            chunk_count=chunk_count,
            embedding_count=embedding_count,
            ann_element_count=ann_count,
            ann_capacity=ann_capacity,
            ann_dimension=ann_dimension,
            database_size_bytes=database_size,
            last_indexed=datetime.fromisoformat(last_indexed) if last_indexed else None,
            embedding_model=self.get_embedding_model() or "unknown",
        )

    def optimize(self) -> None:
        """Compact the ANN index, then run ANALYZE and VACUUM on the database."""
        self.compact()
        with self._engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.execute(text("ANALYZE"))
            conn.execute(text("VACUUM"))
        logger.info("Database optimized")

    def dispose(self) -> None:
        """Persist the ANN index and release the database engine."""
        with self._lock:
            try:
                self._persist_index()
            finally:
                self._engine.dispose()
        logger.info("Vector store closed")

