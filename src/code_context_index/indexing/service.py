"""
Indexing Service

Feeds files through the pipeline and persists the results.

- Files are processed in priority order (highest first), at most
  `max_concurrent_files` at a time
- Files whose content is unchanged and already indexed are skipped
- Successful results are written to the vector store; failures and
  cancellations are collected in the returned IndexingReport

IndexCapacityError is fatal: remaining work is cancelled and the error is
re-raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..config import settings
from ..core.cancellation import CancellationToken
from ..core.errors import IndexCapacityError
from ..models import EmbeddingInput, FileToProcess, ProcessingResult
from ..storage.vector_store import VectorStore
from .pipeline import IndexingPipeline

logger = logging.getLogger("codeindex.service")

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class IndexingReport:
    """Outcome of one index_files call, by file path."""
    indexed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    cancelled: List[str] = field(default_factory=list)
    embeddings_stored: int = 0

    @property
    def total(self) -> int:
        return len(self.indexed) + len(self.skipped) + len(self.failed) + len(self.cancelled)


class IndexingService:
    def __init__(
        self,
        store: VectorStore,
        pipeline: IndexingPipeline,
        max_concurrent_files: Optional[int] = None,
        embedding_model: Optional[str] = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.embedding_model = embedding_model or settings.embedding_model
        self.max_concurrent_files = max(1, max_concurrent_files or settings.max_concurrent_files)

    def ensure_embedding_model(self, model_name: Optional[str] = None) -> bool:
        """
        Record the embedding model, wiping the index if it changed.

        Vectors from different models are not comparable, so everything is
        rebuilt. The name also becomes the model recorded after each
        indexing run. Returns True when a wipe happened.
        """
        model_name = model_name or self.embedding_model
        self.embedding_model = model_name
        current = self.store.get_embedding_model()
        if current == model_name:
            return False

        wiped = False
        if current is not None:
            logger.warning(
                "Embedding model changed %s -> %s; clearing the index",
                current,
                model_name,
            )
            self.store.delete_all_embeddings_and_chunks()
            wiped = True

        self.store.set_embedding_model(model_name)
        return wiped

    def store_result(self, file: FileToProcess, result: ProcessingResult) -> int:
        """
        Persist a successful ProcessingResult. Returns the number of stored
        embeddings.

        Raises ValueError, before anything is written, when the vectors
        cannot be paired with chunks.
        """
        indices = result.embedded_chunk_indices() if result.embeddings else []

        record = self.store.store_file(file.path, file.content)
        # An unchanged file can still carry chunks from a run whose vectors were lost
        self.store.delete_chunks_for_file(record.id)

        chunks = self.store.store_chunks(
            record.id,
            result.chunks,
            result.chunk_offsets,
            result.metadata,
        )

        stored = 0
        if result.embeddings:
            self.store.set_dimension(len(result.embeddings[0]))
            batch = [
                EmbeddingInput(chunk_id=chunks[i].id, vector=vector)
                for i, vector in zip(indices, result.embeddings)
            ]
            stored = self.store.store_embeddings(batch)

        self.store.mark_file_indexed(record.id)
        logger.debug(
            "Stored %s: %d chunks, %d embeddings",
            file.path,
            len(chunks),
            stored,
        )
        return stored

    async def index_files(
        self,
        files: Sequence[FileToProcess],
        cancel: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> IndexingReport:
        report = IndexingReport()
        if not files:
            return report

        token = (cancel or CancellationToken()).link()
        ordered = sorted(files, key=lambda f: f.priority or 0, reverse=True)
        semaphore = asyncio.Semaphore(self.max_concurrent_files)
        total = len(ordered)
        completed = 0

        async def handle(file: FileToProcess) -> None:
            nonlocal completed
            async with semaphore:
                await self._index_one(file, token, report)
                completed += 1
                if progress is not None:
                    progress(completed, total, file.path)

        logger.info("Indexing %d files", total)
        tasks = [asyncio.ensure_future(handle(f)) for f in ordered]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            token.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            token.detach()

        if report.indexed:
            self.store.update_last_indexing_timestamp()
            # A reset drops the metadata, so the model is recorded again with the vectors
            self.store.set_embedding_model(self.embedding_model)

        logger.info(
            "Indexing finished: %d indexed, %d skipped, %d failed, %d cancelled",
            len(report.indexed),
            len(report.skipped),
            len(report.failed),
            len(report.cancelled),
        )
        return report

    async def _index_one(
        self,
        file: FileToProcess,
        token: CancellationToken,
        report: IndexingReport,
    ) -> None:
        if token.is_cancelled:
            report.cancelled.append(file.path)
            return

        if not self.store.needs_reindexing(file.path, file.content):
            report.skipped.append(file.path)
            return

        result = await self.pipeline.process_file(file, token)

        if result.cancelled:
            report.cancelled.append(file.path)
            return
        if not result.success:
            report.failed[file.path] = result.error or "unknown error"
            return

        try:
            report.embeddings_stored += self.store_result(file, result)
        except IndexCapacityError:
            raise
        except Exception as exc:
            logger.exception("Failed to store results for %s", file.path)
            report.failed[file.path] = f"{type(exc).__name__}: {exc}"
            return

        report.indexed.append(file.path)
