"""
Indexing Pipeline

Runs chunk -> embed for one file and classifies the outcome. It has no
storage side effects; persisting a result is the indexing service's job.

Outcomes
--------
- SUCCEEDED        : at least one chunk embedded (or the file had no chunks)
- CANCELLED        : the token fired during either phase
- CHUNKING_FAILED  : the chunker raised
- EMBEDDING_FAILED : the runner raised, or every chunk failed to embed

Expected outcomes are returned as tagged results. Only using the pipeline
before `initialize()` raises.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from ..core.cancellation import CancellationToken
from ..core.errors import (
    ChunkingError,
    ConfigurationError,
    EmbeddingError,
    OperationCancelledError,
)
from ..embeddings.runner import EmbeddingRunner
from ..models import (
    ChunkingMetadata,
    ChunkingOptions,
    ChunkingResult,
    FileToProcess,
    ProcessingResult,
    ProcessingStatus,
)
from ..chunking.protocols import Chunker

logger = logging.getLogger("codeindex.pipeline")


class IndexingPipeline:
    def __init__(
        self,
        chunker: Chunker,
        runner: EmbeddingRunner,
        chunking_options: Optional[ChunkingOptions] = None,
    ) -> None:
        self.chunker = chunker
        self.runner = runner
        self.chunking_options = chunking_options or ChunkingOptions()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        await self.runner.initialize()
        self._initialized = True

    async def dispose(self) -> None:
        self._initialized = False
        await self.runner.dispose()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_file(
        self,
        file: FileToProcess,
        cancel: Optional[CancellationToken] = None,
    ) -> ProcessingResult:
        if not self._initialized:
            raise ConfigurationError(
                "Indexing pipeline is not initialized; call initialize() first."
            )

        cancel = cancel or CancellationToken()
        token = cancel.link()
        try:
            try:
                chunking = await self._chunk(file, token)
                return await self._embed(file, chunking, token)
            except ChunkingError as exc:
                return self._failure(file, ProcessingStatus.CHUNKING_FAILED, exc)
            except EmbeddingError as exc:
                return self._failure(file, ProcessingStatus.EMBEDDING_FAILED, exc)
        finally:
            token.detach()

    async def _chunk(self, file: FileToProcess, token: CancellationToken) -> ChunkingResult:
        try:
            token.raise_if_cancelled()
            result = await self.chunker.chunk(file, self.chunking_options, token)
        except OperationCancelledError as exc:
            raise ChunkingError(file.path, str(exc), cause=exc, cancelled=True) from exc
        except Exception as exc:
            raise ChunkingError(file.path, str(exc) or type(exc).__name__, cause=exc) from exc

        if token.is_cancelled:
            cancelled = OperationCancelledError()
            raise ChunkingError(file.path, str(cancelled), cause=cancelled, cancelled=True)

        if len(result.chunks) != len(result.offsets):
            raise ChunkingError(
                file.path,
                f"chunker returned {len(result.chunks)} chunks but {len(result.offsets)} offsets",
            )
        return result

    async def _embed(
        self,
        file: FileToProcess,
        chunking: ChunkingResult,
        token: CancellationToken,
    ) -> ProcessingResult:
        metadata = chunking.metadata
        if not metadata.parent_structure_ids and chunking.chunks:
            metadata = ChunkingMetadata.empty_for(len(chunking.chunks))

        if not chunking.chunks:
            logger.debug("No chunks for %s", file.path)
            return ProcessingResult(
                file_id=file.id,
                file_path=file.path,
                success=True,
                status=ProcessingStatus.SUCCEEDED,
                metadata=metadata,
            )

        try:
            outputs = await self.runner.run(chunking.chunks, token)
        except Exception as exc:
            raise EmbeddingError(file.path, str(exc) or type(exc).__name__, cause=exc) from exc

        if token.is_cancelled:
            cancelled = OperationCancelledError()
            raise EmbeddingError(file.path, str(cancelled), cause=cancelled, cancelled=True)

        embeddings: List[List[float]] = []
        chunk_errors: List[Optional[str]] = []
        for output in outputs:
            if output.ok:
                embeddings.append(output.vector)
                chunk_errors.append(None)
            else:
                chunk_errors.append(output.error or "unknown error")

        if not embeddings:
            details = "; ".join(
                f"chunk {i}: {err}" for i, err in enumerate(chunk_errors)
            )
            raise EmbeddingError(file.path, f"all {len(chunk_errors)} chunks failed ({details})")

        failed = len(chunk_errors) - len(embeddings)
        if failed:
            logger.warning(
                "%d of %d chunks failed to embed for %s",
                failed,
                len(chunk_errors),
                file.path,
            )

        return ProcessingResult(
            file_id=file.id,
            file_path=file.path,
            success=True,
            status=ProcessingStatus.SUCCEEDED,
            embeddings=embeddings,
            chunks=list(chunking.chunks),
            chunk_offsets=list(chunking.offsets),
            chunk_errors=chunk_errors,
            metadata=metadata,
        )

    @staticmethod
    def _failure(
        file: FileToProcess,
        status: ProcessingStatus,
        exc: ChunkingError | EmbeddingError,
    ) -> ProcessingResult:
        if exc.cancelled:
            status = ProcessingStatus.CANCELLED
            logger.info("Processing cancelled for %s", file.path)
        else:
            logger.error("%s", exc)

        return ProcessingResult(
            file_id=file.id,
            file_path=file.path,
            success=False,
            status=status,
            error=str(exc),
        )
