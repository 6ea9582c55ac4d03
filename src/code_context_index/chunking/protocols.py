"""
Chunker interface consumed by the indexing pipeline.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from ..core.cancellation import CancellationToken
from ..models import ChunkingOptions, ChunkingResult, FileToProcess


@runtime_checkable
class Chunker(Protocol):
    async def chunk(
        self,
        file: FileToProcess,
        options: ChunkingOptions,
        cancel: Optional[CancellationToken] = None,
    ) -> ChunkingResult:
        """
        Split a file into chunks.

        `offsets[i]` is the start of `chunks[i]` in `file.content`; metadata
        lists are parallel to `chunks`. Implementations check `cancel` and
        raise OperationCancelledError when it fires.
        """
        ...
