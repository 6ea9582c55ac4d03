"""
Structure-aware text chunker.

Source is split into blocks at blank lines (functions, classes and other
top-level statements are usually separated that way). Neighbouring small
blocks are merged up to the size limit. A block larger than the limit is cut
with a RecursiveCharacterTextSplitter; its fragments share a parent structure
id and carry their order so retrieval can stitch the structure back together.

Every chunk is an exact substring of the file: `content[offset:offset + len(chunk)]`.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from typing import List, Optional, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter

from ..core.cancellation import CancellationToken
from ..models import ChunkingMetadata, ChunkingOptions, ChunkingResult, FileToProcess

logger = logging.getLogger("codeindex.chunker")

_BLANK_LINE = re.compile(r"\n[ \t]*\n")

_STRUCTURE_KEYWORDS = re.compile(
    r"^\s*(?:export\s+)?(?:default\s+)?(?:public\s+|private\s+|protected\s+|static\s+)*"
    r"(?:async\s+)?(def|function|fn|func|class|interface|struct|impl|enum)\b"
)

_FUNCTION_KEYWORDS = {"def", "function", "fn", "func"}

# Separators tried in order when cutting an oversized block
CODE_SEPARATORS = ["\n\n", "\n", ";", " ", ""]


def _structure_type(text: str) -> str:
    match = _STRUCTURE_KEYWORDS.match(text)
    if match is None:
        return "block"
    return "function" if match.group(1) in _FUNCTION_KEYWORDS else "class"


def _blocks(content: str) -> List[Tuple[int, int]]:
    """(start, end) spans of non-blank blocks, whitespace trimmed."""
    spans: List[Tuple[int, int]] = []
    start = 0
    for match in _BLANK_LINE.finditer(content):
        spans.append((start, match.start()))
        start = match.end()
    spans.append((start, len(content)))

    trimmed: List[Tuple[int, int]] = []
    for s, e in spans:
        text = content[s:e]
        stripped = text.strip()
        if not stripped:
            continue
        lead = len(text) - len(text.lstrip())
        trimmed.append((s + lead, s + lead + len(stripped)))
    return trimmed


class TextChunker:
    """Default Chunker implementation."""

    async def chunk(
        self,
        file: FileToProcess,
        options: ChunkingOptions,
        cancel: Optional[CancellationToken] = None,
    ) -> ChunkingResult:
        cancel = cancel or CancellationToken()
        content = file.content
        limit = options.max_chunk_chars

        chunks: List[str] = []
        offsets: List[int] = []
        metadata = ChunkingMetadata()

        def emit(text: str, offset: int, parent: Optional[str], order: Optional[int],
                 oversized: Optional[bool], kind: Optional[str]) -> None:
            chunks.append(text)
            offsets.append(offset)
            metadata.parent_structure_ids.append(parent)
            metadata.structure_orders.append(order)
            metadata.is_oversized_flags.append(oversized)
            metadata.structure_types.append(kind)

        pending: Optional[Tuple[int, int, int]] = None  # start, end, block count

        def flush() -> None:
            nonlocal pending
            if pending is None:
                return
            s, e, count = pending
            text = content[s:e]
            emit(text, s, None, None, False, _structure_type(text) if count == 1 else "block")
            pending = None

        splitter = RecursiveCharacterTextSplitter(
            chunk_size=limit,
            chunk_overlap=min(options.overlap_chars, limit - 1),
            length_function=len,
            separators=CODE_SEPARATORS,
            add_start_index=True,
        )

        for s, e in _blocks(content):
            cancel.raise_if_cancelled()

            if e - s > limit:
                flush()
                block = content[s:e]
                kind = _structure_type(block)
                parent = str(uuid.uuid4())
                documents = splitter.create_documents([block])
                for order, doc in enumerate(documents):
                    emit(
                        doc.page_content,
                        s + doc.metadata["start_index"],
                        parent,
                        order,
                        True,
                        kind,
                    )
                # Let other tasks (and cancellation) in between large blocks
                await asyncio.sleep(0)
            elif pending is not None and e - pending[0] <= limit:
                pending = (pending[0], e, pending[2] + 1)
            else:
                flush()
                pending = (s, e, 1)

        cancel.raise_if_cancelled()
        flush()

        logger.debug("Chunked %s into %d chunks", file.path, len(chunks))
        return ChunkingResult(chunks=chunks, offsets=offsets, metadata=metadata)
