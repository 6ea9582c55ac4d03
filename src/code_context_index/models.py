"""
Domain Data Models

This module defines the canonical pydantic models exchanged between the
chunker, the embedding runner, the indexing pipeline, the vector store and the
retrieval layer.

Vectors are carried as plain float lists at these boundaries; numpy arrays stay
inside the ANN index wrapper.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict


# ---------------------------------------------------------------------
# Pipeline Input / Output
# ---------------------------------------------------------------------

class FileToProcess(BaseModel):
    """A file handed to the indexing pipeline."""

    id: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    content: str
    priority: Optional[int] = Field(
        default=None,
        description="Higher numbers are processed first.",
    )


class ChunkingOptions(BaseModel):
    """Options forwarded to the chunker."""

    max_chunk_chars: int = Field(default=2000, gt=0)
    overlap_chars: int = Field(default=0, ge=0)


class ChunkingMetadata(BaseModel):
    """
    Structure metadata, one entry per chunk.

    parent_structure_ids links fragments of one oversized structure that was
    split across several chunks; structure_orders gives their order.
    """

    parent_structure_ids: List[Optional[str]] = Field(default_factory=list)
    structure_orders: List[Optional[int]] = Field(default_factory=list)
    is_oversized_flags: List[Optional[bool]] = Field(default_factory=list)
    structure_types: List[Optional[str]] = Field(default_factory=list)

    @classmethod
    def empty_for(cls, count: int) -> "ChunkingMetadata":
        return cls(
            parent_structure_ids=[None] * count,
            structure_orders=[None] * count,
            is_oversized_flags=[None] * count,
            structure_types=[None] * count,
        )


class ChunkingResult(BaseModel):
    """Output of the chunker collaborator."""

    chunks: List[str] = Field(default_factory=list)
    offsets: List[int] = Field(default_factory=list)
    metadata: ChunkingMetadata = Field(default_factory=ChunkingMetadata)


class EmbeddingOutput(BaseModel):
    """One embedding runner output: a vector or an error, never both."""

    index: int = Field(..., ge=0)
    vector: Optional[List[float]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.vector is not None and self.error is None


class ProcessingStatus(str, Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    CHUNKING_FAILED = "chunking_failed"
    EMBEDDING_FAILED = "embedding_failed"


class ProcessingResult(BaseModel):
    """
    Result of processing one file.

    `embeddings` holds only successfully embedded vectors, so it can be
    shorter than `chunk_offsets`. `chunk_errors` is parallel to
    `chunk_offsets` (None where the chunk embedded) and is the safe way to
    pair vectors with chunks.
    """

    file_id: str
    file_path: str
    success: bool
    status: ProcessingStatus
    embeddings: List[List[float]] = Field(default_factory=list)
    chunks: List[str] = Field(default_factory=list)
    chunk_offsets: List[int] = Field(default_factory=list)
    chunk_errors: List[Optional[str]] = Field(default_factory=list)
    metadata: ChunkingMetadata = Field(default_factory=ChunkingMetadata)
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.status is ProcessingStatus.CANCELLED

    def embedded_chunk_indices(self) -> List[int]:
        """
        Indices into `chunks` / `chunk_offsets` that have a vector, in order.

        Without `chunk_errors`, a vector for every chunk means each chunk
        embedded. Any other shape is ambiguous and raises ValueError.
        """
        if not self.chunk_errors and len(self.embeddings) == len(self.chunk_offsets):
            return list(range(len(self.chunk_offsets)))
        if len(self.chunk_errors) != len(self.chunk_offsets):
            raise ValueError(
                f"{self.file_path}: {len(self.chunk_errors)} chunk errors for "
                f"{len(self.chunk_offsets)} chunks"
            )

        indices = [i for i, err in enumerate(self.chunk_errors) if err is None]
        if len(indices) != len(self.embeddings):
            raise ValueError(
                f"{self.file_path}: {len(self.embeddings)} embeddings for "
                f"{len(indices)} embedded chunks"
            )
        return indices


# ---------------------------------------------------------------------
# Storage Records
# ---------------------------------------------------------------------

class FileRecord(BaseModel):
    id: str
    path: str
    hash: str
    last_modified: float
    language: Optional[str] = None
    is_indexed: bool = False
    size: int = 0

    model_config = ConfigDict(from_attributes=True)


class ChunkRecord(BaseModel):
    id: str
    file_id: str
    content: str
    start_offset: int
    end_offset: int
    token_count: Optional[int] = None
    parent_structure_id: Optional[str] = None
    structure_order: Optional[int] = None
    is_oversized: Optional[bool] = None
    structure_type: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EmbeddingInput(BaseModel):
    """One item of a store_embeddings batch."""

    chunk_id: str = Field(..., min_length=1)
    vector: List[float]


class EmbeddingRecord(BaseModel):
    """
    Embedding metadata plus the vector resolved from the ANN index.

    `vector` is empty when the ANN point is unavailable.
    """

    id: str
    chunk_id: str
    label: int = Field(..., ge=0)
    vector: List[float] = Field(default_factory=list)
    created_at: datetime


# ---------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------

class SimilaritySearchOptions(BaseModel):
    limit: int = Field(default=5, gt=0)
    min_score: float = Field(default=0.65, ge=0.0, le=1.0)
    file_filter: Optional[List[str]] = None
    language_filter: Optional[List[str]] = None


class SimilaritySearchResult(BaseModel):
    chunk_id: str
    file_id: str
    file_path: str
    content: str
    start_offset: int
    end_offset: int
    score: float = Field(..., ge=0.0, le=1.0)


class StorageStats(BaseModel):
    file_count: int = 0
    chunk_count: int = 0
    embedding_count: int = 0
    ann_element_count: int = 0
    ann_capacity: int = 0
    ann_dimension: Optional[int] = None
    database_size_bytes: int = 0
    last_indexed: Optional[datetime] = None
    embedding_model: str = "unknown"
