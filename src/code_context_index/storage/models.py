"""
SQLAlchemy Models

Defines the relational schema of the index:
- Files indexed from the workspace
- Chunks cut from those files
- Embedding rows mapping a chunk to its ANN label
- Metadata key/value pairs

The embedding vectors themselves are not stored here; they live in the ANN
index and are addressed by `EmbeddingRow.label`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# ---------------------------------------------------------------------
# File Model
# ---------------------------------------------------------------------

class FileRow(Base):
    """
    A source file known to the index.

    `hash` decides whether a file needs to be re-chunked.
    """
    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    path: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    last_modified: Mapped[float] = mapped_column(Float, nullable=False)
    language: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_indexed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    chunks: Mapped[List["ChunkRow"]] = relationship(
        "ChunkRow",
        back_populates="file",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_files_indexed", "is_indexed"),
    )


# ---------------------------------------------------------------------
# Chunk Model
# ---------------------------------------------------------------------

class ChunkRow(Base):
    """
    A contiguous span of a file.

    Fragments of one oversized structure share `parent_structure_id` and are
    ordered by `structure_order`.
    """
    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    end_offset: Mapped[int] = mapped_column(Integer, nullable=False)
    token_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    parent_structure_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    structure_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_oversized: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    structure_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    file: Mapped["FileRow"] = relationship("FileRow", back_populates="chunks")
    embedding: Mapped[Optional["EmbeddingRow"]] = relationship(
        "EmbeddingRow",
        back_populates="chunk",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )

    __table_args__ = (
        Index("idx_chunks_file_id", "file_id", "start_offset"),
        Index("idx_chunks_parent_structure", "parent_structure_id"),
    )


# ---------------------------------------------------------------------
# Embedding Model
# ---------------------------------------------------------------------

class EmbeddingRow(Base):
    """
    Maps a chunk to its integer label in the ANN index.

    `norm` is the L2 norm of the vector before it was normalized for cosine
    search, so the original vector can be reconstructed.
    """
    __tablename__ = "embeddings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    chunk_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("chunks.id", ondelete="CASCADE"),
        nullable=False,
    )
    label: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    norm: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
    )

    chunk: Mapped["ChunkRow"] = relationship("ChunkRow", back_populates="embedding")

    __table_args__ = (
        Index("idx_embeddings_chunk_id", "chunk_id"),
    )


# ---------------------------------------------------------------------
# Metadata Model
# ---------------------------------------------------------------------

class MetadataRow(Base):
    """Key/value metadata (embedding model, last indexed time, ANN state)."""
    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
