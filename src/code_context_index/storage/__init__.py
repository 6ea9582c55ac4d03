"""
Storage Package

Provides the SQLite session management, the relational models and the
vector store pairing them with the FAISS ANN index.
"""

from .session import create_sqlite_engine, create_session_factory, session_scope
from .models import Base, FileRow, ChunkRow, EmbeddingRow, MetadataRow
from .ann_index import AnnIndex
from .vector_store import VectorStore, AnnState

__all__ = [
    "create_sqlite_engine",
    "create_session_factory",
    "session_scope",
    "Base",
    "FileRow",
    "ChunkRow",
    "EmbeddingRow",
    "MetadataRow",
    "AnnIndex",
    "VectorStore",
    "AnnState",
]
