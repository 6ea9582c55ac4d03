"""
API Models

Request/response models for the HTTP layer. Domain models (FileToProcess,
SimilaritySearchResult, StorageStats) are reused directly where they already
are the wire contract.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import FileToProcess


# ---------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------

class OperationResult(BaseModel):
    """
    Standardized mutation operation result.
    """
    status: Literal["updated", "deleted", "created", "ok"]
    count: Optional[int] = Field(default=None, ge=0)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------

class IndexFilesRequest(BaseModel):
    files: List[FileToProcess] = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class IndexingReportResponse(BaseModel):
    indexed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    cancelled: List[str] = Field(default_factory=list)
    embeddings_stored: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------

class SearchRequest(BaseModel):
    """
    Text query for relevant code context.
    """
    query: str = Field(..., min_length=1)
    limit: int = Field(default=5, ge=1, le=100)
    min_score: float = Field(default=0.65, ge=0.0, le=1.0)
    file_filter: Optional[List[str]] = None
    language_filter: Optional[List[str]] = None

    model_config = ConfigDict(extra="forbid")
