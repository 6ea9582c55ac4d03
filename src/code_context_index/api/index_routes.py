"""
Index Routes

This module exposes endpoints for:
- Indexing a batch of files
- Reading storage statistics
- Wiping the index

File content travels in the request body; the server never reads the
caller's filesystem.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from .models import IndexFilesRequest, IndexingReportResponse, OperationResult
from .dependencies import get_indexing_service, get_vector_store
from ..indexing.service import IndexingService
from ..models import StorageStats
from ..storage.vector_store import VectorStore

router = APIRouter(prefix="/index", tags=["index"])


@router.post(
    "/files",
    response_model=IndexingReportResponse,
    summary="Index or re-index files",
    status_code=status.HTTP_200_OK,
)
async def index_files(
    req: IndexFilesRequest,
    service: Annotated[IndexingService, Depends(get_indexing_service)],
) -> IndexingReportResponse:
    """
    Chunk, embed and store the given files.

    Unchanged files that are already indexed are reported as skipped.
    IndexCapacityError surfaces as HTTP 507 through the app's handler.
    """
    report = await service.index_files(req.files)
    return IndexingReportResponse(
        indexed=report.indexed,
        skipped=report.skipped,
        failed=report.failed,
        cancelled=report.cancelled,
        embeddings_stored=report.embeddings_stored,
    )


@router.get("/stats", response_model=StorageStats, summary="Index statistics")
def index_stats(
    store: Annotated[VectorStore, Depends(get_vector_store)],
) -> StorageStats:
    return store.get_storage_stats()


@router.delete("", response_model=OperationResult, summary="Delete the whole index")
def delete_index(
    store: Annotated[VectorStore, Depends(get_vector_store)],
) -> OperationResult:
    store.delete_all_embeddings_and_chunks()
    return OperationResult(status="deleted")
