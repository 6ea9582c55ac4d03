"""
Error Taxonomy and Global Error Handling

This module defines the exceptions raised across the indexing and retrieval
engine, plus the application-wide exception handlers for the HTTP layer.

Error Classes
-------------
- ConfigurationError      : a component was used before it was set up
- ChunkingError           : chunking failed or was cancelled mid-chunking
- EmbeddingError          : embedding failed, was cancelled, or every chunk failed
- EmbeddingBackendError   : one call to an embedding backend failed
- DimensionMismatchError  : a vector does not match the index dimension
- IndexCapacityError      : the ANN index is full and could not be grown
- AnnPersistenceError     : the ANN index file could not be read or written
- OperationCancelledError : cooperative cancellation was observed

Partial per-chunk failure is NOT an exception; it is reported on the
ProcessingResult.
"""

from __future__ import annotations

import logging
from typing import Dict, Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("codeindex.errors")


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class CodeIndexError(RuntimeError):
    """Base error for the code index."""


class ConfigurationError(CodeIndexError):
    """Raised when a component is used before it has been initialized."""


class OperationCancelledError(CodeIndexError):
    """Raised when a cancellation token is observed as cancelled."""

    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message)


class _FileProcessingError(CodeIndexError):
    phase = "processing"

    def __init__(
        self,
        file_path: str,
        message: str,
        cause: Optional[BaseException] = None,
        cancelled: bool = False,
    ) -> None:
        super().__init__(f"{self.phase.capitalize()} failed for {file_path}: {message}")
        self.file_path = file_path
        self.cause = cause
        self.cancelled = cancelled


class ChunkingError(_FileProcessingError):
    """Chunking failure or cancellation during the chunking phase."""

    phase = "chunking"


class EmbeddingError(_FileProcessingError):
    """Embedding failure, cancellation, or total per-chunk failure."""

    phase = "embedding"


class EmbeddingBackendError(CodeIndexError):
    """Raised by an embedding backend when a call fails or returns bad data."""


class VectorStoreError(CodeIndexError):
    """Base error for vector store failures."""


class DimensionMismatchError(VectorStoreError):
    """Raised when a vector's length differs from the configured dimension."""

    def __init__(self, expected: int, actual: int, chunk_id: Optional[str] = None) -> None:
        where = f" for chunk {chunk_id}" if chunk_id else ""
        super().__init__(
            f"Vector dimension mismatch{where}: expected {expected}, got {actual}."
        )
        self.expected = expected
        self.actual = actual
        self.chunk_id = chunk_id


class IndexCapacityError(VectorStoreError):
    """
    The ANN index is full and could not be resized.

    This error is fatal and must not be retried; the configured capacity
    (CODE_INDEX_ANN_MAX_ELEMENTS / CODE_INDEX_ANN_CAPACITY_CEILING) has to be
    raised before indexing can continue.
    """

    retryable = False

    def __init__(self, capacity: int, ceiling: int) -> None:
        super().__init__(
            f"ANN index is full ({capacity} elements) and cannot grow beyond "
            f"{ceiling}. Increase CODE_INDEX_ANN_CAPACITY_CEILING and rebuild the index."
        )
        self.capacity = capacity
        self.ceiling = ceiling


class AnnPersistenceError(VectorStoreError):
    """Raised when the ANN index cannot be read from or written to disk."""


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

async def index_capacity_exception_handler(
    request: Request,
    exc: IndexCapacityError,
) -> JSONResponse:
    """
    Surface capacity exhaustion as a non-retryable storage error.
    """
    logger.error(
        "ANN capacity exhausted during request %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )

    payload: Dict[str, Any] = {
        "error": "index_capacity_exhausted",
        "detail": str(exc),
        "retryable": False,
    }

    return JSONResponse(status_code=507, content=payload)


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Logs the full stack trace internally and returns a generic 500 error with
    no internal details.
    """
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    payload: Dict[str, Any] = {
        "error": "internal_server_error",
        "detail": "Internal server error",
    }

    return JSONResponse(
        status_code=500,
        content=payload,
    )
