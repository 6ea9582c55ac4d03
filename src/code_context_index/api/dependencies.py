"""
Request dependencies.

Components are built once by the application lifespan and kept on
`app.state`; tests replace these getters through `app.dependency_overrides`.
"""

from fastapi import Request

from ..indexing.service import IndexingService
from ..retrieval.context import ContextRetriever
from ..storage.vector_store import VectorStore


def get_vector_store(request: Request) -> VectorStore:
    return request.app.state.store


def get_indexing_service(request: Request) -> IndexingService:
    return request.app.state.indexing_service


def get_retriever(request: Request) -> ContextRetriever:
    return request.app.state.retriever
