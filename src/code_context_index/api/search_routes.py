"""
Search Routes

Semantic search over the indexed code. The query text is embedded, matched
against the ANN index, and every hit is widened into reconstructed context
(whole split structures or neighbouring chunks).
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from .models import SearchRequest
from .dependencies import get_retriever
from ..models import SimilaritySearchOptions, SimilaritySearchResult
from ..retrieval.context import ContextRetriever

router = APIRouter(prefix="/search", tags=["search"])


@router.post(
    "",
    response_model=List[SimilaritySearchResult],
    summary="Find relevant code context",
    status_code=status.HTTP_200_OK,
)
async def search(
    req: SearchRequest,
    retriever: Annotated[ContextRetriever, Depends(get_retriever)],
) -> List[SimilaritySearchResult]:
    """
    Parameters
    ----------
    req : SearchRequest
        Contains:
        - query: free text or a code snippet / diff
        - limit, min_score: result count and score floor
        - file_filter, language_filter: optional restrictions

    Returns
    -------
    List[SimilaritySearchResult]
        Ranked list, highest score first. Empty when the query could not be
        embedded or nothing scored above `min_score`.
    """
    options = SimilaritySearchOptions(
        limit=req.limit,
        min_score=req.min_score,
        file_filter=req.file_filter,
        language_filter=req.language_filter,
    )
    return await retriever.find_relevant_context(req.query, options)
