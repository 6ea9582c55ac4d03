"""
Embedding Backends

This module implements the two embedding backends the runner can drive:

- HttpEmbedder  : OpenAI-compatible embeddings endpoint over httpx (async)
- LocalEmbedder : sentence-transformers model loaded from the model base path
                  (sync; the runner calls it in a worker thread)

Both expose `embed(texts)` for batches and `embed_one(text)` for the
runner's per-chunk calls. Neither caches; persistence is the vector store's
job.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence
import logging
import threading

import httpx
import numpy as np

from ..config import settings
from ..core.errors import EmbeddingBackendError

logger = logging.getLogger("codeindex.embedder")


class HttpEmbedder:
    """
    Asynchronous embedding generator for batches of text.

    The instance holds no connection state and is safe to reuse across
    concurrent calls.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Parameters
        ----------
        api_key : Optional[str]
            Defaults to settings.embedding_api_key.

        model : Optional[str]
            Defaults to settings.embedding_model.

        base_url : Optional[str]
            Embeddings endpoint. Defaults to settings.embedding_api_url.

        timeout : Optional[float]
            HTTP timeout per request.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom httpx transport (e.g. httpx.MockTransport in tests).
        """
        self.api_key = api_key or settings.embedding_api_key.get_secret_value()
        self.model = model or settings.embedding_model
        self.base_url = base_url or settings.embedding_api_url
        self.timeout = timeout or settings.embedding_timeout
        self.transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts: Sequence[str],
        batch_size: int = 20,
    ) -> List[List[float]]:
        """
        Generate embeddings for a sequence of input texts.

        Parameters
        ----------
        texts : Sequence[str]
            Input strings.

        batch_size : int
            Maximum inputs per request.

        Returns
        -------
        List[List[float]]
            One vector per input, in input order.

        Raises
        ------
        EmbeddingBackendError
            If any batch fails or the response is malformed.
        """
        if not texts:
            return []

        all_embeddings: List[List[float]] = []
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for start in range(0, len(texts), batch_size):
                batch = list(texts[start : start + batch_size])
                payload = {
                    "model": self.model,
                    "input": batch,
                }

                try:
                    response = await client.post(
                        self.base_url,
                        json=payload,
                        headers=headers,
                    )
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    logger.error(
                        "Embedding request failed (%s): batch size=%d, error=%s",
                        type(exc).__name__,
                        len(batch),
                        str(exc),
                    )
                    raise EmbeddingBackendError(
                        f"Embedding generation failed: {type(exc).__name__}"
                    ) from exc

                embeddings = self._extract_embeddings(response.json())
                if len(embeddings) != len(batch):
                    raise EmbeddingBackendError(
                        f"Expected {len(batch)} embeddings, got {len(embeddings)}."
                    )
                all_embeddings.extend(embeddings)

        return all_embeddings

    async def embed_one(self, text: str) -> List[float]:
        vectors = await self.embed([text], batch_size=1)
        return vectors[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_embeddings(data: dict) -> List[List[float]]:
        """
        Parse and validate embedding output format.

        OpenAI-compatible servers return:
            { "data": [ {"index": 0, "embedding": [...]}, ... ] }

        Records are re-ordered by "index" when present.

        Raises
        ------
        EmbeddingBackendError
            If the API returns unexpected structure.
        """
        if "data" not in data:
            raise EmbeddingBackendError("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingBackendError("'data' field must be a list.")

        if all(isinstance(r, dict) and isinstance(r.get("index"), int) for r in records):
            records = sorted(records, key=lambda r: r["index"])

        embeddings: List[List[float]] = []

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingBackendError(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

            emb = record["embedding"]
            if not isinstance(emb, list) or not emb or not all(
                isinstance(x, (float, int)) for x in emb
            ):
                raise EmbeddingBackendError(
                    f"Invalid embedding vector at index {index}: must be float list."
                )

            embeddings.append([float(x) for x in emb])

        return embeddings


class LocalEmbedder:
    """
    sentence-transformers model run in-process.

    The model is loaded lazily (or explicitly via `load`) with the model base
    path as its cache folder. Calls are synchronous and CPU bound.

    Pooling
    -------
    - "mean" : average of the token embeddings
    - "cls"  : first token embedding
    - "none" : the model's own sentence embedding
    """

    def __init__(
        self,
        model: Optional[str] = None,
        model_base_path: Optional[str] = None,
        context_length: Optional[int] = None,
        pooling: Optional[str] = None,
        normalize: Optional[bool] = None,
    ) -> None:
        self.model_name = model or settings.embedding_model
        self.model_base_path = model_base_path or settings.embedding_model_base_path
        self.context_length = context_length or settings.context_length
        self.pooling = pooling or settings.embedding_pooling
        self.normalize = settings.embedding_normalize if normalize is None else normalize

        self._model: Any = None
        self._lock = threading.RLock()

    def load(self) -> None:
        with self._lock:
            if self._model is not None:
                return

            from sentence_transformers import SentenceTransformer

            logger.info(
                "Loading embedding model: %s (cache=%s)",
                self.model_name,
                self.model_base_path,
            )
            model = SentenceTransformer(self.model_name, cache_folder=self.model_base_path)
            model.max_seq_length = self.context_length
            self._model = model
            logger.info("Successfully loaded embedding model: %s", self.model_name)

    def unload(self) -> None:
        with self._lock:
            self._model = None

    def embed_one(self, text: str) -> List[float]:
        self.load()
        try:
            if self.pooling == "none":
                vector = np.asarray(self._model.encode(text, convert_to_numpy=True))
            else:
                tokens = self._model.encode(text, output_value="token_embeddings")
                tokens = np.asarray(tokens.cpu() if hasattr(tokens, "cpu") else tokens)
                vector = tokens[0] if self.pooling == "cls" else tokens.mean(axis=0)
        except Exception as exc:
            raise EmbeddingBackendError(
                f"Local embedding failed: {type(exc).__name__}: {exc}"
            ) from exc

        vector = vector.astype("float32")
        if self.normalize:
            norm = float(np.linalg.norm(vector))
            if norm > 0:
                vector = vector / norm
        return vector.tolist()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [self.embed_one(t) for t in texts]
