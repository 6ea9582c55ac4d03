"""
Bounded Concurrency Embedding Runner

Turns chunk texts into vectors with at most N embedding calls in flight.

Semantics
---------
- One output per input, in input order, holding a vector or an error string
- A failing item never aborts the batch
- Cancellation stops new calls immediately and cancels in-flight ones; the
  affected items report "Operation was cancelled"
- Before `initialize()` every item reports "Service not initialized"

The embedding callable may be async or sync; sync callables run in a worker
thread so the event loop keeps scheduling the other items.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from ..config import settings
from ..core.cancellation import CancellationToken
from ..models import EmbeddingOutput
from .embedder import HttpEmbedder, LocalEmbedder
from .resources import calculate_optimal_worker_count

logger = logging.getLogger("codeindex.runner")

EmbedFn = Callable[[str], Union[Awaitable[List[float]], List[float]]]

CANCELLED_MESSAGE = "Operation was cancelled"
NOT_INITIALIZED_MESSAGE = "Service not initialized"


class EmbeddingRunner:
    """
    Parameters
    ----------
    embed_fn : Optional[EmbedFn]
        Callable embedding one text. When omitted, a backend is built from
        settings.embedding_backend on `initialize()`.

    max_concurrency : Optional[int]
        Cap on in-flight calls. Defaults to
        settings.max_concurrent_embedding_tasks, or a value derived from the
        host's CPU and memory.
    """

    def __init__(
        self,
        embed_fn: Optional[EmbedFn] = None,
        max_concurrency: Optional[int] = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1.")

        self._embed_fn = embed_fn
        self._max_concurrency = max_concurrency or settings.max_concurrent_embedding_tasks
        self._local: Optional[LocalEmbedder] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def max_concurrency(self) -> Optional[int]:
        return self._max_concurrency

    async def initialize(self) -> None:
        if self._initialized:
            return

        if self._embed_fn is None:
            self._embed_fn = self._build_backend()

        if self._max_concurrency is None:
            self._max_concurrency = calculate_optimal_worker_count(
                high_memory_model=settings.high_memory_model,
                max_workers=settings.max_embedding_workers,
            )

        if self._local is not None:
            await asyncio.to_thread(self._local.load)

        self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._initialized = True
        logger.info("Embedding runner ready (max_concurrency=%d)", self._max_concurrency)

    def _build_backend(self) -> EmbedFn:
        if settings.embedding_backend == "local":
            self._local = LocalEmbedder()
            return self._local.embed_one
        return HttpEmbedder().embed_one

    async def dispose(self) -> None:
        self._initialized = False
        self._semaphore = None
        if self._local is not None:
            self._local.unload()
        logger.info("Embedding runner disposed")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _call(self, text: str) -> Any:
        fn = self._embed_fn
        if inspect.iscoroutinefunction(fn):
            return await fn(text)

        result = await asyncio.to_thread(fn, text)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _as_vector(raw: Any) -> List[float]:
        if hasattr(raw, "tolist"):
            raw = raw.tolist()
        if not isinstance(raw, (list, tuple)) or not raw:
            raise ValueError("Embedding backend returned an empty or non-list vector")
        return [float(x) for x in raw]

    async def run(
        self,
        texts: Sequence[str],
        cancel: Optional[CancellationToken] = None,
    ) -> List[EmbeddingOutput]:
        """
        Embed every text, returning outputs aligned with `texts`.
        """
        if not texts:
            return []

        if not self._initialized or self._semaphore is None:
            return [
                EmbeddingOutput(index=i, error=NOT_INITIALIZED_MESSAGE)
                for i in range(len(texts))
            ]

        cancel = cancel or CancellationToken()
        semaphore = self._semaphore

        async def embed_item(index: int, text: str) -> EmbeddingOutput:
            async with semaphore:
                if cancel.is_cancelled:
                    return EmbeddingOutput(index=index, error=CANCELLED_MESSAGE)
                try:
                    vector = self._as_vector(await self._call(text))
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(
                        "Embedding failed for item %d (%s): %s",
                        index,
                        type(exc).__name__,
                        exc,
                    )
                    return EmbeddingOutput(index=index, error=str(exc) or type(exc).__name__)
                return EmbeddingOutput(index=index, vector=vector)

        tasks = [asyncio.ensure_future(embed_item(i, t)) for i, t in enumerate(texts)]
        waiter = asyncio.ensure_future(cancel.wait())
        pending = set(tasks)

        try:
            while pending:
                done, _ = await asyncio.wait(
                    pending | {waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pending -= done
                if waiter in done:
                    logger.info(
                        "Embedding cancelled with %d of %d items outstanding",
                        len(pending),
                        len(tasks),
                    )
                    break
        finally:
            waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        outputs: List[EmbeddingOutput] = []
        for index, task in enumerate(tasks):
            if task.cancelled():
                outputs.append(EmbeddingOutput(index=index, error=CANCELLED_MESSAGE))
            else:
                outputs.append(task.result())
        return outputs

    async def embed_query(
        self,
        text: str,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[List[float]]:
        """Embed a single query string; None when the call failed."""
        outputs = await self.run([text], cancel)
        if not outputs or not outputs[0].ok:
            error = outputs[0].error if outputs else "no output"
            logger.warning("Query embedding failed: %s", error)
            return None
        return outputs[0].vector
