"""Async facade over the blocking embedder and reranker.

Inference is CPU/GPU bound and releases the GIL inside onnxruntime, so
the async wrappers simply move each call onto a worker thread. A shared
capacity limiter bounds how many calls run at once.

Usage:
    async with AsyncEmbedder(create_embedder()) as embedder:
        vectors = await embedder.embed(["hello", "namaste"])
"""

from __future__ import annotations

import functools
from typing import List, Optional, Sequence

import anyio
import numpy as np

from embedding_gemma.models.schema import RerankResult
from embedding_gemma.registry import Embedder, Reranker

DEFAULT_CONCURRENCY = 4


class _ThreadOffload:
    _limiter: Optional[anyio.CapacityLimiter]

    def _get_limiter(self) -> anyio.CapacityLimiter:
        # Created inside the event loop on first use
        if self._limiter is None:
            self._limiter = anyio.CapacityLimiter(DEFAULT_CONCURRENCY)
        return self._limiter


class AsyncEmbedder(_ThreadOffload):
    """Awaitable wrapper around an ``Embedder``.

    Args:
        embedder: The blocking embedder. Closed with this wrapper.
        limiter: Limits concurrent worker threads; defaults to a private
            limiter of ``DEFAULT_CONCURRENCY``.
    """

    def __init__(
        self, embedder: Embedder, limiter: Optional[anyio.CapacityLimiter] = None
    ) -> None:
        self._embedder = embedder
        self._limiter = limiter

    @property
    def embedder(self) -> Embedder:
        return self._embedder

    def dimension(self) -> int:
        return self._embedder.dimension()

    async def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        return await anyio.to_thread.run_sync(
            self._embedder.embed, list(texts), limiter=self._get_limiter()
        )

    async def embed_one(self, text: str) -> np.ndarray:
        return await anyio.to_thread.run_sync(
            self._embedder.embed_one, text, limiter=self._get_limiter()
        )

    async def aclose(self) -> None:
        await anyio.to_thread.run_sync(self._embedder.close)

    async def __aenter__(self) -> "AsyncEmbedder":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class AsyncReranker(_ThreadOffload):
    """Awaitable wrapper around a ``Reranker``."""

    def __init__(
        self, reranker: Reranker, limiter: Optional[anyio.CapacityLimiter] = None
    ) -> None:
        self._reranker = reranker
        self._limiter = limiter

    @property
    def reranker(self) -> Reranker:
        return self._reranker

    async def rerank(
        self,
        query: str,
        documents: Sequence[str],
        top_k: Optional[int] = None,
    ) -> List[RerankResult]:
        call = functools.partial(
            self._reranker.rerank, query, list(documents), top_k=top_k
        )
        return await anyio.to_thread.run_sync(call, limiter=self._get_limiter())

    async def aclose(self) -> None:
        await anyio.to_thread.run_sync(self._reranker.close)

    async def __aenter__(self) -> "AsyncReranker":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
