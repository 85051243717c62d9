"""Cross-request micro-batching for single-text embedding calls.

Many callers each embedding one text waste the batched backend. The
``RequestBatcher`` collects concurrent ``submit`` calls on a worker thread
and flushes them as one ``embed`` call when either trigger fires:

1. ``max_batch_size`` texts are waiting
2. ``max_wait_ms`` has passed since the first text of the batch arrived

Each caller gets a ``concurrent.futures.Future`` for its own vector. A text that
was truncated carries a ``TruncationNotice`` on its future; ``embed`` re-issues
it as a warning on the calling thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import warnings
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np

from embedding_gemma.exceptions import (
    ConfigurationError,
    ErrorCode,
    InvalidInputError,
    TruncationNotice,
)

logger = logging.getLogger(__name__)

_STOP = object()


class _SupportsEmbed(Protocol):
    def embed_with_truncation(
        self, texts: Sequence[str]
    ) -> Tuple[List[np.ndarray], Optional[TruncationNotice]]: ...


class EmbedFuture(Future):
    """Future for one submitted text.

    ``notice`` is set before the result when the text was truncated.
    """

    notice: Optional[TruncationNotice] = None


@dataclass
class _Pending:
    text: str
    future: EmbedFuture
    enqueued_at: float = field(default_factory=time.monotonic)


class RequestBatcher:
    """Coalesces concurrent single-text requests into batched ``embed`` calls.

    Results are identical to calling ``embedder.embed([text])`` directly;
    batching only changes throughput.

    Args:
        embedder: Anything with ``embed_with_truncation(texts)``, normally an
            ``Embedder``.
        max_batch_size: Flush once this many texts are waiting.
        max_wait_ms: Flush once the oldest waiting text is this old.
    """

    def __init__(
        self,
        embedder: _SupportsEmbed,
        max_batch_size: int = 32,
        max_wait_ms: float = 5.0,
    ) -> None:
        if max_batch_size < 1:
            raise InvalidInputError(
                "max_batch_size must be >= 1",
                field="max_batch_size",
                value=max_batch_size,
            )
        self._embedder = embedder
        self._max_batch_size = max_batch_size
        self._max_wait = max(max_wait_ms, 0.0) / 1000.0
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._batches = 0
        self._thread = threading.Thread(
            target=self._run, name="embedding-gemma-batcher", daemon=True
        )
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def batches_dispatched(self) -> int:
        return self._batches

    def submit(self, text: str) -> EmbedFuture:
        """Queue ``text`` and return a future for its vector.

        Raises:
            InvalidInputError: If ``text`` is not a string.
            ConfigurationError: If the batcher has been closed.
        """
        if not isinstance(text, str):
            raise InvalidInputError(
                f"text must be a string, got {type(text).__name__}", field="text"
            )
        future = EmbedFuture()
        with self._lock:
            if self._closed:
                raise ConfigurationError(
                    "Request batcher has been closed", code=ErrorCode.HANDLE_CLOSED
                )
            self._queue.put(_Pending(text, future))
        return future

    def embed(self, text: str, timeout: Optional[float] = None) -> np.ndarray:
        """Blocking wrapper around ``submit`` that warns on truncation."""
        future = self.submit(text)
        vector = future.result(timeout=timeout)
        if future.notice is not None:
            warnings.warn(future.notice, stacklevel=2)
        return vector

    def _collect(self, first: _Pending) -> Tuple[List[_Pending], bool]:
        """Gather a batch starting at ``first``; returns (batch, stop_seen)."""
        batch = [first]
        deadline = first.enqueued_at + self._max_wait
        while len(batch) < self._max_batch_size:
            remaining = deadline - time.monotonic()
            try:
                if remaining > 0:
                    item = self._queue.get(timeout=remaining)
                else:
                    item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                return batch, True
            batch.append(item)  # type: ignore[arg-type]
        return batch, False

    def _run(self) -> None:
        stop = False
        while not stop:
            item = self._queue.get()
            if item is _STOP:
                break
            batch, stop = self._collect(item)  # type: ignore[arg-type]
            self._dispatch(batch)

    def _dispatch(self, batch: List[_Pending]) -> None:
        # Cancelled futures are dropped before any work is done for them
        live = [p for p in batch if p.future.set_running_or_notify_cancel()]
        if not live:
            return
        self._batches += 1
        waited_ms = (time.monotonic() - live[0].enqueued_at) * 1000
        logger.debug(
            f"Dispatching {len(live)} requests "
            f"({len(batch) - len(live)} cancelled, oldest waited {waited_ms:.1f}ms)"
        )
        try:
            vectors, notice = self._embedder.embed_with_truncation(
                [p.text for p in live]
            )
        except Exception as e:
            logger.warning(f"Batched embed of {len(live)} requests failed: {e}")
            for pending in live:
                pending.future.set_exception(e)
            return
        truncated = set(notice.indices) if notice is not None else set()
        for i, (pending, vector) in enumerate(zip(live, vectors)):
            if i in truncated:
                pending.future.notice = TruncationNotice([0], notice.max_length)
            pending.future.set_result(vector)

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting requests, finish queued ones, stop the worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._thread.join(timeout)
        logger.debug(f"Request batcher closed after {self._batches} batches")

    def __enter__(self) -> "RequestBatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
