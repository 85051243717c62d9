"""Model registry and the embedder/reranker handles built on it.

The registry owns every loaded graph. A graph is loaded once per resolved
descriptor and shared read-only by all handles created from it; handles
hold a reference and the graph is released when the last one closes or
when the registry shuts down.

Usage:
    registry = ModelRegistry().initialize()
    with registry.create_embedder() as embedder:
        vectors = embedder.embed(["hello", "namaste"])
    registry.shutdown()

The module-level ``create_embedder``/``create_reranker`` use a process-wide
default registry that is shut down at interpreter exit.
"""

from __future__ import annotations

import atexit
import logging
import threading
import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from embedding_gemma.config import EngineConfig
from embedding_gemma.config import config as default_config
from embedding_gemma.exceptions import (
    ConfigurationError,
    ErrorCode,
    InvalidInputError,
    TruncationNotice,
)
from embedding_gemma.models.catalog import EmbeddingModel, ModelCatalog, RerankerModel
from embedding_gemma.models.schema import (
    CachedArtifact,
    ModelDescriptor,
    Precision,
    RerankResult,
    Role,
)
from embedding_gemma.observability import timed_operation, traced
from embedding_gemma.services.batching import BatchScheduler
from embedding_gemma.services.dispatcher import RequestBatcher
from embedding_gemma.services.embedding_types import (
    ArtifactFetcher,
    GraphHandle,
    InferenceBackend,
)
from embedding_gemma.services.fetcher import HuggingFaceFetcher
from embedding_gemma.services.inference import InferenceExecutor
from embedding_gemma.services.onnx_backend import OnnxBackend
from embedding_gemma.services.pooling import l2_normalize, mean_pool, truncate_dimension
from embedding_gemma.services.reranker import RerankerScorer
from embedding_gemma.services.resolver import ModelResolver
from embedding_gemma.services.tokenizer import TextEncoder
from embedding_gemma.storage.model_cache import ModelCache

logger = logging.getLogger(__name__)

PrecisionHint = Optional[Union[Precision, str]]


class ModelHandle:
    """A loaded model shared by every pipeline that uses its descriptor."""

    def __init__(
        self,
        artifact: CachedArtifact,
        graph: GraphHandle,
        encoder: TextEncoder,
        backend: InferenceBackend,
    ) -> None:
        self.artifact = artifact
        self.graph = graph
        self.encoder = encoder
        self.executor = InferenceExecutor(backend, graph)
        self.refcount = 0

    @property
    def descriptor(self) -> ModelDescriptor:
        return self.artifact.descriptor

    @property
    def key(self) -> str:
        return self.descriptor.slot_name

    def __repr__(self) -> str:
        return (
            f"ModelHandle({self.descriptor.model_id} "
            f"[{self.descriptor.precision.value}], refs={self.refcount})"
        )


class ModelRegistry:
    """Owns the cache, resolver, backend and every loaded model.

    All collaborators are injectable; anything left as None is built from
    ``config`` on ``initialize()``.

    Args:
        config: Engine configuration. Defaults to the environment-derived
            global config.
        fetcher: Artifact source for cache misses. Defaults to the Hugging
            Face Hub (none when ``config.offline`` is set).
        backend: Inference backend. Defaults to ONNX Runtime.
        cache: Model cache. Defaults to one rooted at ``config.cache_dir``.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        fetcher: Optional[ArtifactFetcher] = None,
        backend: Optional[InferenceBackend] = None,
        cache: Optional[ModelCache] = None,
    ) -> None:
        self._config = config or default_config
        self._fetcher = fetcher
        self._backend = backend
        self._cache = cache
        self._resolver: Optional[ModelResolver] = None
        self._handles: Dict[str, ModelHandle] = {}
        self._load_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.RLock()
        self._initialized = False
        self._closed = False

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def resolver(self) -> ModelResolver:
        self.initialize()
        return self._resolver  # type: ignore[return-value]

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConfigurationError(
                "Model registry has been shut down",
                code=ErrorCode.REGISTRY_CLOSED,
            )

    def _build_catalog(self) -> ModelCatalog:
        cfg = self._config
        return ModelCatalog(
            embedding=EmbeddingModel(
                model_id=cfg.embedding_model,
                default_precision=cfg.default_precision,
            ),
            reranker=RerankerModel(
                model_id=cfg.reranker_model,
                calibration=cfg.reranker_calibration,
            ),
        )

    def initialize(self) -> "ModelRegistry":
        """Build the default collaborators. Idempotent; returns self."""
        with self._lock:
            self._ensure_open()
            if self._initialized:
                return self
            cfg = self._config
            if self._cache is None:
                self._cache = ModelCache(cfg.cache_dir)
            if self._fetcher is None and not cfg.offline:
                self._fetcher = HuggingFaceFetcher(cache_dir=cfg.hub_cache_dir)
            if self._backend is None:
                self._backend = OnnxBackend(providers=cfg.onnx_providers)
            self._resolver = ModelResolver(
                self._cache,
                fetcher=self._fetcher,
                catalog=self._build_catalog(),
                offline=cfg.offline,
                allow_fallback=cfg.allow_precision_fallback,
            )
            self._initialized = True
            logger.info(
                f"Model registry initialized (cache={self._cache.root}, "
                f"offline={cfg.offline}, backend={type(self._backend).__name__})"
            )
            return self

    def _load_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._load_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._load_locks[key] = lock
            return lock

    @traced("load_model")
    def _load_handle(self, artifact: CachedArtifact) -> ModelHandle:
        descriptor = artifact.descriptor
        max_tokens = (
            self._config.embedding_max_tokens
            if descriptor.role is Role.EMBEDDING
            else self._config.reranker_max_tokens
        )
        encoder = TextEncoder.from_artifact(artifact, max_length=max_tokens)
        graph = self._backend.load(artifact.graph_path)
        return ModelHandle(artifact, graph, encoder, self._backend)

    def acquire(
        self, role: Union[Role, str], precision_hint: PrecisionHint = None
    ) -> ModelHandle:
        """Resolve and load a model, or take another reference to it.

        Raises:
            ModelUnavailable: If the model can't be resolved.
            StorageError: If a fetched artifact can't be cached.
            InferenceError: If the backend can't load the graph.
        """
        self.initialize()
        artifact = self._resolver.resolve_artifact(role, precision_hint)
        key = artifact.descriptor.slot_name

        with self._load_lock(key):
            with self._lock:
                self._ensure_open()
                handle = self._handles.get(key)
                if handle is not None:
                    handle.refcount += 1
                    return handle

            handle = self._load_handle(artifact)

            with self._lock:
                if self._closed:
                    self._backend.release(handle.graph)
                    self._ensure_open()
                handle.refcount = 1
                self._handles[key] = handle
        logger.info(f"Loaded {handle}")
        return handle

    def release(self, handle: ModelHandle) -> None:
        """Drop one reference; the graph is unloaded with the last one."""
        with self._lock:
            if self._handles.get(handle.key) is not handle:
                return
            handle.refcount -= 1
            if handle.refcount > 0:
                return
            del self._handles[handle.key]
        self._backend.release(handle.graph)
        logger.info(
            f"Unloaded {handle.descriptor.model_id} "
            f"[{handle.descriptor.precision.value}]"
        )

    def loaded(self) -> List[ModelHandle]:
        """Currently loaded models."""
        with self._lock:
            return list(self._handles.values())

    def create_embedder(
        self, precision_hint: PrecisionHint = None, dimension: Optional[int] = None
    ) -> "Embedder":
        """Create an embedding pipeline.

        Args:
            precision_hint: Precision variant to use. None picks the
                configured default and allows fallback to a cached variant.
            dimension: Output size, one of the model's Matryoshka
                dimensions. None gives the full dimension.

        Raises:
            ModelUnavailable: If no usable model can be resolved.
            InvalidInputError: If ``dimension`` is not supported.
        """
        self.initialize()
        spec = self._resolver.catalog.spec(Role.EMBEDDING)
        if dimension is not None and dimension not in spec.output_dimensions:
            raise InvalidInputError(
                f"Unsupported output dimension {dimension}; "
                f"choose from {list(spec.output_dimensions)}",
                field="dimension",
                value=dimension,
            )
        handle = self.acquire(Role.EMBEDDING, precision_hint)
        scheduler = BatchScheduler(
            max_batch_size=self._config.batch_size,
            pad_token_id=handle.encoder.pad_token_id,
            sort_by_length=self._config.sort_by_length,
        )
        return Embedder(self, handle, scheduler, dimension)

    def create_reranker(self, precision_hint: PrecisionHint = None) -> "Reranker":
        """Create a reranking pipeline.

        Raises:
            ModelUnavailable: If no usable model can be resolved.
        """
        handle = self.acquire(Role.RERANKER, precision_hint)
        scheduler = BatchScheduler(
            max_batch_size=self._config.batch_size,
            pad_token_id=handle.encoder.pad_token_id,
            sort_by_length=self._config.sort_by_length,
        )
        scorer = RerankerScorer(
            handle.encoder,
            scheduler,
            handle.executor,
            handle.descriptor,
            calibration=self._config.reranker_calibration,
        )
        return Reranker(self, handle, scorer)

    def create_batcher(self, embedder: "Embedder") -> RequestBatcher:
        """Wrap ``embedder`` in a cross-request batcher sized from config.

        The caller closes the batcher before the embedder.
        """
        return RequestBatcher(
            embedder,
            max_batch_size=self._config.dispatch_max_batch_size,
            max_wait_ms=self._config.dispatch_max_wait_ms,
        )

    def shutdown(self) -> None:
        """Unload every model. Idempotent; the registry can't be reused."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            self._backend.release(handle.graph)
        logger.info(f"Model registry shut down ({len(handles)} models unloaded)")

    def __enter__(self) -> "ModelRegistry":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


class _PipelineHandle:
    """Shared close/context-manager behaviour of Embedder and Reranker."""

    def __init__(self, registry: ModelRegistry, handle: ModelHandle) -> None:
        self._registry = registry
        self._handle = handle
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def descriptor(self) -> ModelDescriptor:
        return self._handle.descriptor

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise ConfigurationError(
                f"{type(self).__name__} has been closed",
                code=ErrorCode.HANDLE_CLOSED,
            )
        self._registry._ensure_open()

    def close(self) -> None:
        """Release this handle's model reference. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._registry.release(self._handle)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class Embedder(_PipelineHandle):
    """Turns texts into L2-normalized embedding vectors.

    Thread-safe; concurrent ``embed`` calls share the loaded model.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        handle: ModelHandle,
        scheduler: BatchScheduler,
        dimension: Optional[int] = None,
    ) -> None:
        super().__init__(registry, handle)
        self._scheduler = scheduler
        self._full_dimension = handle.descriptor.dimension
        self._dimension = dimension or self._full_dimension

    def dimension(self) -> int:
        """Length of every vector this embedder returns."""
        return self._dimension

    def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed ``texts``, preserving order and length.

        Inputs longer than the model limit are truncated; a
        ``TruncationNotice`` warning names them and the call still succeeds.

        Raises:
            InvalidInputError: If an element is not a string.
            InferenceError: If the backend fails.
        """
        vectors, notice = self.embed_with_truncation(texts)
        if notice is not None:
            warnings.warn(notice, stacklevel=2)
        return vectors

    def embed_with_truncation(
        self, texts: Sequence[str]
    ) -> Tuple[List[np.ndarray], Optional[TruncationNotice]]:
        """Like ``embed`` but returns the notice instead of warning it.

        The notice is None when nothing was truncated. Truncation is still
        logged, so callers on other threads see it even if they drop the notice.
        """
        self._check_open()
        if isinstance(texts, str):
            raise InvalidInputError(
                "embed() takes a sequence of strings; use embed_one() for one",
                field="texts",
            )
        texts = list(texts)
        if not texts:
            return [], None

        handle = self._handle
        with timed_operation("embed", count=len(texts)) as op:
            encoded = handle.encoder.encode_batch(texts)
            results: List[Optional[np.ndarray]] = [None] * len(encoded)

            work = []
            for item in encoded:
                if item.is_empty:
                    results[item.index] = np.zeros(self._dimension, dtype=np.float32)
                else:
                    work.append(item)

            batches = self._scheduler.schedule(work)
            for batch in batches:
                hidden = handle.executor.run_embedding(batch, handle.descriptor)
                vectors = l2_normalize(mean_pool(hidden, batch.attention_mask))
                if self._dimension != self._full_dimension:
                    vectors = truncate_dimension(vectors, self._dimension)
                batch.scatter(list(vectors), results)
            op["batches"] = len(batches)

            truncated = [item.index for item in encoded if item.truncated]
            op["truncated"] = len(truncated)

        if not truncated:
            return results, None  # type: ignore[return-value]
        max_length = handle.encoder.max_length
        logger.warning(
            f"{len(truncated)} of {len(texts)} inputs truncated to {max_length} tokens"
        )
        notice = TruncationNotice(truncated, max_length)
        return results, notice  # type: ignore[return-value]

    def embed_one(self, text: str) -> np.ndarray:
        """Embed a single text."""
        return self.embed([text])[0]


class Reranker(_PipelineHandle):
    """Orders documents by relevance to a query with a cross-encoder."""

    def __init__(
        self, registry: ModelRegistry, handle: ModelHandle, scorer: RerankerScorer
    ) -> None:
        super().__init__(registry, handle)
        self._scorer = scorer

    def rerank(
        self,
        query: str,
        documents: Sequence[str],
        top_k: Optional[int] = None,
    ) -> List[RerankResult]:
        """Score every document against ``query``, best first.

        Equal scores keep their original relative order. An empty document
        list gives an empty result. Pairs longer than the model limit are
        truncated and named in a ``TruncationNotice`` warning.
        """
        self._check_open()
        if isinstance(documents, str):
            raise InvalidInputError(
                "documents must be a sequence of strings", field="documents"
            )
        documents = list(documents)
        with timed_operation("rerank", count=len(documents)) as op:
            results, truncated = self._scorer.rank(query, documents, top_k=top_k)
            op["result_count"] = len(results)
            op["truncated"] = len(truncated)

        if truncated:
            max_length = self._scorer.encoder.max_length
            logger.warning(
                f"{len(truncated)} of {len(documents)} query/document pairs "
                f"truncated to {max_length} tokens"
            )
            warnings.warn(TruncationNotice(truncated, max_length), stacklevel=2)
        return results


# Process-wide default registry
_default_registry: Optional[ModelRegistry] = None
_default_lock = threading.Lock()


def get_registry() -> ModelRegistry:
    """Return the default registry, creating it on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None or _default_registry.closed:
            _default_registry = ModelRegistry().initialize()
            atexit.register(_default_registry.shutdown)
        return _default_registry


def shutdown_registry() -> None:
    """Shut down the default registry; the next call builds a fresh one."""
    global _default_registry
    with _default_lock:
        registry, _default_registry = _default_registry, None
    if registry is not None:
        registry.shutdown()


def create_embedder(
    precision_hint: PrecisionHint = None, dimension: Optional[int] = None
) -> Embedder:
    """Create an embedder from the default registry."""
    return get_registry().create_embedder(precision_hint, dimension=dimension)


def create_reranker(precision_hint: PrecisionHint = None) -> Reranker:
    """Create a reranker from the default registry."""
    return get_registry().create_reranker(precision_hint)
