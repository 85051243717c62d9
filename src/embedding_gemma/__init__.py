"""
embedding-gemma - local text embeddings and reranking.

Resolves quantized EmbeddingGemma and BGE reranker ONNX models into an
on-disk cache, tokenizes and batches text, runs inference through ONNX
Runtime and returns L2-normalized embeddings or ranked relevance scores.

Typical usage:

    from embedding_gemma import create_embedder, create_reranker

    with create_embedder() as embedder:
        vectors = embedder.embed(["hello", "namaste"])

    with create_reranker() as reranker:
        ranked = reranker.rerank("food order", ["I want a burger", "menu please"])
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("embedding-gemma")
except PackageNotFoundError:
    __version__ = "0.3.0"

from embedding_gemma.exceptions import (  # noqa: E402
    ConfigurationError,
    EngineError,
    ErrorCode,
    FetchError,
    InferenceError,
    InvalidInputError,
    ModelUnavailable,
    StorageError,
    TruncationNotice,
)
from embedding_gemma.models.schema import Precision, RerankResult, Role  # noqa: E402
from embedding_gemma.registry import (  # noqa: E402
    Embedder,
    ModelRegistry,
    Reranker,
    create_embedder,
    create_reranker,
    get_registry,
    shutdown_registry,
)

__all__ = [
    "__version__",
    "ConfigurationError",
    "Embedder",
    "EngineError",
    "ErrorCode",
    "FetchError",
    "InferenceError",
    "InvalidInputError",
    "ModelRegistry",
    "ModelUnavailable",
    "Precision",
    "Reranker",
    "RerankResult",
    "Role",
    "StorageError",
    "TruncationNotice",
    "create_embedder",
    "create_reranker",
    "get_registry",
    "shutdown_registry",
]
