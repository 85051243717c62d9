"""Model catalog: the known embedding and reranker models.

Each entry is a tagged record for one role. The resolver picks an entry
once, by role, and turns it into a ModelDescriptor for the requested
precision; pipelines never re-check the role per call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

from embedding_gemma.exceptions import ErrorCode, ModelUnavailable
from embedding_gemma.models.schema import ModelDescriptor, Precision, Role

TOKENIZER_FILES: Tuple[str, ...] = ("tokenizer.json", "tokenizer_config.json")

DEFAULT_EMBEDDING_MODEL = "onnx-community/embeddinggemma-300m-ONNX"
DEFAULT_RERANKER_MODEL = "rozgo/bge-reranker-v2-m3"

# Preference order when a cached variant stands in for an unavailable one
FALLBACK_ORDER: Tuple[Precision, ...] = (
    Precision.Q4F16,
    Precision.Q8,
    Precision.FP16,
    Precision.Q4,
    Precision.FP32,
)


@dataclass(frozen=True)
class EmbeddingModel:
    """Embedding model entry.

    ``output_dimensions`` lists the Matryoshka sizes the model was trained
    for; any of them may be requested at embedder creation.
    """

    model_id: str = DEFAULT_EMBEDDING_MODEL
    dimension: int = 768
    max_length: int = 2048
    default_precision: Precision = Precision.Q4F16
    precisions: Tuple[Precision, ...] = (
        Precision.FP32,
        Precision.FP16,
        Precision.Q4,
        Precision.Q4F16,
        Precision.Q8,
    )
    output_dimensions: Tuple[int, ...] = (768, 512, 256, 128)
    onnx_subdir: str = "onnx"
    role: Role = field(default=Role.EMBEDDING, init=False)


@dataclass(frozen=True)
class RerankerModel:
    """Cross-encoder reranker entry."""

    model_id: str = DEFAULT_RERANKER_MODEL
    max_length: int = 512
    default_precision: Precision = Precision.FP32
    precisions: Tuple[Precision, ...] = (Precision.FP32,)
    calibration: str = "identity"
    onnx_subdir: str = ""
    role: Role = field(default=Role.RERANKER, init=False)


ModelSpec = Union[EmbeddingModel, RerankerModel]


def _graph_path(spec: ModelSpec, filename: str) -> str:
    return f"{spec.onnx_subdir}/{filename}" if spec.onnx_subdir else filename


def describe(
    spec: ModelSpec, precision: Optional[Union[Precision, str]] = None
) -> ModelDescriptor:
    """Build the descriptor for one precision variant of a catalog entry.

    Raises:
        ModelUnavailable: If the model is not exported at that precision.
    """
    if precision is None:
        precision = spec.default_precision
    else:
        try:
            precision = Precision.parse(precision)
        except ValueError as e:
            raise ModelUnavailable(
                f"Unknown precision {precision!r}",
                role=spec.role.value,
                precision=str(precision),
                code=ErrorCode.MODEL_UNKNOWN_PRECISION,
                original_error=e,
            ) from e
    if precision not in spec.precisions:
        raise ModelUnavailable(
            f"{spec.model_id} has no {precision.value} variant "
            f"(available: {', '.join(p.value for p in spec.precisions)})",
            role=spec.role.value,
            precision=precision.value,
            code=ErrorCode.MODEL_UNKNOWN_PRECISION,
        )

    graph_file = _graph_path(spec, precision.model_filename)
    data_file = _graph_path(spec, precision.data_filename)
    # External-data weights only exist for graphs above the protobuf limit
    files = (graph_file, data_file) + TOKENIZER_FILES
    dimension = spec.dimension if isinstance(spec, EmbeddingModel) else None

    return ModelDescriptor(
        model_id=spec.model_id,
        role=spec.role,
        precision=precision,
        max_length=spec.max_length,
        graph_file=graph_file,
        files=files,
        dimension=dimension,
        optional_files=(data_file, "tokenizer_config.json"),
    )


class ModelCatalog:
    """Role-keyed set of catalog entries."""

    def __init__(
        self,
        embedding: Optional[EmbeddingModel] = None,
        reranker: Optional[RerankerModel] = None,
    ) -> None:
        self._entries: Dict[Role, ModelSpec] = {
            Role.EMBEDDING: embedding or EmbeddingModel(),
            Role.RERANKER: reranker or RerankerModel(),
        }

    def spec(self, role: Role) -> ModelSpec:
        return self._entries[Role(role)]

    def describe(
        self, role: Role, precision: Optional[Precision] = None
    ) -> ModelDescriptor:
        return describe(self.spec(role), precision)

    def fallback_descriptors(self, role: Role, exclude: Precision) -> list:
        """Descriptors of other precisions, in fallback preference order."""
        spec = self.spec(role)
        return [
            describe(spec, p)
            for p in FALLBACK_ORDER
            if p in spec.precisions and p != exclude
        ]
