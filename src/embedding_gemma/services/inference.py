"""Inference executor: one padded batch in, one output tensor out.

Adapts a ``Batch`` to whatever inputs the loaded graph declares and picks
the output the pipelines need. Shape checks happen here so that pooling
and scoring can assume well-formed arrays.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np

from embedding_gemma.exceptions import EngineError, ErrorCode, InferenceError
from embedding_gemma.models.schema import Batch, ModelDescriptor
from embedding_gemma.services.embedding_types import GraphHandle, InferenceBackend

logger = logging.getLogger(__name__)

HIDDEN_STATE_OUTPUT = "last_hidden_state"
LOGITS_OUTPUT = "logits"


class InferenceExecutor:
    """Runs batches through one loaded graph.

    Stateless apart from the shared, read-only graph handle, so one
    executor may serve concurrent requests.

    Args:
        backend: The backend that loaded ``graph``.
        graph: Loaded graph handle.
    """

    def __init__(self, backend: InferenceBackend, graph: GraphHandle) -> None:
        self._backend = backend
        self._graph = graph

    @property
    def graph(self) -> GraphHandle:
        return self._graph

    def _feed(self, batch: Batch) -> Dict[str, np.ndarray]:
        declared = set(self._graph.input_names)
        available = {
            "input_ids": batch.input_ids,
            "attention_mask": batch.attention_mask,
            "token_type_ids": batch.token_type_ids,
        }
        if "position_ids" in declared:
            positions = np.arange(batch.seq_len, dtype=np.int64)
            available["position_ids"] = np.broadcast_to(
                positions, batch.input_ids.shape
            ).copy()
        feed = {name: arr for name, arr in available.items() if name in declared}
        unknown = declared - set(available)
        if unknown:
            raise InferenceError(
                f"Graph requires unsupported inputs {sorted(unknown)}",
                operation="feed",
                code=ErrorCode.INFERENCE_SHAPE_MISMATCH,
            )
        return feed

    def _execute(self, batch: Batch, operation: str) -> Dict[str, np.ndarray]:
        try:
            outputs = self._backend.execute(self._graph, self._feed(batch))
        except EngineError:
            raise
        except Exception as e:
            raise InferenceError(
                f"Backend failed during {operation}: {e}",
                operation=operation,
                shape=list(batch.input_ids.shape),
                original_error=e,
            ) from e
        if not outputs:
            raise InferenceError(
                "Backend returned no outputs",
                operation=operation,
                shape=list(batch.input_ids.shape),
                code=ErrorCode.INFERENCE_SHAPE_MISMATCH,
            )
        return outputs

    def _select(
        self, outputs: Dict[str, np.ndarray], preferred: str, ndims: tuple
    ) -> Optional[np.ndarray]:
        if preferred in outputs:
            return np.asarray(outputs[preferred])
        ordered = [n for n in self._graph.output_names if n in outputs]
        ordered += [n for n in outputs if n not in ordered]
        for name in ordered:
            value = np.asarray(outputs[name])
            if value.ndim in ndims:
                return value
        return None

    def run_embedding(
        self, batch: Batch, descriptor: ModelDescriptor
    ) -> np.ndarray:
        """Return per-token hidden states, float32 of shape (B, T, H)."""
        outputs = self._execute(batch, "embed")
        hidden = self._select(outputs, HIDDEN_STATE_OUTPUT, (3,))
        rows, seq_len = batch.input_ids.shape
        if hidden is None or hidden.ndim != 3 or hidden.shape[:2] != (rows, seq_len):
            shape = None if hidden is None else list(hidden.shape)
            raise InferenceError(
                f"Expected hidden states of shape ({rows}, {seq_len}, H), "
                f"got {shape}",
                operation="embed",
                shape=shape,
                code=ErrorCode.INFERENCE_SHAPE_MISMATCH,
            )
        if descriptor.dimension is not None and hidden.shape[2] != descriptor.dimension:
            raise InferenceError(
                f"{descriptor.model_id} produced width {hidden.shape[2]}, "
                f"expected {descriptor.dimension}",
                operation="embed",
                shape=list(hidden.shape),
                code=ErrorCode.INFERENCE_SHAPE_MISMATCH,
            )
        return hidden.astype(np.float32, copy=False)

    def run_reranker(self, batch: Batch, descriptor: ModelDescriptor) -> np.ndarray:
        """Return one raw relevance logit per row, float32 of shape (B,).

        Two-class heads are reduced to the log-odds of the positive class.
        """
        outputs = self._execute(batch, "rerank")
        logits = self._select(outputs, LOGITS_OUTPUT, (1, 2))
        rows = len(batch)
        if logits is None or logits.shape[0] != rows:
            shape = None if logits is None else list(logits.shape)
            raise InferenceError(
                f"Expected {rows} reranker logits from {descriptor.model_id}, "
                f"got {shape}",
                operation="rerank",
                shape=shape,
                code=ErrorCode.INFERENCE_SHAPE_MISMATCH,
            )
        logits = logits.astype(np.float32, copy=False)
        if logits.ndim == 1:
            return logits
        if logits.shape[1] == 1:
            return logits[:, 0]
        if logits.shape[1] == 2:
            return logits[:, 1] - logits[:, 0]
        raise InferenceError(
            f"Reranker head has {logits.shape[1]} classes, expected 1 or 2",
            operation="rerank",
            shape=list(logits.shape),
            code=ErrorCode.INFERENCE_SHAPE_MISMATCH,
        )
