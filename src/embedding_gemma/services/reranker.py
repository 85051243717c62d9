"""Cross-encoder scoring of (query, document) pairs."""

from __future__ import annotations

from typing import List, NamedTuple, Optional, Sequence

import numpy as np

from embedding_gemma.exceptions import InvalidInputError
from embedding_gemma.models.schema import ModelDescriptor, RerankResult
from embedding_gemma.services.batching import BatchScheduler
from embedding_gemma.services.inference import InferenceExecutor
from embedding_gemma.services.tokenizer import TextEncoder

CALIBRATIONS = ("identity", "sigmoid")


def calibrate(logits: np.ndarray, method: str = "identity") -> np.ndarray:
    """Map raw logits to display scores.

    ``sigmoid`` saturates to exactly 1.0 or 0.0 for large magnitudes, so
    ranking always uses the raw logits.
    """
    values = np.asarray(logits, dtype=np.float64)
    if method == "identity":
        return values
    if method == "sigmoid":
        # Split by sign so large magnitudes never overflow exp()
        out = np.empty_like(values)
        pos = values >= 0
        out[pos] = 1.0 / (1.0 + np.exp(-values[pos]))
        exp_neg = np.exp(values[~pos])
        out[~pos] = exp_neg / (1.0 + exp_neg)
        return out
    raise InvalidInputError(
        f"Unknown calibration {method!r}; expected one of {CALIBRATIONS}",
        field="calibration",
        value=method,
    )


class PairScores(NamedTuple):
    """Raw logits in document order plus the indices of truncated pairs."""

    logits: np.ndarray
    truncated: List[int]


class RankedDocuments(NamedTuple):
    results: List[RerankResult]
    truncated: List[int]


class RerankerScorer:
    """Scores every document against a query and orders the results.

    Ordering is by descending raw logit, ties broken by ascending original
    index, so identical inputs always produce identical output and the
    calibration never changes the order.
    """

    def __init__(
        self,
        encoder: TextEncoder,
        scheduler: BatchScheduler,
        executor: InferenceExecutor,
        descriptor: ModelDescriptor,
        calibration: str = "identity",
    ) -> None:
        if calibration not in CALIBRATIONS:
            raise InvalidInputError(
                f"Unknown calibration {calibration!r}",
                field="calibration",
                value=calibration,
            )
        self._encoder = encoder
        self._scheduler = scheduler
        self._executor = executor
        self._descriptor = descriptor
        self._calibration = calibration

    @property
    def encoder(self) -> TextEncoder:
        return self._encoder

    def score_pairs(self, query: str, documents: Sequence[str]) -> PairScores:
        """Raw logits in document order, without sorting or calibration."""
        encoded = self._encoder.encode_pairs(query, documents)
        logits = np.zeros(len(encoded), dtype=np.float64)
        if not encoded:
            return PairScores(logits, [])
        for batch in self._scheduler.schedule(encoded):
            batch_logits = self._executor.run_reranker(batch, self._descriptor)
            logits[list(batch.indices)] = batch_logits
        truncated = [e.index for e in encoded if e.truncated]
        return PairScores(logits, truncated)

    def rank(
        self,
        query: str,
        documents: Sequence[str],
        top_k: Optional[int] = None,
    ) -> RankedDocuments:
        """Score and sort ``documents``; also report truncated pairs.

        Args:
            query: Query text.
            documents: Candidate documents; duplicates are scored separately.
            top_k: Keep only the best ``top_k`` results. None keeps all.
        """
        if top_k is not None and top_k < 0:
            raise InvalidInputError("top_k must be >= 0", field="top_k", value=top_k)
        documents = list(documents)
        logits, truncated = self.score_pairs(query, documents)
        scores = calibrate(logits, self._calibration)

        order = sorted(range(len(documents)), key=lambda i: (-logits[i], i))
        if top_k is not None:
            order = order[:top_k]
        results = [
            RerankResult(document=documents[i], score=float(scores[i]), index=i)
            for i in order
        ]
        return RankedDocuments(results, truncated)

    def score(
        self,
        query: str,
        documents: Sequence[str],
        top_k: Optional[int] = None,
    ) -> List[RerankResult]:
        """Like ``rank`` but returns only the results, best first."""
        return self.rank(query, documents, top_k=top_k).results
