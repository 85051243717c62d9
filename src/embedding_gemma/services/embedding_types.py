"""Type protocols for the engine's external collaborators.

Defines the structural contracts that both production implementations
(Hugging Face Hub fetcher, ONNX Runtime backend) and test fakes must
satisfy. Uses Protocol (PEP 544) for structural subtyping, so
implementations don't need to inherit from these.

This module is importable without numpy installed (annotations are
deferred via __future__).
"""
from __future__ import annotations

from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Dict,
    Mapping,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)

if TYPE_CHECKING:
    import numpy as np


@runtime_checkable
class ArtifactFetcher(Protocol):
    """Contract for producing the raw files of one model variant.

    Implementations own their retries and timeouts; the engine treats any
    ``FetchError`` as final for that call.
    """

    def fetch(
        self,
        model_id: str,
        precision: str,
        files: Sequence[str] = (),
        optional_files: Sequence[str] = (),
    ) -> Mapping[str, Union[bytes, Path]]:
        """Fetch the files of a model variant.

        Args:
            model_id: Repository-style model identifier.
            precision: Precision variant name (e.g. ``"q4f16"``).
            files: Relative filenames wanted from the repository.
            optional_files: Subset of ``files`` that may legitimately be absent.

        Returns:
            Mapping of relative filename to raw bytes or a local file path.

        Raises:
            FetchError: On network failure or unknown identifier.
        """
        ...


@runtime_checkable
class GraphHandle(Protocol):
    """A loaded numeric graph. Shared read-only between requests."""

    @property
    def input_names(self) -> Sequence[str]:
        """Names of the inputs the graph declares."""
        ...

    @property
    def output_names(self) -> Sequence[str]:
        """Names of the outputs the graph produces, in order."""
        ...


@runtime_checkable
class InferenceBackend(Protocol):
    """Contract for loading and executing a numeric graph.

    Backends choose hardware acceleration themselves; the engine only
    hands over the graph file and input tensors.
    """

    def load(self, graph_path: Path) -> GraphHandle:
        """Load a graph from disk. Raises on unreadable or invalid graphs."""
        ...

    def execute(
        self, handle: GraphHandle, inputs: Mapping[str, np.ndarray]
    ) -> Dict[str, np.ndarray]:
        """Run the graph and return outputs keyed by output name."""
        ...

    def release(self, handle: GraphHandle) -> None:
        """Free resources held by ``handle``. Idempotent."""
        ...
