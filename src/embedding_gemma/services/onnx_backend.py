"""ONNX Runtime inference backend.

Loads exported ONNX graphs (with their external ``.onnx_data`` weights)
into ``onnxruntime.InferenceSession`` objects and runs them. Sessions are
safe to ``run`` from several threads at once, so one loaded graph is shared
by every request for its model.
"""

from __future__ import annotations

import logging
import os
import resource
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from embedding_gemma.exceptions import ErrorCode, InferenceError

logger = logging.getLogger(__name__)


def _get_rss_mb() -> float:
    """Resident memory of this process in MiB, for the load/release log lines."""
    try:
        status = Path("/proc/self/status").read_text()
    except OSError:
        status = ""
    for line in status.splitlines():
        if line.startswith("VmRSS:"):
            return int(line.split()[1]) / 1024
    # No procfs; peak RSS instead, reported in KiB on Linux
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024


# onnxruntime module, imported on the first load()
_ort = None


def _ensure_imports() -> None:
    global _ort
    if _ort is not None:
        return
    try:
        import onnxruntime
    except ImportError as e:
        raise InferenceError(
            "onnxruntime is not installed; install the onnxruntime "
            "(or onnxruntime-gpu) distribution to load graphs",
            operation="import",
            code=ErrorCode.GRAPH_LOAD_FAILED,
            original_error=e,
        ) from e
    _ort = onnxruntime


_ACCELERATED = ("CUDAExecutionProvider", "CoreMLExecutionProvider")


def _resolve_providers(preference: str = "auto") -> List[str]:
    """Execution providers for ``preference``, highest priority first.

    ``auto`` picks whichever accelerators this onnxruntime build offers and
    ends with CPU; ``cpu`` is CPU alone; anything else is taken as a
    comma-separated list of provider names.
    """
    _ensure_imports()
    choice = preference.strip().lower()
    if choice == "cpu":
        return ["CPUExecutionProvider"]
    if choice != "auto":
        return [name.strip() for name in preference.split(",") if name.strip()]

    offered = set(_ort.get_available_providers())
    return [p for p in _ACCELERATED if p in offered] + ["CPUExecutionProvider"]


def _cuda_session_options() -> Dict[str, Dict[str, str]]:
    """Per-provider options keyed by provider name; only CUDA has any.

    Device memory is capped at ``EMBEDDING_GEMMA_GPU_MEM_LIMIT_GB`` (8 when
    unset) and the arena grows only by what each allocation asks for.
    """
    limit_gb = float(os.environ.get("EMBEDDING_GEMMA_GPU_MEM_LIMIT_GB", "8"))
    limit_bytes = int(limit_gb * (1 << 30))
    return {
        "CUDAExecutionProvider": {
            "gpu_mem_limit": str(limit_bytes),
            "arena_extend_strategy": "kSameAsRequested",
        }
    }


class OnnxGraph:
    """A loaded ONNX graph: the session plus its declared I/O names."""

    def __init__(self, session: Any, path: Path) -> None:
        self.session: Optional[Any] = session
        self.path = path
        self._input_names: Tuple[str, ...] = tuple(
            inp.name for inp in session.get_inputs()
        )
        self._output_names: Tuple[str, ...] = tuple(
            out.name for out in session.get_outputs()
        )
        self.providers: List[str] = list(session.get_providers())

    @property
    def input_names(self) -> Tuple[str, ...]:
        return self._input_names

    @property
    def output_names(self) -> Tuple[str, ...]:
        return self._output_names

    @property
    def is_loaded(self) -> bool:
        return self.session is not None

    def __repr__(self) -> str:
        return f"OnnxGraph({self.path.name}, providers={self.providers})"


class OnnxBackend:
    """Inference backend on ``onnxruntime``.

    Args:
        providers: Provider preference string ("auto", "cpu", or
            comma-separated provider names).
        intra_op_threads: Threads per operator; None lets onnxruntime decide.
    """

    def __init__(
        self, providers: str = "auto", intra_op_threads: Optional[int] = None
    ) -> None:
        self._providers_pref = providers
        self._intra_op_threads = intra_op_threads
        self._lock = threading.Lock()

    def _session_options(self, providers: List[str]) -> Any:
        sess_options = _ort.SessionOptions()
        sess_options.graph_optimization_level = (
            _ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        )
        if self._intra_op_threads is not None:
            sess_options.intra_op_num_threads = self._intra_op_threads
        # The CPU arena never hands memory back between batches
        if providers == ["CPUExecutionProvider"]:
            sess_options.enable_cpu_mem_arena = False
        return sess_options

    def load(self, graph_path: Path) -> OnnxGraph:
        """Create an inference session for ``graph_path``.

        Raises:
            InferenceError: With ``GRAPH_LOAD_FAILED`` if the file is missing
                or onnxruntime rejects it.
        """
        _ensure_imports()
        graph_path = Path(graph_path)
        if not graph_path.is_file():
            raise InferenceError(
                f"ONNX graph not found at {graph_path}",
                operation="load",
                code=ErrorCode.GRAPH_LOAD_FAILED,
            )

        providers = _resolve_providers(self._providers_pref)
        cuda_opts = _cuda_session_options()
        provider_options = [cuda_opts.get(p, {}) for p in providers]

        rss_before = _get_rss_mb()
        logger.info(
            f"Loading ONNX graph {graph_path} "
            f"(providers={providers}, RSS before load: {rss_before:.0f}MB)"
        )
        # Session construction is memory-heavy; load one graph at a time
        with self._lock:
            try:
                session = _ort.InferenceSession(
                    str(graph_path),
                    sess_options=self._session_options(providers),
                    providers=providers,
                    provider_options=provider_options,
                )
            except Exception as e:
                raise InferenceError(
                    f"onnxruntime could not load {graph_path.name}: {e}",
                    operation="load",
                    code=ErrorCode.GRAPH_LOAD_FAILED,
                    original_error=e,
                ) from e

        graph = OnnxGraph(session, graph_path)
        rss_after = _get_rss_mb()
        logger.info(
            f"ONNX graph loaded: inputs={list(graph.input_names)}, "
            f"outputs={list(graph.output_names)}, providers={graph.providers}, "
            f"RSS: {rss_after:.0f}MB (+{rss_after - rss_before:.0f}MB)"
        )
        return graph

    def execute(
        self, handle: OnnxGraph, inputs: Mapping[str, np.ndarray]
    ) -> Dict[str, np.ndarray]:
        """Run the session and return outputs keyed by output name."""
        session = handle.session
        if session is None:
            raise InferenceError(
                f"Graph {handle.path.name} has been released",
                operation="execute",
            )
        try:
            outputs = session.run(None, dict(inputs))
        except Exception as e:
            shape = None
            if "input_ids" in inputs:
                shape = list(inputs["input_ids"].shape)
            raise InferenceError(
                f"onnxruntime failed on {handle.path.name}: {e}",
                operation="execute",
                shape=shape,
                original_error=e,
            ) from e
        return dict(zip(handle.output_names, outputs))

    def release(self, handle: OnnxGraph) -> None:
        if handle.session is None:
            return
        rss_before = _get_rss_mb()
        handle.session = None
        rss_after = _get_rss_mb()
        logger.info(
            f"ONNX graph released: {handle.path.name}, "
            f"RSS: {rss_after:.0f}MB (freed ~{rss_before - rss_after:.0f}MB)"
        )
