"""Data models for the embedding engine.

Descriptors and artifacts are immutable once resolved and are shared
read-only between concurrent requests. Encoded inputs and batches are
owned by a single request and discarded after pooling or scoring.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

T = TypeVar("T")

_SLOT_UNSAFE = re.compile(r"[^a-zA-Z0-9_.\-]+")


class Role(str, Enum):
    """What a model is used for."""

    EMBEDDING = "embedding"
    RERANKER = "reranker"


class Precision(str, Enum):
    """Numeric precision variant of an exported ONNX graph."""

    FP32 = "fp32"
    FP16 = "fp16"
    Q4 = "q4"
    Q4F16 = "q4f16"
    Q8 = "q8"

    @classmethod
    def parse(cls, value: "Precision | str") -> "Precision":
        """Accept enum members, values, and a few common aliases."""
        if isinstance(value, Precision):
            return value
        key = str(value).strip().lower()
        aliases = {
            "full": cls.FP32,
            "float32": cls.FP32,
            "float16": cls.FP16,
            "int8": cls.Q8,
            "quantized": cls.Q8,
        }
        if key in aliases:
            return aliases[key]
        return cls(key)

    @property
    def model_filename(self) -> str:
        """ONNX graph filename for this precision."""
        return _PRECISION_FILES[self][0]

    @property
    def data_filename(self) -> str:
        """External-data (weights) filename for this precision."""
        return _PRECISION_FILES[self][1]


_PRECISION_FILES: Dict[Precision, Tuple[str, str]] = {
    Precision.FP32: ("model.onnx", "model.onnx_data"),
    Precision.FP16: ("model_fp16.onnx", "model_fp16.onnx_data"),
    Precision.Q4: ("model_q4.onnx", "model_q4.onnx_data"),
    Precision.Q4F16: ("model_q4f16.onnx", "model_q4f16.onnx_data"),
    Precision.Q8: ("model_quantized.onnx", "model_quantized.onnx_data"),
}


@dataclass(frozen=True)
class ModelDescriptor:
    """A concrete model variant: which files, which limits, which role."""

    model_id: str
    role: Role
    precision: Precision
    max_length: int
    graph_file: str
    files: Tuple[str, ...]
    dimension: Optional[int] = None
    optional_files: Tuple[str, ...] = ()

    @property
    def slot_name(self) -> str:
        """Cache subdirectory name for this (model, precision) pair."""
        safe_id = _SLOT_UNSAFE.sub("-", self.model_id.replace("/", "--"))
        return f"{safe_id}__{self.precision.value}"

    @property
    def required_files(self) -> Tuple[str, ...]:
        return tuple(f for f in self.files if f not in self.optional_files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "role": self.role.value,
            "precision": self.precision.value,
            "max_length": self.max_length,
            "graph_file": self.graph_file,
            "files": list(self.files),
            "dimension": self.dimension,
            "optional_files": list(self.optional_files),
        }


@dataclass(frozen=True)
class FileRecord:
    """Size and content hash of one cached file."""

    size: int
    sha256: str


@dataclass(frozen=True)
class IntegrityMarker:
    """Contents of a cache slot's marker file."""

    model_id: str
    precision: Precision
    files: Dict[str, FileRecord]
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "precision": self.precision.value,
            "created_at": self.created_at,
            "files": {
                name: {"size": rec.size, "sha256": rec.sha256}
                for name, rec in sorted(self.files.items())
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrityMarker":
        return cls(
            model_id=data["model_id"],
            precision=Precision.parse(data["precision"]),
            created_at=data.get("created_at", ""),
            files={
                name: FileRecord(size=int(rec["size"]), sha256=str(rec["sha256"]))
                for name, rec in data["files"].items()
            },
        )


@dataclass(frozen=True)
class CachedArtifact:
    """A descriptor whose files are present and verified in the cache."""

    descriptor: ModelDescriptor
    path: Path
    marker: IntegrityMarker

    def file_path(self, name: str) -> Path:
        return self.path / name

    def has_file(self, name: str) -> bool:
        return name in self.marker.files

    @property
    def graph_path(self) -> Path:
        return self.file_path(self.descriptor.graph_file)

    @property
    def tokenizer_path(self) -> Path:
        return self.file_path("tokenizer.json")

    @property
    def size_bytes(self) -> int:
        return sum(rec.size for rec in self.marker.files.values())


@dataclass(frozen=True)
class EncodedInput:
    """Token ids for one input text (or one query/document pair)."""

    ids: Tuple[int, ...]
    attention_mask: Tuple[int, ...]
    index: int = 0
    type_ids: Tuple[int, ...] = ()
    truncated: bool = False

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def is_empty(self) -> bool:
        """True when no position is attended (nothing to pool)."""
        return not any(self.attention_mask)


@dataclass(frozen=True, eq=False)
class Batch:
    """Right-padded inputs for one inference call.

    ``indices[i]`` is the original position of row ``i``.
    """

    input_ids: np.ndarray
    attention_mask: np.ndarray
    token_type_ids: np.ndarray
    indices: Tuple[int, ...]
    truncated: Tuple[bool, ...] = field(default=())

    def __len__(self) -> int:
        return len(self.indices)

    @property
    def seq_len(self) -> int:
        return int(self.input_ids.shape[1])

    def scatter(self, rows: Sequence[T], out: List[Optional[T]]) -> None:
        """Write per-row results back to their original positions in ``out``."""
        if len(rows) != len(self.indices):
            raise ValueError(
                f"Expected {len(self.indices)} rows, got {len(rows)}"
            )
        for row, original in zip(rows, self.indices):
            out[original] = row


@dataclass(frozen=True)
class RerankResult:
    """One scored document. ``index`` is its position in the input list."""

    document: str
    score: float
    index: int

    def as_tuple(self) -> Tuple[str, float, int]:
        return (self.document, self.score, self.index)
