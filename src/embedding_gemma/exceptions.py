"""Custom exceptions for the embedding engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Errors propagate unmodified to the
caller of ``embed``/``rerank``; the binding layer decides how to present
them.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Cache / storage errors (1xxx)
    STORAGE_WRITE_FAILED = 1001
    STORAGE_NOT_WRITABLE = 1002
    STORAGE_DISK_FULL = 1003
    STORAGE_INTEGRITY_MISMATCH = 1004

    # Resolution errors (2xxx)
    MODEL_UNAVAILABLE = 2001
    MODEL_UNKNOWN_PRECISION = 2002
    FETCH_FAILED = 2003
    MODEL_OFFLINE = 2004

    # Inference errors (3xxx)
    INFERENCE_FAILED = 3001
    INFERENCE_SHAPE_MISMATCH = 3002
    GRAPH_LOAD_FAILED = 3003

    # Input errors (4xxx)
    INPUT_INVALID = 4001
    INPUT_EMPTY = 4002

    # Configuration / lifecycle errors (6xxx)
    CONFIG_INVALID = 6001
    REGISTRY_CLOSED = 6002
    HANDLE_CLOSED = 6003


class EngineError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INPUT_INVALID,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class StorageError(EngineError):
    """Raised when a model artifact cannot be written to the cache.

    Fatal for the resolution attempt that hit it; a later attempt may
    succeed once the underlying condition (disk full, permissions) clears.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if path:
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class FetchError(EngineError):
    """Raised by an artifact fetcher when it cannot produce the artifact."""

    def __init__(
        self,
        message: str,
        model_id: Optional[str] = None,
        precision: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if model_id:
            details["model_id"] = model_id
        if precision:
            details["precision"] = precision
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.FETCH_FAILED, details=details)
        self.model_id = model_id
        self.precision = precision
        self.original_error = original_error


class ModelUnavailable(EngineError):
    """Raised when no usable artifact exists for a model request."""

    def __init__(
        self,
        message: str,
        role: Optional[str] = None,
        precision: Optional[str] = None,
        code: ErrorCode = ErrorCode.MODEL_UNAVAILABLE,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if role:
            details["role"] = role
        if precision:
            details["precision"] = precision
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.role = role
        self.precision = precision
        self.original_error = original_error


class InferenceError(EngineError):
    """Raised when the inference backend rejects a batch or faults.

    Never retried: the same inputs would fail the same way.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        shape: Optional[List[int]] = None,
        code: ErrorCode = ErrorCode.INFERENCE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if shape is not None:
            details["shape"] = list(shape)
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.shape = shape
        self.original_error = original_error


class InvalidInputError(EngineError, ValueError):
    """Raised for malformed pipeline input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.INPUT_INVALID,
    ):
        details: Dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class ConfigurationError(EngineError):
    """Raised for configuration and lifecycle errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details: Dict[str, Any] = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class TruncationNotice(UserWarning):
    """Non-fatal signal that inputs exceeded the model's max sequence length.

    Emitted through :mod:`warnings`; the request still completes with
    embeddings computed from the truncated token sequences.

    Attributes:
        indices: Original positions of the truncated inputs.
        max_length: The limit that was applied.
    """

    def __init__(self, indices: List[int], max_length: int):
        self.indices = list(indices)
        self.max_length = max_length
        super().__init__(
            f"{len(self.indices)} input(s) truncated to {max_length} tokens "
            f"(indices: {self.indices[:10]})"
        )
