"""Configuration module for the embedding engine."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from embedding_gemma.models.catalog import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_RERANKER_MODEL,
)
from embedding_gemma.models.schema import Precision

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config
_USER_ENV = Path.home() / ".embedding_gemma" / ".env"
load_dotenv(_USER_ENV)

logger = logging.getLogger(__name__)

_ENV_PREFIX = "EMBEDDING_GEMMA_"

_CALIBRATIONS = ("identity", "sigmoid")


def _env(name: str, default: str) -> str:
    return os.getenv(_ENV_PREFIX + name, default)


def _env_bool(name: str, default: str) -> bool:
    return _env(name, default).lower() in ("true", "1", "yes")


def _default_cache_dir() -> Path:
    configured = os.getenv(_ENV_PREFIX + "CACHE_DIR")
    if configured:
        return Path(configured).expanduser()
    xdg = os.getenv("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "embedding_gemma"


class EngineConfig(BaseModel):
    """Configuration for the embedding engine.

    Every field defaults from an ``EMBEDDING_GEMMA_*`` environment variable.
    """

    # Model cache root (one subdirectory per model/precision)
    cache_dir: Path = Field(default_factory=_default_cache_dir)
    # Download cache used by the Hugging Face client; None = hub default
    hub_cache_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(_env("HUB_CACHE_DIR", "")) if _env("HUB_CACHE_DIR", "") else None
        )
    )
    embedding_model: str = Field(
        default_factory=lambda: _env("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
    )
    reranker_model: str = Field(
        default_factory=lambda: _env("RERANKER_MODEL", DEFAULT_RERANKER_MODEL)
    )
    default_precision: Precision = Field(
        default_factory=lambda: Precision.parse(_env("PRECISION", "q4f16"))
    )
    embedding_max_tokens: int = Field(
        default_factory=lambda: int(_env("EMBEDDING_MAX_TOKENS", "2048"))
    )
    reranker_max_tokens: int = Field(
        default_factory=lambda: int(_env("RERANKER_MAX_TOKENS", "512"))
    )
    batch_size: int = Field(default_factory=lambda: int(_env("BATCH_SIZE", "32")))
    # Group similar-length inputs to cut padding
    sort_by_length: bool = Field(
        default_factory=lambda: _env_bool("SORT_BY_LENGTH", "true")
    )
    # ONNX execution provider preference: "auto" (detect GPU/CPU), "cpu", or
    # comma-separated list like "CUDAExecutionProvider,CPUExecutionProvider"
    onnx_providers: str = Field(
        default_factory=lambda: _env("ONNX_PROVIDERS", "auto")
    )
    offline: bool = Field(default_factory=lambda: _env_bool("OFFLINE", "false"))
    allow_precision_fallback: bool = Field(
        default_factory=lambda: _env_bool("ALLOW_PRECISION_FALLBACK", "true")
    )
    reranker_calibration: str = Field(
        default_factory=lambda: _env("RERANKER_CALIBRATION", "identity")
    )
    # Cross-request micro-batching
    dispatch_max_batch_size: int = Field(
        default_factory=lambda: int(_env("DISPATCH_MAX_BATCH_SIZE", "32"))
    )
    dispatch_max_wait_ms: float = Field(
        default_factory=lambda: float(_env("DISPATCH_MAX_WAIT_MS", "5"))
    )

    @field_validator("default_precision", mode="before")
    @classmethod
    def _parse_precision(cls, value):
        return Precision.parse(value)

    @field_validator("reranker_calibration")
    @classmethod
    def _check_calibration(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in _CALIBRATIONS:
            raise ValueError(
                f"reranker_calibration must be one of {_CALIBRATIONS}, got {value!r}"
            )
        return value

    @model_validator(mode="after")
    def _validate_sizes(self) -> "EngineConfig":
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.dispatch_max_batch_size < 1:
            raise ValueError("dispatch_max_batch_size must be >= 1")
        if self.dispatch_max_wait_ms < 0:
            raise ValueError("dispatch_max_wait_ms must be >= 0")
        # Room for special tokens plus some content
        if self.embedding_max_tokens < 8:
            raise ValueError("embedding_max_tokens must be >= 8")
        if self.reranker_max_tokens < 8:
            raise ValueError("reranker_max_tokens must be >= 8")
        if self.batch_size * self.embedding_max_tokens > 64 * 8192:
            logger.warning(
                "Embedding config (batch_size=%d, max_tokens=%d) may need a lot "
                "of RAM per batch. Consider reducing batch_size.",
                self.batch_size,
                self.embedding_max_tokens,
            )
        return self


# Create a global config instance
config = EngineConfig()
