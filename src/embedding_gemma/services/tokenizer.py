"""Text to token ids, using the model's own ``tokenizer.json``.

Special tokens and pair templates come from the tokenizer's post-processor,
so the same encoder serves single texts (embedding) and query/document
pairs (reranking). Padding is left to the batch scheduler.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence

from tokenizers import Encoding, Tokenizer

from embedding_gemma.exceptions import ErrorCode, InvalidInputError
from embedding_gemma.models.schema import CachedArtifact, EncodedInput

logger = logging.getLogger(__name__)

_COMMON_PAD_TOKENS = ("<pad>", "[PAD]", "<|pad|>")


def _token_content(value: Any) -> Optional[str]:
    """tokenizer_config.json stores special tokens as str or {"content": str}."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        content = value.get("content")
        return content if isinstance(content, str) else None
    return None


def resolve_pad_token_id(
    tokenizer: Tokenizer, config_path: Optional[Path] = None
) -> int:
    """Find the pad token id for a tokenizer.

    Order: ``pad_token`` in tokenizer_config.json, the tokenizer's own
    padding setup, well-known pad token strings, then 0.
    """
    if config_path is not None and config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                pad_token = _token_content(json.load(f).get("pad_token"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {config_path}: {e}")
            pad_token = None
        if pad_token is not None:
            pad_id = tokenizer.token_to_id(pad_token)
            if pad_id is not None:
                return pad_id

    padding = tokenizer.padding
    if padding and padding.get("pad_id") is not None:
        return int(padding["pad_id"])

    for token in _COMMON_PAD_TOKENS:
        pad_id = tokenizer.token_to_id(token)
        if pad_id is not None:
            return pad_id
    return 0


class TextEncoder:
    """Deterministic text encoder with right-truncation reporting.

    The encoder keeps private copies of the tokenizer so the caller's
    instance is never reconfigured, and never changes its own
    configuration after construction; it is safe to share between threads.

    Args:
        tokenizer: A ``tokenizers.Tokenizer`` for the model.
        max_length: Maximum sequence length, special tokens included.
        pad_token_id: Id used by the batch scheduler for padding.
    """

    def __init__(
        self, tokenizer: Tokenizer, max_length: int, pad_token_id: int = 0
    ) -> None:
        if max_length < 1:
            raise InvalidInputError(
                "max_length must be >= 1", field="max_length", value=max_length
            )
        serialized = tokenizer.to_str()
        self._max_length = max_length
        self._pad_token_id = pad_token_id

        self._tokenizer = Tokenizer.from_str(serialized)
        self._tokenizer.no_padding()
        self._tokenizer.enable_truncation(max_length=max_length, direction="right")

        # Untruncated twin, consulted only to confirm that a full-length
        # encoding actually lost tokens
        self._untruncated = Tokenizer.from_str(serialized)
        self._untruncated.no_padding()
        self._untruncated.no_truncation()

    @classmethod
    def from_artifact(
        cls, artifact: CachedArtifact, max_length: Optional[int] = None
    ) -> "TextEncoder":
        """Build an encoder from a cached artifact's tokenizer files."""
        tokenizer = Tokenizer.from_file(str(artifact.tokenizer_path))
        config_path = (
            artifact.file_path("tokenizer_config.json")
            if artifact.has_file("tokenizer_config.json")
            else None
        )
        limit = artifact.descriptor.max_length
        if max_length is not None:
            limit = min(limit, max_length)
        return cls(tokenizer, limit, resolve_pad_token_id(tokenizer, config_path))

    @property
    def max_length(self) -> int:
        return self._max_length

    @property
    def pad_token_id(self) -> int:
        return self._pad_token_id

    @staticmethod
    def _check_text(value: Any, field: str) -> str:
        if not isinstance(value, str):
            raise InvalidInputError(
                f"{field} must be a string, got {type(value).__name__}",
                field=field,
                value=value,
                code=ErrorCode.INPUT_INVALID,
            )
        return value

    def _was_truncated(self, encoding: Encoding, *texts: str) -> bool:
        if len(encoding.ids) < self._max_length:
            return False
        return len(self._untruncated.encode(*texts).ids) > self._max_length

    def _to_input(
        self, encoding: Encoding, index: int, truncated: bool
    ) -> EncodedInput:
        return EncodedInput(
            ids=tuple(encoding.ids),
            attention_mask=tuple(encoding.attention_mask),
            type_ids=tuple(encoding.type_ids),
            index=index,
            truncated=truncated,
        )

    def encode(self, text: str, index: int = 0) -> EncodedInput:
        """Encode one text for embedding."""
        text = self._check_text(text, "text")
        encoding = self._tokenizer.encode(text)
        return self._to_input(encoding, index, self._was_truncated(encoding, text))

    def encode_pair(self, query: str, document: str, index: int = 0) -> EncodedInput:
        """Encode a (query, document) pair with the model's pair template."""
        query = self._check_text(query, "query")
        document = self._check_text(document, "document")
        encoding = self._tokenizer.encode(query, document)
        return self._to_input(
            encoding, index, self._was_truncated(encoding, query, document)
        )

    def encode_batch(self, texts: Sequence[str]) -> List[EncodedInput]:
        """Encode texts; ``index`` of each result is its position in ``texts``."""
        texts = [self._check_text(t, "text") for t in texts]
        if not texts:
            return []
        encodings = self._tokenizer.encode_batch(texts)
        return [
            self._to_input(enc, i, self._was_truncated(enc, text))
            for i, (enc, text) in enumerate(zip(encodings, texts))
        ]

    def encode_pairs(
        self, query: str, documents: Sequence[str]
    ) -> List[EncodedInput]:
        """Encode ``query`` against every document, indexed by document position."""
        query = self._check_text(query, "query")
        documents = [self._check_text(d, "document") for d in documents]
        if not documents:
            return []
        encodings = self._tokenizer.encode_batch([(query, d) for d in documents])
        return [
            self._to_input(enc, i, self._was_truncated(enc, query, doc))
            for i, (enc, doc) in enumerate(zip(encodings, documents))
        ]
