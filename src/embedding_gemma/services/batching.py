"""Batch formation: grouping and right-padding encoded inputs.

A pure transform. No numeric computation happens here; every Batch keeps
the original positions of its rows so results can be scattered back into
the caller's order.
"""

from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from embedding_gemma.exceptions import InvalidInputError
from embedding_gemma.models.schema import Batch, EncodedInput

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Split encoded inputs into padded batches.

    Args:
        max_batch_size: Upper bound on rows per batch.
        pad_token_id: Token id written into padded positions.
        sort_by_length: Group inputs of similar length together before
            splitting, so short texts are not padded to a long neighbour.
            Results are unaffected: attention masks exclude padding and
            ``Batch.indices`` restores the original order.
    """

    def __init__(
        self,
        max_batch_size: int = 32,
        pad_token_id: int = 0,
        sort_by_length: bool = False,
    ) -> None:
        if max_batch_size < 1:
            raise InvalidInputError(
                "max_batch_size must be >= 1",
                field="max_batch_size",
                value=max_batch_size,
            )
        self._max_batch_size = max_batch_size
        self._pad_token_id = pad_token_id
        self._sort_by_length = sort_by_length

    @property
    def max_batch_size(self) -> int:
        return self._max_batch_size

    def _validate(self, inputs: Sequence[EncodedInput]) -> None:
        seen = set()
        for item in inputs:
            if len(item.attention_mask) != len(item.ids):
                raise InvalidInputError(
                    f"Input {item.index}: {len(item.ids)} ids but "
                    f"{len(item.attention_mask)} mask entries",
                    field="attention_mask",
                )
            if item.type_ids and len(item.type_ids) != len(item.ids):
                raise InvalidInputError(
                    f"Input {item.index}: type_ids length does not match ids",
                    field="type_ids",
                )
            if item.index in seen:
                raise InvalidInputError(
                    f"Duplicate input index {item.index}",
                    field="index",
                    value=item.index,
                )
            seen.add(item.index)

    def schedule(self, inputs: Sequence[EncodedInput]) -> List[Batch]:
        """Group ``inputs`` into batches padded to each batch's longest member.

        Returns:
            Batches in execution order; empty input gives an empty list.

        Raises:
            InvalidInputError: On mismatched ids/mask lengths or duplicate
                indices.
        """
        if not inputs:
            return []
        self._validate(inputs)

        ordered = list(inputs)
        if self._sort_by_length:
            # Stable: equal lengths keep their relative order
            ordered.sort(key=len)

        batches = [
            self._pad(ordered[start : start + self._max_batch_size])
            for start in range(0, len(ordered), self._max_batch_size)
        ]
        logger.debug(
            f"Scheduled {len(inputs)} inputs into {len(batches)} batches "
            f"(max_batch_size={self._max_batch_size}, "
            f"seq_lens={[b.seq_len for b in batches]})"
        )
        return batches

    def _pad(self, group: Sequence[EncodedInput]) -> Batch:
        # Zero-length inputs still need one (masked) column for the backend
        max_len = max(1, max(len(item) for item in group))
        rows = len(group)

        input_ids = np.full((rows, max_len), self._pad_token_id, dtype=np.int64)
        attention_mask = np.zeros((rows, max_len), dtype=np.int64)
        token_type_ids = np.zeros((rows, max_len), dtype=np.int64)

        for i, item in enumerate(group):
            length = len(item)
            if length == 0:
                continue
            input_ids[i, :length] = item.ids
            attention_mask[i, :length] = item.attention_mask
            if item.type_ids:
                token_type_ids[i, :length] = item.type_ids

        return Batch(
            input_ids=input_ids,
            attention_mask=attention_mask,
            token_type_ids=token_type_ids,
            indices=tuple(item.index for item in group),
            truncated=tuple(item.truncated for item in group),
        )
