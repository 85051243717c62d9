"""Model resolution: logical request to a cached, usable artifact.

Resolution order is cache first, then the artifact fetcher, then store.
Concurrent resolutions of the same variant are single-flight: one caller
fetches, the rest wait on the same per-slot lock and pick up the
committed artifact from the cache.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Union

from embedding_gemma.exceptions import ErrorCode, FetchError, ModelUnavailable
from embedding_gemma.models.catalog import ModelCatalog
from embedding_gemma.models.schema import (
    CachedArtifact,
    ModelDescriptor,
    Precision,
    Role,
)
from embedding_gemma.observability import timed_operation
from embedding_gemma.services.embedding_types import ArtifactFetcher
from embedding_gemma.storage.model_cache import ModelCache

logger = logging.getLogger(__name__)


class ModelResolver:
    """Maps (role, precision hint) to a cached artifact.

    Args:
        cache: The on-disk model cache.
        fetcher: Source of artifacts on a cache miss. None means offline.
        catalog: Known models per role.
        offline: Never call the fetcher, only use cached artifacts.
        allow_fallback: When the default precision cannot be fetched, use
            another cached precision of the same model instead of failing.
            Explicit precision hints are never substituted.
    """

    def __init__(
        self,
        cache: ModelCache,
        fetcher: Optional[ArtifactFetcher] = None,
        catalog: Optional[ModelCatalog] = None,
        offline: bool = False,
        allow_fallback: bool = True,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._catalog = catalog or ModelCatalog()
        self._offline = offline or fetcher is None
        self._allow_fallback = allow_fallback
        self._inflight: Dict[str, threading.Lock] = {}
        self._inflight_guard = threading.Lock()

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def cache(self) -> ModelCache:
        return self._cache

    def _slot_lock(self, slot: str) -> threading.Lock:
        with self._inflight_guard:
            lock = self._inflight.get(slot)
            if lock is None:
                lock = threading.Lock()
                self._inflight[slot] = lock
            return lock

    def resolve(
        self,
        role: Union[Role, str],
        precision_hint: Optional[Union[Precision, str]] = None,
    ) -> ModelDescriptor:
        """Resolve a request to a descriptor whose artifact is cached.

        Raises:
            ModelUnavailable: Unknown precision, or the artifact can't be
                fetched and no cached fallback exists.
            StorageError: The fetched artifact could not be written.
        """
        return self.resolve_artifact(role, precision_hint).descriptor

    def resolve_artifact(
        self,
        role: Union[Role, str],
        precision_hint: Optional[Union[Precision, str]] = None,
    ) -> CachedArtifact:
        """Like ``resolve`` but returns the cached artifact with its location."""
        role = Role(role)
        descriptor = self._catalog.describe(role, precision_hint)

        with timed_operation(
            "resolve", role=role.value, precision=descriptor.precision.value
        ) as op:
            artifact = self._cache.locate(descriptor)
            if artifact is not None:
                op["source"] = "cache"
                return artifact

            with self._slot_lock(descriptor.slot_name):
                # Another caller may have committed while we waited
                artifact = self._cache.locate(descriptor)
                if artifact is not None:
                    op["source"] = "cache"
                    return artifact

                outcome = self._fetch_and_store(descriptor)
                if isinstance(outcome, CachedArtifact):
                    op["source"] = "fetch"
                    return outcome
                failure = outcome

            if self._allow_fallback and precision_hint is None:
                fallback = self._cached_fallback(descriptor)
                if fallback is not None:
                    logger.warning(
                        f"{descriptor.model_id} [{descriptor.precision.value}] "
                        f"unavailable ({failure}); using cached "
                        f"[{fallback.descriptor.precision.value}] instead"
                    )
                    op["source"] = "fallback"
                    return fallback

            raise ModelUnavailable(
                f"{descriptor.model_id} [{descriptor.precision.value}] is not "
                f"cached and could not be fetched",
                role=role.value,
                precision=descriptor.precision.value,
                code=(
                    ErrorCode.MODEL_OFFLINE
                    if self._offline
                    else ErrorCode.MODEL_UNAVAILABLE
                ),
                original_error=failure,
            ) from failure

    def _fetch_and_store(
        self, descriptor: ModelDescriptor
    ) -> Union[CachedArtifact, Exception]:
        """Fetch and store; returns the artifact, or the fetch failure."""
        if self._offline:
            logger.info(
                f"Offline: not fetching {descriptor.model_id} "
                f"[{descriptor.precision.value}]"
            )
            return FetchError(
                "offline mode",
                model_id=descriptor.model_id,
                precision=descriptor.precision.value,
            )
        try:
            files = self._fetcher.fetch(
                descriptor.model_id,
                descriptor.precision.value,
                files=descriptor.files,
                optional_files=descriptor.optional_files,
            )
        except FetchError as e:
            logger.error(f"Fetch failed for {descriptor.model_id}: {e}")
            return e
        # StorageError propagates: the fetch worked, the disk didn't
        return self._cache.store(descriptor, files)

    def _cached_fallback(
        self, descriptor: ModelDescriptor
    ) -> Optional[CachedArtifact]:
        for candidate in self._catalog.fallback_descriptors(
            descriptor.role, exclude=descriptor.precision
        ):
            artifact = self._cache.locate(candidate)
            if artifact is not None:
                return artifact
        return None
