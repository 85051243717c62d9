"""Tests for model resolution: cache first, fetch on miss, single-flight."""
import threading

import pytest

from embedding_gemma.exceptions import (
    ErrorCode,
    FetchError,
    ModelUnavailable,
    StorageError,
)
from embedding_gemma.models.catalog import DEFAULT_EMBEDDING_MODEL
from embedding_gemma.models.schema import Precision, Role
from embedding_gemma.observability import metrics
from embedding_gemma.services.resolver import ModelResolver
from tests.fakes import FakeArtifactFetcher


@pytest.fixture
def resolver(model_cache, fetcher):
    return ModelResolver(model_cache, fetcher=fetcher)


class TestResolve:
    def test_cold_then_warm(self, resolver, fetcher):
        """Second resolution is served from the cache without fetching."""
        cold = resolver.resolve(Role.EMBEDDING, Precision.Q4)
        assert fetcher.fetch_count == 1

        warm = resolver.resolve(Role.EMBEDDING, Precision.Q4)
        assert warm == cold
        assert fetcher.fetch_count == 1

    def test_descriptor_contents(self, resolver):
        descriptor = resolver.resolve("embedding", "q4f16")
        assert descriptor.model_id == DEFAULT_EMBEDDING_MODEL
        assert descriptor.precision is Precision.Q4F16
        assert descriptor.graph_file == "onnx/model_q4f16.onnx"
        assert descriptor.dimension == 768

    def test_default_precision(self, resolver):
        assert resolver.resolve(Role.EMBEDDING).precision is Precision.Q4F16
        assert resolver.resolve(Role.RERANKER).precision is Precision.FP32

    def test_warm_cache_survives_new_resolver(self, model_cache, fetcher):
        """A committed slot is reused by a fresh process without a fetcher."""
        ModelResolver(model_cache, fetcher=fetcher).resolve(Role.EMBEDDING)
        offline = ModelResolver(model_cache, fetcher=None)
        assert offline.resolve(Role.EMBEDDING).precision is Precision.Q4F16
        assert fetcher.fetch_count == 1

    def test_records_metrics(self, resolver):
        resolver.resolve(Role.EMBEDDING)
        resolver.resolve(Role.EMBEDDING)
        assert metrics.get_metrics()["resolve"]["count"] == 2

    def test_unknown_precision(self, resolver, fetcher):
        with pytest.raises(ModelUnavailable) as exc_info:
            resolver.resolve(Role.EMBEDDING, "int3")
        assert exc_info.value.code is ErrorCode.MODEL_UNKNOWN_PRECISION
        assert fetcher.fetch_count == 0

    def test_unsupported_precision_for_role(self, resolver):
        with pytest.raises(ModelUnavailable) as exc_info:
            resolver.resolve(Role.RERANKER, Precision.Q4)
        assert exc_info.value.code is ErrorCode.MODEL_UNKNOWN_PRECISION


class TestFailures:
    def test_fetch_failure_is_model_unavailable(self, model_cache, tokenizer):
        fetcher = FakeArtifactFetcher(tokenizer)
        fetcher.fail_with = FetchError("connection refused")
        resolver = ModelResolver(model_cache, fetcher=fetcher)

        with pytest.raises(ModelUnavailable) as exc_info:
            resolver.resolve(Role.EMBEDDING, Precision.Q4)
        assert exc_info.value.code is ErrorCode.MODEL_UNAVAILABLE
        assert isinstance(exc_info.value.__cause__, FetchError)

    def test_offline_miss(self, model_cache, fetcher):
        resolver = ModelResolver(model_cache, fetcher=fetcher, offline=True)
        with pytest.raises(ModelUnavailable) as exc_info:
            resolver.resolve(Role.EMBEDDING)
        assert exc_info.value.code is ErrorCode.MODEL_OFFLINE
        assert fetcher.fetch_count == 0

    def test_storage_error_propagates(self, model_cache, tokenizer):
        """A fetch that worked but can't be written is a StorageError."""

        class IncompleteFetcher(FakeArtifactFetcher):
            def fetch(self, model_id, precision, files=(), optional_files=()):
                out = super().fetch(model_id, precision, files, optional_files)
                out.pop("tokenizer.json")
                return out

        resolver = ModelResolver(model_cache, fetcher=IncompleteFetcher(tokenizer))
        with pytest.raises(StorageError):
            resolver.resolve(Role.EMBEDDING)

    def test_failed_fetch_can_be_retried(self, model_cache, fetcher):
        resolver = ModelResolver(model_cache, fetcher=fetcher)
        fetcher.fail_with = FetchError("temporary outage")
        with pytest.raises(ModelUnavailable):
            resolver.resolve(Role.EMBEDDING)

        fetcher.fail_with = None
        assert resolver.resolve(Role.EMBEDDING).precision is Precision.Q4F16
        assert fetcher.fetch_count == 2


class TestFallback:
    def test_default_falls_back_to_cached_variant(self, model_cache, tokenizer):
        fetcher = FakeArtifactFetcher(tokenizer, available=["fp16"])
        resolver = ModelResolver(model_cache, fetcher=fetcher)
        resolver.resolve(Role.EMBEDDING, Precision.FP16)

        # Default (q4f16) can't be fetched; the cached fp16 stands in
        descriptor = resolver.resolve(Role.EMBEDDING)
        assert descriptor.precision is Precision.FP16

    def test_explicit_hint_never_substituted(self, model_cache, tokenizer):
        fetcher = FakeArtifactFetcher(tokenizer, available=["fp16"])
        resolver = ModelResolver(model_cache, fetcher=fetcher)
        resolver.resolve(Role.EMBEDDING, Precision.FP16)

        with pytest.raises(ModelUnavailable):
            resolver.resolve(Role.EMBEDDING, Precision.Q4F16)

    def test_fallback_disabled(self, model_cache, tokenizer):
        fetcher = FakeArtifactFetcher(tokenizer, available=["fp16"])
        resolver = ModelResolver(model_cache, fetcher=fetcher, allow_fallback=False)
        resolver.resolve(Role.EMBEDDING, Precision.FP16)

        with pytest.raises(ModelUnavailable):
            resolver.resolve(Role.EMBEDDING)

    def test_offline_uses_cached_fallback(self, model_cache, fetcher):
        ModelResolver(model_cache, fetcher=fetcher).resolve(Role.EMBEDDING, "q8")
        offline = ModelResolver(model_cache, fetcher=fetcher, offline=True)
        assert offline.resolve(Role.EMBEDDING).precision is Precision.Q8


class TestConcurrency:
    def test_concurrent_resolution_fetches_once(self, model_cache, tokenizer):
        fetcher = FakeArtifactFetcher(tokenizer, delay=0.05)
        resolver = ModelResolver(model_cache, fetcher=fetcher)
        barrier = threading.Barrier(8)
        results = []
        errors = []

        def worker():
            barrier.wait()
            try:
                results.append(resolver.resolve(Role.EMBEDDING, Precision.Q4))
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert fetcher.fetch_count == 1
        assert len(results) == 8
        assert all(r == results[0] for r in results)

    def test_different_variants_resolve_independently(self, model_cache, fetcher):
        resolver = ModelResolver(model_cache, fetcher=fetcher)
        threads = [
            threading.Thread(target=resolver.resolve, args=(Role.EMBEDDING, p))
            for p in ("q4", "fp16", "q8")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(p for _, p in fetcher.calls) == ["fp16", "q4", "q8"]
