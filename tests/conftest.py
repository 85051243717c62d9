"""Common test fixtures for the embedding engine."""
import pytest

from embedding_gemma.config import EngineConfig
from embedding_gemma.observability import metrics
from embedding_gemma.registry import ModelRegistry
from embedding_gemma.storage.model_cache import ModelCache
from tests.fakes import FakeArtifactFetcher, FakeBackend, build_tokenizer


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts with empty operation metrics."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(scope="session")
def tokenizer():
    return build_tokenizer()


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "models"


@pytest.fixture
def model_cache(cache_dir):
    return ModelCache(cache_dir)


@pytest.fixture
def fetcher(tokenizer):
    return FakeArtifactFetcher(tokenizer)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def engine_config(cache_dir):
    """Config with small batches so multi-batch paths are exercised."""
    return EngineConfig(
        cache_dir=cache_dir,
        batch_size=4,
        sort_by_length=True,
        offline=False,
        allow_precision_fallback=True,
        reranker_calibration="identity",
    )


@pytest.fixture
def registry(engine_config, fetcher, backend, model_cache):
    reg = ModelRegistry(
        config=engine_config, fetcher=fetcher, backend=backend, cache=model_cache
    ).initialize()
    yield reg
    reg.shutdown()


@pytest.fixture
def embedder(registry):
    emb = registry.create_embedder()
    yield emb
    emb.close()


@pytest.fixture
def reranker(registry):
    rr = registry.create_reranker()
    yield rr
    rr.close()
