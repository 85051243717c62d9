"""Tests for the on-disk model cache."""
import errno
import json
import threading
from unittest.mock import patch

import pytest

from embedding_gemma.exceptions import ErrorCode, StorageError
from embedding_gemma.models.catalog import ModelCatalog
from embedding_gemma.models.schema import Precision, Role
from embedding_gemma.storage.model_cache import MARKER_FILENAME, ModelCache


@pytest.fixture
def descriptor():
    return ModelCatalog().describe(Role.EMBEDDING, Precision.Q4)


@pytest.fixture
def files(descriptor):
    return {
        descriptor.graph_file: b"graph-bytes",
        "tokenizer.json": b'{"model": {}}',
        "tokenizer_config.json": b'{"pad_token": "[PAD]"}',
    }


class TestLocate:
    def test_miss_on_empty_cache(self, model_cache, descriptor):
        assert model_cache.locate(descriptor) is None

    def test_store_then_locate(self, model_cache, descriptor, files):
        stored = model_cache.store(descriptor, files)
        found = model_cache.locate(descriptor)

        assert found is not None
        assert found.path == stored.path == model_cache.slot_path(descriptor)
        assert found.descriptor == descriptor
        assert found.graph_path.read_bytes() == b"graph-bytes"
        assert found.tokenizer_path.exists()
        assert found.size_bytes == sum(len(v) for v in files.values())
        assert model_cache.verify(found)

    def test_optional_files_may_be_absent(self, model_cache, descriptor, files):
        del files["tokenizer_config.json"]
        artifact = model_cache.store(descriptor, files)
        assert not artifact.has_file("tokenizer_config.json")
        assert model_cache.locate(descriptor) is not None

    def test_size_mismatch_is_a_miss(self, model_cache, descriptor, files):
        artifact = model_cache.store(descriptor, files)
        artifact.graph_path.write_bytes(b"truncated")
        assert model_cache.locate(descriptor) is None

    def test_deleted_file_is_a_miss(self, model_cache, descriptor, files):
        artifact = model_cache.store(descriptor, files)
        artifact.tokenizer_path.unlink()
        assert model_cache.locate(descriptor) is None

    def test_verify_detects_same_size_corruption(self, model_cache, descriptor, files):
        artifact = model_cache.store(descriptor, files)
        artifact.graph_path.write_bytes(b"GRAPH-BYTES")
        # Sizes still match, so locate trusts the slot; verify does not
        assert model_cache.locate(descriptor) is not None
        assert not model_cache.verify(artifact)

    def test_foreign_marker_is_a_miss(self, model_cache, descriptor, files):
        artifact = model_cache.store(descriptor, files)
        marker_path = artifact.path / MARKER_FILENAME
        data = json.loads(marker_path.read_text())
        data["model_id"] = "someone/else"
        marker_path.write_text(json.dumps(data))
        assert model_cache.locate(descriptor) is None

    def test_garbled_marker_is_a_miss(self, model_cache, descriptor, files):
        artifact = model_cache.store(descriptor, files)
        (artifact.path / MARKER_FILENAME).write_text("{not json")
        assert model_cache.locate(descriptor) is None

    def test_half_written_slot_never_visible(self, model_cache, descriptor, cache_dir):
        """A slot directory without a marker is treated as absent."""
        slot = model_cache.slot_path(descriptor)
        (slot / "onnx").mkdir(parents=True)
        (slot / descriptor.graph_file).write_bytes(b"partial")
        assert model_cache.locate(descriptor) is None


class TestStore:
    def test_missing_required_file(self, model_cache, descriptor, files):
        del files["tokenizer.json"]
        with pytest.raises(StorageError) as exc_info:
            model_cache.store(descriptor, files)
        assert exc_info.value.code is ErrorCode.STORAGE_INTEGRITY_MISMATCH
        assert model_cache.locate(descriptor) is None

    def test_second_store_reuses_committed_slot(self, model_cache, descriptor, files):
        first = model_cache.store(descriptor, files)
        changed = dict(files, **{descriptor.graph_file: b"other-graph"})
        second = model_cache.store(descriptor, changed)

        assert second.path == first.path
        assert second.graph_path.read_bytes() == b"graph-bytes"

    def test_store_from_local_paths(self, model_cache, descriptor, files, tmp_path):
        sources = {}
        for name, data in files.items():
            src = tmp_path / "download" / name
            src.parent.mkdir(parents=True, exist_ok=True)
            src.write_bytes(data)
            sources[name] = src

        artifact = model_cache.store(descriptor, sources)
        assert artifact.graph_path.read_bytes() == b"graph-bytes"
        assert model_cache.verify(artifact)

    def test_replaces_stale_unmarked_slot(self, model_cache, descriptor, files):
        slot = model_cache.slot_path(descriptor)
        slot.mkdir(parents=True)
        (slot / "leftover.bin").write_bytes(b"junk")

        artifact = model_cache.store(descriptor, files)
        assert not (artifact.path / "leftover.bin").exists()
        assert model_cache.locate(descriptor) is not None

    def test_rejects_paths_outside_slot(self, model_cache, descriptor, files):
        files["../escape.txt"] = b"x"
        with pytest.raises(StorageError) as exc_info:
            model_cache.store(descriptor, files)
        assert exc_info.value.code is ErrorCode.STORAGE_INTEGRITY_MISMATCH
        assert not (model_cache.root / "escape.txt").exists()

    @pytest.mark.parametrize(
        "err,code",
        [
            (errno.ENOSPC, ErrorCode.STORAGE_DISK_FULL),
            (errno.EACCES, ErrorCode.STORAGE_NOT_WRITABLE),
            (errno.EIO, ErrorCode.STORAGE_WRITE_FAILED),
        ],
    )
    def test_os_errors_become_storage_errors(
        self, model_cache, descriptor, files, err, code
    ):
        with patch(
            "embedding_gemma.storage.model_cache.os.fsync",
            side_effect=OSError(err, "simulated"),
        ):
            with pytest.raises(StorageError) as exc_info:
                model_cache.store(descriptor, files)

        assert exc_info.value.code is code
        assert model_cache.locate(descriptor) is None
        # The temporary directory is cleaned up
        leftovers = [p for p in model_cache.root.iterdir() if p.name.startswith(".")]
        assert leftovers == []

    def test_concurrent_stores_commit_once(self, model_cache, descriptor, files):
        results = []
        errors = []

        def worker():
            try:
                results.append(model_cache.store(descriptor, files))
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({r.marker.created_at for r in results}) == 1
        assert len({r.path for r in results}) == 1


class TestMaintenance:
    def test_list_artifacts(self, model_cache, files):
        catalog = ModelCatalog()
        q4 = catalog.describe(Role.EMBEDDING, Precision.Q4)
        fp16 = catalog.describe(Role.EMBEDDING, Precision.FP16)
        model_cache.store(q4, files | {q4.graph_file: b"a"})
        model_cache.store(fp16, {**files, fp16.graph_file: b"b"})

        markers = model_cache.list_artifacts()
        assert {m.precision for m in markers} == {Precision.Q4, Precision.FP16}

    def test_list_artifacts_without_root(self, tmp_path):
        assert ModelCache(tmp_path / "missing").list_artifacts() == []

    def test_purge_temporary(self, model_cache, descriptor, files):
        model_cache.store(descriptor, files)
        (model_cache.root / ".tmp-crashed-1234").mkdir()
        (model_cache.root / ".trash-old-5678").mkdir()

        assert model_cache.purge_temporary() == 2
        assert model_cache.locate(descriptor) is not None

    def test_evict(self, model_cache, descriptor, files):
        model_cache.store(descriptor, files)
        assert model_cache.evict(descriptor) is True
        assert model_cache.locate(descriptor) is None
        assert model_cache.evict(descriptor) is False
