"""Content-addressed on-disk cache of model artifacts.

Layout::

    <root>/
        <model-slug>__<precision>/
            onnx/model_q4f16.onnx
            tokenizer.json
            ...
            .artifact.json          # integrity marker, written last
        .tmp-<slot>-<uuid>/         # in-flight writes, never read

A slot directory only becomes visible through an atomic rename of a fully
written temporary directory, so a crash mid-write never leaves a
half-populated slot behind. A slot whose marker parses and whose files
match the recorded sizes is assumed valid and is never re-fetched.
"""

from __future__ import annotations

import errno
import hashlib
import json
import logging
import os
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from embedding_gemma.exceptions import ErrorCode, StorageError
from embedding_gemma.models.schema import (
    CachedArtifact,
    FileRecord,
    IntegrityMarker,
    ModelDescriptor,
)

logger = logging.getLogger(__name__)

MARKER_FILENAME = ".artifact.json"
_TMP_PREFIX = ".tmp-"
_TRASH_PREFIX = ".trash-"
_CHUNK_SIZE = 1024 * 1024

FileSource = Union[bytes, Path]


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _fsync_dir(path: Path) -> None:
    """Flush a directory entry to disk (no-op where unsupported)."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


class ModelCache:
    """On-disk store of model artifacts keyed by (model id, precision).

    ``locate`` is read-only and never touches the network. ``store`` is the
    only mutating path: writers for the same slot are serialized and later
    writers reuse the first writer's result; different slots write in
    parallel.

    Args:
        root: Cache root directory. Created on first store.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self._root = Path(root).expanduser()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def slot_path(self, descriptor: ModelDescriptor) -> Path:
        return self._root / descriptor.slot_name

    def _scratch_dir(self, prefix: str, name: str) -> Path:
        return self._root / f"{prefix}{name}-{uuid.uuid4().hex[:8]}"

    def _slot_lock(self, slot: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(slot)
            if lock is None:
                lock = threading.Lock()
                self._locks[slot] = lock
            return lock

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _read_marker(self, slot_dir: Path) -> Optional[IntegrityMarker]:
        marker_path = slot_dir / MARKER_FILENAME
        try:
            with open(marker_path, "r", encoding="utf-8") as f:
                return IntegrityMarker.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"Unreadable cache marker {marker_path}: {e}")
            return None

    def locate(self, descriptor: ModelDescriptor) -> Optional[CachedArtifact]:
        """Return the cached artifact for ``descriptor``, or None on a miss.

        Checks that the marker belongs to this descriptor, that every
        required file is recorded, and that recorded files exist with the
        recorded size. Content hashes are not recomputed (see ``verify``).
        """
        slot_dir = self.slot_path(descriptor)
        marker = self._read_marker(slot_dir)
        if marker is None:
            return None
        if (
            marker.model_id != descriptor.model_id
            or marker.precision != descriptor.precision
        ):
            logger.warning(
                f"Cache marker in {slot_dir.name} does not match "
                f"{descriptor.model_id} [{descriptor.precision.value}]"
            )
            return None
        missing = [f for f in descriptor.required_files if f not in marker.files]
        if missing:
            logger.warning(f"Cache slot {slot_dir.name} lacks required files {missing}")
            return None
        for name, record in marker.files.items():
            try:
                size = (slot_dir / name).stat().st_size
            except OSError:
                logger.warning(f"Cache slot {slot_dir.name} is missing {name}")
                return None
            if size != record.size:
                logger.warning(
                    f"Cache slot {slot_dir.name}: {name} is {size} bytes, "
                    f"marker says {record.size}"
                )
                return None
        return CachedArtifact(descriptor=descriptor, path=slot_dir, marker=marker)

    def verify(self, artifact: CachedArtifact) -> bool:
        """Recompute content hashes of every file in ``artifact``."""
        for name, record in artifact.marker.files.items():
            try:
                if _sha256_file(artifact.file_path(name)) != record.sha256:
                    logger.warning(f"Hash mismatch for {artifact.path.name}/{name}")
                    return False
            except OSError as e:
                logger.warning(f"Cannot read {artifact.path.name}/{name}: {e}")
                return False
        return True

    def list_artifacts(self) -> List[IntegrityMarker]:
        """Markers of every committed slot under the root."""
        if not self._root.is_dir():
            return []
        markers = []
        for child in sorted(self._root.iterdir()):
            if child.name.startswith(".") or not child.is_dir():
                continue
            marker = self._read_marker(child)
            if marker is not None:
                markers.append(marker)
        return markers

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def store(
        self, descriptor: ModelDescriptor, files: Mapping[str, FileSource]
    ) -> CachedArtifact:
        """Write an artifact into the cache and return it.

        Args:
            descriptor: The variant being stored.
            files: Relative filename to content, either raw ``bytes`` or a
                local ``Path`` to copy from.

        Returns:
            The committed artifact. If another caller committed the same
            slot first, that artifact is returned and ``files`` is ignored.

        Raises:
            StorageError: If the cache root is not writable, the disk is
                full, or a required file is absent from ``files``.
        """
        missing = [f for f in descriptor.required_files if f not in files]
        if missing:
            raise StorageError(
                f"Artifact for {descriptor.model_id} is missing {missing}",
                operation="store",
                code=ErrorCode.STORAGE_INTEGRITY_MISMATCH,
            )

        with self._slot_lock(descriptor.slot_name):
            existing = self.locate(descriptor)
            if existing is not None:
                logger.debug(f"Cache slot {descriptor.slot_name} already committed")
                return existing
            return self._write_slot(descriptor, files)

    def _write_slot(
        self, descriptor: ModelDescriptor, files: Mapping[str, FileSource]
    ) -> CachedArtifact:
        slot_dir = self.slot_path(descriptor)
        tmp_dir = self._scratch_dir(_TMP_PREFIX, descriptor.slot_name)
        try:
            tmp_dir.mkdir(parents=True)
            records: Dict[str, FileRecord] = {}
            for name, source in files.items():
                records[name] = self._write_file(tmp_dir, name, source)

            marker = IntegrityMarker(
                model_id=descriptor.model_id,
                precision=descriptor.precision,
                files=records,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            marker_tmp = tmp_dir / (MARKER_FILENAME + ".part")
            with open(marker_tmp, "w", encoding="utf-8") as f:
                json.dump(marker.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(marker_tmp, tmp_dir / MARKER_FILENAME)
            _fsync_dir(tmp_dir)

            self._publish(tmp_dir, slot_dir)
        except StorageError:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise self._storage_error(e, slot_dir) from e

        total = sum(r.size for r in records.values())
        logger.info(
            f"Cached {descriptor.model_id} [{descriptor.precision.value}] "
            f"in {slot_dir} ({total / 1024**2:.1f}MB, {len(records)} files)"
        )
        return CachedArtifact(descriptor=descriptor, path=slot_dir, marker=marker)

    def _write_file(self, tmp_dir: Path, name: str, source: FileSource) -> FileRecord:
        target = tmp_dir / name
        if tmp_dir.resolve() not in target.resolve().parents:
            raise StorageError(
                f"Refusing to write outside the cache slot: {name}",
                operation="store",
                path=name,
                code=ErrorCode.STORAGE_INTEGRITY_MISMATCH,
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()
        size = 0
        with open(target, "wb") as out:
            if isinstance(source, (bytes, bytearray, memoryview)):
                data = bytes(source)
                out.write(data)
                digest.update(data)
                size = len(data)
            else:
                with open(source, "rb") as src:
                    for chunk in iter(lambda: src.read(_CHUNK_SIZE), b""):
                        out.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
            out.flush()
            os.fsync(out.fileno())
        return FileRecord(size=size, sha256=digest.hexdigest())

    def _publish(self, tmp_dir: Path, slot_dir: Path) -> None:
        """Atomically move a finished temporary directory into place."""
        if slot_dir.exists():
            # Stale or foreign slot without a valid marker: move it aside first
            trash = self._scratch_dir(_TRASH_PREFIX, slot_dir.name)
            os.replace(slot_dir, trash)
            shutil.rmtree(trash, ignore_errors=True)
        os.replace(tmp_dir, slot_dir)
        _fsync_dir(self._root)

    def _storage_error(self, error: OSError, slot_dir: Path) -> StorageError:
        if error.errno == errno.ENOSPC:
            code = ErrorCode.STORAGE_DISK_FULL
            message = "No space left on device while caching model"
        elif error.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
            code = ErrorCode.STORAGE_NOT_WRITABLE
            message = f"Model cache is not writable: {self._root}"
        else:
            code = ErrorCode.STORAGE_WRITE_FAILED
            message = f"Failed to write model cache slot: {error}"
        logger.error(message)
        return StorageError(
            message,
            operation="store",
            path=str(slot_dir),
            code=code,
            original_error=error,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_temporary(self) -> int:
        """Remove leftovers of interrupted writes. Returns the count removed.

        Only call when no writer in this or another process is active.
        """
        if not self._root.is_dir():
            return 0
        removed = 0
        for child in self._root.iterdir():
            if child.name.startswith((_TMP_PREFIX, _TRASH_PREFIX)):
                shutil.rmtree(child, ignore_errors=True)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} interrupted write(s) from {self._root}")
        return removed

    def evict(self, descriptor: ModelDescriptor) -> bool:
        """Delete a committed slot. Returns True if something was removed."""
        slot_dir = self.slot_path(descriptor)
        with self._slot_lock(descriptor.slot_name):
            if not slot_dir.exists():
                return False
            trash = self._scratch_dir(_TRASH_PREFIX, slot_dir.name)
            try:
                os.replace(slot_dir, trash)
            except OSError as e:
                raise self._storage_error(e, slot_dir) from e
            shutil.rmtree(trash, ignore_errors=True)
        logger.info(f"Evicted {descriptor.model_id} [{descriptor.precision.value}]")
        return True
