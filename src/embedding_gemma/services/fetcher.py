"""Artifact fetcher backed by the Hugging Face Hub.

Downloads individual model files with ``hf_hub_download`` and hands their
local paths to the model cache, which copies them into its own slot
layout. The hub client does its own retries and resumable downloads; any
failure it reports is final for the call.
"""

from __future__ import annotations

import logging
import time as _time
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

from embedding_gemma.exceptions import FetchError

logger = logging.getLogger(__name__)

# Lazy import, populated by _ensure_imports()
_hf_hub = None


def _ensure_imports() -> None:
    """Import huggingface_hub, raising a clear error if missing."""
    global _hf_hub
    if _hf_hub is None:
        try:
            import huggingface_hub as hfh

            _hf_hub = hfh
        except ImportError:
            raise ImportError(
                "huggingface-hub is required to download models. "
                "Install with: pip install huggingface-hub"
            )


class HuggingFaceFetcher:
    """Fetch model files from a Hugging Face Hub repository.

    Args:
        cache_dir: Directory for the hub's own download cache. None uses
            the hub default (``HF_HUB_CACHE``).
        revision: Git revision to pin downloads to.
        token: Access token for gated repositories. None lets the hub
            client read ``HF_TOKEN`` or the saved login.
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        revision: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        self._cache_dir = cache_dir
        self._revision = revision
        self._token = token

    def fetch(
        self,
        model_id: str,
        precision: str,
        files: Sequence[str] = (),
        optional_files: Sequence[str] = (),
    ) -> Dict[str, Union[bytes, Path]]:
        """Download ``files`` from ``model_id`` and return their local paths.

        Files listed in ``optional_files`` are skipped when the repository
        does not contain them.

        Raises:
            FetchError: On any hub, network or filesystem failure.
        """
        _ensure_imports()
        from huggingface_hub.errors import EntryNotFoundError

        optional = set(optional_files)
        fetched: Dict[str, Union[bytes, Path]] = {}
        t0 = _time.perf_counter()
        logger.info(f"Downloading {model_id} [{precision}]: {list(files)}")

        for filename in files:
            try:
                local = _hf_hub.hf_hub_download(
                    repo_id=model_id,
                    filename=filename,
                    revision=self._revision,
                    cache_dir=str(self._cache_dir) if self._cache_dir else None,
                    token=self._token,
                )
            except EntryNotFoundError as e:
                if filename in optional:
                    logger.debug(f"{model_id} has no optional file {filename}")
                    continue
                raise FetchError(
                    f"{model_id} has no file {filename}",
                    model_id=model_id,
                    precision=precision,
                    original_error=e,
                ) from e
            except Exception as e:
                # Hub errors span requests/httpx/OSError depending on version
                raise FetchError(
                    f"Failed to download {filename} from {model_id}: {e}",
                    model_id=model_id,
                    precision=precision,
                    original_error=e,
                ) from e
            fetched[filename] = Path(local)

        logger.info(
            f"Downloaded {model_id} [{precision}]: {len(fetched)} files "
            f"in {_time.perf_counter() - t0:.1f}s"
        )
        return fetched
