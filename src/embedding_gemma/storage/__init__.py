"""Storage layer for the embedding engine."""
from embedding_gemma.storage.model_cache import MARKER_FILENAME, ModelCache

__all__ = ["MARKER_FILENAME", "ModelCache"]
