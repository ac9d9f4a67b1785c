from __future__ import annotations

import logging
from typing import Optional

from mediavault.config import runtime_config
from mediavault.storage.backends import BlobStorage, InMemoryBlobStorage
from mediavault.storage.url_cache import DownloadUrlCache

logger = logging.getLogger(__name__)

_default_storage: Optional[BlobStorage] = None
_default_url_cache: Optional[DownloadUrlCache] = None


def _build_storage() -> BlobStorage:
    backend = runtime_config.get_storage_backend()
    if backend == "local":
        from mediavault.storage.local import LocalBlobStorage

        return LocalBlobStorage()
    if backend == "gcs":
        from mediavault.storage.gcs import GcsBlobStorage

        return GcsBlobStorage()
    if backend != "memory":
        raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")
    return InMemoryBlobStorage()


def get_blob_storage() -> BlobStorage:
    global _default_storage
    if _default_storage is None:
        _default_storage = _build_storage()
        logger.info(f"Blob storage backend: {type(_default_storage).__name__}")
    return _default_storage


def set_blob_storage(storage: Optional[BlobStorage]) -> None:
    """Override the default backend (useful for tests). None resets to env selection."""
    global _default_storage
    _default_storage = storage


def get_url_cache() -> DownloadUrlCache:
    global _default_url_cache
    if _default_url_cache is None:
        _default_url_cache = DownloadUrlCache()
    return _default_url_cache


def set_url_cache(cache: Optional[DownloadUrlCache]) -> None:
    global _default_url_cache
    _default_url_cache = cache
