from __future__ import annotations

import logging
from typing import Optional

from mediavault.config import runtime_config
from mediavault.content.repository import ContentRepository, FirestoreContentRepository, InMemoryContentRepository

logger = logging.getLogger(__name__)

_default_repo: Optional[ContentRepository] = None


def _build_repo() -> ContentRepository:
    backend = runtime_config.get_content_backend()
    if backend == "firestore":
        return FirestoreContentRepository()
    if backend != "memory":
        raise ValueError(f"Unknown CONTENT_BACKEND: {backend}")
    return InMemoryContentRepository()


def get_content_repo() -> ContentRepository:
    global _default_repo
    if _default_repo is None:
        _default_repo = _build_repo()
        logger.info(f"Content backend: {type(_default_repo).__name__}")
    return _default_repo


def set_content_repo(repo: Optional[ContentRepository]) -> None:
    """Override the default repository (useful for tests)."""
    global _default_repo
    _default_repo = repo
