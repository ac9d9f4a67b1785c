"""Blob storage contract and the in-memory backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from mediavault.common.errors import ObjectNotFound
from mediavault.storage.models import ListResult, ObjectMetadata, child_prefix, normalize_prefix

logger = logging.getLogger(__name__)


class BlobStorage(Protocol):
    async def list(self, prefix: str) -> ListResult: ...
    async def get_metadata(self, path: str) -> ObjectMetadata: ...
    async def get_download_url(self, path: str) -> str: ...
    async def put(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectMetadata: ...
    async def delete(self, path: str) -> None: ...
    async def copy(self, source_path: str, dest_path: str) -> ObjectMetadata: ...
    async def read(self, path: str) -> bytes: ...


@dataclass
class _StoredObject:
    data: bytes
    meta: ObjectMetadata


class InMemoryBlobStorage:
    """Dict-backed storage; folders are implied by `/`-separated keys."""

    def __init__(self, url_base: str = "memory://") -> None:
        self._objects: Dict[str, _StoredObject] = {}
        self._url_base = url_base

    async def list(self, prefix: str) -> ListResult:
        base = child_prefix(prefix)
        folders: set[str] = set()
        files: List[str] = []
        for key in self._objects:
            if not key.startswith(base):
                continue
            rest = key[len(base):]
            if "/" in rest:
                folders.add(base + rest.split("/", 1)[0])
            else:
                files.append(key)
        return ListResult(folders=sorted(folders), files=sorted(files))

    async def get_metadata(self, path: str) -> ObjectMetadata:
        obj = self._objects.get(normalize_prefix(path))
        if obj is None:
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        return obj.meta.model_copy(deep=True)

    async def get_download_url(self, path: str) -> str:
        key = normalize_prefix(path)
        if key not in self._objects:
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        return f"{self._url_base}{key}"

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectMetadata:
        key = normalize_prefix(path)
        meta = ObjectMetadata(
            path=key,
            size=len(data),
            content_type=content_type,
            custom={k: str(v) for k, v in (metadata or {}).items()},
        )
        self._objects[key] = _StoredObject(data=bytes(data), meta=meta)
        logger.info(f"Stored object {key} ({len(data)} bytes)")
        return meta.model_copy(deep=True)

    async def delete(self, path: str) -> None:
        key = normalize_prefix(path)
        if self._objects.pop(key, None) is None:
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})

    async def copy(self, source_path: str, dest_path: str) -> ObjectMetadata:
        src = self._objects.get(normalize_prefix(source_path))
        if src is None:
            raise ObjectNotFound(f"Object not found: {source_path}", details={"path": source_path})
        return await self.put(dest_path, src.data, src.meta.content_type, dict(src.meta.custom))

    async def read(self, path: str) -> bytes:
        obj = self._objects.get(normalize_prefix(path))
        if obj is None:
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        return obj.data

    def keys(self) -> List[str]:
        return sorted(self._objects)
