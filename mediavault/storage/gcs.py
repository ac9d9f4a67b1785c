"""GCS-backed blob storage (the bucket behind Firebase Storage)."""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

try:
    from google.cloud import storage  # type: ignore
    from google.api_core import exceptions as gcs_exceptions  # type: ignore
except Exception:  # pragma: no cover
    storage = None
    gcs_exceptions = None

from mediavault.common.errors import ObjectNotFound
from mediavault.config import runtime_config
from mediavault.storage.models import ListResult, ObjectMetadata, child_prefix, normalize_prefix

logger = logging.getLogger(__name__)


def _is_not_found(exc: Exception) -> bool:
    return gcs_exceptions is not None and isinstance(exc, gcs_exceptions.NotFound)


class GcsBlobStorage:  # pragma: no cover - requires google-cloud-storage and credentials
    """Blocking client calls run in worker threads to keep the event loop free."""

    def __init__(self, client: Any = None, bucket_name: Optional[str] = None) -> None:
        self._client = client or self._default_client()
        self.bucket_name = bucket_name or runtime_config.get_gcs_bucket()
        if not self.bucket_name:
            raise RuntimeError("Bucket not configured (set GCS_BUCKET)")
        self._bucket = self._client.bucket(self.bucket_name)
        self.url_ttl = timedelta(seconds=runtime_config.get_signed_url_ttl_seconds())

    def _default_client(self) -> Any:
        if storage is None:
            raise RuntimeError("google-cloud-storage is not installed")
        return storage.Client(project=runtime_config.get_gcp_project())

    def _list_sync(self, prefix: str) -> ListResult:
        base = child_prefix(prefix)
        iterator = self._client.list_blobs(self._bucket, prefix=base, delimiter="/")
        files: List[str] = []
        for blob in iterator:
            if blob.name != base:
                files.append(blob.name)
        # prefixes are only populated once the pages have been consumed
        folders = sorted(p.rstrip("/") for p in iterator.prefixes)
        return ListResult(folders=folders, files=sorted(files))

    async def list(self, prefix: str) -> ListResult:
        return await asyncio.to_thread(self._list_sync, prefix)

    def _get_blob(self, path: str) -> Any:
        blob = self._bucket.get_blob(normalize_prefix(path))
        if blob is None:
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        return blob

    def _to_metadata(self, blob: Any) -> ObjectMetadata:
        return ObjectMetadata(
            path=blob.name,
            size=int(blob.size or 0),
            content_type=blob.content_type,
            created_at=blob.time_created,
            custom=dict(blob.metadata or {}),
        )

    async def get_metadata(self, path: str) -> ObjectMetadata:
        blob = await asyncio.to_thread(self._get_blob, path)
        return self._to_metadata(blob)

    async def get_download_url(self, path: str) -> str:
        blob = await asyncio.to_thread(self._get_blob, path)
        return await asyncio.to_thread(
            blob.generate_signed_url, version="v4", expiration=self.url_ttl, method="GET"
        )

    def _put_sync(self, path: str, data: bytes, content_type: Optional[str], metadata: Dict[str, str]) -> Any:
        blob = self._bucket.blob(normalize_prefix(path))
        blob.metadata = metadata
        blob.upload_from_string(data, content_type=content_type or "application/octet-stream")
        blob.reload()
        return blob

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectMetadata:
        custom = {k: str(v) for k, v in (metadata or {}).items()}
        blob = await asyncio.to_thread(self._put_sync, path, data, content_type, custom)
        logger.info(f"Uploaded gs://{self.bucket_name}/{blob.name} ({len(data)} bytes)")
        return self._to_metadata(blob)

    def _delete_sync(self, path: str) -> None:
        try:
            self._bucket.blob(normalize_prefix(path)).delete()
        except Exception as exc:
            if _is_not_found(exc):
                raise ObjectNotFound(f"Object not found: {path}", details={"path": path}) from exc
            raise

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._delete_sync, path)

    def _copy_sync(self, source_path: str, dest_path: str) -> Any:
        source = self._get_blob(source_path)
        return self._bucket.copy_blob(source, self._bucket, normalize_prefix(dest_path))

    async def copy(self, source_path: str, dest_path: str) -> ObjectMetadata:
        blob = await asyncio.to_thread(self._copy_sync, source_path, dest_path)
        return self._to_metadata(blob)

    async def read(self, path: str) -> bytes:
        blob = await asyncio.to_thread(self._get_blob, path)
        return await asyncio.to_thread(blob.download_as_bytes)
