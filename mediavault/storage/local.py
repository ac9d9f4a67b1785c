# local.py - filesystem blob storage with async I/O
# Objects live under {root}/objects/{path}; metadata sidecars under {root}/.meta/{path}.json

import json
import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles
import aiofiles.os
import aiofiles.tempfile

from mediavault.common.errors import ObjectNotFound, SecurityViolation
from mediavault.config import runtime_config
from mediavault.storage.models import ListResult, ObjectMetadata, normalize_prefix

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".mvtmp"
CHUNK_SIZE = 256 * 1024


def safe_join(base: Path, *parts: str) -> Path:
    """Safely join paths, preventing directory traversal."""
    result = base
    for part in parts:
        result = result / part
    result = result.resolve()
    root = base.resolve()
    if result != root and not str(result).startswith(str(root) + "/"):
        raise SecurityViolation("Invalid path", details={"path": "/".join(parts)})
    return result


async def _atomic_write(target: Path, data: bytes) -> None:
    await aiofiles.os.makedirs(target.parent, exist_ok=True)
    tmp_path: Optional[Path] = None
    try:
        # Same directory keeps os.replace atomic (same filesystem)
        async with aiofiles.tempfile.NamedTemporaryFile(
            dir=str(target.parent), delete=False, suffix=TMP_SUFFIX
        ) as tmp:
            tmp_path = Path(tmp.name)
            await tmp.write(data)
        await aiofiles.os.replace(str(tmp_path), str(target))
    except BaseException:
        if tmp_path is not None:
            try:
                await aiofiles.os.unlink(str(tmp_path))
            except FileNotFoundError:
                pass
        raise


class LocalBlobStorage:
    def __init__(self, root: Optional[str] = None, public_base_url: Optional[str] = None) -> None:
        self.root = Path(root or runtime_config.get_storage_path())
        self.objects_root = self.root / "objects"
        self.meta_root = self.root / ".meta"
        self.public_base_url = public_base_url or runtime_config.get_storage_public_base_url()

    def _object_path(self, path: str) -> Path:
        return safe_join(self.objects_root, normalize_prefix(path))

    def _meta_path(self, path: str) -> Path:
        return safe_join(self.meta_root, normalize_prefix(path) + ".json")

    async def list(self, prefix: str) -> ListResult:
        norm = normalize_prefix(prefix)
        directory = self._object_path(norm) if norm else self.objects_root.resolve()
        if not await aiofiles.os.path.isdir(str(directory)):
            return ListResult()
        folders: List[str] = []
        files: List[str] = []
        for entry in sorted(await aiofiles.os.listdir(str(directory))):
            if entry.endswith(TMP_SUFFIX):
                continue
            key = f"{norm}/{entry}" if norm else entry
            if await aiofiles.os.path.isdir(str(directory / entry)):
                folders.append(key)
            else:
                files.append(key)
        return ListResult(folders=folders, files=files)

    async def _read_sidecar(self, path: str) -> Dict[str, object]:
        meta_path = self._meta_path(path)
        try:
            async with aiofiles.open(meta_path, mode="r") as f:
                return json.loads(await f.read())
        except FileNotFoundError:
            return {}

    async def get_metadata(self, path: str) -> ObjectMetadata:
        obj_path = self._object_path(path)
        try:
            stat_result = await aiofiles.os.stat(str(obj_path))
        except FileNotFoundError:
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        if await aiofiles.os.path.isdir(str(obj_path)):
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        sidecar = await self._read_sidecar(path)
        created_raw = sidecar.get("created_at")
        created_at = (
            datetime.fromisoformat(str(created_raw))
            if created_raw
            else datetime.fromtimestamp(stat_result.st_mtime, tz=timezone.utc)
        )
        return ObjectMetadata(
            path=normalize_prefix(path),
            size=stat_result.st_size,
            content_type=sidecar.get("content_type") or mimetypes.guess_type(path)[0],  # type: ignore[arg-type]
            created_at=created_at,
            custom=dict(sidecar.get("custom") or {}),  # type: ignore[arg-type]
        )

    async def get_download_url(self, path: str) -> str:
        obj_path = self._object_path(path)
        if not await aiofiles.os.path.isfile(str(obj_path)):
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{normalize_prefix(path)}"
        return obj_path.as_uri()

    async def put(
        self,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectMetadata:
        key = normalize_prefix(path)
        created_at = datetime.now(timezone.utc)
        sidecar = {
            "content_type": content_type,
            "created_at": created_at.isoformat(),
            "custom": {k: str(v) for k, v in (metadata or {}).items()},
        }
        await _atomic_write(self._object_path(key), data)
        await _atomic_write(self._meta_path(key), json.dumps(sidecar).encode("utf-8"))
        logger.info(f"Stored object {key} ({len(data)} bytes) under {self.root}")
        return ObjectMetadata(
            path=key,
            size=len(data),
            content_type=content_type,
            created_at=created_at,
            custom=sidecar["custom"],
        )

    async def delete(self, path: str) -> None:
        obj_path = self._object_path(path)
        try:
            await aiofiles.os.unlink(str(obj_path))
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        try:
            await aiofiles.os.unlink(str(self._meta_path(path)))
        except FileNotFoundError:
            pass
        await self._prune_empty_dirs(obj_path.parent, self.objects_root.resolve())
        await self._prune_empty_dirs(self._meta_path(path).parent, self.meta_root.resolve())

    async def _prune_empty_dirs(self, start: Path, stop: Path) -> None:
        # Folders only exist while they hold objects, matching bucket semantics.
        current = start
        while current != stop and str(current).startswith(str(stop)):
            if await aiofiles.os.listdir(str(current)):
                return
            await aiofiles.os.rmdir(str(current))
            current = current.parent

    async def read(self, path: str) -> bytes:
        obj_path = self._object_path(path)
        chunks: List[bytes] = []
        try:
            async with aiofiles.open(obj_path, mode="rb") as f:
                while chunk := await f.read(CHUNK_SIZE):
                    chunks.append(chunk)
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFound(f"Object not found: {path}", details={"path": path})
        return b"".join(chunks)

    async def copy(self, source_path: str, dest_path: str) -> ObjectMetadata:
        data = await self.read(source_path)
        sidecar = await self._read_sidecar(source_path)
        return await self.put(
            dest_path,
            data,
            content_type=sidecar.get("content_type"),  # type: ignore[arg-type]
            metadata=dict(sidecar.get("custom") or {}),  # type: ignore[arg-type]
        )
