"""Sandboxed file-manager operations over the blob storage backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from mediavault.common.errors import (
    Conflict,
    InvalidInput,
    ObjectNotFound,
    StorageUnavailable,
    VaultError,
)
from mediavault.config import runtime_config
from mediavault.file_manager.models import (
    PLACEHOLDER_NAME,
    AssetKind,
    DeleteResult,
    RelocationResult,
    StoredAsset,
)
from mediavault.file_manager.names import validate_file_name, validate_folder_name
from mediavault.file_manager.sandbox import (
    ensure_within_sandbox,
    is_root,
    leaf_of,
    parent_of,
    sandbox_root,
)
from mediavault.storage.backends import BlobStorage
from mediavault.storage.service import get_blob_storage, get_url_cache
from mediavault.storage.url_cache import DownloadUrlCache

logger = logging.getLogger(__name__)

PLACEHOLDER_METADATA = {"purpose": "folder-placeholder"}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@contextmanager
def _backend_errors(action: str, path: str) -> Iterator[None]:
    """Re-raise raw backend failures as StorageUnavailable; typed errors pass through."""
    try:
        yield
    except VaultError:
        raise
    except Exception as exc:
        logger.error(f"Storage backend failed to {action} {path}: {exc}")
        raise StorageUnavailable(f"Could not {action} {leaf_of(path)}", details={"path": path}) from exc


def sort_assets(assets: List[StoredAsset]) -> List[StoredAsset]:
    folders = sorted((a for a in assets if a.kind == AssetKind.folder), key=lambda a: a.name)
    files = sorted((a for a in assets if a.kind == AssetKind.file), key=lambda a: a.name)
    return folders + files


class FileManagerService:
    def __init__(
        self,
        user_id: str,
        storage: Optional[BlobStorage] = None,
        url_cache: Optional[DownloadUrlCache] = None,
    ) -> None:
        self.user_id = user_id
        self.root = sandbox_root(user_id)
        self._storage = storage
        self._url_cache = url_cache

    @property
    def storage(self) -> BlobStorage:
        return self._storage or get_blob_storage()

    @property
    def url_cache(self) -> DownloadUrlCache:
        return self._url_cache or get_url_cache()

    def _guard(self, path: str) -> str:
        return ensure_within_sandbox(path, self.root)

    def _guard_not_root(self, path: str, action: str) -> str:
        normalised = self._guard(path)
        if is_root(normalised, self.root):
            raise InvalidInput(f"Cannot {action} the root folder")
        return normalised

    # Probing

    async def _is_file(self, path: str) -> bool:
        try:
            with _backend_errors("read", path):
                await self.storage.get_metadata(path)
            return True
        except ObjectNotFound:
            return False

    async def _is_folder(self, path: str) -> bool:
        with _backend_errors("list", path):
            listing = await self.storage.list(path)
        return not listing.is_empty

    async def _exists(self, path: str) -> bool:
        return await self._is_file(path) or await self._is_folder(path)

    async def resolve_kind(self, path: str) -> AssetKind:
        if await self._is_file(path):
            return AssetKind.file
        if await self._is_folder(path):
            return AssetKind.folder
        raise ObjectNotFound(f"Item not found: {leaf_of(path)}", details={"path": path})

    async def _require(self, path: str, kind: AssetKind) -> None:
        found = await self._is_file(path) if kind == AssetKind.file else await self._is_folder(path)
        if not found:
            raise ObjectNotFound(f"Item not found: {leaf_of(path)}", details={"path": path})

    async def _collect_objects(self, prefix: str) -> List[str]:
        with _backend_errors("list", prefix):
            listing = await self.storage.list(prefix)
        objects = list(listing.files)
        for folder in listing.folders:
            objects.extend(await self._collect_objects(folder))
        return objects

    # Operations

    async def list(self, path: Optional[str] = None) -> List[StoredAsset]:
        target = self._guard(path or self.root)
        with _backend_errors("list", target):
            listing = await self.storage.list(target)
        assets: List[StoredAsset] = []
        for folder in listing.folders:
            assets.append(StoredAsset(path=folder, name=leaf_of(folder), kind=AssetKind.folder))
        for file_path in listing.files:
            if leaf_of(file_path) == PLACEHOLDER_NAME:
                continue
            with _backend_errors("read", file_path):
                meta = await self.storage.get_metadata(file_path)
            assets.append(
                StoredAsset(
                    path=file_path,
                    name=leaf_of(file_path),
                    size_bytes=meta.size,
                    content_type=meta.content_type or DEFAULT_CONTENT_TYPE,
                    created_at=meta.created_at,
                    kind=AssetKind.file,
                )
            )
        return sort_assets(assets)

    async def create_folder(self, path: str, name: str) -> StoredAsset:
        parent = self._guard(path)
        folder_name = validate_folder_name(name)
        target = f"{parent}/{folder_name}"
        if await self._exists(target):
            raise Conflict("A folder with this name already exists", details={"path": target})
        with _backend_errors("create folder", target):
            await self.storage.put(
                f"{target}/{PLACEHOLDER_NAME}",
                b"",
                content_type="text/plain",
                metadata=PLACEHOLDER_METADATA,
            )
        logger.info(f"Created folder {target}")
        return StoredAsset(path=target, name=folder_name, kind=AssetKind.folder)

    async def rename(self, path: str, new_name: str, kind: Optional[AssetKind] = None) -> RelocationResult:
        source = self._guard_not_root(path, "rename")
        if kind == AssetKind.file:
            validate_file_name(new_name)
        else:
            # an unknown kind gets the stricter folder rule
            validate_folder_name(new_name)
        if kind is None:
            kind = await self.resolve_kind(source)
        else:
            await self._require(source, kind)
        dest = f"{parent_of(source)}/{new_name.strip()}"
        if dest == source:
            raise InvalidInput("New name is the same as the current name")
        if await self._exists(dest):
            raise Conflict(f"An item named {new_name.strip()} already exists", details={"path": dest})
        return await self._relocate(source, dest, kind)

    async def move(self, path: str, dest_path: str, kind: Optional[AssetKind] = None) -> RelocationResult:
        source = self._guard_not_root(path, "move")
        dest_folder = self._guard(dest_path)
        if dest_folder == source or dest_folder.startswith(source + "/"):
            raise InvalidInput("Cannot move folder into its own subdirectory", details={"path": source})
        dest = f"{dest_folder}/{leaf_of(source)}"
        if dest == source:
            raise InvalidInput("Item is already in this location", details={"path": source})
        if kind is None:
            kind = await self.resolve_kind(source)
        else:
            await self._require(source, kind)
        if not is_root(dest_folder, self.root) and not await self._is_folder(dest_folder):
            raise ObjectNotFound("Destination folder not found", details={"path": dest_folder})
        if await self._exists(dest):
            raise Conflict(f"An item named {leaf_of(source)} already exists in the destination", details={"path": dest})
        return await self._relocate(source, dest, kind)

    async def copy_file(self, path: str, dest_path: str) -> StoredAsset:
        source = self._guard_not_root(path, "copy")
        dest_folder = self._guard(dest_path)
        if not await self._is_file(source):
            raise ObjectNotFound(f"File not found: {leaf_of(source)}", details={"path": source})
        if not is_root(dest_folder, self.root) and not await self._is_folder(dest_folder):
            raise ObjectNotFound("Destination folder not found", details={"path": dest_folder})
        dest = f"{dest_folder}/{leaf_of(source)}"
        if await self._exists(dest):
            raise Conflict(f"A file named {leaf_of(source)} already exists in the destination", details={"path": dest})
        with _backend_errors("copy", source):
            meta = await self.storage.copy(source, dest)
        logger.info(f"Copied {source} to {dest}")
        return StoredAsset(
            path=dest,
            name=leaf_of(dest),
            size_bytes=meta.size,
            content_type=meta.content_type or DEFAULT_CONTENT_TYPE,
            created_at=meta.created_at,
            kind=AssetKind.file,
        )

    async def delete(self, path: str, recursive: bool = False) -> DeleteResult:
        target = self._guard_not_root(path, "delete")
        kind = await self.resolve_kind(target)
        if kind == AssetKind.file:
            with _backend_errors("delete", target):
                await self.storage.delete(target)
            self.url_cache.invalidate(target)
            logger.info(f"Deleted file {target}")
            return DeleteResult(path=target, kind=kind, deleted=[target])
        objects = await self._collect_objects(target)
        contents = [o for o in objects if o != f"{target}/{PLACEHOLDER_NAME}"]
        if contents and not recursive:
            raise InvalidInput("Folder is not empty", details={"path": target, "items": len(contents)})
        deleted: List[str] = []
        failed: List[str] = []
        for obj in objects:
            try:
                await self.storage.delete(obj)
                deleted.append(obj)
            except Exception as exc:
                logger.warning(f"Could not delete {obj}: {exc}")
                failed.append(obj)
        self.url_cache.invalidate_prefix(target)
        if failed:
            raise StorageUnavailable(
                f"Could not delete {len(failed)} item(s) in {leaf_of(target)}",
                details={"path": target, "failed": failed, "deleted": deleted},
            )
        logger.info(f"Deleted folder {target} ({len(deleted)} objects)")
        return DeleteResult(path=target, kind=kind, deleted=deleted)

    async def get_download_url(self, path: str) -> str:
        target = self._guard(path)
        cached = self.url_cache.get(target)
        if cached is not None and self.url_cache.age(cached) < runtime_config.get_url_cache_ttl_seconds():
            return cached.url
        with _backend_errors("get a link for", target):
            url = await self.storage.get_download_url(target)
        self.url_cache.put(target, url)
        return url

    # Relocation

    async def _relocate(self, source: str, dest: str, kind: AssetKind) -> RelocationResult:
        if kind == AssetKind.file:
            pairs = [(source, dest)]
        else:
            pairs = [(obj, dest + obj[len(source):]) for obj in await self._collect_objects(source)]
        copied: List[str] = []
        for src, dst in pairs:
            try:
                await self.storage.copy(src, dst)
            except Exception as exc:
                logger.error(f"Copy {src} -> {dst} failed, rolling back {len(copied)} copies: {exc}")
                await self._rollback(copied)
                raise StorageUnavailable(
                    f"Could not move {leaf_of(source)}; no changes were made",
                    details={"path": source, "failed": src},
                ) from exc
            copied.append(dst)
        errors: List[str] = []
        for src, _ in pairs:
            try:
                await self.storage.delete(src)
            except Exception as exc:
                logger.warning(f"Copied {src} but could not remove the original: {exc}")
                errors.append(src)
        if kind == AssetKind.file:
            self.url_cache.invalidate(source)
        else:
            self.url_cache.invalidate_prefix(source)
        logger.info(f"Relocated {kind.value} {source} -> {dest} ({len(pairs)} objects, {len(errors)} errors)")
        return RelocationResult(source_path=source, dest_path=dest, kind=kind, moved=copied, errors=errors)

    async def _rollback(self, copied: List[str]) -> None:
        for path in copied:
            try:
                await self.storage.delete(path)
            except Exception as exc:
                logger.warning(f"Rollback could not remove {path}: {exc}")
