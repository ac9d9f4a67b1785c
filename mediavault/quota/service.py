"""Quota accounting: recursive usage totals and upload decisions."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Optional

from mediavault.common.errors import InvalidInput, StorageUnavailable
from mediavault.config import runtime_config
from mediavault.content.repository import ContentRepository
from mediavault.content.service import get_content_repo
from mediavault.file_manager.sandbox import sandbox_root
from mediavault.quota.models import QuotaState, StorageStats, UploadDecision, UsageReport
from mediavault.storage.backends import BlobStorage
from mediavault.storage.models import ListResult
from mediavault.storage.service import get_blob_storage

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
NEAR_LIMIT_PERCENT = 70
AT_LIMIT_PERCENT = 90


def mb_to_bytes(limit_mb: float) -> int:
    return int(limit_mb * BYTES_PER_MB)


def format_mb(num_bytes: int) -> str:
    return f"{num_bytes / BYTES_PER_MB:.2f} MB"


def estimate_candidate_bytes(source_bytes: int, factor: Optional[float] = None) -> int:
    """Pre-compression guess of the stored size, used before the real encode."""
    if source_bytes < 0:
        raise InvalidInput("source size must be non-negative")
    factor = runtime_config.get_quota_estimate_factor() if factor is None else factor
    return int(math.ceil(source_bytes * factor))


class QuotaService:
    def __init__(
        self,
        storage: Optional[BlobStorage] = None,
        content: Optional[ContentRepository] = None,
    ) -> None:
        self._storage = storage
        self._content = content

    @property
    def storage(self) -> BlobStorage:
        return self._storage or get_blob_storage()

    @property
    def content(self) -> ContentRepository:
        return self._content or get_content_repo()

    async def _folder_size(self, prefix: str, failures: List[str]) -> int:
        try:
            listing = await self.storage.list(prefix)
        except Exception as exc:
            logger.warning(f"Could not list {prefix}, counting it as 0 bytes: {exc}")
            failures.append(prefix)
            return 0
        return await self._listing_size(listing, failures)

    async def _listing_size(self, listing: ListResult, failures: List[str]) -> int:
        total = 0
        for file_path in listing.files:
            try:
                meta = await self.storage.get_metadata(file_path)
            except Exception as exc:
                logger.warning(f"Could not read metadata of {file_path}: {exc}")
                failures.append(file_path)
                continue
            total += meta.size
        for folder in listing.folders:
            total += await self._folder_size(folder, failures)
        return total

    async def _storage_roots(self, user_id: str) -> List[str]:
        try:
            blogs = await asyncio.to_thread(self.content.list_blogs, user_id)
        except Exception as exc:
            logger.error(f"Could not list blogs for {user_id}: {exc}")
            raise StorageUnavailable("Could not list blogs for quota calculation") from exc
        roots = [f"users/{user_id}/private"]
        roots.extend(f"users/{user_id}/blogs/{blog.id}" for blog in blogs)
        return roots

    async def compute_usage(self, user_id: str) -> UsageReport:
        root = sandbox_root(user_id)
        try:
            root_listing = await self.storage.list(root)
        except Exception as exc:
            logger.error(f"Could not enumerate sandbox root {root}: {exc}")
            raise StorageUnavailable(f"Could not read storage for user {user_id}") from exc
        failures: List[str] = []
        used = await self._listing_size(root_listing, failures)
        for extra_root in await self._storage_roots(user_id):
            used += await self._folder_size(extra_root, failures)
        logger.info(f"Usage for {user_id}: {used} bytes ({len(failures)} partial failures)")
        return UsageReport(used_bytes=used, partial_failures=failures)

    async def resolve_limit_bytes(self, user_id: str) -> int:
        try:
            profile = await asyncio.to_thread(self.content.get_user_profile, user_id)
        except Exception as exc:
            logger.error(f"Could not load profile for {user_id}: {exc}")
            raise StorageUnavailable("Could not read the storage limit for this account") from exc
        limit_mb = profile.total_storage_mb if profile and profile.total_storage_mb is not None else None
        if limit_mb is None:
            limit_mb = runtime_config.get_default_storage_limit_mb()
        return mb_to_bytes(limit_mb)

    async def quota_state(self, user_id: str, limit_bytes: Optional[int] = None) -> QuotaState:
        usage = await self.compute_usage(user_id)
        limit = limit_bytes if limit_bytes is not None else await self.resolve_limit_bytes(user_id)
        return QuotaState(used_bytes=usage.used_bytes, limit_bytes=limit, partial_failures=usage.partial_failures)

    async def can_upload(self, user_id: str, candidate_bytes: int, limit_bytes: int) -> UploadDecision:
        if candidate_bytes < 0:
            raise InvalidInput("candidate size must be non-negative", details={"candidate_bytes": candidate_bytes})
        usage = await self.compute_usage(user_id)
        return decide(usage, candidate_bytes, limit_bytes)

    async def storage_stats(self, user_id: str, limit_mb: Optional[float] = None) -> StorageStats:
        usage = await self.compute_usage(user_id)
        if limit_mb is None:
            limit_bytes = await self.resolve_limit_bytes(user_id)
            limit_mb = limit_bytes / BYTES_PER_MB
        else:
            limit_bytes = mb_to_bytes(limit_mb)
        if limit_bytes > 0:
            percentage = min(100.0, usage.used_bytes / limit_bytes * 100)
        else:
            percentage = 100.0 if usage.used_bytes > 0 else 0.0
        return StorageStats(
            used_bytes=usage.used_bytes,
            limit_bytes=limit_bytes,
            limit_mb=limit_mb,
            usage_percentage=round(percentage, 2),
            remaining_bytes=max(0, limit_bytes - usage.used_bytes),
            is_near_limit=percentage > NEAR_LIMIT_PERCENT,
            is_at_limit=percentage > AT_LIMIT_PERCENT,
            partial_failures=usage.partial_failures,
        )


def decide(usage: UsageReport, candidate_bytes: int, limit_bytes: int) -> UploadDecision:
    """Pure decision over an existing usage report."""
    total = usage.used_bytes + candidate_bytes
    allowed = total <= limit_bytes
    reason = None
    if not allowed:
        reason = (
            f"Upload would exceed storage limit of {format_mb(limit_bytes)}. "
            f"Current usage: {format_mb(usage.used_bytes)}, "
            f"file size: {format_mb(candidate_bytes)}"
        )
    return UploadDecision(
        allowed=allowed,
        current_usage=usage.used_bytes,
        limit_bytes=limit_bytes,
        candidate_bytes=candidate_bytes,
        would_exceed_by=max(0, total - limit_bytes),
        reason=reason,
        partial_failures=list(usage.partial_failures),
    )


_default_service: Optional[QuotaService] = None


def get_quota_service() -> QuotaService:
    global _default_service
    if _default_service is None:
        _default_service = QuotaService()
    return _default_service


def set_quota_service(service: Optional[QuotaService]) -> None:
    """Override the default service (useful for tests)."""
    global _default_service
    _default_service = service
