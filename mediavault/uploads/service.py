"""Upload orchestration as an explicit state machine.

select -> preview -> commit (fresh compress) -> quota re-check
       -> [size confirmation] -> persist -> verify -> done
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from mediavault.common.errors import (
    InvalidInput,
    InvalidTransition,
    ObjectNotFound,
    QuotaExceeded,
    StorageUnavailable,
    VaultError,
    VerificationFailed,
    present,
)
from mediavault.compression.models import CompressionRequest, CompressionResult, CompressionSettings, SourceImage
from mediavault.compression.service import (
    CompressionPreview,
    CompressionService,
    get_compression_service,
    validation_messages,
)
from mediavault.config import runtime_config
from mediavault.file_manager.names import validate_file_name
from mediavault.file_manager.sandbox import ensure_within_sandbox, sandbox_root
from mediavault.quota.models import UploadDecision, UsageReport
from mediavault.quota.service import QuotaService, estimate_candidate_bytes, get_quota_service
from mediavault.storage.backends import BlobStorage
from mediavault.storage.service import get_blob_storage
from mediavault.uploads.models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    ArtifactSummary,
    ProgressEvent,
    UploadResult,
    UploadSnapshot,
    UploadState,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[UploadState, UploadState], None]
ProgressListener = Callable[[ProgressEvent], None]
SuccessListener = Callable[[UploadResult], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class UploadSession:
    def __init__(
        self,
        user_id: str,
        storage: Optional[BlobStorage] = None,
        quota: Optional[QuotaService] = None,
        compression: Optional[CompressionService] = None,
        limit_bytes: Optional[int] = None,
        on_state_change: Optional[StateListener] = None,
        on_progress: Optional[ProgressListener] = None,
        on_success: Optional[SuccessListener] = None,
        clock_ms: Optional[Callable[[], int]] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.user_id = user_id
        self.root = sandbox_root(user_id)
        self._storage = storage
        self.quota = quota or get_quota_service()
        self.preview = CompressionPreview(service=compression or get_compression_service())
        self._limit_bytes = limit_bytes
        self.on_state_change = on_state_change
        self.on_progress = on_progress
        self.on_success = on_success
        self._clock_ms = clock_ms or _now_ms

        self.state = UploadState.idle
        self.source_name: Optional[str] = None
        self.source_size: Optional[int] = None
        self.current_path: Optional[str] = None
        self.selected_at: Optional[int] = None
        self.stem: Optional[str] = None
        self.pending: Optional[CompressionResult] = None
        self.result: Optional[UploadResult] = None
        self.error: Optional[BaseException] = None
        self.last_usage: Optional[UsageReport] = None
        self.usage_task: Optional[asyncio.Task] = None
        self.updated_at = datetime.now(timezone.utc)

    @property
    def storage(self) -> BlobStorage:
        return self._storage or get_blob_storage()

    @property
    def source(self) -> Optional[SourceImage]:
        return self.preview.source

    @property
    def settings(self) -> CompressionSettings:
        return self.preview.settings

    # State handling

    def _set_state(self, new_state: UploadState) -> None:
        old_state = self.state
        self.state = new_state
        self.updated_at = datetime.now(timezone.utc)
        if old_state != new_state:
            logger.debug(f"Upload {self.id}: {old_state.value} -> {new_state.value}")
            if self.on_state_change:
                self.on_state_change(old_state, new_state)
        if new_state in TERMINAL_STATES:
            self._release_buffers()

    def _require_state(self, action: str, allowed: Iterable[UploadState]) -> None:
        allowed = set(allowed)
        if self.state not in allowed:
            raise InvalidTransition(
                f"Cannot {action} while upload is {self.state.value}",
                details={"state": self.state.value, "allowed": sorted(s.value for s in allowed)},
            )

    def _emit(self, percent: Optional[int]) -> None:
        event = ProgressEvent(state=self.state, percent=percent, indeterminate=percent is None)
        if self.on_progress:
            self.on_progress(event)

    def _fail(self, state: UploadState, error: BaseException) -> None:
        self.error = error
        self._set_state(state)

    def _release_buffers(self) -> None:
        self.preview.source = None
        self.preview.result = None
        self.pending = None

    def _clear_selection(self) -> None:
        self.preview.source = None
        self.preview.result = None
        self.current_path = None
        self.source_name = None
        self.source_size = None
        self.selected_at = None
        self.stem = None
        self.pending = None

    async def limit_bytes(self) -> int:
        if self._limit_bytes is None:
            self._limit_bytes = await self.quota.resolve_limit_bytes(self.user_id)
        return self._limit_bytes

    async def _check_quota(self, candidate_bytes: int) -> UploadDecision:
        decision = await self.quota.can_upload(self.user_id, candidate_bytes, await self.limit_bytes())
        if not decision.allowed:
            raise QuotaExceeded(
                decision.reason or "Storage quota exceeded",
                details={
                    "limit_bytes": decision.limit_bytes,
                    "current_usage": decision.current_usage,
                    "candidate_bytes": decision.candidate_bytes,
                    "would_exceed_by": decision.would_exceed_by,
                },
            )
        return decision

    def _validate_source(self, source: SourceImage) -> None:
        if not source.content_type.startswith("image/"):
            raise InvalidInput("Please select an image file", details={"content_type": source.content_type})
        if source.size_bytes <= 0:
            raise InvalidInput("The selected file is empty", details={"name": source.name})
        max_bytes = runtime_config.get_max_upload_bytes()
        if source.size_bytes > max_bytes:
            raise InvalidInput(
                f"File size must be less than {max_bytes // (1024 * 1024)}MB",
                details={"size_bytes": source.size_bytes, "max_bytes": max_bytes},
            )

    async def _run_preview(self) -> CompressionResult:
        self._set_state(UploadState.preview_compressing)
        try:
            result = await self.preview.refresh()
        except VaultError as exc:
            self._fail(UploadState.file_selected, exc)
            raise
        self.error = None
        self._set_state(UploadState.preview_ready)
        return result

    # Operations

    async def select_file(self, source: SourceImage, current_path: Optional[str] = None) -> CompressionResult:
        self._require_state("select a file", {UploadState.idle, UploadState.preview_ready} | TERMINAL_STATES)
        self._clear_selection()
        self.result = None
        try:
            self._validate_source(source)
            path = ensure_within_sandbox(current_path, self.root) if current_path else None
            await self._check_quota(estimate_candidate_bytes(source.size_bytes))
        except VaultError as exc:
            self._fail(UploadState.idle, exc)
            raise
        self.error = None
        self.current_path = path
        self.selected_at = self._clock_ms()
        self.stem = f"{source.stem}-{self.selected_at}"
        self.source_name = source.name
        self.source_size = source.size_bytes
        self.preview.source = source
        self._set_state(UploadState.file_selected)
        logger.info(f"Upload {self.id}: selected {source.name} ({source.size_bytes} bytes)")
        return await self._run_preview()

    async def update_settings(self, **changes: Any) -> CompressionResult:
        self._require_state("change settings", {UploadState.file_selected, UploadState.preview_ready})
        unknown = set(changes) - set(CompressionSettings.model_fields)
        if unknown:
            raise InvalidInput("Unknown compression settings", details={"unknown": sorted(unknown)})
        try:
            self.preview.settings = CompressionSettings(**{**self.settings.model_dump(), **changes})
        except ValidationError as exc:
            raise InvalidInput("Invalid compression settings", details={"errors": validation_messages(exc)}) from exc
        return await self._run_preview()

    def rename_target(self, stem: str) -> str:
        self._require_state("rename the file", {UploadState.file_selected, UploadState.preview_ready})
        self.stem = validate_file_name(stem)
        return self.stem

    async def commit(self) -> Optional[UploadResult]:
        """Returns the UploadResult, or None when the larger output awaits confirmation."""
        self._require_state("upload", {UploadState.file_selected, UploadState.preview_ready})
        self._set_state(UploadState.commit_compressing)
        try:
            artifact = await self.preview.service.compress(
                CompressionRequest(source=self.source, settings=self.settings)
            )
        except VaultError as exc:
            self._fail(UploadState.failed, exc)
            raise
        try:
            await self._check_quota(artifact.size_bytes)
        except QuotaExceeded as exc:
            logger.info(f"Upload {self.id}: quota exceeded for {artifact.size_bytes} bytes")
            self._fail(UploadState.quota_exceeded, exc)
            raise
        except VaultError as exc:
            self._fail(UploadState.failed, exc)
            raise
        if artifact.is_larger_than_source:
            self.pending = artifact
            self._set_state(UploadState.size_confirmation_pending)
            return None
        return await self._persist(artifact)

    async def confirm(self) -> UploadResult:
        self._require_state("confirm", {UploadState.size_confirmation_pending})
        artifact = self.pending
        self.pending = None
        return await self._persist(artifact)

    def cancel_confirmation(self) -> None:
        self._require_state("cancel", {UploadState.size_confirmation_pending})
        self.pending = None
        self._set_state(UploadState.preview_ready)

    def reset(self) -> None:
        if self.state in ACTIVE_STATES:
            raise InvalidTransition(
                f"Cannot reset while upload is {self.state.value}", details={"state": self.state.value}
            )
        self._clear_selection()
        self.result = None
        self.error = None
        self._set_state(UploadState.idle)

    # Persist and verify

    def target_path(self, artifact: CompressionResult) -> str:
        base = self.current_path or self.root
        return f"{base}/{self.stem}.{artifact.output_format}"

    def _stored_metadata(self, artifact: CompressionResult) -> Dict[str, str]:
        return {
            "original_name": self.source_name or "",
            "original_size": str(artifact.original_size),
            "compressed_size": str(artifact.size_bytes),
            "compression_ratio": str(artifact.compression_ratio),
            "quality": str(self.settings.quality),
            "max_width": str(self.settings.max_width),
            "max_height": str(self.settings.max_height),
            "uploaded_by": self.user_id,
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
        }

    async def _persist(self, artifact: CompressionResult) -> UploadResult:
        try:
            path = ensure_within_sandbox(self.target_path(artifact), self.root)
        except VaultError as exc:
            self._fail(UploadState.failed, exc)
            raise
        self._set_state(UploadState.persisting)
        self._emit(None)
        try:
            await self.storage.put(path, artifact.blob, artifact.content_type, self._stored_metadata(artifact))
        except StorageUnavailable as exc:
            logger.error(f"Upload {self.id}: write of {path} failed: {exc}")
            self._fail(UploadState.failed, exc)
            raise
        except Exception as exc:
            logger.error(f"Upload {self.id}: write of {path} failed: {exc}")
            error = StorageUnavailable(
                "Upload failed; the file may or may not have been stored", details={"path": path}
            )
            self._fail(UploadState.failed, error)
            raise error from exc
        self._emit(100)

        self._set_state(UploadState.verifying)
        try:
            meta = await self.storage.get_metadata(path)
            url = await self.storage.get_download_url(path)
        except Exception as exc:
            logger.error(f"Upload {self.id}: verification of {path} failed: {exc}")
            error = VerificationFailed(
                "Upload could not be verified; the file may exist", details={"path": path}
            )
            self._fail(UploadState.failed, error)
            raise error from exc

        result = UploadResult(
            path=path,
            name=meta.name,
            download_url=url,
            size_bytes=meta.size,
            original_size=artifact.original_size,
            compression_ratio=artifact.compression_ratio,
            content_type=meta.content_type or artifact.content_type,
        )
        self.result = result
        self.error = None
        self._set_state(UploadState.done)
        logger.info(f"Upload {self.id}: stored {path} ({meta.size} bytes)")
        if self.on_success:
            self.on_success(result)
        self.usage_task = asyncio.create_task(self._refresh_usage())
        return result

    async def _refresh_usage(self) -> Optional[UsageReport]:
        try:
            self.last_usage = await self.quota.compute_usage(self.user_id)
        except Exception as exc:
            logger.warning(f"Upload {self.id}: quota refresh failed: {exc}")
            return None
        return self.last_usage

    def snapshot(self) -> UploadSnapshot:
        return UploadSnapshot(
            id=self.id,
            user_id=self.user_id,
            state=self.state,
            source_name=self.source_name,
            source_size=self.source_size,
            stored_name=self.stem,
            current_path=self.current_path,
            settings=self.settings,
            preview=ArtifactSummary.from_result(self.preview.result) if self.preview.result else None,
            pending=ArtifactSummary.from_result(self.pending) if self.pending else None,
            result=self.result,
            error=present(self.error) if self.error else None,
            last_usage=self.last_usage,
            updated_at=self.updated_at,
        )


class UploadSessionRegistry:
    """In-process sessions for the HTTP surface.

    Sessions that are not mid-operation and have been idle longer than the
    TTL are evicted whenever a session is created or listed.
    """

    def __init__(
        self,
        factory: Optional[Callable[[str], UploadSession]] = None,
        ttl_seconds: Optional[int] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._factory = factory or (lambda user_id: UploadSession(user_id))
        self._ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else runtime_config.get_upload_session_ttl_seconds()
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sessions: Dict[str, UploadSession] = {}

    def prune(self) -> int:
        cutoff = self._now() - self._ttl
        expired = [
            sid
            for sid, s in self._sessions.items()
            if s.state not in ACTIVE_STATES and s.updated_at <= cutoff
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info(f"Evicted {len(expired)} idle upload session(s)")
        return len(expired)

    def create(self, user_id: str) -> UploadSession:
        self.prune()
        session = self._factory(user_id)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str, user_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise ObjectNotFound("Upload session not found", details={"session_id": session_id})
        return session

    def remove(self, session_id: str, user_id: str) -> None:
        session = self.get(session_id, user_id)
        if session.state in ACTIVE_STATES:
            raise InvalidTransition("Upload is in progress", details={"state": session.state.value})
        del self._sessions[session_id]

    def discard(self, session_id: str) -> None:
        """Drop a session regardless of its state."""
        self._sessions.pop(session_id, None)

    def list(self, user_id: str) -> List[UploadSession]:
        self.prune()
        return [s for s in self._sessions.values() if s.user_id == user_id]


_default_registry: Optional[UploadSessionRegistry] = None


def get_upload_registry() -> UploadSessionRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = UploadSessionRegistry()
    return _default_registry


def set_upload_registry(registry: Optional[UploadSessionRegistry]) -> None:
    """Override the default registry (useful for tests)."""
    global _default_registry
    _default_registry = registry
