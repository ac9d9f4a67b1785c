from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from mediavault.common.errors import UserFacingError
from mediavault.compression.models import CompressionResult, CompressionSettings
from mediavault.quota.models import UsageReport


class UploadState(str, Enum):
    idle = "idle"
    file_selected = "file_selected"
    preview_compressing = "preview_compressing"
    preview_ready = "preview_ready"
    commit_compressing = "commit_compressing"
    quota_exceeded = "quota_exceeded"
    size_confirmation_pending = "size_confirmation_pending"
    persisting = "persisting"
    verifying = "verifying"
    done = "done"
    failed = "failed"


TERMINAL_STATES = {UploadState.quota_exceeded, UploadState.done, UploadState.failed}
ACTIVE_STATES = {
    UploadState.preview_compressing,
    UploadState.commit_compressing,
    UploadState.persisting,
    UploadState.verifying,
}


class ProgressEvent(BaseModel):
    """Write progress; percent is None while the backend gives no real figure."""
    state: UploadState
    percent: Optional[int] = Field(default=None, ge=0, le=100)
    indeterminate: bool = False


class UploadResult(BaseModel):
    path: str
    name: str
    download_url: str
    size_bytes: int
    original_size: int
    compression_ratio: float
    content_type: str


class ArtifactSummary(BaseModel):
    size_bytes: int
    original_size: int
    compression_ratio: float
    size_difference: int
    is_larger_than_source: bool
    content_type: str
    width: int
    height: int

    @classmethod
    def from_result(cls, result: CompressionResult) -> "ArtifactSummary":
        return cls(**result.model_dump(exclude={"blob", "output_format"}))


class UploadSnapshot(BaseModel):
    id: str
    user_id: str
    state: UploadState
    source_name: Optional[str] = None
    source_size: Optional[int] = None
    stored_name: Optional[str] = None
    current_path: Optional[str] = None
    settings: CompressionSettings
    preview: Optional[ArtifactSummary] = None
    pending: Optional[ArtifactSummary] = None
    result: Optional[UploadResult] = None
    error: Optional[UserFacingError] = None
    last_usage: Optional[UsageReport] = None
    updated_at: datetime
