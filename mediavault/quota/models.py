from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class UsageReport(BaseModel):
    used_bytes: int = Field(ge=0)
    partial_failures: List[str] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.partial_failures)


class QuotaState(BaseModel):
    """Recomputed on demand; never persisted."""
    used_bytes: int = Field(ge=0)
    limit_bytes: int = Field(ge=0)
    partial_failures: List[str] = Field(default_factory=list)


class UploadDecision(BaseModel):
    allowed: bool
    current_usage: int
    limit_bytes: int
    candidate_bytes: int
    would_exceed_by: int = 0
    reason: Optional[str] = None
    partial_failures: List[str] = Field(default_factory=list)


class StorageStats(BaseModel):
    used_bytes: int
    limit_bytes: int
    limit_mb: float
    usage_percentage: float
    remaining_bytes: int
    is_near_limit: bool
    is_at_limit: bool
    partial_failures: List[str] = Field(default_factory=list)
