from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ObjectMetadata(BaseModel):
    path: str
    size: int = Field(ge=0)
    content_type: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    custom: Dict[str, str] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


class ListResult(BaseModel):
    """Immediate children of a prefix, as full storage paths."""
    folders: List[str] = Field(default_factory=list)
    files: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.folders and not self.files


def normalize_prefix(prefix: str) -> str:
    return prefix.strip("/")


def child_prefix(prefix: str) -> str:
    norm = normalize_prefix(prefix)
    return f"{norm}/" if norm else ""
