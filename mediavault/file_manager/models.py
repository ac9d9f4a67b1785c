from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

PLACEHOLDER_NAME = ".placeholder"


class AssetKind(str, Enum):
    file = "file"
    folder = "folder"


class StoredAsset(BaseModel):
    path: str
    name: str
    size_bytes: int = 0
    content_type: Optional[str] = None
    created_at: Optional[datetime] = None
    kind: AssetKind

    @model_validator(mode="after")
    def _check_shape(self) -> "StoredAsset":
        parts = self.path.split("/")
        if len(parts) < 3 or parts[0] != "users" or not parts[1] or parts[2] != "public_images":
            raise ValueError(f"path must lie under users/{{uid}}/public_images: {self.path}")
        if self.name != parts[-1]:
            raise ValueError("name must equal the last path segment")
        if self.kind == AssetKind.folder:
            if self.size_bytes != 0 or self.content_type is not None or self.created_at is not None:
                raise ValueError("folders carry no size, content type or timestamp")
        else:
            if self.size_bytes < 0:
                raise ValueError("size_bytes must be non-negative")
            if not self.content_type:
                raise ValueError("files require a content_type")
        return self


class RelocationResult(BaseModel):
    """Outcome of a rename or move; `errors` lists sources that could not be removed."""
    source_path: str
    dest_path: str
    kind: AssetKind
    moved: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class DeleteResult(BaseModel):
    path: str
    kind: AssetKind
    deleted: List[str] = Field(default_factory=list)
