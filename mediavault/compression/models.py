from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from mediavault.config import runtime_config

OutputFormat = Literal["webp", "jpeg", "png"]

CONTENT_TYPES = {
    "webp": "image/webp",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


class SourceImage(BaseModel):
    name: str
    content_type: str
    data: bytes = Field(repr=False)

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def stem(self) -> str:
        """Base name without its last extension; "image" when nothing is left."""
        leaf = self.name.replace("\\", "/").rsplit("/", 1)[-1]
        stem = leaf.rsplit(".", 1)[0] if "." in leaf else leaf
        return stem or "image"


def _default_quality() -> int:
    return runtime_config.get_default_quality()


def _default_max_width() -> int:
    return runtime_config.get_default_max_width()


def _default_max_height() -> int:
    return runtime_config.get_default_max_height()


def _default_format() -> str:
    return runtime_config.get_default_output_format()


class CompressionSettings(BaseModel):
    quality: int = Field(default_factory=_default_quality, ge=1, le=100)
    max_width: int = Field(default_factory=_default_max_width, gt=0)
    max_height: int = Field(default_factory=_default_max_height, gt=0)
    output_format: OutputFormat = Field(default_factory=_default_format)  # type: ignore[assignment]

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.output_format]


class CompressionRequest(BaseModel):
    source: SourceImage
    settings: CompressionSettings = Field(default_factory=CompressionSettings)


class CompressionResult(BaseModel):
    blob: bytes = Field(repr=False)
    size_bytes: int = Field(ge=0)
    original_size: int = Field(gt=0)
    compression_ratio: float
    size_difference: int
    is_larger_than_source: bool
    output_format: OutputFormat
    content_type: str
    width: int
    height: int

    @field_validator("compression_ratio")
    @classmethod
    def _finite_ratio(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("compression_ratio must be finite")
        return value
