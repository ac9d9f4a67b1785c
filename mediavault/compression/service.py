from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Optional

from pydantic import ValidationError

from mediavault.common.errors import CompressionFailed, InvalidInput
from mediavault.compression.codec import ImageCodec, PillowCodec, measure
from mediavault.compression.models import (
    CompressionRequest,
    CompressionResult,
    CompressionSettings,
    SourceImage,
)

logger = logging.getLogger(__name__)


def validation_messages(exc: ValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]


def compression_ratio(original_size: int, compressed_size: int) -> float:
    if original_size <= 0:
        return 0.0
    ratio = round(abs(original_size - compressed_size) / original_size * 100, 1)
    return ratio if math.isfinite(ratio) else 0.0


class CompressionService:
    def __init__(self, codec: Optional[ImageCodec] = None) -> None:
        self.codec: ImageCodec = codec or PillowCodec()

    def _encode(self, source: SourceImage, settings: CompressionSettings) -> tuple[Any, int, int]:
        blob = self.codec.encode(
            source.data, settings.quality, settings.max_width, settings.max_height, settings.output_format
        )
        if isinstance(blob, (bytes, bytearray)):
            width, height = measure(bytes(blob))
            return blob, width, height
        return blob, 0, 0

    async def compress(self, request: CompressionRequest) -> CompressionResult:
        source = request.source
        settings = request.settings
        if source.size_bytes <= 0:
            raise InvalidInput("Source image is empty", details={"name": source.name})
        try:
            blob, width, height = await asyncio.to_thread(self._encode, source, settings)
        except Exception as exc:
            logger.warning(f"Compression of {source.name} failed: {exc}")
            raise CompressionFailed(f"Could not compress {source.name}", details={"name": source.name}) from exc
        if blob is None or not isinstance(blob, (bytes, bytearray)):
            raise CompressionFailed(f"Codec produced no output for {source.name}", details={"name": source.name})
        size = len(blob)
        if not math.isfinite(size) or size < 0:
            raise CompressionFailed(f"Codec produced an invalid size for {source.name}", details={"size": size})
        size_difference = source.size_bytes - size
        result = CompressionResult(
            blob=bytes(blob),
            size_bytes=size,
            original_size=source.size_bytes,
            compression_ratio=compression_ratio(source.size_bytes, size),
            size_difference=size_difference,
            is_larger_than_source=size > source.size_bytes,
            output_format=settings.output_format,
            content_type=settings.content_type,
            width=width,
            height=height,
        )
        logger.info(
            f"Compressed {source.name}: {source.size_bytes} -> {size} bytes "
            f"({settings.output_format}, q={settings.quality}, {width}x{height})"
        )
        return result


class CompressionPreview:
    """Keeps a preview artifact in step with the current source and settings.

    The preview is only for display; committing always compresses again.
    """

    def __init__(self, service: Optional[CompressionService] = None, settings: Optional[CompressionSettings] = None) -> None:
        self.service = service or get_compression_service()
        self.settings = settings or CompressionSettings()
        self.source: Optional[SourceImage] = None
        self.result: Optional[CompressionResult] = None

    async def set_source(self, source: Optional[SourceImage]) -> Optional[CompressionResult]:
        self.source = source
        self.result = None
        if source is None:
            return None
        return await self.refresh()

    async def update_settings(self, **changes: Any) -> Optional[CompressionResult]:
        try:
            self.settings = CompressionSettings(**{**self.settings.model_dump(), **changes})
        except ValidationError as exc:
            raise InvalidInput("Invalid compression settings", details={"errors": validation_messages(exc)}) from exc
        if self.source is None:
            return None
        return await self.refresh()

    async def refresh(self) -> CompressionResult:
        if self.source is None:
            raise InvalidInput("No source image selected")
        self.result = None
        self.result = await self.service.compress(CompressionRequest(source=self.source, settings=self.settings))
        return self.result


_default_service: Optional[CompressionService] = None


def get_compression_service() -> CompressionService:
    global _default_service
    if _default_service is None:
        _default_service = CompressionService()
    return _default_service


def set_compression_service(service: Optional[CompressionService]) -> None:
    """Override the default service (useful for tests)."""
    global _default_service
    _default_service = service


async def compress(request: CompressionRequest) -> CompressionResult:
    return await get_compression_service().compress(request)
