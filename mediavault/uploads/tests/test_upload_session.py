import asyncio
from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from PIL import Image

from mediavault.common.errors import (
    CompressionFailed,
    InvalidInput,
    InvalidName,
    InvalidTransition,
    ObjectNotFound,
    QuotaExceeded,
    SecurityViolation,
    StorageUnavailable,
    VerificationFailed,
)
from mediavault.compression.models import SourceImage
from mediavault.compression.service import CompressionService
from mediavault.content.repository import InMemoryContentRepository
from mediavault.file_manager.service import FileManagerService
from mediavault.quota.service import QuotaService
from mediavault.storage.backends import InMemoryBlobStorage, _StoredObject
from mediavault.storage.models import ObjectMetadata
from mediavault.storage.url_cache import DownloadUrlCache
from mediavault.uploads.models import UploadState
from mediavault.uploads.service import UploadSession, UploadSessionRegistry

MB = 1024 * 1024
ROOT = "users/u1/public_images"
CLOCK_MS = 1700000000000


def _png(size=(320, 240)):
    # Noise keeps the lossless source larger than any lossy re-encode.
    channels = [Image.effect_noise(size, 64) for _ in range(3)]
    img = Image.merge("RGB", channels)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class SpyStorage(InMemoryBlobStorage):
    def __init__(self):
        super().__init__()
        self.writes = []

    async def put(self, path, data, content_type=None, metadata=None):
        self.writes.append(path)
        return await super().put(path, data, content_type, metadata)

    def seed(self, path, size):
        """Register an object of `size` bytes without holding its content."""
        self._objects[path] = _StoredObject(data=b"", meta=ObjectMetadata(path=path, size=size, content_type="image/webp"))


class FixedCodec:
    def __init__(self, size):
        self.size = size
        self.calls = 0

    def encode(self, data, quality, max_width, max_height, output_format):
        self.calls += 1
        return b"\0" * self.size


class BrokenWriteStorage(SpyStorage):
    async def put(self, path, data, content_type=None, metadata=None):
        raise ConnectionError("network dropped")


class BrokenVerifyStorage(SpyStorage):
    async def get_download_url(self, path):
        raise ConnectionError("url service down")


def _session(storage=None, codec=None, limit_bytes=100 * MB, **kwargs):
    storage = storage if storage is not None else SpyStorage()
    quota = QuotaService(storage, InMemoryContentRepository())
    compression = CompressionService(codec) if codec else CompressionService()
    return UploadSession(
        "u1",
        storage=storage,
        quota=quota,
        compression=compression,
        limit_bytes=limit_bytes,
        clock_ms=lambda: CLOCK_MS,
        **kwargs,
    )


def _source(data=None, name="holiday.png", content_type="image/png"):
    return SourceImage(name=name, content_type=content_type, data=_png() if data is None else data)


def test_full_upload_flow():
    states = []
    progress = []
    successes = []
    storage = SpyStorage()
    session = _session(
        storage,
        on_state_change=lambda old, new: states.append(new),
        on_progress=progress.append,
        on_success=successes.append,
    )

    async def run():
        await session.select_file(_source())
        result = await session.commit()
        await session.usage_task
        return result

    result = asyncio.run(run())
    assert result.path == f"{ROOT}/holiday-{CLOCK_MS}.webp"
    assert result.content_type == "image/webp"
    assert result.download_url == f"memory://{result.path}"
    assert session.state == UploadState.done
    assert states == [
        UploadState.file_selected,
        UploadState.preview_compressing,
        UploadState.preview_ready,
        UploadState.commit_compressing,
        UploadState.persisting,
        UploadState.verifying,
        UploadState.done,
    ]
    assert [(p.percent, p.indeterminate) for p in progress] == [(None, True), (100, False)]
    assert successes == [result]
    assert storage.writes == [result.path]
    assert session.last_usage.used_bytes == result.size_bytes

    meta = asyncio.run(storage.get_metadata(result.path))
    assert meta.custom["original_name"] == "holiday.png"
    assert meta.custom["uploaded_by"] == "u1"
    assert meta.custom["quality"] == "80"
    assert set(meta.custom) == {
        "original_name",
        "original_size",
        "compressed_size",
        "compression_ratio",
        "quality",
        "max_width",
        "max_height",
        "uploaded_by",
        "uploaded_at",
    }


def test_upload_then_list_round_trip():
    storage = SpyStorage()
    session = _session(storage)

    async def run():
        await session.select_file(_source(), current_path=f"{ROOT}/trips")
        return await session.commit()

    result = asyncio.run(run())
    manager = FileManagerService("u1", storage=storage, url_cache=DownloadUrlCache())
    listed = asyncio.run(manager.list(f"{ROOT}/trips"))
    assert [(a.name, a.size_bytes) for a in listed] == [(f"holiday-{CLOCK_MS}.webp", result.size_bytes)]


def test_quota_exceeded_at_commit_writes_nothing():
    storage = SpyStorage()
    storage.seed(f"{ROOT}/existing.webp", int(99.5 * MB))
    session = _session(storage, codec=FixedCodec(MB))
    source = _source(data=b"\x89" * (MB // 2))

    async def run():
        await session.select_file(source)
        await session.commit()

    with pytest.raises(QuotaExceeded) as excinfo:
        asyncio.run(run())
    assert session.state == UploadState.quota_exceeded
    assert storage.writes == []
    assert "100.00 MB" in excinfo.value.message
    assert "99.50 MB" in excinfo.value.message


def test_quota_estimate_rejects_selection():
    storage = SpyStorage()
    storage.seed(f"{ROOT}/existing.webp", 100 * MB - 10)
    session = _session(storage)
    with pytest.raises(QuotaExceeded):
        asyncio.run(session.select_file(_source()))
    assert session.state == UploadState.idle
    assert session.source is None


def test_larger_output_needs_confirmation():
    storage = SpyStorage()
    source = _source(data=b"\x89" * 1000)
    session = _session(storage, codec=FixedCodec(1200))

    async def run():
        await session.select_file(source)
        pending = await session.commit()
        assert pending is None
        assert session.state == UploadState.size_confirmation_pending
        assert storage.writes == []
        return await session.confirm()

    result = asyncio.run(run())
    assert session.state == UploadState.done
    assert result.size_bytes == 1200
    assert len(storage.writes) == 1


def test_cancel_confirmation_keeps_selection():
    storage = SpyStorage()
    session = _session(storage, codec=FixedCodec(1200))

    async def run():
        await session.select_file(_source(data=b"\x89" * 1000))
        await session.update_settings(quality=50)
        await session.commit()
        session.cancel_confirmation()

    asyncio.run(run())
    assert session.state == UploadState.preview_ready
    assert session.source is not None
    assert session.settings.quality == 50
    assert storage.writes == []


def test_commit_recompresses_instead_of_reusing_preview():
    codec = FixedCodec(10)
    session = _session(codec=codec)

    async def run():
        await session.select_file(_source())
        await session.commit()

    asyncio.run(run())
    assert codec.calls == 2


@pytest.mark.parametrize(
    "source",
    [
        SourceImage(name="notes.txt", content_type="text/plain", data=b"hello"),
        SourceImage(name="empty.png", content_type="image/png", data=b""),
    ],
)
def test_invalid_sources_return_to_idle(source):
    storage = SpyStorage()
    session = _session(storage)
    with pytest.raises(InvalidInput):
        asyncio.run(session.select_file(source))
    assert session.state == UploadState.idle
    assert session.source is None


def test_oversized_source_is_rejected(monkeypatch):
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "100")
    session = _session()
    with pytest.raises(InvalidInput, match="less than"):
        asyncio.run(session.select_file(_source(data=b"\x89" * 101)))
    assert session.state == UploadState.idle


def test_current_path_outside_sandbox_is_rejected():
    storage = SpyStorage()
    session = _session(storage)
    with pytest.raises(SecurityViolation):
        asyncio.run(session.select_file(_source(), current_path="users/u2/public_images"))
    assert session.state == UploadState.idle
    assert storage.writes == []


def test_preview_failure_returns_to_file_selected():
    session = _session()
    with pytest.raises(CompressionFailed):
        asyncio.run(session.select_file(_source(data=b"definitely not an image")))
    assert session.state == UploadState.file_selected
    assert isinstance(session.error, CompressionFailed)
    assert session.snapshot().error.action == "SELECT_DIFFERENT_FILE"


def test_compression_failure_at_commit_fails_session():
    session = _session()

    async def run():
        await session.select_file(_source(data=b"definitely not an image"))

    with pytest.raises(CompressionFailed):
        asyncio.run(run())
    with pytest.raises(CompressionFailed):
        asyncio.run(session.commit())
    assert session.state == UploadState.failed


def test_write_failure_is_storage_unavailable():
    session = _session(BrokenWriteStorage())

    async def run():
        await session.select_file(_source())
        await session.commit()

    with pytest.raises(StorageUnavailable):
        asyncio.run(run())
    assert session.state == UploadState.failed


def test_verification_failure():
    storage = BrokenVerifyStorage()
    session = _session(storage)

    async def run():
        await session.select_file(_source())
        await session.commit()

    with pytest.raises(VerificationFailed):
        asyncio.run(run())
    assert session.state == UploadState.failed
    assert len(storage.writes) == 1


def test_illegal_transitions_leave_state_unchanged():
    session = _session()
    with pytest.raises(InvalidTransition):
        asyncio.run(session.commit())
    with pytest.raises(InvalidTransition):
        asyncio.run(session.confirm())
    with pytest.raises(InvalidTransition):
        session.cancel_confirmation()
    with pytest.raises(InvalidTransition):
        asyncio.run(session.update_settings(quality=10))
    assert session.state == UploadState.idle


def test_invalid_settings_are_rejected():
    session = _session(codec=FixedCodec(10))
    asyncio.run(session.select_file(_source()))
    with pytest.raises(InvalidInput):
        asyncio.run(session.update_settings(quality=0))
    with pytest.raises(InvalidInput):
        asyncio.run(session.update_settings(colour="red"))
    assert session.state == UploadState.preview_ready
    assert session.settings.quality == 80


def test_rename_target_validates_file_name():
    storage = SpyStorage()
    session = _session(storage, codec=FixedCodec(10))

    async def run():
        await session.select_file(_source())
        with pytest.raises(InvalidName):
            session.rename_target("bad name")
        session.rename_target("cover")
        return await session.commit()

    result = asyncio.run(run())
    assert result.path == f"{ROOT}/cover.webp"


def test_reset_and_reselect_after_done():
    session = _session(codec=FixedCodec(10))

    async def run():
        await session.select_file(_source())
        await session.commit()
        session.reset()
        assert session.state == UploadState.idle
        await session.select_file(_source(name="second.png"))

    asyncio.run(run())
    assert session.state == UploadState.preview_ready
    assert session.stem == f"second-{CLOCK_MS}"


def test_registry_scopes_sessions_to_owner():
    registry = UploadSessionRegistry(factory=lambda user_id: UploadSession(user_id, storage=InMemoryBlobStorage()))
    session = registry.create("u1")
    assert registry.get(session.id, "u1") is session
    with pytest.raises(ObjectNotFound):
        registry.get(session.id, "u2")
    registry.remove(session.id, "u1")
    assert registry.list("u1") == []


def test_stored_name_keeps_inner_dots():
    session = _session(codec=FixedCodec(10))

    async def run():
        await session.select_file(_source(name="holiday.2024.png"))
        return await session.commit()

    result = asyncio.run(run())
    assert session.stem == f"holiday.2024-{CLOCK_MS}"
    assert result.path == f"{ROOT}/holiday.2024-{CLOCK_MS}.webp"


@pytest.mark.parametrize(
    "name,stem",
    [("scan", "scan"), (".png", "image"), ("C:\\photos\\beach.jpg", "beach"), ("a/b/c.d.e.png", "c.d.e")],
)
def test_source_stem(name, stem):
    assert SourceImage(name=name, content_type="image/png", data=b"x").stem == stem


def test_finished_session_releases_image_bytes():
    session = _session(codec=FixedCodec(10))

    async def run():
        await session.select_file(_source())
        await session.commit()

    asyncio.run(run())
    assert session.state == UploadState.done
    assert session.source is None
    assert session.preview.result is None
    assert session.pending is None
    snapshot = session.snapshot()
    assert snapshot.source_name == "holiday.png"
    assert snapshot.source_size > 0
    assert snapshot.result is not None


def test_quota_rejection_at_commit_releases_image_bytes():
    storage = SpyStorage()
    storage.seed(f"{ROOT}/existing.webp", 100 * MB - 5)
    session = _session(storage, codec=FixedCodec(10))

    async def run():
        await session.select_file(_source(data=b"\x89PNG" + b"\0" * 2))
        with pytest.raises(QuotaExceeded):
            await session.commit()

    asyncio.run(run())
    assert session.state == UploadState.quota_exceeded
    assert session.source is None
    assert session.preview.result is None


class FailingProfileRepository(InMemoryContentRepository):
    def get_user_profile(self, user_id):
        raise ConnectionError("profile store offline")


def test_profile_failure_at_selection_is_storage_unavailable():
    storage = SpyStorage()
    session = UploadSession(
        "u1",
        storage=storage,
        quota=QuotaService(storage, FailingProfileRepository()),
        compression=CompressionService(FixedCodec(10)),
        clock_ms=lambda: CLOCK_MS,
    )
    with pytest.raises(StorageUnavailable):
        asyncio.run(session.select_file(_source()))
    assert session.state == UploadState.idle
    assert isinstance(session.error, StorageUnavailable)
    assert storage.writes == []


def test_registry_evicts_idle_sessions():
    clock = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    registry = UploadSessionRegistry(
        factory=lambda user_id: _session(codec=FixedCodec(10)),
        ttl_seconds=60,
        now=lambda: clock[0],
    )
    finished = []
    for _ in range(5):
        session = registry.create("u1")

        async def run(s=session):
            await s.select_file(_source())
            await s.commit()

        asyncio.run(run())
        session.updated_at = clock[0]
        finished.append(session)
    assert len(registry.list("u1")) == 5
    assert all(s.source is None for s in finished)

    clock[0] += timedelta(seconds=61)
    fresh = registry.create("u1")
    assert registry.list("u1") == [fresh]
    with pytest.raises(ObjectNotFound):
        registry.get(finished[0].id, "u1")


def test_registry_keeps_sessions_mid_operation():
    clock = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    registry = UploadSessionRegistry(
        factory=lambda user_id: UploadSession(user_id, storage=InMemoryBlobStorage()),
        ttl_seconds=0,
        now=lambda: clock[0],
    )
    busy = registry.create("u1")
    busy.state = UploadState.persisting
    busy.updated_at = clock[0]
    clock[0] += timedelta(seconds=1)
    assert registry.prune() == 0
    assert registry.get(busy.id, "u1") is busy
