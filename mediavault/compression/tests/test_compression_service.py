import asyncio
from io import BytesIO

import pytest
from PIL import Image

from mediavault.common.errors import CompressionFailed, InvalidInput
from mediavault.compression.codec import PillowCodec, fit_within
from mediavault.compression.models import CompressionRequest, CompressionSettings, SourceImage
from mediavault.compression.service import CompressionPreview, CompressionService, compression_ratio


def _image_bytes(size=(400, 300), mode="RGB", fmt="PNG", color=(200, 30, 30)):
    if mode == "RGBA":
        color = color + (128,)
    img = Image.new(mode, size, color)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def _source(data=None, name="photo.png"):
    return SourceImage(name=name, content_type="image/png", data=_image_bytes() if data is None else data)


class RecordingCodec:
    def __init__(self, output=b"encoded"):
        self.output = output
        self.calls = 0

    def encode(self, data, quality, max_width, max_height, output_format):
        self.calls += 1
        if isinstance(self.output, Exception):
            raise self.output
        return self.output


def test_compress_produces_decodable_output():
    settings = CompressionSettings(quality=80, max_width=200, max_height=200, output_format="webp")
    result = asyncio.run(CompressionService().compress(CompressionRequest(source=_source(), settings=settings)))
    assert result.size_bytes == len(result.blob) > 0
    assert result.content_type == "image/webp"
    assert (result.width, result.height) == (200, 150)
    with Image.open(BytesIO(result.blob)) as img:
        assert img.format == "WEBP"
        assert img.size == (200, 150)


def test_compress_never_upscales():
    settings = CompressionSettings(max_width=4000, max_height=4000, output_format="png")
    result = asyncio.run(CompressionService().compress(CompressionRequest(source=_source(), settings=settings)))
    assert (result.width, result.height) == (400, 300)


def test_jpeg_output_drops_alpha():
    source = SourceImage(name="logo.png", content_type="image/png", data=_image_bytes(mode="RGBA"))
    settings = CompressionSettings(output_format="jpeg")
    result = asyncio.run(CompressionService().compress(CompressionRequest(source=source, settings=settings)))
    with Image.open(BytesIO(result.blob)) as img:
        assert img.mode == "RGB"


def test_zero_byte_source_is_rejected_before_codec():
    codec = RecordingCodec()
    with pytest.raises(InvalidInput):
        asyncio.run(CompressionService(codec).compress(CompressionRequest(source=_source(data=b""))))
    assert codec.calls == 0


def test_custom_codec_output_is_measured():
    codec = RecordingCodec(output=_image_bytes(size=(64, 48), fmt="WEBP"))
    result = asyncio.run(CompressionService(codec).compress(CompressionRequest(source=_source())))
    assert (result.width, result.height) == (64, 48)

    opaque = asyncio.run(CompressionService(RecordingCodec()).compress(CompressionRequest(source=_source())))
    assert (opaque.width, opaque.height) == (0, 0)


def test_codec_returning_nothing_fails():
    with pytest.raises(CompressionFailed):
        asyncio.run(CompressionService(RecordingCodec(output=None)).compress(CompressionRequest(source=_source())))


def test_codec_exception_is_chained():
    with pytest.raises(CompressionFailed) as excinfo:
        asyncio.run(
            CompressionService(RecordingCodec(output=RuntimeError("codec crashed"))).compress(
                CompressionRequest(source=_source())
            )
        )
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_undecodable_input_fails():
    source = SourceImage(name="fake.png", content_type="image/png", data=b"not an image at all")
    with pytest.raises(CompressionFailed):
        asyncio.run(CompressionService().compress(CompressionRequest(source=source)))


def test_ratio_and_size_difference():
    source = _source(data=b"x" * 1000)
    result = asyncio.run(
        CompressionService(RecordingCodec(output=b"y" * 250)).compress(CompressionRequest(source=source))
    )
    assert result.size_difference == 750
    assert result.compression_ratio == 75.0
    assert result.is_larger_than_source is False

    larger = asyncio.run(
        CompressionService(RecordingCodec(output=b"y" * 1100)).compress(CompressionRequest(source=source))
    )
    assert larger.is_larger_than_source is True
    assert larger.size_difference == -100
    assert larger.compression_ratio == 10.0


def test_compression_ratio_is_finite_for_empty_original():
    assert compression_ratio(0, 10) == 0.0


def test_compress_is_deterministic():
    request = CompressionRequest(source=_source(), settings=CompressionSettings(output_format="png"))
    service = CompressionService(PillowCodec())
    first = asyncio.run(service.compress(request))
    second = asyncio.run(service.compress(request))
    assert first.blob == second.blob


def test_settings_validation():
    with pytest.raises(ValueError):
        CompressionSettings(quality=0)
    with pytest.raises(ValueError):
        CompressionSettings(max_width=0)
    with pytest.raises(ValueError):
        CompressionSettings(output_format="gif")


def test_fit_within_keeps_aspect_ratio():
    assert fit_within(4000, 2000, 1920, 1080) == (1920, 960)
    assert fit_within(1000, 3000, 1920, 1080) == (360, 1080)
    assert fit_within(10, 10, 1920, 1080) == (10, 10)


def test_preview_recompresses_on_setting_change():
    codec = RecordingCodec(output=b"z" * 10)
    preview = CompressionPreview(service=CompressionService(codec))

    async def run():
        await preview.set_source(_source())
        await preview.update_settings(quality=40)
        return preview.result

    result = asyncio.run(run())
    assert codec.calls == 2
    assert preview.settings.quality == 40
    assert result.size_bytes == 10


def test_preview_rejects_invalid_settings():
    preview = CompressionPreview(service=CompressionService(RecordingCodec()))
    with pytest.raises(InvalidInput):
        asyncio.run(preview.update_settings(quality=101))
