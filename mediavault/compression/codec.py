"""Pillow image codec: orient, downsize, convert and encode."""
from __future__ import annotations

import io
from typing import Protocol, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

PIL_FORMATS = {"webp": "WEBP", "jpeg": "JPEG", "png": "PNG"}


class ImageCodec(Protocol):
    def encode(self, data: bytes, quality: int, max_width: int, max_height: int, output_format: str) -> bytes: ...


def fit_within(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Scale (width, height) down to fit the bounds, keeping aspect ratio. Never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def _png_compress_level(quality: int) -> int:
    # PNG is lossless; quality only picks a zlib level between 6 and 9.
    return 9 - round(quality / 100 * 3)


class PillowCodec:
    def decode(self, data: bytes) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise ValueError(f"cannot decode image: {exc}") from exc
        return ImageOps.exif_transpose(img) or img

    def _convert_mode(self, img: Image.Image, output_format: str) -> Image.Image:
        has_alpha = img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info)
        if output_format == "jpeg":
            if has_alpha:
                rgba = img.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.getchannel("A"))
                return background
            return img.convert("RGB") if img.mode != "RGB" else img
        if has_alpha:
            return img.convert("RGBA") if img.mode != "RGBA" else img
        return img.convert("RGB") if img.mode not in ("RGB", "L") else img

    def encode(self, data: bytes, quality: int, max_width: int, max_height: int, output_format: str) -> bytes:
        if output_format not in PIL_FORMATS:
            raise ValueError(f"unsupported output format: {output_format}")
        img = self.decode(data)
        target = fit_within(img.width, img.height, max_width, max_height)
        if target != img.size:
            img = img.resize(target, Image.Resampling.LANCZOS)
        img = self._convert_mode(img, output_format)
        out = io.BytesIO()
        if output_format == "png":
            img.save(out, format="PNG", compress_level=_png_compress_level(quality))
        elif output_format == "jpeg":
            img.save(out, format="JPEG", quality=quality, optimize=True)
        else:
            img.save(out, format="WEBP", quality=quality, method=4)
        return out.getvalue()


def measure(data: bytes) -> Tuple[int, int]:
    """Pixel size of encoded image bytes, or (0, 0) when unreadable."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.width, img.height
    except Exception:
        return 0, 0
