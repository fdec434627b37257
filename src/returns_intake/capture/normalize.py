"""Turn raw photos into fixed-size square JPEG captures."""

from __future__ import annotations

import io
import os
import time
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

from ..domain.errors import CaptureError
from ..domain.models import NOT_AUTHORIZED_TAG, CaptureItem
from ..logging import get_logger

LOG = get_logger("capture-normalize")

DEFAULT_TARGET_SIZE = 720
JPEG_QUALITY = 92
PLACEHOLDER_COLOR = (249, 115, 22)

ImageSource = Union[bytes, bytearray, str, "os.PathLike[str]", BinaryIO]


@dataclass(frozen=True)
class NormalizedCapture:
    file_name: str
    data: bytes
    content_type: str = "image/jpeg"


def open_image(source: ImageSource) -> Image.Image:
    if isinstance(source, (bytes, bytearray)):
        if not source:
            raise CaptureError("Empty image source")
        return Image.open(io.BytesIO(bytes(source)))
    if isinstance(source, (str, os.PathLike)):
        return Image.open(os.fspath(source))
    return Image.open(source)


def center_square_box(width: int, height: int) -> tuple[float, float, float, float]:
    """Centered crop rectangle whose side is the shorter image dimension."""
    side = min(width, height)
    x = (width - side) / 2
    y = (height - side) / 2
    return (x, y, x + side, y + side)


class CaptureNormalizer:
    def __init__(self, target_size: int = DEFAULT_TARGET_SIZE, quality: int = JPEG_QUALITY) -> None:
        if target_size <= 0:
            raise ValueError("target_size must be positive")
        self.target_size = int(target_size)
        self.quality = int(quality)
        self._placeholder: Optional[bytes] = None

    def normalize(
        self,
        source: ImageSource,
        tag: str,
        *,
        captured_at_ms: Optional[int] = None,
    ) -> NormalizedCapture:
        """Center-crop to a square, scale to the target size and encode as JPEG.

        Raises CaptureError when the source cannot be decoded or encoding
        produced no data; nothing is returned in that case.
        """
        try:
            with open_image(source) as img:
                img = ImageOps.exif_transpose(img)
                width, height = img.size
                if width <= 0 or height <= 0:
                    raise CaptureError("Image has no pixels")
                box = center_square_box(width, height)
                square = img.convert("RGB").resize(
                    (self.target_size, self.target_size),
                    Image.LANCZOS,
                    box=box,
                )
                buf = io.BytesIO()
                square.save(buf, format="JPEG", quality=self.quality)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            LOG.warning(f"Discarding capture for tag '{tag}': {exc}")
            raise CaptureError(f"Failed to load image: {exc}") from exc

        data = buf.getvalue()
        if not data:
            raise CaptureError("Image encoder produced no data")
        stamp = captured_at_ms if captured_at_ms is not None else int(time.time() * 1000)
        file_name = f"{tag}_{stamp}.jpg"
        LOG.debug(f"Normalized {width}x{height} capture to {self.target_size}px ({len(data)} bytes)")
        return NormalizedCapture(file_name=file_name, data=data)

    def capture_item(self, source: ImageSource, tag: str) -> CaptureItem:
        normalized = self.normalize(source, tag)
        return CaptureItem(
            tag=tag,
            source_blob=normalized.data,
            file_name=normalized.file_name,
            content_type=normalized.content_type,
            display_preview=normalized.file_name,
        )

    def placeholder_png(self) -> bytes:
        """Stand-in image for items without a recognisable code."""
        if self._placeholder is None:
            img = Image.new("RGB", (self.target_size, self.target_size), PLACEHOLDER_COLOR)
            draw = ImageDraw.Draw(img)
            label = "NOT AUTH"
            left, top, right, bottom = draw.textbbox((0, 0), label)
            pos = ((self.target_size - (right - left)) / 2, (self.target_size - (bottom - top)) / 2)
            draw.text(pos, label, fill=(255, 255, 255))
            buf = io.BytesIO()
            img.save(buf, format="PNG")
            self._placeholder = buf.getvalue()
        return self._placeholder

    def placeholder_item(self) -> CaptureItem:
        return CaptureItem(
            tag=NOT_AUTHORIZED_TAG,
            source_blob=self.placeholder_png(),
            file_name="not-auth.png",
            content_type="image/png",
            display_preview="not-auth.png",
        )
