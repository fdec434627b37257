"""Adapter over the external barcode decoder.

Decoding itself is delegated to ``pyzbar`` (installed with the ``scan``
extra); this module only feeds it a Pillow image and hands the decoded
strings to the identifier extractor.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from PIL import UnidentifiedImageError

from ..domain.errors import CaptureError
from ..domain.identifiers import extract_identifier
from ..logging import get_logger
from .normalize import ImageSource, open_image

LOG = get_logger("capture-decoder")


def decode_texts(source: ImageSource) -> List[str]:
    try:
        from pyzbar.pyzbar import decode as pyzbar_decode
    except ImportError as exc:
        raise CaptureError("Barcode decoding needs the 'scan' extra (pyzbar)") from exc

    try:
        with open_image(source) as img:
            decoded = pyzbar_decode(img.convert("RGB"))
    except (UnidentifiedImageError, OSError) as exc:
        raise CaptureError(f"Failed to load image: {exc}") from exc

    texts: List[str] = []
    for d in decoded:
        data_bytes = getattr(d, "data", b"")
        try:
            texts.append(data_bytes.decode("utf-8"))
        except UnicodeDecodeError:
            texts.append(data_bytes.decode("latin-1", errors="ignore"))
    LOG.debug(f"Decoder returned {len(texts)} symbol(s)")
    return texts


def first_identifier(texts: Iterable[str]) -> Optional[str]:
    for text in texts:
        found = extract_identifier(text)
        if found:
            return found
    return None
