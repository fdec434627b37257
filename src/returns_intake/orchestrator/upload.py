"""Uploading logic for captured return photos."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from ..domain.errors import IntakeError, ObjectExistsError, StorageError, UploadError, UploadErrorKind
from ..domain.models import CaptureItem, UploadLimits, UploadResult
from ..logging import get_logger
from ..storage.client import ObjectStorage

LOG = get_logger("orchestrator-upload")

_FOLDER_UNSAFE_RE = re.compile(r"[^0-9A-Za-z_\-]")
_EXTENSION_RE = re.compile(r"\.[^.]+$")
_UNDERSCORE_RUN_RE = re.compile(r"_+")

# put() attempts per item when the destination path is already occupied.
COLLISION_ATTEMPTS = 2

# Leading bytes of the formats on the allow-list.
_SIGNATURES = (
    b"\xff\xd8",  # JPEG
    b"\x89PNG",  # PNG
    b"GIF",  # GIF
    b"RIFF",  # WebP
)


def sanitize_folder(name: str) -> str:
    return _FOLDER_UNSAFE_RE.sub("_", str(name).strip())


def sanitize_base(name: str) -> str:
    base = _EXTENSION_RE.sub("", str(name)).strip()
    return _UNDERSCORE_RUN_RE.sub("_", _FOLDER_UNSAFE_RE.sub("_", base))


def pick_extension(content_type: str) -> str:
    mime = (content_type or "").lower()
    if "png" in mime:
        return "png"
    if "webp" in mime:
        return "webp"
    if "gif" in mime:
        return "gif"
    return "jpg"


def format_time_12h(when: datetime) -> str:
    """``10.30pm`` style clock used in folder names."""
    hours12 = when.hour % 12 or 12
    ampm = "pm" if when.hour >= 12 else "am"
    return f"{hours12}.{when.minute:02d}{ampm}"


def build_destination_path(
    *,
    tag: Optional[str],
    folder_key: Optional[str],
    content_type: str,
    when: datetime,
    stamp_ms: Optional[int] = None,
) -> str:
    """``{MM}_{YYYY}/{DD}/{h.mmam}_{folder}/{tag}_{epochMillis}.{ext}``

    ``stamp_ms`` overrides the millisecond stamp derived from ``when``.
    """
    folder = sanitize_folder(folder_key or tag or "unknown")
    time_folder = f"{format_time_12h(when)}_{folder}"
    base = sanitize_base(tag or "image") or "image"
    stamp = stamp_ms if stamp_ms is not None else epoch_millis(when)
    dest = f"{when.month:02d}_{when.year}/{when.day:02d}/{time_folder}/{base}_{stamp}.{pick_extension(content_type)}"
    return dest.lstrip("/")


def epoch_millis(when: datetime) -> int:
    return int(round(when.timestamp() * 1000))


def sniff_image(data: bytes) -> bool:
    head = data[:4]
    return any(head.startswith(sig) for sig in _SIGNATURES)


class UploadOrchestrator:
    """Validate and upload capture items one at a time.

    ``upload_all`` never raises for a single item: each outcome is returned
    as an UploadResult and callers decide whether the batch is usable.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        limits: Optional[UploadLimits] = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.storage = storage
        self.limits = limits or UploadLimits()
        self.clock = clock
        # Last stamp handed out; file names stay unique within one orchestrator.
        self._last_stamp_ms = 0

    def validate(self, item: CaptureItem) -> None:
        if item.size > self.limits.max_bytes:
            limit_mb = self.limits.max_bytes / 1024 / 1024
            raise UploadError(UploadErrorKind.SIZE_EXCEEDED, f"File size exceeds {limit_mb:g}MB limit")
        if (item.content_type or "").lower() not in self.limits.allowed_types:
            raise UploadError(
                UploadErrorKind.TYPE_NOT_ALLOWED,
                "Only image files (JPEG, PNG, WebP, GIF) are allowed",
            )
        if not sniff_image(item.source_blob):
            raise UploadError(UploadErrorKind.CONTENT_MISMATCH, "Invalid image file format")

    def _next_stamp(self, when: datetime) -> int:
        stamp = max(epoch_millis(when), self._last_stamp_ms + 1)
        self._last_stamp_ms = stamp
        return stamp

    async def upload_one(self, item: CaptureItem, *, folder_key: Optional[str] = None) -> UploadResult:
        self.validate(item)
        stored_path: Optional[str] = None
        for attempt in range(1, COLLISION_ATTEMPTS + 1):
            when = self.clock()
            dest = build_destination_path(
                tag=item.tag,
                folder_key=folder_key,
                content_type=item.content_type,
                when=when,
                stamp_ms=self._next_stamp(when),
            )
            try:
                stored_path = await self.storage.put(dest, item.source_blob, item.content_type)
                break
            except ObjectExistsError as exc:
                if attempt == COLLISION_ATTEMPTS:
                    raise UploadError(UploadErrorKind.TRANSPORT_FAILURE, str(exc)) from exc
                LOG.warning(f"Path {dest} already taken; retrying item {item.id} with a new stamp")
            except StorageError as exc:
                raise UploadError(UploadErrorKind.TRANSPORT_FAILURE, str(exc)) from exc
        public = self.storage.public_url(stored_path)
        return UploadResult(item_id=item.id, storage_path=stored_path, public_reference=public)

    async def upload_all(
        self,
        items: Iterable[CaptureItem],
        *,
        folder_key: Optional[str] = None,
    ) -> List[UploadResult]:
        results: List[UploadResult] = []
        for item in items:
            try:
                result = await self.upload_one(item, folder_key=folder_key)
            except UploadError as exc:
                LOG.error(f"Upload error for item {item.id}: {exc.kind.value}: {exc.message}")
                result = UploadResult(item_id=item.id, error=exc)
            except (IntakeError, OSError) as exc:
                LOG.error(f"Upload error for item {item.id}: {exc}")
                result = UploadResult(
                    item_id=item.id,
                    error=UploadError(UploadErrorKind.TRANSPORT_FAILURE, str(exc)),
                )
            results.append(result)
        ok = sum(1 for r in results if r.ok)
        LOG.info(f"upload_all processed {len(results)} item(s): {ok} stored, {len(results) - ok} failed")
        return results
