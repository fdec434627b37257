from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional

from ..domain.errors import QueueError
from ..domain.models import CaptureItem, UploadResult, UploadState
from ..logging import get_logger

LOG = get_logger("capture-queue")


class CaptureQueue:
    """In-memory queue of captures owned by one coordinator.

    Items are keyed by their opaque id; iteration yields newest first.
    """

    def __init__(self) -> None:
        self._items: Dict[str, CaptureItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[CaptureItem]:
        return iter(reversed(list(self._items.values())))

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def add(self, item: CaptureItem) -> CaptureItem:
        if item.id in self._items:
            raise QueueError(f"Duplicate capture id {item.id}")
        self._items[item.id] = item
        LOG.debug(f"Queued capture {item.id} tag={item.tag} ({item.size} bytes)")
        return item

    def get(self, item_id: str) -> CaptureItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise QueueError(f"Unknown capture id {item_id}") from None

    def remove(self, item_id: str) -> CaptureItem:
        item = self.get(item_id)
        if item.upload_state is not UploadState.PENDING:
            raise QueueError(f"Capture {item_id} is {item.upload_state.value} and cannot be removed")
        del self._items[item_id]
        item.display_preview = None
        return item

    def clear(self) -> None:
        for item in self._items.values():
            item.display_preview = None
        self._items.clear()

    def pending(self) -> List[CaptureItem]:
        return [it for it in self if it.upload_state is UploadState.PENDING]

    def set_state(self, item_ids: Iterable[str], state: UploadState) -> None:
        for item_id in item_ids:
            self.get(item_id).upload_state = state

    def mark_uploaded(self, result: UploadResult) -> None:
        item = self.get(result.item_id)
        item.upload_state = UploadState.UPLOADED
        item.stored = result

    def unmark_uploaded(self, item_ids: Iterable[str]) -> List[str]:
        """Revert Uploaded items to Pending, keeping their stored reference."""
        reverted: List[str] = []
        for item_id in item_ids:
            item = self._items.get(item_id)
            if item is None or item.upload_state is not UploadState.UPLOADED:
                continue
            item.upload_state = UploadState.PENDING
            reverted.append(item_id)
        if reverted:
            LOG.info(f"Reverted {len(reverted)} capture(s) to Pending")
        return reverted

    def find(self, item_id: str) -> Optional[CaptureItem]:
        return self._items.get(item_id)
