from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import UploadError


NOT_AUTHORIZED_TAG = "not-authorized"

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_ALLOWED_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
)


@dataclass(frozen=True)
class UploadLimits:
    max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_types: Tuple[str, ...] = DEFAULT_ALLOWED_TYPES


class UploadState(str, Enum):
    PENDING = "Pending"
    UPLOADING = "Uploading"
    UPLOADED = "Uploaded"


class RecordStatus(str, Enum):
    LOGGED = "Logged"
    ASSESSED = "Assessed"
    COMPLETED = "Completed"


class RecordVariant(str, Enum):
    OVERSTOCK = "overstock"
    DAMAGES = "damages"

    @property
    def requires_returns_number(self) -> bool:
        return self is RecordVariant.OVERSTOCK


def new_item_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class UploadResult:
    """Outcome of one upload attempt for one capture item.

    Exactly one of (storage_path + public_reference) or error is set.
    """

    item_id: str
    storage_path: Optional[str] = None
    public_reference: Optional[str] = None
    error: Optional[UploadError] = None

    def __post_init__(self) -> None:
        stored = self.storage_path is not None and self.public_reference is not None
        if stored == (self.error is not None):
            raise ValueError("UploadResult needs either a stored reference or an error, not both")

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CaptureItem:
    tag: str
    source_blob: bytes
    file_name: str
    content_type: str = "image/jpeg"
    id: str = field(default_factory=new_item_id)
    display_preview: Optional[str] = None
    upload_state: UploadState = UploadState.PENDING
    # Last successful upload; kept across a rollback so a retry can reuse it.
    stored: Optional[UploadResult] = None

    @property
    def size(self) -> int:
        return len(self.source_blob)


@dataclass
class SubmissionForm:
    invoice_number: str = ""
    account_number: str = ""
    returns_number: str = ""
    reason: str = ""


@dataclass(frozen=True)
class ValidatedSubmission:
    invoice_number: int
    account_number: str
    returns_number: Optional[int]
    reason: str


@dataclass
class ReturnRecord:
    invoice_number: int
    account_number: str
    returns_number: Optional[int]
    images: List[str]
    warehouse_notes: str
    sales_notes: str
    status: RecordStatus
    team: Optional[str]
    action: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReturnRecord":
        return cls(
            invoice_number=int(row["invoice_number"]),
            account_number=row["account_number"],
            returns_number=int(row["returns_number"]) if row.get("returns_number") is not None else None,
            images=parse_images(row.get("images")),
            warehouse_notes=row.get("warehouse_notes") or "",
            sales_notes=row.get("sales_notes") or "",
            status=RecordStatus(row.get("status") or RecordStatus.LOGGED.value),
            team=row.get("team"),
            action=row.get("action"),
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoiceNumber": self.invoice_number,
            "accountNumber": self.account_number,
            "returnsNumber": self.returns_number,
            "images": list(self.images),
            "warehouseNotes": self.warehouse_notes,
            "salesNotes": self.sales_notes,
            "status": self.status.value,
            "team": self.team,
            "action": self.action,
            "createdAt": self.created_at,
        }


def parse_images(raw: Any) -> List[str]:
    """Decode a stored image list; tolerates a bare string from older rows."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return [str(v) for v in raw]
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return [str(raw)]
    if isinstance(decoded, list):
        return [str(v) for v in decoded]
    return [str(decoded)]
