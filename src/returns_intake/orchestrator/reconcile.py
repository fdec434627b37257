"""Create-or-merge of return records keyed by invoice number."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..domain.errors import ReconciliationError, ReconciliationErrorKind, ValidationError
from ..domain.fields import MAX_ACTION_LENGTH, MAX_TEAM_LENGTH, MAX_TEXT_LENGTH, sanitize_text
from ..domain.models import RecordStatus, ReturnRecord, ValidatedSubmission, parse_images
from ..logging import get_logger
from .recordsdb import RecordFilters, ReturnsDatabase
from .recordsdb.constants import UPDATABLE_FIELDS

LOG = get_logger("orchestrator-reconcile")


def merge_images(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    """Ordered union: prior references keep their position, new ones are appended once."""
    merged: List[str] = []
    seen = set()
    for ref in list(existing) + list(new):
        if ref in seen:
            continue
        seen.add(ref)
        merged.append(ref)
    return merged


def merge_notes(existing: Optional[str], reason: Optional[str]) -> str:
    existing = existing or ""
    if not reason:
        return existing
    if existing:
        return f"{existing}\n{reason}"
    return reason


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _classify(exc: sqlite3.Error, fallback: ReconciliationErrorKind) -> ReconciliationError:
    text = str(exc).lower()
    if isinstance(exc, sqlite3.IntegrityError):
        return ReconciliationError(ReconciliationErrorKind.UNIQUENESS_CONFLICT, f"Duplicate record: {exc}")
    if "readonly" in text or "permission" in text or "access" in text:
        return ReconciliationError(ReconciliationErrorKind.PERMISSION_DENIED, f"Permission denied: {exc}")
    return ReconciliationError(fallback, str(exc))


def _require_text(value: Any, field: str) -> None:
    if value is not None and not isinstance(value, str):
        raise ValidationError(field, f"{field} must be text")


def _optional_tag(value: Any, field: str, max_length: int) -> Optional[str]:
    _require_text(value, field)
    if value is None:
        return None
    cleaned = sanitize_text(value, max_length, field=field)
    return cleaned or None


def clean_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and sanitize the fields of an update request.

    Only keys present in ``updates`` are returned; absent fields stay untouched
    in the store.
    """
    unknown = sorted(set(updates) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(unknown[0], f"Field '{unknown[0]}' cannot be updated")
    clean: Dict[str, Any] = {}
    for name in ("sales_notes", "warehouse_notes"):
        if name in updates:
            _require_text(updates[name], name)
            clean[name] = sanitize_text(updates[name] or "", MAX_TEXT_LENGTH, field=name)
    if "team" in updates:
        clean["team"] = _optional_tag(updates["team"], "team", MAX_TEAM_LENGTH)
    if "action" in updates:
        clean["action"] = _optional_tag(updates["action"], "action", MAX_ACTION_LENGTH)
    if "status" in updates:
        _require_text(updates["status"], "status")
        try:
            clean["status"] = RecordStatus(updates["status"]).value
        except ValueError:
            allowed = ", ".join(s.value for s in RecordStatus)
            raise ValidationError("status", f"Status must be one of: {allowed}") from None
    return clean


class RecordReconciler:
    """Apply submissions and later edits to the shared record store.

    Each operation is a single ``BEGIN IMMEDIATE`` transaction run off the
    event loop, so two submitters for the same invoice number serialize on the
    store's write lock and never interleave their read and write.
    """

    def __init__(self, db: ReturnsDatabase) -> None:
        self.db = db

    # --------------- merge ---------------
    async def reconcile(self, submission: ValidatedSubmission, references: Iterable[str]) -> ReturnRecord:
        refs = list(references)
        record, created = await asyncio.to_thread(self._reconcile_sync, submission, refs)
        verb = "Created" if created else "Merged into"
        LOG.info(f"{verb} record {record.invoice_number}: {len(record.images)} image(s) total")
        return record

    def _reconcile_sync(self, submission: ValidatedSubmission, refs: List[str]) -> Tuple[ReturnRecord, bool]:
        invoice = submission.invoice_number
        try:
            with self.db.transaction() as conn:
                try:
                    existing = self.db.select_record(conn, invoice)
                except sqlite3.Error as exc:
                    LOG.error(f"Lookup failed for invoice {invoice}: {exc}")
                    raise ReconciliationError(
                        ReconciliationErrorKind.LOOKUP_FAILED, f"Lookup failed: {exc}"
                    ) from exc

                if existing is None:
                    self.db.insert_record(
                        conn,
                        {
                            "invoice_number": invoice,
                            "account_number": submission.account_number,
                            "returns_number": submission.returns_number,
                            "images": json.dumps(merge_images([], refs)),
                            "warehouse_notes": submission.reason,
                            "status": RecordStatus.LOGGED.value,
                            "team": None,
                            "action": None,
                            "created_at": utc_timestamp(),
                        },
                    )
                    created = True
                else:
                    images = merge_images(parse_images(existing.get("images")), refs)
                    notes = merge_notes(existing.get("warehouse_notes"), submission.reason)
                    self.db.update_fields(
                        conn,
                        invoice,
                        {"images": json.dumps(images), "warehouse_notes": notes},
                    )
                    created = False
                row = self.db.select_record(conn, invoice)
        except ReconciliationError:
            raise
        except sqlite3.Error as exc:
            err = _classify(exc, ReconciliationErrorKind.WRITE_FAILED)
            LOG.error(f"Reconciliation failed for invoice {invoice}: {err.kind.value}: {exc}")
            raise err from exc
        return ReturnRecord.from_row(row), created

    # --------------- update ---------------
    async def update_record(
        self,
        invoice_number: int,
        updates: Dict[str, Any],
        *,
        require_team_and_action: bool = False,
    ) -> ReturnRecord:
        clean = clean_updates(updates)
        if not clean:
            raise ValidationError("updates", "No fields to update")
        record = await asyncio.to_thread(self._update_sync, int(invoice_number), clean, require_team_and_action)
        LOG.info(f"Updated record {record.invoice_number}: {', '.join(sorted(clean))}")
        return record

    def _update_sync(self, invoice: int, clean: Dict[str, Any], require_team_and_action: bool) -> ReturnRecord:
        try:
            with self.db.transaction() as conn:
                try:
                    existing = self.db.select_record(conn, invoice)
                except sqlite3.Error as exc:
                    raise ReconciliationError(
                        ReconciliationErrorKind.LOOKUP_FAILED, f"Lookup failed: {exc}"
                    ) from exc
                if existing is None:
                    raise ReconciliationError(ReconciliationErrorKind.NOT_FOUND, f"No record for invoice {invoice}")
                if require_team_and_action and clean.get("status") == RecordStatus.COMPLETED.value:
                    team = clean["team"] if "team" in clean else existing.get("team")
                    action = clean["action"] if "action" in clean else existing.get("action")
                    if not team or not action:
                        raise ValidationError(
                            "status",
                            "Team and action must be set before marking as Completed",
                        )
                self.db.update_fields(conn, invoice, clean)
                row = self.db.select_record(conn, invoice)
        except (ReconciliationError, ValidationError):
            raise
        except sqlite3.Error as exc:
            err = _classify(exc, ReconciliationErrorKind.WRITE_FAILED)
            LOG.error(f"Update failed for invoice {invoice}: {err.kind.value}: {exc}")
            raise err from exc
        return ReturnRecord.from_row(row)

    # --------------- reads ---------------
    async def get_record(self, invoice_number: int) -> Optional[ReturnRecord]:
        try:
            row = await asyncio.to_thread(self.db.get_record, int(invoice_number))
        except sqlite3.Error as exc:
            raise _classify(exc, ReconciliationErrorKind.LOOKUP_FAILED) from exc
        return ReturnRecord.from_row(row) if row else None

    async def list_records(self, filters: Optional[RecordFilters] = None) -> Tuple[int, List[ReturnRecord]]:
        try:
            page = await asyncio.to_thread(self.db.list_records, filters)
        except sqlite3.Error as exc:
            raise _classify(exc, ReconciliationErrorKind.LOOKUP_FAILED) from exc
        return page["total"], [ReturnRecord.from_row(r) for r in page["items"]]

    async def summary(self) -> Dict[str, int]:
        try:
            return await asyncio.to_thread(self.db.count_by_status)
        except sqlite3.Error as exc:
            raise _classify(exc, ReconciliationErrorKind.LOOKUP_FAILED) from exc
