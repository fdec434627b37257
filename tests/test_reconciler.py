from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import Any, Dict, Optional

import pytest

from returns_intake.domain.errors import ReconciliationError, ReconciliationErrorKind, ValidationError
from returns_intake.domain.models import RecordStatus, ValidatedSubmission
from returns_intake.orchestrator.reconcile import RecordReconciler, merge_images, merge_notes
from returns_intake.orchestrator.recordsdb import RecordFilters, ReturnsDatabase


def _submission(invoice: int = 12345678, reason: str = "", returns: Optional[int] = 87654321) -> ValidatedSubmission:
    return ValidatedSubmission(
        invoice_number=invoice,
        account_number="ABC123",
        returns_number=returns,
        reason=reason,
    )


def _seed(db: ReturnsDatabase, invoice: int, created_at: str, **fields: Any) -> None:
    values: Dict[str, Any] = {
        "invoice_number": invoice,
        "account_number": fields.pop("account_number", "ABC123"),
        "returns_number": fields.pop("returns_number", None),
        "images": json.dumps(fields.pop("images", [])),
        "created_at": created_at,
    }
    values.update(fields)
    with db.transaction() as conn:
        db.insert_record(conn, values)


def test_merge_helpers() -> None:
    assert merge_images(["a", "b"], ["b", "c"]) == ["a", "b", "c"]
    assert merge_images([], ["x", "x", "y"]) == ["x", "y"]
    assert merge_notes("", "first") == "first"
    assert merge_notes("first", "") == "first"
    assert merge_notes("first", "second") == "first\nsecond"
    assert merge_notes(None, None) == ""


@pytest.mark.asyncio
async def test_first_submission_creates_logged_record(db: ReturnsDatabase) -> None:
    record = await RecordReconciler(db).reconcile(_submission(reason="torn box"), ["ref-a", "ref-b"])
    assert record.invoice_number == 12345678
    assert record.account_number == "ABC123"
    assert record.returns_number == 87654321
    assert record.images == ["ref-a", "ref-b"]
    assert record.warehouse_notes == "torn box"
    assert record.sales_notes == ""
    assert record.status is RecordStatus.LOGGED
    assert record.team is None and record.action is None
    assert record.created_at


@pytest.mark.asyncio
async def test_reconcile_is_idempotent_and_order_preserving(db: ReturnsDatabase) -> None:
    reconciler = RecordReconciler(db)
    await reconciler.reconcile(_submission(), ["a", "b"])
    again = await reconciler.reconcile(_submission(), ["a", "b"])
    assert again.images == ["a", "b"]

    merged = await reconciler.reconcile(_submission(), ["b", "c"])
    assert merged.images == ["a", "b", "c"]

    stored = await reconciler.get_record(12345678)
    assert stored is not None
    assert stored.images == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_notes_are_appended_never_truncated(db: ReturnsDatabase) -> None:
    reconciler = RecordReconciler(db)
    await reconciler.reconcile(_submission(), ["a"])
    r = await reconciler.reconcile(_submission(reason="second"), ["b"])
    assert r.warehouse_notes == "second"
    r = await reconciler.reconcile(_submission(reason="third"), [])
    assert r.warehouse_notes == "second\nthird"
    r = await reconciler.reconcile(_submission(), ["c"])
    assert r.warehouse_notes == "second\nthird"


@pytest.mark.asyncio
async def test_merge_leaves_assignment_fields_alone(db: ReturnsDatabase) -> None:
    reconciler = RecordReconciler(db)
    await reconciler.reconcile(_submission(), ["a"])
    await reconciler.update_record(12345678, {"status": "Assessed", "team": "Team A", "action": "Credit"})
    merged = await reconciler.reconcile(
        ValidatedSubmission(invoice_number=12345678, account_number="XYZ999", returns_number=None, reason="later"),
        ["b"],
    )
    assert merged.status is RecordStatus.ASSESSED
    assert merged.team == "Team A"
    assert merged.action == "Credit"
    assert merged.account_number == "ABC123"
    assert merged.returns_number == 87654321


@pytest.mark.asyncio
async def test_damages_records_have_no_returns_number(db: ReturnsDatabase) -> None:
    record = await RecordReconciler(db).reconcile(_submission(returns=None), ["a"])
    assert record.returns_number is None
    assert record.to_dict()["returnsNumber"] is None


@pytest.mark.asyncio
async def test_concurrent_submissions_for_one_invoice_lose_nothing(db: ReturnsDatabase) -> None:
    reconciler = RecordReconciler(db)
    refs = [f"ref-{n}" for n in range(12)]
    await asyncio.gather(*(reconciler.reconcile(_submission(reason=ref), [ref]) for ref in refs))

    stored = await reconciler.get_record(12345678)
    assert stored is not None
    assert sorted(stored.images) == sorted(refs)
    assert sorted(stored.warehouse_notes.split("\n")) == sorted(refs)


@pytest.mark.asyncio
async def test_update_writes_only_supplied_fields(db: ReturnsDatabase) -> None:
    reconciler = RecordReconciler(db)
    await reconciler.reconcile(_submission(reason="wh"), ["a"])
    r = await reconciler.update_record(12345678, {"sales_notes": " <call> customer ", "team": "Team B"})
    assert r.sales_notes == "call customer"
    assert r.team == "Team B"
    assert r.warehouse_notes == "wh"
    assert r.images == ["a"]
    assert r.status is RecordStatus.LOGGED

    r = await reconciler.update_record(12345678, {"team": ""})
    assert r.team is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "updates",
    [
        {"status": "Shipped"},
        {"action": "x" * 51},
        {"team": "t" * 101},
        {"sales_notes": "n" * 1001},
        {"sales_notes": 5},
        {"warehouse_notes": {"text": "x"}},
        {"team": 7},
        {"action": ["Restock"]},
        {"status": 3},
        {"images": "[]"},
        {},
    ],
)
async def test_update_rejects_invalid_input(db: ReturnsDatabase, updates: Dict[str, Any]) -> None:
    reconciler = RecordReconciler(db)
    await reconciler.reconcile(_submission(), ["a"])
    with pytest.raises(ValidationError):
        await reconciler.update_record(12345678, updates)


@pytest.mark.asyncio
async def test_update_of_missing_record_is_not_found(db: ReturnsDatabase) -> None:
    with pytest.raises(ReconciliationError) as exc:
        await RecordReconciler(db).update_record(99999999, {"team": "A"})
    assert exc.value.kind is ReconciliationErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_completion_policy(db: ReturnsDatabase) -> None:
    reconciler = RecordReconciler(db)
    await reconciler.reconcile(_submission(), ["a"])

    with pytest.raises(ValidationError):
        await reconciler.update_record(12345678, {"status": "Completed", "team": "A"}, require_team_and_action=True)
    unchanged = await reconciler.get_record(12345678)
    assert unchanged is not None
    assert unchanged.status is RecordStatus.LOGGED
    assert unchanged.team is None

    done = await reconciler.update_record(
        12345678,
        {"status": "Completed", "team": "A", "action": "Scrap"},
        require_team_and_action=True,
    )
    assert done.status is RecordStatus.COMPLETED

    await reconciler.reconcile(_submission(invoice=11111111), ["b"])
    relaxed = await reconciler.update_record(11111111, {"status": "Completed"})
    assert relaxed.status is RecordStatus.COMPLETED


class _FailingDatabase(ReturnsDatabase):
    def __init__(self, path: str, *, select_error: Optional[Exception] = None, write_error: Optional[Exception] = None) -> None:
        super().__init__(path)
        self.select_error = select_error
        self.write_error = write_error
        self.writes = 0

    def select_record(self, conn: sqlite3.Connection, invoice_number: int) -> Optional[Dict[str, Any]]:
        if self.select_error is not None:
            raise self.select_error
        return super().select_record(conn, invoice_number)

    def insert_record(self, conn: sqlite3.Connection, values: Dict[str, Any]) -> None:
        self.writes += 1
        if self.write_error is not None:
            raise self.write_error
        super().insert_record(conn, values)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs, kind, writes",
    [
        ({"select_error": sqlite3.OperationalError("disk I/O error")}, ReconciliationErrorKind.LOOKUP_FAILED, 0),
        (
            {"write_error": sqlite3.OperationalError("attempt to write a readonly database")},
            ReconciliationErrorKind.PERMISSION_DENIED,
            1,
        ),
        (
            {"write_error": sqlite3.IntegrityError("UNIQUE constraint failed: return_records.invoice_number")},
            ReconciliationErrorKind.UNIQUENESS_CONFLICT,
            1,
        ),
        ({"write_error": sqlite3.OperationalError("disk full")}, ReconciliationErrorKind.WRITE_FAILED, 1),
    ],
)
async def test_store_failures_are_classified(tmp_path, kwargs: Dict[str, Any], kind: ReconciliationErrorKind, writes: int) -> None:
    db = _FailingDatabase(str(tmp_path / "r.sqlite3"), **kwargs)
    with pytest.raises(ReconciliationError) as exc:
        await RecordReconciler(db).reconcile(_submission(), ["a"])
    assert exc.value.kind is kind
    assert exc.value.permission_denied is (kind is ReconciliationErrorKind.PERMISSION_DENIED)
    assert db.writes == writes
    assert ReturnsDatabase(db.db_path).get_record(12345678) is None


@pytest.mark.asyncio
async def test_listing_filters_and_order(db: ReturnsDatabase) -> None:
    _seed(db, 10000001, "2024-01-15T09:00:00.000+00:00", team="Team A", status="Assessed")
    _seed(db, 10000002, "2024-02-20T09:00:00.000+00:00", account_number="XYZ999", returns_number=55554444)
    _seed(db, 10000003, "2025-02-01T09:00:00.000+00:00", team="Team B", status="Completed")
    _seed(db, 10000004, "2025-03-01T09:00:00.000+00:00", team="  ")
    reconciler = RecordReconciler(db)

    total, items = await reconciler.list_records(RecordFilters())
    assert total == 3
    assert [r.invoice_number for r in items] == [10000004, 10000002, 10000001]

    _, items = await reconciler.list_records(RecordFilters(completed=True))
    assert [r.invoice_number for r in items] == [10000003]

    total, _ = await reconciler.list_records(RecordFilters(completed=None))
    assert total == 4

    _, items = await reconciler.list_records(RecordFilters(query="xyz"))
    assert [r.invoice_number for r in items] == [10000002]
    _, items = await reconciler.list_records(RecordFilters(query="5555"))
    assert [r.invoice_number for r in items] == [10000002]
    _, items = await reconciler.list_records(RecordFilters(query="0000001"))
    assert [r.invoice_number for r in items] == [10000001]

    _, items = await reconciler.list_records(RecordFilters(team="Team A"))
    assert [r.invoice_number for r in items] == [10000001]
    _, items = await reconciler.list_records(RecordFilters(team="All"))
    assert len(items) == 3

    _, items = await reconciler.list_records(RecordFilters(assigned="Unassigned"))
    assert [r.invoice_number for r in items] == [10000004, 10000002]
    _, items = await reconciler.list_records(RecordFilters(assigned="Assigned"))
    assert [r.invoice_number for r in items] == [10000001]

    _, items = await reconciler.list_records(RecordFilters(assessed="Assessed"))
    assert [r.invoice_number for r in items] == [10000001]
    _, items = await reconciler.list_records(RecordFilters(assessed="Unassessed"))
    assert [r.invoice_number for r in items] == [10000004, 10000002]

    _, items = await reconciler.list_records(RecordFilters(month="Feb", completed=None))
    assert [r.invoice_number for r in items] == [10000003, 10000002]
    _, items = await reconciler.list_records(RecordFilters(month="Feb", year="24", completed=None))
    assert [r.invoice_number for r in items] == [10000002]
    _, items = await reconciler.list_records(RecordFilters(year="2025", completed=None))
    assert [r.invoice_number for r in items] == [10000004, 10000003]

    total, items = await reconciler.list_records(RecordFilters(limit=1, offset=1))
    assert total == 3
    assert [r.invoice_number for r in items] == [10000002]

    with pytest.raises(ValueError):
        await reconciler.list_records(RecordFilters(month="Smarch"))

    summary = await reconciler.summary()
    assert summary == {"Logged": 2, "Assessed": 1, "Completed": 1}
