from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ...config import load_db_path
from ...logging import get_logger
from .constants import MONTH_ABBREVIATIONS, STATUS_CHOICES, STATUS_DEFAULT, UPDATABLE_FIELDS


LOG = get_logger("recordsdb-db")

STATUS_ENUM_SQL = ", ".join(f"'{value}'" for value in STATUS_CHOICES)

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS return_records (
  invoice_number   INTEGER PRIMARY KEY,
  account_number   TEXT NOT NULL,
  returns_number   INTEGER,                 -- NULL for damages
  images           TEXT NOT NULL DEFAULT '[]',  -- JSON array, insertion ordered
  warehouse_notes  TEXT NOT NULL DEFAULT '',
  sales_notes      TEXT NOT NULL DEFAULT '',
  status           TEXT NOT NULL DEFAULT '{STATUS_DEFAULT}'
                   CHECK(status IN ({STATUS_ENUM_SQL})),
  team             TEXT,
  action           TEXT,
  created_at       TEXT NOT NULL,          -- ISO-8601 UTC
  updated_at       TEXT
);

CREATE INDEX IF NOT EXISTS idx_records_created_at ON return_records(created_at);
CREATE INDEX IF NOT EXISTS idx_records_status     ON return_records(status);
CREATE INDEX IF NOT EXISTS idx_records_team       ON return_records(team);
CREATE INDEX IF NOT EXISTS idx_records_account    ON return_records(account_number);
"""

RECORD_COLUMNS = (
    "invoice_number",
    "account_number",
    "returns_number",
    "images",
    "warehouse_notes",
    "sales_notes",
    "status",
    "team",
    "action",
    "created_at",
)


@dataclass
class RecordFilters:
    query: Optional[str] = None
    team: Optional[str] = None
    assigned: Optional[str] = None
    assessed: Optional[str] = None
    month: Optional[str] = None
    year: Optional[str] = None
    # True: only Completed, False: hide Completed, None: no status filter
    completed: Optional[bool] = False
    limit: int = 100
    offset: int = 0


def _active(value: Optional[str]) -> Optional[str]:
    v = (value or "").strip()
    if not v or v == "All":
        return None
    return v


class ReturnsDatabase:
    """SQLite-backed store of return records keyed by invoice number.

    - Places the DB under ``<repo-root>/var/returnsdb/returns.sqlite3`` unless
      a path is given (or RETURNS_DB_PATH is set).
    - Ensures schema on first use.
    - ``transaction()`` takes the write lock up front (BEGIN IMMEDIATE) so a
      read-merge-write sequence inside it is serialized across writers.
    """

    def __init__(self, db_path: Optional[str] = None, *, root_dir: Optional[str] = None, busy_timeout: float = 30.0) -> None:
        self.db_path = os.path.abspath(db_path) if db_path else load_db_path(root_dir or os.getcwd())
        self.busy_timeout = float(busy_timeout)
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        LOG.info(f"Returns DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            else:
                conn.execute("COMMIT;")

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.DatabaseError:
                LOG.debug("WAL journal mode unavailable; continuing with defaults")
            cur.executescript(SCHEMA_SQL)
            LOG.info("Returns DB schema ensured.")

    # --------------- Row helpers (run inside a caller's transaction) ---------------
    @staticmethod
    def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        return dict(row) if row is not None else None

    @staticmethod
    def _rows_to_dicts(rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
        return [dict(row) for row in rows]

    def select_record(self, conn: sqlite3.Connection, invoice_number: int) -> Optional[Dict[str, Any]]:
        cur = conn.execute(
            f"SELECT {', '.join(RECORD_COLUMNS)} FROM return_records WHERE invoice_number = ?;",
            (int(invoice_number),),
        )
        return self._row_to_dict(cur.fetchone())

    def insert_record(self, conn: sqlite3.Connection, values: Dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO return_records (
                invoice_number, account_number, returns_number, images,
                warehouse_notes, sales_notes, status, team, action, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                int(values["invoice_number"]),
                values["account_number"],
                values.get("returns_number"),
                values["images"],
                values.get("warehouse_notes") or "",
                values.get("sales_notes") or "",
                values.get("status") or STATUS_DEFAULT,
                values.get("team"),
                values.get("action"),
                values["created_at"],
            ),
        )

    def update_fields(self, conn: sqlite3.Connection, invoice_number: int, fields: Dict[str, Any]) -> int:
        allowed = set(UPDATABLE_FIELDS) | {"images"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unsupported field(s): {sorted(unknown)}")
        if not fields:
            return 0
        names = list(fields)
        assignments = ", ".join(f"{name} = ?" for name in names)
        cur = conn.execute(
            f"UPDATE return_records SET {assignments}, updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') "
            "WHERE invoice_number = ?;",
            (*[fields[n] for n in names], int(invoice_number)),
        )
        return cur.rowcount

    # --------------- Query helpers ---------------
    def get_record(self, invoice_number: int) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            return self.select_record(conn, invoice_number)

    def list_records(self, filters: Optional[RecordFilters] = None) -> Dict[str, Any]:
        """Return paginated records, newest first, filtered like the sales list."""
        f = filters or RecordFilters()
        where: List[str] = []
        params: List[Any] = []

        if f.completed is True:
            where.append("status = 'Completed'")
        elif f.completed is False:
            where.append("status <> 'Completed'")

        q = (f.query or "").strip().lower()
        if q:
            like = f"%{q}%"
            where.append(
                "(CAST(invoice_number AS TEXT) LIKE ? OR LOWER(account_number) LIKE ? "
                "OR COALESCE(CAST(returns_number AS TEXT), '') LIKE ?)"
            )
            params.extend([like, like, like])

        team = _active(f.team)
        if team:
            where.append("TRIM(COALESCE(team, '')) = ?")
            params.append(team)

        assigned = _active(f.assigned)
        if assigned == "Assigned":
            where.append("TRIM(COALESCE(team, '')) <> ''")
        elif assigned == "Unassigned":
            where.append("TRIM(COALESCE(team, '')) = ''")

        assessed = _active(f.assessed)
        if assessed == "Assessed":
            where.append("status = 'Assessed'")
        elif assessed == "Unassessed":
            where.append("status <> 'Assessed'")

        month = _active(f.month)
        if month:
            if month not in MONTH_ABBREVIATIONS:
                raise ValueError(f"Unknown month filter: {month}")
            where.append("strftime('%m', created_at) = ?")
            params.append(MONTH_ABBREVIATIONS[month])

        year = _active(f.year)
        if year:
            if not year.isdigit() or len(year) not in (2, 4):
                raise ValueError(f"Invalid year filter: {year}")
            if len(year) == 2:
                where.append("substr(strftime('%Y', created_at), 3, 2) = ?")
            else:
                where.append("strftime('%Y', created_at) = ?")
            params.append(year)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        with self.connect() as conn:
            cur = conn.execute(f"SELECT COUNT(*) AS total FROM return_records {where_sql};", params)
            total = int(cur.fetchone()["total"])
            cur = conn.execute(
                f"""
                SELECT {', '.join(RECORD_COLUMNS)}
                FROM return_records
                {where_sql}
                ORDER BY created_at IS NULL, created_at DESC, invoice_number DESC
                LIMIT ? OFFSET ?;
                """,
                (*params, int(f.limit), int(f.offset)),
            )
            rows = self._rows_to_dicts(cur.fetchall())
        return {"total": total, "items": rows, "limit": f.limit, "offset": f.offset}

    def count_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in STATUS_CHOICES}
        with self.connect() as conn:
            cur = conn.execute("SELECT status, COUNT(*) AS n FROM return_records GROUP BY status;")
            for row in cur.fetchall():
                counts[row["status"]] = int(row["n"])
        return counts
