"""Keyed store of return records backed by SQLite.

Modules:
- db: DB location, schema, transactions and query helpers
- constants: status and filter vocabularies
- frontend: Starlette app exposing the read/update surface
"""

from .db import RecordFilters, ReturnsDatabase

__all__ = [
    "RecordFilters",
    "ReturnsDatabase",
]
