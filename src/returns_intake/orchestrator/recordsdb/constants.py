from __future__ import annotations

from typing import Dict, Tuple

from ...domain.models import RecordStatus

STATUS_CHOICES: Tuple[str, ...] = tuple(s.value for s in RecordStatus)
STATUS_DEFAULT = RecordStatus.LOGGED.value

# Fields the update operation may write.
UPDATABLE_FIELDS: Tuple[str, ...] = ("sales_notes", "warehouse_notes", "team", "action", "status")

ASSIGNED_FILTERS: Tuple[str, ...] = ("All", "Assigned", "Unassigned")
ASSESSED_FILTERS: Tuple[str, ...] = ("All", "Assessed", "Unassessed")

MONTH_ABBREVIATIONS: Dict[str, str] = {
    "Jan": "01",
    "Feb": "02",
    "Mar": "03",
    "Apr": "04",
    "May": "05",
    "Jun": "06",
    "Jul": "07",
    "Aug": "08",
    "Sep": "09",
    "Oct": "10",
    "Nov": "11",
    "Dec": "12",
}
