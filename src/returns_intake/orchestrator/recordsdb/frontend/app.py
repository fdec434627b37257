from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ....config import load_completion_policy
from ....domain.errors import ReconciliationError, ReconciliationErrorKind, ValidationError, user_message
from ....logging import get_logger
from ....paths import find_project_root
from ...reconcile import RecordReconciler
from ..constants import ASSESSED_FILTERS, ASSIGNED_FILTERS
from ..db import RecordFilters, ReturnsDatabase


LOG = get_logger("recordsdb-frontend")

# Request keys accepted by PATCH, mapped to store columns.
UPDATE_KEYS = {
    "salesNotes": "sales_notes",
    "sales_notes": "sales_notes",
    "warehouseNotes": "warehouse_notes",
    "warehouse_notes": "warehouse_notes",
    "team": "team",
    "action": "action",
    "status": "status",
}

_ERROR_STATUS = {
    ReconciliationErrorKind.NOT_FOUND: 404,
    ReconciliationErrorKind.PERMISSION_DENIED: 403,
    ReconciliationErrorKind.UNIQUENESS_CONFLICT: 409,
}


def _parse_int(value: Optional[str], *, default: int, minimum: int, maximum: int) -> int:
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    if parsed < minimum:
        return minimum
    if parsed > maximum:
        return maximum
    return parsed


def _parse_completed(value: Optional[str]) -> Optional[bool]:
    v = (value or "").strip().lower()
    if v in {"1", "true", "yes", "only"}:
        return True
    if v in {"all", "any"}:
        return None
    return False


def _parse_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _choice(value: Optional[str], choices: List[str], name: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if value not in choices:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")
    return value


def create_app(
    root_dir: Optional[str] = None,
    *,
    db_path: Optional[str] = None,
    require_team_and_action: Optional[bool] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing the return records for review and update."""

    project_root = find_project_root(root_dir)
    db = ReturnsDatabase(db_path, root_dir=project_root)
    reconciler = RecordReconciler(db)
    policy_default = (
        require_team_and_action if require_team_and_action is not None else load_completion_policy(project_root)
    )
    LOG.info(f"Completion requires team and action: {policy_default}")

    def _raise_for(exc: Exception) -> None:
        if isinstance(exc, ValidationError):
            raise HTTPException(status_code=400, detail=exc.message) from exc
        if isinstance(exc, ReconciliationError):
            status = _ERROR_STATUS.get(exc.kind, 500)
            raise HTTPException(status_code=status, detail=user_message(exc)) from exc
        raise exc

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": db.db_path})

    async def summary(_: Request) -> JSONResponse:
        try:
            counts = await reconciler.summary()
        except ReconciliationError as exc:
            _raise_for(exc)
        return JSONResponse({"by_status": counts, "total": sum(counts.values())})

    async def records(request: Request) -> JSONResponse:
        qp = request.query_params
        limit = _parse_int(qp.get("limit"), default=25, minimum=1, maximum=200)
        page = _parse_int(qp.get("page"), default=0, minimum=0, maximum=100_000)
        filters = RecordFilters(
            query=qp.get("q") or qp.get("search") or None,
            team=qp.get("team") or None,
            assigned=_choice(qp.get("assigned"), list(ASSIGNED_FILTERS), "assigned"),
            assessed=_choice(qp.get("assessed"), list(ASSESSED_FILTERS), "assessed"),
            month=qp.get("month") or None,
            year=qp.get("year") or None,
            completed=_parse_completed(qp.get("completed")),
            limit=limit,
            offset=limit * page,
        )
        try:
            total, items = await reconciler.list_records(filters)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except ReconciliationError as exc:
            _raise_for(exc)
        return JSONResponse(
            {
                "items": [r.to_dict() for r in items],
                "total": total,
                "limit": limit,
                "page": page,
            }
        )

    async def record_detail(request: Request) -> JSONResponse:
        invoice = int(request.path_params["invoice"])
        try:
            record = await reconciler.get_record(invoice)
        except ReconciliationError as exc:
            _raise_for(exc)
        if record is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return JSONResponse(record.to_dict())

    async def record_update(request: Request) -> JSONResponse:
        invoice = int(request.path_params["invoice"])
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Body must be JSON") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        updates: Dict[str, Any] = {}
        for key, value in body.items():
            if key in ("requireTeamAndAction", "require_team_and_action"):
                continue
            column = UPDATE_KEYS.get(key)
            if column is None:
                raise HTTPException(status_code=400, detail=f"Field '{key}' cannot be updated")
            updates[column] = value

        requested = _parse_bool(body.get("requireTeamAndAction", body.get("require_team_and_action")))
        # A request may tighten the completion policy but never relax it.
        policy = policy_default or bool(requested)
        try:
            record = await reconciler.update_record(invoice, updates, require_team_and_action=policy)
        except (ValidationError, ReconciliationError) as exc:
            _raise_for(exc)
        return JSONResponse(record.to_dict())

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/summary", summary, methods=["GET"]),
        Route("/api/records", records, methods=["GET"]),
        Route("/api/records/{invoice:int}", record_detail, methods=["GET"]),
        Route("/api/records/{invoice:int}", record_update, methods=["PATCH"]),
    ]

    app = Starlette(debug=False, routes=routes)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    cors_allow_origins = ["*"] if "*" in origins else origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app
