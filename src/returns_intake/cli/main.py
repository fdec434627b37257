from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, Sequence

from ..capture.decoder import decode_texts, first_identifier
from ..capture.normalize import CaptureNormalizer
from ..config import (
    load_capture_size,
    load_completion_policy,
    load_storage_settings,
    load_upload_limits,
)
from ..domain.errors import IntakeError, ValidationError, user_message
from ..domain.identifiers import extract_identifier
from ..domain.models import RecordVariant, SubmissionForm
from ..logging import get_logger
from ..orchestrator import PipelineCoordinator, RecordReconciler, UploadOrchestrator, export_images
from ..orchestrator.recordsdb import RecordFilters, ReturnsDatabase
from ..paths import expand_abs
from ..storage.client import build_storage

LOG = get_logger("cli-main")


def _open_db(ns: argparse.Namespace) -> ReturnsDatabase:
    return ReturnsDatabase(expand_abs(ns.db) if ns.db else None, root_dir=os.getcwd())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _fail(exc: IntakeError) -> int:
    LOG.error(f"{type(exc).__name__}: {exc}")
    print(user_message(exc), file=sys.stderr)
    return 2 if isinstance(exc, ValidationError) else 1


def _add_submit_cli(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    submit = subparsers.add_parser(
        "submit",
        help="Capture photos, upload them and merge them into a return record.",
    )
    submit.add_argument("--variant", choices=[v.value for v in RecordVariant], default=RecordVariant.OVERSTOCK.value)
    submit.add_argument("--invoice", required=True, help="8-digit invoice number")
    submit.add_argument("--account", required=True, help="Account number, e.g. ABC123")
    submit.add_argument("--returns", default="", help="8-digit returns number (overstock only)")
    submit.add_argument("--reason", default="", help="Free-text reason appended to warehouse notes")
    submit.add_argument("--image", action="append", default=[], help="Photo to attach (repeatable)")
    submit.add_argument("--tag", help="Identifier to tag photos with when no barcode is decoded")
    submit.add_argument("--placeholder", type=int, default=0, help="Number of 'not authorized' stand-in images")

    def _submit(ns: argparse.Namespace) -> int:
        root = os.getcwd()
        db = _open_db(ns)
        storage = build_storage(load_storage_settings(root))
        coordinator = PipelineCoordinator(
            UploadOrchestrator(storage, load_upload_limits(root)),
            RecordReconciler(db),
            variant=RecordVariant(ns.variant),
            normalizer=CaptureNormalizer(load_capture_size(root)),
        )
        coordinator.start_capture()
        for image in ns.image:
            path = expand_abs(image)
            tag = ns.tag
            if not tag:
                try:
                    tag = first_identifier(decode_texts(path))
                except IntakeError as exc:
                    LOG.warning(f"Barcode decoding unavailable for {path}: {exc}")
            item = coordinator.capture_photo(path, tag=tag)
            LOG.info(f"Queued {item.file_name} for {path}")
        for _ in range(max(0, ns.placeholder)):
            coordinator.add_placeholder()

        form = SubmissionForm(
            invoice_number=ns.invoice,
            account_number=ns.account,
            returns_number=ns.returns,
            reason=ns.reason,
        )

        async def _run() -> Dict[str, Any]:
            try:
                record = await coordinator.submit(form)
            finally:
                await storage.aclose()
            return record.to_dict()

        _print_json(asyncio.run(_run()))
        return 0

    submit.set_defaults(handler=_submit)


def _add_record_cli(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    show = subparsers.add_parser("show", help="Print one record as JSON.")
    show.add_argument("invoice", type=int)

    def _show(ns: argparse.Namespace) -> int:
        record = asyncio.run(RecordReconciler(_open_db(ns)).get_record(ns.invoice))
        if record is None:
            LOG.error(f"No record for invoice {ns.invoice}")
            return 1
        _print_json(record.to_dict())
        return 0

    show.set_defaults(handler=_show)

    update = subparsers.add_parser("update", help="Edit notes, team, action or status of a record.")
    update.add_argument("invoice", type=int)
    update.add_argument("--sales-notes")
    update.add_argument("--warehouse-notes")
    update.add_argument("--team", help="Allocation team; empty string clears it")
    update.add_argument("--action", help="Disposition; empty string clears it")
    update.add_argument("--status", choices=["Logged", "Assessed", "Completed"])
    update.add_argument(
        "--require-team-and-action",
        action="store_true",
        default=None,
        help="Refuse Completed unless team and action are set (default from RETURNS_REQUIRE_TEAM_AND_ACTION)",
    )

    def _update(ns: argparse.Namespace) -> int:
        updates = {
            key: value
            for key, value in (
                ("sales_notes", ns.sales_notes),
                ("warehouse_notes", ns.warehouse_notes),
                ("team", ns.team),
                ("action", ns.action),
                ("status", ns.status),
            )
            if value is not None
        }
        policy = ns.require_team_and_action
        if policy is None:
            policy = load_completion_policy(os.getcwd())
        reconciler = RecordReconciler(_open_db(ns))
        record = asyncio.run(reconciler.update_record(ns.invoice, updates, require_team_and_action=policy))
        _print_json(record.to_dict())
        return 0

    update.set_defaults(handler=_update)

    lst = subparsers.add_parser("list", help="List records, newest first.")
    lst.add_argument("-q", "--query")
    lst.add_argument("--team")
    lst.add_argument("--assigned", choices=["All", "Assigned", "Unassigned"])
    lst.add_argument("--assessed", choices=["All", "Assessed", "Unassessed"])
    lst.add_argument("--month", help="Jan..Dec")
    lst.add_argument("--year", help="2- or 4-digit year")
    lst.add_argument("--completed", choices=["hide", "only", "all"], default="hide")
    lst.add_argument("--limit", type=int, default=25)
    lst.add_argument("--page", type=int, default=0)

    def _list(ns: argparse.Namespace) -> int:
        filters = RecordFilters(
            query=ns.query,
            team=ns.team,
            assigned=ns.assigned,
            assessed=ns.assessed,
            month=ns.month,
            year=ns.year,
            completed={"hide": False, "only": True, "all": None}[ns.completed],
            limit=max(1, ns.limit),
            offset=max(0, ns.limit) * max(0, ns.page),
        )
        try:
            total, items = asyncio.run(RecordReconciler(_open_db(ns)).list_records(filters))
        except ValueError as exc:
            LOG.error(str(exc))
            return 2
        _print_json({"total": total, "items": [r.to_dict() for r in items]})
        return 0

    lst.set_defaults(handler=_list)

    exp = subparsers.add_parser("export-images", help="Zip all images of a record.")
    exp.add_argument("invoice", type=int)
    exp.add_argument("--output", help="Zip path (default: <account>-<invoice>-images.zip)")

    def _export(ns: argparse.Namespace) -> int:
        record = asyncio.run(RecordReconciler(_open_db(ns)).get_record(ns.invoice))
        if record is None:
            LOG.error(f"No record for invoice {ns.invoice}")
            return 1
        if not record.images:
            LOG.error(f"Record {ns.invoice} has no images")
            return 1
        output = expand_abs(ns.output or f"{record.account_number}-{record.invoice_number}-images.zip")
        names = asyncio.run(export_images(record, output))
        print(output)
        return 0 if names else 1

    exp.set_defaults(handler=_export)


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="returns-intake",
        description="Warehouse returns intake: scan, photograph, upload and reconcile return records.",
    )
    parser.add_argument("--db", help="SQLite database path (default: RETURNS_DB_PATH or var/returnsdb)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_cmd = subparsers.add_parser("init-db", help="Create/ensure the records DB schema exists")

    def _init_db(ns: argparse.Namespace) -> int:
        db = _open_db(ns)
        LOG.info(f"Records DB ready at: {db.db_path}")
        print(db.db_path)
        return 0

    init_cmd.set_defaults(handler=_init_db)

    check_cmd = subparsers.add_parser("check-id", help="Extract a checksummed identifier from text.")
    check_cmd.add_argument("text")

    def _check(ns: argparse.Namespace) -> int:
        found = extract_identifier(ns.text)
        print(json.dumps({"identifier": found}))
        return 0 if found else 1

    check_cmd.set_defaults(handler=_check)

    scan_cmd = subparsers.add_parser("scan", help="Decode barcodes in a photo (needs the 'scan' extra).")
    scan_cmd.add_argument("--image", required=True)

    def _scan(ns: argparse.Namespace) -> int:
        texts = decode_texts(expand_abs(ns.image))
        found = first_identifier(texts)
        _print_json({"texts": texts, "identifier": found})
        return 0 if found else 1

    scan_cmd.set_defaults(handler=_scan)

    norm_cmd = subparsers.add_parser("normalize", help="Crop and scale a photo to the capture format.")
    norm_cmd.add_argument("--image", required=True)
    norm_cmd.add_argument("--tag", required=True)
    norm_cmd.add_argument("--output-dir", default=".")
    norm_cmd.add_argument("--size", type=int, help="Square side in pixels (default RETURNS_CAPTURE_SIZE)")

    def _normalize(ns: argparse.Namespace) -> int:
        size = ns.size or load_capture_size(os.getcwd())
        result = CaptureNormalizer(size).normalize(expand_abs(ns.image), ns.tag)
        outdir = expand_abs(ns.output_dir)
        os.makedirs(outdir, exist_ok=True)
        out = os.path.join(outdir, result.file_name)
        with open(out, "wb") as fh:
            fh.write(result.data)
        LOG.info(f"Wrote: {out}")
        print(out)
        return 0

    norm_cmd.set_defaults(handler=_normalize)

    _add_submit_cli(subparsers)
    _add_record_cli(subparsers)

    serve_cmd = subparsers.add_parser("serve", help="Run the records API server.")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8001)
    serve_cmd.add_argument("--log-level", default="info")
    serve_cmd.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )

    def _serve(ns: argparse.Namespace) -> int:
        from ..orchestrator.recordsdb.frontend.app import create_app
        import uvicorn

        app = create_app(
            root_dir=os.getcwd(),
            db_path=expand_abs(ns.db) if ns.db else None,
            allow_origins=ns.allow_origins,
        )
        uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
        return 0

    serve_cmd.set_defaults(handler=_serve)

    args = parser.parse_args(provided)
    try:
        code = args.handler(args)
    except IntakeError as exc:
        code = _fail(exc)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
