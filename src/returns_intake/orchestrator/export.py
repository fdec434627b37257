"""Bundle a record's images into a zip archive."""

from __future__ import annotations

import asyncio
import os
import zipfile
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import httpx

from ..domain.models import ReturnRecord
from ..logging import get_logger

LOG = get_logger("orchestrator-export")


def archive_entry_name(record: ReturnRecord, index: int) -> str:
    """``{account}-{invoice}-{n}.jpg`` with n starting at 1."""
    return f"{record.account_number}-{record.invoice_number}-{index}.jpg"


def _read_file_reference(reference: str) -> bytes:
    parsed = urlparse(reference)
    path = url2pathname(unquote(parsed.path)) if parsed.scheme == "file" else reference
    with open(path, "rb") as fh:
        return fh.read()


async def fetch_reference(reference: str, client: httpx.AsyncClient) -> bytes:
    scheme = urlparse(reference).scheme
    if scheme in ("http", "https"):
        r = await client.get(reference)
        r.raise_for_status()
        return r.content
    return await asyncio.to_thread(_read_file_reference, reference)


async def export_images(
    record: ReturnRecord,
    output_path: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> List[str]:
    """Write every fetchable image of ``record`` into ``output_path``.

    Images that cannot be fetched are logged and skipped; the returned list
    holds the archive entry names actually written.
    """
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
    fetched: List[Tuple[str, bytes]] = []
    try:
        for n, reference in enumerate(record.images, start=1):
            try:
                data = await fetch_reference(reference, http)
            except (httpx.HTTPError, OSError) as exc:
                LOG.warning(f"Skipping image {n} of invoice {record.invoice_number}: {exc}")
                continue
            fetched.append((archive_entry_name(record, n), data))
    finally:
        if owns_client:
            await http.aclose()

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in fetched:
            zf.writestr(name, data)
    LOG.info(f"Exported {len(fetched)}/{len(record.images)} image(s) to {output_path}")
    return [name for name, _ in fetched]
