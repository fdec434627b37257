from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

import httpx

from ..config import StorageSettings
from ..domain.errors import ObjectExistsError, StorageError
from ..logging import get_logger

LOG = get_logger("storage-client")


def normalize_bucket(raw: str) -> str:
    """Accept a plain bucket name or a copied URL/path and return the name."""
    b = (raw or "").strip()
    if "://" in b:
        parts = [p for p in urlparse(b).path.split("/") if p]
        if parts:
            b = parts[-1]
    elif "/" in b:
        parts = [p for p in b.split("/") if p]
        if parts:
            b = parts[-1]
    return b


class ObjectStorage:
    """Put-only object store: ``put`` never overwrites an existing path."""

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed storage rooted at ``root_dir``."""

    def __init__(self, root_dir: str, *, public_base_url: Optional[str] = None) -> None:
        self.root = os.path.abspath(root_dir)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        os.makedirs(self.root, exist_ok=True)

    def _resolve(self, path: str) -> str:
        target = os.path.abspath(os.path.join(self.root, path.lstrip("/")))
        if os.path.commonpath([self.root, target]) != self.root:
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    def _write_exclusive(self, target: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "xb") as fh:
            fh.write(data)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._write_exclusive, target, data)
        except FileExistsError as exc:
            raise ObjectExistsError(f"Object already exists: {path}") from exc
        except PermissionError as exc:
            raise StorageError(f"Permission denied writing {path}", status_code=403) from exc
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        LOG.info(f"Stored {len(data)} bytes at {path} ({content_type})")
        return path

    def public_url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(path.lstrip('/'))}"
        return "file://" + quote(self._resolve(path))

    def local_path(self, path: str) -> str:
        return self._resolve(path)


class SupabaseStorageClient(ObjectStorage):
    """Thin async client for the Supabase Storage REST API.

    Only implements what uploads need: object creation without upsert and
    public URL resolution.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        bucket: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.bucket = normalize_bucket(bucket)
        if not self.bucket:
            raise StorageError("No bucket specified for upload.")
        self.timeout = float(timeout)
        self.client = httpx.AsyncClient(
            base_url=self.base,
            timeout=self.timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "apikey": api_key,
            },
        )

    # ---------- helpers ----------
    def _object_path(self, path: str) -> str:
        return f"/storage/v1/object/{quote(self.bucket)}/{quote(path.lstrip('/'))}"

    @staticmethod
    def _error_body(r: httpx.Response) -> Dict[str, Any]:
        try:
            body = r.json()
        except ValueError:
            return {"message": r.text[:200]}
        return body if isinstance(body, dict) else {"message": str(body)[:200]}

    # ---------- objects ----------
    async def put(self, path: str, data: bytes, content_type: str) -> str:
        url = self._object_path(path)
        headers = {"Content-Type": content_type, "x-upsert": "false"}
        try:
            r = await self.client.post(url, content=data, headers=headers)
        except httpx.HTTPError as exc:
            LOG.error(f"POST object {path} failed: {exc}")
            raise StorageError(f"Transport failure uploading {path}: {exc}") from exc

        if r.status_code in (200, 201):
            LOG.info(f"Uploaded {len(data)} bytes to {self.bucket}/{path}")
            return path

        body = self._error_body(r)
        message = str(body.get("message") or body.get("error") or r.reason_phrase)
        status = str(body.get("statusCode") or r.status_code)
        LOG.error(f"Supabase storage upload error ({r.status_code}): {message}")
        if status == "409" or "already exists" in message.lower() or "duplicate" in message.lower():
            raise ObjectExistsError(f"Object already exists: {path}", status_code=409)
        raise StorageError(f"Upload rejected: {message}", status_code=r.status_code)

    def public_url(self, path: str) -> str:
        return f"{self.base}/storage/v1/object/public/{quote(self.bucket)}/{quote(path.lstrip('/'))}"

    async def aclose(self) -> None:
        await self.client.aclose()


def build_storage(settings: StorageSettings) -> ObjectStorage:
    if settings.backend == "supabase":
        if not (settings.supabase_url and settings.supabase_key and settings.bucket):
            raise StorageError("SUPABASE_URL, SUPABASE_KEY and SUPABASE_BUCKET are required for the supabase backend")
        return SupabaseStorageClient(settings.supabase_url, settings.supabase_key, settings.bucket)
    return LocalObjectStorage(settings.local_dir, public_base_url=settings.public_base_url)
