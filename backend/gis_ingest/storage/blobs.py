"""Blob storage for raw archives and converted GeoJSON.

The service talks to object storage through a two-call contract,
``get(bucket, path)`` and ``put(bucket, path, data, content_type)``.
Production uses Supabase Storage; a filesystem store serves local
development and an in-memory store serves tests.

Example:
    Read a raw archive and write a converted layer:
        >>> from gis_ingest.core.config import get_settings
        >>> from gis_ingest.storage.blobs import get_blob_store
        >>> store = get_blob_store(get_settings())
        >>> raw = store.get("gis_raw", "PHL/phl_adm2.zip")
        >>> store.put("gis", "PHL/v1/layer.geojson", b"{...}",
        ...           content_type="application/geo+json")
"""

from __future__ import annotations

import pathlib
import threading
from typing import TYPE_CHECKING, Any, Protocol

import supabase

if TYPE_CHECKING:
    from gis_ingest.core import config

GEOJSON_CONTENT_TYPE = "application/geo+json"


class BlobNotFoundError(LookupError):
    """The requested object does not exist."""


class BlobStoreError(RuntimeError):
    """The storage service failed; the operation may succeed if retried."""


class BlobStoreProtocol(Protocol):
    """Protocol interface for object storage."""

    def get(self, bucket: str, path: str) -> bytes: ...

    def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None: ...


class InMemoryBlobStore(BlobStoreProtocol):
    """Dictionary-backed store for tests."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.content_types: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def get(self, bucket: str, path: str) -> bytes:
        with self._lock:
            try:
                return self.objects[(bucket, path)]
            except KeyError:
                raise BlobNotFoundError(f"{bucket}/{path}") from None

    def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        with self._lock:
            self.objects[(bucket, path)] = data
            self.content_types[(bucket, path)] = content_type


class LocalBlobStore(BlobStoreProtocol):
    """Filesystem store laid out as ``<root>/<bucket>/<path>``."""

    def __init__(self, root: pathlib.Path) -> None:
        self.root = root.resolve()

    def _resolve(self, bucket: str, path: str) -> pathlib.Path:
        bucket_root = (self.root / bucket).resolve()
        target = (bucket_root / path).resolve()
        if not bucket_root.is_relative_to(self.root) or not target.is_relative_to(
            bucket_root
        ):
            raise BlobNotFoundError(f"{bucket}/{path} escapes the store root")
        return target

    def get(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(f"{bucket}/{path}") from None
        except OSError as exc:
            raise BlobStoreError(f"{bucket}/{path}: {exc}") from exc

    def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        target = self._resolve(bucket, path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.part")
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as exc:
            raise BlobStoreError(f"{bucket}/{path}: {exc}") from exc


def _is_missing(exc: Exception) -> bool:
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if str(status) == "404":
        return True
    return "not found" in str(exc).lower()


class SupabaseBlobStore(BlobStoreProtocol):
    """Supabase Storage client wrapper.

    Uploads use ``upsert`` so re-running a publish for the same layer
    overwrites its object rather than failing.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    def get(self, bucket: str, path: str) -> bytes:
        try:
            data = self._client.storage.from_(bucket).download(path)
        except Exception as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(f"{bucket}/{path}") from exc
            raise BlobStoreError(f"{bucket}/{path}: {exc}") from exc
        return bytes(data)

    def put(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        try:
            self._client.storage.from_(bucket).upload(
                path,
                data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as exc:
            raise BlobStoreError(f"{bucket}/{path}: {exc}") from exc


def get_blob_store(settings: config.Settings) -> BlobStoreProtocol:
    """Factory function selecting the configured blob store.

    Args:
        settings: Application settings naming the backend and credentials.

    Returns:
        LocalBlobStore or SupabaseBlobStore.

    Raises:
        ValueError: If the Supabase backend is selected without credentials.
    """
    if settings.blob_backend == "local":
        return LocalBlobStore(settings.local_blob_dir)

    if not settings.supabase_url or settings.supabase_service_role_key is None:
        raise ValueError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required "
            "for the supabase blob backend"
        )
    client = supabase.create_client(
        str(settings.supabase_url),
        settings.supabase_service_role_key.get_secret_value(),
        options=supabase.ClientOptions(
            storage_client_timeout=settings.blob_timeout_seconds
        ),
    )
    return SupabaseBlobStore(client)
