"""Archive retrieval and extraction into job-scoped scratch space.

Raw uploads are either a zip bundle of vector files (typically a
shapefile set) or a single uncompressed GeoJSON/TopoJSON file. Each job
extracts into ``<scratch_dir>/<job_id>`` so concurrent jobs never share a
directory.

Example:
    Fetch and unpack a zipped shapefile:
        >>> fetcher = ArchiveFetcher(blob_store, settings.scratch_dir)
        >>> raw = fetcher.fetch("gis_raw", "PHL/phl_adm2.zip")
        >>> scratch = fetcher.extract(raw, job.id, filename="phl_adm2.zip")
        >>> find_vector_files(scratch)
        [PosixPath('/tmp/gis_ingest/scratch/<job_id>/phl_adm2.shp')]
"""

from __future__ import annotations

import io
import logging
import pathlib
import shutil
import time
import zipfile
import zlib
from typing import TYPE_CHECKING

from gis_ingest.core import errors, retry
from gis_ingest.storage import blobs

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

# Checked in order; the first group with any match wins.
VECTOR_SUFFIX_GROUPS: tuple[tuple[str, ...], ...] = (
    (".shp",),
    (".geojson", ".json"),
    (".topojson",),
)
VECTOR_SUFFIXES = tuple(s for group in VECTOR_SUFFIX_GROUPS for s in group)
SHAPEFILE_SIDECARS = (".shx", ".dbf")


def find_vector_files(directory: pathlib.Path) -> list[pathlib.Path]:
    """Return the convertible vector files under ``directory``.

    Shapefiles take precedence over GeoJSON, which takes precedence over
    TopoJSON. macOS resource-fork folders are ignored. Results are sorted
    so identical archives always produce identical tool invocations.
    """
    candidates = [
        path
        for path in directory.rglob("*")
        if path.is_file() and "__MACOSX" not in path.parts
    ]
    for group in VECTOR_SUFFIX_GROUPS:
        found = sorted(p for p in candidates if p.suffix.lower() in group)
        if found:
            return found
    return []


def missing_sidecars(shapefile: pathlib.Path) -> list[str]:
    """Return the required companion suffixes absent next to ``shapefile``."""
    present = {
        path.suffix.lower()
        for path in shapefile.parent.iterdir()
        if path.stem == shapefile.stem
    }
    return [suffix for suffix in SHAPEFILE_SIDECARS if suffix not in present]


class ArchiveFetcher:
    """Downloads raw archives and unpacks them for conversion."""

    def __init__(
        self,
        blob_store: blobs.BlobStoreProtocol,
        scratch_root: pathlib.Path,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.blob_store = blob_store
        self.scratch_root = scratch_root
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self._sleep = sleep

    def scratch_path(self, job_id: str) -> pathlib.Path:
        return self.scratch_root / job_id

    def fetch(self, bucket: str, path: str) -> bytes:
        """Download an object, retrying transient storage failures.

        Args:
            bucket: Bucket holding the raw archive.
            path: Object path inside the bucket.

        Returns:
            The object's bytes.

        Raises:
            RetrievalError: If the object is missing, empty, or storage
                keeps failing after the configured retries.
        """
        return retry.retry_transient(
            self._fetch_once,
            self.max_retries,
            self.backoff_factor,
            bucket,
            path,
            sleep=self._sleep,
        )

    def _fetch_once(self, bucket: str, path: str) -> bytes:
        try:
            data = self.blob_store.get(bucket, path)
        except blobs.BlobNotFoundError as exc:
            raise errors.RetrievalError(
                f"object {bucket}/{path} not found"
            ) from exc
        except blobs.BlobStoreError as exc:
            raise errors.RetrievalError(str(exc), transient=True) from exc
        if not data:
            raise errors.RetrievalError(
                f"object {bucket}/{path} is empty or was truncated",
                transient=True,
            )
        logger.info("Fetched %s/%s (%d bytes)", bucket, path, len(data))
        return data

    def extract(
        self,
        raw: bytes,
        job_id: str,
        filename: str = "input",
    ) -> pathlib.Path:
        """Unpack ``raw`` into the job's scratch directory.

        A leftover directory from an earlier claim of the same job is
        replaced.

        Args:
            raw: Archive or single-file bytes.
            job_id: Job identifier naming the scratch directory.
            filename: Original object name, used to pick the suffix of a
                single uncompressed file.

        Returns:
            Path to the populated scratch directory.

        Raises:
            ExtractionError: If the archive is corrupt, unsafe, of an
                unrecognised format, holds no vector data or ships a
                shapefile without its .shx or .dbf.
        """
        scratch = self.scratch_path(job_id)
        if scratch.exists():
            shutil.rmtree(scratch)
        scratch.mkdir(parents=True)

        buffer = io.BytesIO(raw)
        if zipfile.is_zipfile(buffer):
            self._unzip(buffer, scratch)
        else:
            self._write_single(raw, scratch, filename)

        vector_files = find_vector_files(scratch)
        if not vector_files:
            raise errors.ExtractionError(
                "archive contains no shapefile, GeoJSON or TopoJSON data"
            )
        for path in vector_files:
            if path.suffix.lower() != ".shp":
                continue
            missing = missing_sidecars(path)
            if missing:
                raise errors.ExtractionError(
                    f"shapefile {path.name} is missing {', '.join(missing)}"
                )
        return scratch

    def _unzip(self, buffer: io.BytesIO, scratch: pathlib.Path) -> None:
        root = scratch.resolve()
        try:
            with zipfile.ZipFile(buffer) as archive:
                corrupt = archive.testzip()
                if corrupt is not None:
                    raise errors.ExtractionError(
                        f"corrupt archive member: {corrupt}"
                    )
                for member in archive.infolist():
                    target = (root / member.filename).resolve()
                    if not target.is_relative_to(root):
                        raise errors.ExtractionError(
                            f"unsafe archive member path: {member.filename}"
                        )
                archive.extractall(root)
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            raise errors.ExtractionError(f"malformed zip archive: {exc}") from exc

    def _write_single(
        self,
        raw: bytes,
        scratch: pathlib.Path,
        filename: str,
    ) -> None:
        name = pathlib.PurePath(filename).name or "input"
        suffix = pathlib.PurePath(name).suffix.lower()
        if suffix not in VECTOR_SUFFIXES:
            if raw.lstrip()[:1] != b"{":
                raise errors.ExtractionError(
                    f"unrecognised archive format for {filename!r}"
                )
            name = f"{pathlib.PurePath(name).stem}.geojson"
        (scratch / name).write_bytes(raw)
