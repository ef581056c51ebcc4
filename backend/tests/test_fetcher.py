"""Tests for archive retrieval and extraction into scratch space."""

from __future__ import annotations

import pathlib

import pytest

import helpers

from gis_ingest.core import errors
from gis_ingest.services import fetcher
from gis_ingest.storage import blobs


class FlakyStore(blobs.InMemoryBlobStore):
    """Raises BlobStoreError for the first ``failures`` reads."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.reads = 0

    def get(self, bucket: str, path: str) -> bytes:
        self.reads += 1
        if self.reads <= self.failures:
            raise blobs.BlobStoreError("connection reset by peer")
        return super().get(bucket, path)


def _fetcher(
    store: blobs.BlobStoreProtocol,
    tmp_path: pathlib.Path,
    sleep: helpers.RecordingSleep,
    max_retries: int = 3,
) -> fetcher.ArchiveFetcher:
    return fetcher.ArchiveFetcher(
        store, tmp_path / "scratch", max_retries=max_retries, sleep=sleep
    )


def test_fetch_returns_object_bytes(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    blob_store.put("gis_raw", "PHL/phl.zip", b"PK data")
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    assert archive_fetcher.fetch("gis_raw", "PHL/phl.zip") == b"PK data"


def test_fetch_missing_object_is_not_retried(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    with pytest.raises(errors.RetrievalError) as info:
        archive_fetcher.fetch("gis_raw", "PHL/missing.zip")
    assert not info.value.transient
    assert recording_sleep.delays == []


def test_fetch_retries_transient_failures(
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    store = FlakyStore(failures=2)
    store.put("gis_raw", "PHL/phl.zip", b"PK")
    archive_fetcher = _fetcher(store, tmp_path, recording_sleep)
    assert archive_fetcher.fetch("gis_raw", "PHL/phl.zip") == b"PK"
    assert store.reads == 3
    assert len(recording_sleep.delays) == 2


def test_fetch_gives_up_after_max_retries(
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    store = FlakyStore(failures=10)
    store.put("gis_raw", "PHL/phl.zip", b"PK")
    archive_fetcher = _fetcher(store, tmp_path, recording_sleep, max_retries=2)
    with pytest.raises(errors.RetrievalError) as info:
        archive_fetcher.fetch("gis_raw", "PHL/phl.zip")
    assert info.value.transient
    assert store.reads == 3


def test_fetch_empty_object_is_retrieval_error(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    blob_store.put("gis_raw", "PHL/empty.zip", b"")
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep, max_retries=1)
    with pytest.raises(errors.RetrievalError):
        archive_fetcher.fetch("gis_raw", "PHL/empty.zip")


def test_extract_shapefile_zip(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    scratch = archive_fetcher.extract(helpers.shapefile_zip(), "job-1", "phl.zip")
    assert scratch == tmp_path / "scratch" / "job-1"
    assert [p.name for p in fetcher.find_vector_files(scratch)] == ["phl_adm2.shp"]


def test_extract_replaces_leftover_scratch(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    stale = tmp_path / "scratch" / "job-1"
    stale.mkdir(parents=True)
    (stale / "old.geojson").write_text("{}")
    scratch = archive_fetcher.extract(helpers.shapefile_zip(), "job-1")
    assert not (scratch / "old.geojson").exists()


def test_extract_single_geojson(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    scratch = archive_fetcher.extract(
        b'{"type": "FeatureCollection", "features": []}',
        "job-2",
        "ken_adm1.geojson",
    )
    assert (scratch / "ken_adm1.geojson").exists()


def test_extract_sniffs_json_without_suffix(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    scratch = archive_fetcher.extract(b'  {"type": "Topology"}', "job-3", "upload")
    assert (scratch / "upload.geojson").exists()


def test_extract_rejects_unknown_format(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    with pytest.raises(errors.ExtractionError):
        archive_fetcher.extract(b"\x89PNG....", "job-4", "map.png")


def test_extract_rejects_corrupt_zip(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    data = bytearray(helpers.shapefile_zip())
    # Corrupt the first member's compressed payload.
    for index in range(40, 60):
        data[index] ^= 0xFF
    with pytest.raises(errors.ExtractionError):
        archive_fetcher.extract(bytes(data), "job-5", "phl.zip")


def test_extract_rejects_zip_slip(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    evil = helpers.zip_bytes({"../../escape.shp": b"x", "ok.shp": b"y"})
    with pytest.raises(errors.ExtractionError, match="unsafe"):
        archive_fetcher.extract(evil, "job-6", "evil.zip")
    assert not (tmp_path / "escape.shp").exists()


def test_extract_zip_without_vector_data(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    with pytest.raises(errors.ExtractionError):
        archive_fetcher.extract(
            helpers.zip_bytes({"readme.txt": b"hello"}), "job-7", "docs.zip"
        )


def test_find_vector_files_prefers_shapefiles(tmp_path: pathlib.Path) -> None:
    (tmp_path / "b.shp").write_bytes(b"")
    (tmp_path / "a.shp").write_bytes(b"")
    (tmp_path / "c.geojson").write_text("{}")
    macos = tmp_path / "__MACOSX"
    macos.mkdir()
    (macos / "._a.shp").write_bytes(b"")
    assert [p.name for p in fetcher.find_vector_files(tmp_path)] == [
        "a.shp",
        "b.shp",
    ]


def test_extract_rejects_shapefile_without_sidecars(
    blob_store: blobs.InMemoryBlobStore,
    tmp_path: pathlib.Path,
    recording_sleep: helpers.RecordingSleep,
) -> None:
    archive_fetcher = _fetcher(blob_store, tmp_path, recording_sleep)
    partial = helpers.zip_bytes(
        {"phl_adm2.shp": b"shp", "phl_adm2.shx": b"shx", "phl_adm2.prj": b"prj"}
    )
    with pytest.raises(errors.ExtractionError, match=r"phl_adm2.shp is missing \.dbf"):
        archive_fetcher.extract(partial, "job-8", "phl.zip")


def test_missing_sidecars_ignores_suffix_case(tmp_path: pathlib.Path) -> None:
    for name in ("roads.shp", "roads.SHX", "roads.DBF", "other.dbf"):
        (tmp_path / name).write_bytes(b"")
    assert fetcher.missing_sidecars(tmp_path / "roads.shp") == []
    (tmp_path / "lonely.shp").write_bytes(b"")
    assert fetcher.missing_sidecars(tmp_path / "lonely.shp") == [".shx", ".dbf"]
