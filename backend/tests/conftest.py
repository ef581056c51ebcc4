"""Shared fixtures: isolated settings, in-memory stores and fakes."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

import helpers

from gis_ingest.core import config
from gis_ingest.db import catalog as db_catalog
from gis_ingest.db import jobs as db_jobs
from gis_ingest.storage import blobs

if TYPE_CHECKING:
    import pathlib


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    """Settings isolated under ``tmp_path`` with fast retries."""
    result = config.Settings(
        scratch_dir=tmp_path / "scratch",
        local_blob_dir=tmp_path / "blobs",
        blob_backend="local",
        retrieval_max_retries=2,
        retrieval_backoff_factor=1.0,
        worker_id="worker-test",
    )
    result.ensure_directories()
    return result


@pytest.fixture
def blob_store() -> blobs.InMemoryBlobStore:
    return blobs.InMemoryBlobStore()


@pytest.fixture
def catalog() -> db_catalog.InMemoryCatalogRepository:
    return db_catalog.InMemoryCatalogRepository()


@pytest.fixture
def job_repo() -> db_jobs.InMemoryJobRepository:
    return db_jobs.InMemoryJobRepository()


@pytest.fixture
def fake_converter() -> helpers.FakeConverter:
    return helpers.FakeConverter()


@pytest.fixture
def recording_sleep() -> helpers.RecordingSleep:
    return helpers.RecordingSleep()
