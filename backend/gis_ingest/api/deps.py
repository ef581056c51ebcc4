"""FastAPI dependency resolvers shared by the routers.

Tests replace any of these through ``app.dependency_overrides``.
"""

from __future__ import annotations

import fastapi

from gis_ingest.core import config
from gis_ingest.db import catalog as db_catalog
from gis_ingest.db import jobs as db_jobs
from gis_ingest.services import converter as conv
from gis_ingest.services import pipeline as pipeline_mod
from gis_ingest.services import publisher as publisher_mod
from gis_ingest.storage import blobs


def get_job_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> db_jobs.JobRepositoryProtocol:
    """Resolve the job queue (PostgresJobRepository in production)."""
    return db_jobs.get_job_repository(settings)


def get_catalog_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> db_catalog.CatalogRepositoryProtocol:
    """Resolve the catalog (PostgresCatalogRepository in production)."""
    return db_catalog.get_catalog_repository(settings)


def get_blob_store(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> blobs.BlobStoreProtocol:
    return blobs.get_blob_store(settings)


def get_converter(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> conv.ConverterProtocol:
    return conv.get_converter(settings)


def get_pipeline(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    blob_store: blobs.BlobStoreProtocol = fastapi.Depends(get_blob_store),  # noqa: B008
    catalog: db_catalog.CatalogRepositoryProtocol = fastapi.Depends(  # noqa: B008
        get_catalog_repo
    ),
    converter: conv.ConverterProtocol = fastapi.Depends(get_converter),  # noqa: B008
) -> pipeline_mod.Pipeline:
    """Assemble the orchestration core from the resolved collaborators."""
    return pipeline_mod.Pipeline(settings, blob_store, catalog, converter)


def get_publisher(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    blob_store: blobs.BlobStoreProtocol = fastapi.Depends(get_blob_store),  # noqa: B008
    catalog: db_catalog.CatalogRepositoryProtocol = fastapi.Depends(  # noqa: B008
        get_catalog_repo
    ),
) -> publisher_mod.VersionPublisher:
    return publisher_mod.VersionPublisher(
        catalog, blob_store, settings.output_bucket
    )
