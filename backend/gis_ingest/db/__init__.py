"""Persistence layer: models, schema bootstrap and repositories.

Each repository has a Protocol, an in-memory implementation for tests and
local runs, and a PostgreSQL implementation selected by its factory.

Example:
    Use in a service or FastAPI dependency:
        >>> from gis_ingest.db import catalog, jobs
        >>> queue = jobs.get_job_repository(settings)
        >>> versions = catalog.get_catalog_repository(settings)
"""
