"""PostgreSQL connection helpers and schema bootstrap."""

from __future__ import annotations

import contextlib
import functools
from typing import TYPE_CHECKING

import psycopg2
import psycopg2.extensions
import psycopg2.extras

if TYPE_CHECKING:
    from collections.abc import Iterator

    from gis_ingest.core import config


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS postgis;

CREATE TABLE IF NOT EXISTS gis_dataset_versions (
  id TEXT PRIMARY KEY,
  country_iso TEXT NOT NULL,
  title TEXT NOT NULL,
  is_active BOOLEAN NOT NULL DEFAULT false,
  source TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS gis_dataset_versions_one_active
  ON gis_dataset_versions (country_iso) WHERE is_active;

CREATE TABLE IF NOT EXISTS gis_layers (
  id TEXT PRIMARY KEY,
  version_id TEXT NOT NULL REFERENCES gis_dataset_versions (id),
  country_iso TEXT NOT NULL,
  layer_name TEXT NOT NULL,
  admin_level TEXT,
  format TEXT NOT NULL,
  crs TEXT NOT NULL,
  source JSONB NOT NULL,
  feature_count INTEGER NOT NULL,
  unique_pcodes INTEGER NOT NULL DEFAULT 0,
  missing_names INTEGER NOT NULL DEFAULT 0,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS gis_layers_version_id_idx
  ON gis_layers (version_id);

-- No foreign key on layer_id: features are written before their layer row.
CREATE TABLE IF NOT EXISTS gis_features (
  id TEXT PRIMARY KEY,
  layer_id TEXT NOT NULL,
  pcode TEXT,
  name TEXT,
  properties JSONB NOT NULL DEFAULT '{}'::jsonb,
  geom geometry(Geometry, 4326) NOT NULL
);

CREATE INDEX IF NOT EXISTS gis_features_layer_id_idx
  ON gis_features (layer_id);

CREATE TABLE IF NOT EXISTS gis_processing_queue (
  id TEXT PRIMARY KEY,
  layer_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'processing', 'done', 'failed')),
  payload JSONB NOT NULL,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  started_at TIMESTAMPTZ,
  finished_at TIMESTAMPTZ,
  error_message TEXT,
  claimed_by TEXT,
  lease_expires_at TIMESTAMPTZ,
  attempts INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS gis_processing_queue_claim_idx
  ON gis_processing_queue (status, created_at);
"""


@contextlib.contextmanager
def connect(
    settings: config.Settings,
) -> Iterator[psycopg2.extensions.connection]:
    """Open a connection that commits on success and always closes.

    Rows are returned as dictionaries. The body runs inside one transaction
    which is rolled back if it raises. Every statement is bounded by the
    server-side ``statement_timeout`` from settings.

    Args:
        settings: Application settings containing database connection URL.

    Yields:
        psycopg2 connection object.
    """
    timeout_ms = int(settings.db_statement_timeout_seconds * 1000)
    conn = psycopg2.connect(
        settings.database_url,
        cursor_factory=psycopg2.extras.RealDictCursor,
        options=f"-c statement_timeout={timeout_ms}",
    )
    try:
        with conn:
            yield conn
    finally:
        conn.close()


@functools.lru_cache
def _bootstrap(database_url: str) -> None:
    conn = psycopg2.connect(database_url)
    try:
        with conn, conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
    finally:
        conn.close()


def ensure_schema(settings: config.Settings) -> None:
    """Create the PostGIS extension and service tables once per process.

    Args:
        settings: Application settings containing database connection URL.
    """
    _bootstrap(settings.database_url)
