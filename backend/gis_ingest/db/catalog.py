"""Repositories for dataset versions, layers and features.

The catalog owns the one cross-request invariant of the service: a country
has zero or one active dataset version at any observable instant.
Activation demotes the previous version and promotes the new one inside a
single critical section per country, so readers see either the old or the
new active version and never neither.

Example:
    Publish a version for a country:
        >>> from gis_ingest.db.catalog import InMemoryCatalogRepository
        >>> catalog = InMemoryCatalogRepository()
        >>> catalog.ensure_version("v1", "PHL", "Boundaries 2024")
        >>> catalog.activate_version("PHL", "v1").is_active
        True
"""

from __future__ import annotations

import datetime
import json
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2
import psycopg2.extras

from gis_ingest.db import database
from gis_ingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Sequence

    from gis_ingest.core import config


class CatalogError(RuntimeError):
    """A catalog read or write could not be completed."""


class CatalogRepositoryProtocol(Protocol):
    """Protocol interface for versions, layers and features."""

    def get_version(self, version_id: str) -> db_models.DatasetVersion | None: ...

    def list_versions(self, country_iso: str) -> list[db_models.DatasetVersion]: ...

    def active_version(
        self,
        country_iso: str,
    ) -> db_models.DatasetVersion | None: ...

    def ensure_version(
        self,
        version_id: str,
        country_iso: str,
        title: str,
    ) -> db_models.DatasetVersion: ...

    def activate_version(
        self,
        country_iso: str,
        version_id: str,
    ) -> db_models.DatasetVersion: ...

    def add_layer(self, layer: db_models.Layer) -> db_models.Layer: ...

    def get_layer(self, layer_id: str) -> db_models.Layer | None: ...

    def list_layers(self, version_id: str) -> list[db_models.Layer]: ...

    def delete_layer(self, layer_id: str) -> bool: ...

    def insert_features(self, features: Sequence[db_models.Feature]) -> int: ...

    def count_features(self, layer_id: str) -> int: ...

    def delete_features(self, layer_id: str) -> int: ...


class InMemoryCatalogRepository(CatalogRepositoryProtocol):
    """Thread-safe in-memory catalog for tests and local development.

    Reads and writes share one lock, so activation is atomic with respect
    to every reader.
    """

    def __init__(self) -> None:
        self._versions: dict[str, db_models.DatasetVersion] = {}
        self._layers: dict[str, db_models.Layer] = {}
        self._features: dict[str, dict[str, db_models.Feature]] = {}
        self._lock = threading.RLock()

    def get_version(self, version_id: str) -> db_models.DatasetVersion | None:
        with self._lock:
            return self._versions.get(version_id)

    def list_versions(self, country_iso: str) -> list[db_models.DatasetVersion]:
        with self._lock:
            versions = [
                version
                for version in self._versions.values()
                if version.country_iso == country_iso
            ]
        return sorted(versions, key=lambda v: v.created_at, reverse=True)

    def active_version(
        self,
        country_iso: str,
    ) -> db_models.DatasetVersion | None:
        with self._lock:
            active = [
                version
                for version in self._versions.values()
                if version.country_iso == country_iso and version.is_active
            ]
        return active[0] if active else None

    def count_active(self, country_iso: str) -> int:
        """Return how many versions of a country are active (0 or 1)."""
        with self._lock:
            return sum(
                1
                for version in self._versions.values()
                if version.country_iso == country_iso and version.is_active
            )

    def ensure_version(
        self,
        version_id: str,
        country_iso: str,
        title: str,
    ) -> db_models.DatasetVersion:
        with self._lock:
            version = self._versions.get(version_id)
            if version is None:
                version = db_models.DatasetVersion(
                    id=version_id,
                    country_iso=country_iso,
                    title=title,
                )
                self._versions[version_id] = version
            elif version.country_iso != country_iso:
                raise CatalogError(
                    f"Version {version_id} belongs to {version.country_iso}"
                )
            return version

    def activate_version(
        self,
        country_iso: str,
        version_id: str,
    ) -> db_models.DatasetVersion:
        with self._lock:
            target = self._versions.get(version_id)
            if target is None or target.country_iso != country_iso:
                raise CatalogError(
                    f"Version {version_id} not found for {country_iso}"
                )
            now = db_models.utcnow()
            for version in self._versions.values():
                if (
                    version.country_iso == country_iso
                    and version.is_active
                    and version.id != version_id
                ):
                    version.is_active = False
                    version.updated_at = now
            target.is_active = True
            target.updated_at = now
            return target

    def add_layer(self, layer: db_models.Layer) -> db_models.Layer:
        with self._lock:
            if layer.version_id not in self._versions:
                raise CatalogError(f"Version {layer.version_id} not found")
            self._layers[layer.id] = layer
        return layer

    def get_layer(self, layer_id: str) -> db_models.Layer | None:
        with self._lock:
            return self._layers.get(layer_id)

    def list_layers(self, version_id: str) -> list[db_models.Layer]:
        with self._lock:
            return [
                layer
                for layer in self._layers.values()
                if layer.version_id == version_id
            ]

    def delete_layer(self, layer_id: str) -> bool:
        with self._lock:
            return self._layers.pop(layer_id, None) is not None

    def insert_features(self, features: Sequence[db_models.Feature]) -> int:
        with self._lock:
            for feature in features:
                self._features.setdefault(feature.layer_id, {})[
                    feature.id
                ] = feature
        return len(features)

    def count_features(self, layer_id: str) -> int:
        with self._lock:
            return len(self._features.get(layer_id, {}))

    def delete_features(self, layer_id: str) -> int:
        with self._lock:
            return len(self._features.pop(layer_id, {}))


class PostgresCatalogRepository(CatalogRepositoryProtocol):
    """PostgreSQL/PostGIS-backed catalog.

    Driver errors are re-raised as CatalogError so callers can translate
    them into pipeline errors without depending on psycopg2.
    """

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        database.ensure_schema(settings)

    def get_version(self, version_id: str) -> db_models.DatasetVersion | None:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM gis_dataset_versions WHERE id = %s",
                    (version_id,),
                )
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return self._version_from_row(row) if row is not None else None

    def list_versions(self, country_iso: str) -> list[db_models.DatasetVersion]:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM gis_dataset_versions
                    WHERE country_iso = %s
                    ORDER BY created_at DESC
                    """,
                    (country_iso,),
                )
                rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return [self._version_from_row(row) for row in rows]

    def active_version(
        self,
        country_iso: str,
    ) -> db_models.DatasetVersion | None:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM gis_dataset_versions
                    WHERE country_iso = %s AND is_active
                    """,
                    (country_iso,),
                )
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return self._version_from_row(row) if row is not None else None

    def ensure_version(
        self,
        version_id: str,
        country_iso: str,
        title: str,
    ) -> db_models.DatasetVersion:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO gis_dataset_versions (id, country_iso, title)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    (version_id, country_iso, title),
                )
                cur.execute(
                    "SELECT * FROM gis_dataset_versions WHERE id = %s",
                    (version_id,),
                )
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        version = self._version_from_row(row)
        if version.country_iso != country_iso:
            raise CatalogError(
                f"Version {version_id} belongs to {version.country_iso}"
            )
        return version

    def activate_version(
        self,
        country_iso: str,
        version_id: str,
    ) -> db_models.DatasetVersion:
        """Promote a version and demote its siblings in one transaction.

        A transaction-scoped advisory lock keyed on the country serializes
        concurrent activations; the partial unique index on active rows
        rejects anything that slips past it. Other sessions keep seeing
        the previous active version until commit.

        Raises:
            CatalogError: If the version does not exist for the country or
                the transaction fails (nothing is changed in that case).
        """
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                    (f"gis_dataset_versions:{country_iso}",),
                )
                cur.execute(
                    """
                    UPDATE gis_dataset_versions
                    SET is_active = false, updated_at = now()
                    WHERE country_iso = %s AND id <> %s AND is_active
                    """,
                    (country_iso, version_id),
                )
                cur.execute(
                    """
                    UPDATE gis_dataset_versions
                    SET is_active = true, updated_at = now()
                    WHERE id = %s AND country_iso = %s
                    RETURNING *
                    """,
                    (version_id, country_iso),
                )
                row = cur.fetchone()
                if row is None:
                    raise CatalogError(
                        f"Version {version_id} not found for {country_iso}"
                    )
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return self._version_from_row(row)

    def add_layer(self, layer: db_models.Layer) -> db_models.Layer:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO gis_layers (
                        id, version_id, country_iso, layer_name, admin_level,
                        format, crs, source, feature_count, unique_pcodes,
                        missing_names, created_at
                    ) VALUES (
                        %(id)s, %(version_id)s, %(country_iso)s,
                        %(layer_name)s, %(admin_level)s, %(format)s, %(crs)s,
                        %(source)s, %(feature_count)s, %(unique_pcodes)s,
                        %(missing_names)s, %(created_at)s
                    )
                    """,
                    self._layer_to_row(layer),
                )
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return layer

    def get_layer(self, layer_id: str) -> db_models.Layer | None:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM gis_layers WHERE id = %s", (layer_id,)
                )
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return self._layer_from_row(row) if row is not None else None

    def list_layers(self, version_id: str) -> list[db_models.Layer]:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT * FROM gis_layers
                    WHERE version_id = %s
                    ORDER BY created_at
                    """,
                    (version_id,),
                )
                rows = cur.fetchall()
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return [self._layer_from_row(row) for row in rows]

    def delete_layer(self, layer_id: str) -> bool:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute("DELETE FROM gis_layers WHERE id = %s", (layer_id,))
                deleted = cur.rowcount
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return deleted > 0

    def insert_features(self, features: Sequence[db_models.Feature]) -> int:
        if not features:
            return 0
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                psycopg2.extras.execute_values(
                    cur,
                    """
                    INSERT INTO gis_features (
                        id, layer_id, pcode, name, properties, geom
                    ) VALUES %s
                    """,
                    [
                        (
                            feature.id,
                            feature.layer_id,
                            feature.pcode,
                            feature.name,
                            psycopg2.extras.Json(feature.properties),
                            json.dumps(feature.geometry),
                        )
                        for feature in features
                    ],
                    template=(
                        "(%s, %s, %s, %s, %s, "
                        "ST_SetSRID(ST_GeomFromGeoJSON(%s), 4326))"
                    ),
                    page_size=len(features),
                )
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return len(features)

    def count_features(self, layer_id: str) -> int:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT count(*) AS n FROM gis_features
                    WHERE layer_id = %s
                    """,
                    (layer_id,),
                )
                row = cast(dict[str, int], cur.fetchone())
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return int(row["n"])

    def delete_features(self, layer_id: str) -> int:
        try:
            with database.connect(self.settings) as conn, conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM gis_features WHERE layer_id = %s",
                    (layer_id,),
                )
                deleted = cur.rowcount
        except psycopg2.Error as exc:
            raise CatalogError(str(exc)) from exc
        return deleted

    @staticmethod
    def _version_from_row(row: dict[str, object]) -> db_models.DatasetVersion:
        return db_models.DatasetVersion(
            id=str(row["id"]),
            country_iso=str(row["country_iso"]),
            title=str(row["title"]),
            is_active=bool(row["is_active"]),
            source=cast("str | None", row.get("source")),
            created_at=cast(datetime.datetime, row["created_at"]),
            updated_at=cast("datetime.datetime | None", row.get("updated_at")),
        )

    @staticmethod
    def _layer_to_row(layer: db_models.Layer) -> dict[str, object]:
        """Convert a Layer to database row parameters.

        The storage location is kept as a JSON object ``{bucket, path}``.
        """
        return {
            "id": layer.id,
            "version_id": layer.version_id,
            "country_iso": layer.country_iso,
            "layer_name": layer.layer_name,
            "admin_level": layer.admin_level,
            "format": layer.format,
            "crs": layer.crs,
            "source": psycopg2.extras.Json(
                {"bucket": layer.source_bucket, "path": layer.source_path}
            ),
            "feature_count": layer.feature_count,
            "unique_pcodes": layer.unique_pcodes,
            "missing_names": layer.missing_names,
            "created_at": layer.created_at,
        }

    @staticmethod
    def _layer_from_row(row: dict[str, object]) -> db_models.Layer:
        source = cast(dict[str, str], row.get("source") or {})
        admin_level = row.get("admin_level")
        return db_models.Layer(
            id=str(row["id"]),
            version_id=str(row["version_id"]),
            country_iso=str(row["country_iso"]),
            layer_name=str(row["layer_name"]),
            admin_level=str(admin_level) if admin_level is not None else None,
            format=str(row["format"]),
            crs=str(row["crs"]),
            source_bucket=source.get("bucket", ""),
            source_path=source.get("path", ""),
            feature_count=int(cast(int, row["feature_count"])),
            unique_pcodes=int(cast(int, row.get("unique_pcodes") or 0)),
            missing_names=int(cast(int, row.get("missing_names") or 0)),
            created_at=cast(datetime.datetime, row["created_at"]),
        )


def get_catalog_repository(
    settings: config.Settings,
) -> CatalogRepositoryProtocol:
    """Factory function to create the catalog repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresCatalogRepository instance for production use.
    """
    return PostgresCatalogRepository(settings)
