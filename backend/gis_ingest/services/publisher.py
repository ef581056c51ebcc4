"""Version publication: upload, layer registration and activation.

Publishing a converted layer happens in three ordered steps:

1. Upload the GeoJSON to ``<output_bucket>/<country>/<version>/<layer>.geojson``.
2. Register the layer row under the target version.
3. Activate the version, demoting whichever version of the same country
   was active before, in one serialized critical section.

If step 1 or 2 fails, step 3 never runs and the previously active version
stays active. If step 3 fails, the layer row registered in step 2 is
removed again.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from gis_ingest.core import errors
from gis_ingest.db import catalog as db_catalog
from gis_ingest.db import models as db_models
from gis_ingest.storage import blobs

if TYPE_CHECKING:
    from gis_ingest.services import converter, loader

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class VersionPayload:
    """Everything the publisher needs about one converted layer."""

    version_id: str
    title: str
    layer_id: str
    layer_name: str
    admin_level: str | None
    conversion: converter.ConversionResult
    stats: loader.LayerStats


def object_path(country_iso: str, version_id: str, layer_id: str) -> str:
    return f"{country_iso}/{version_id}/{layer_id}.geojson"


class VersionPublisher:
    """Publishes converted layers and flips the active version."""

    def __init__(
        self,
        catalog: db_catalog.CatalogRepositoryProtocol,
        blob_store: blobs.BlobStoreProtocol,
        output_bucket: str = "gis",
    ) -> None:
        self.catalog = catalog
        self.blob_store = blob_store
        self.output_bucket = output_bucket

    def publish(self, country_iso: str, payload: VersionPayload) -> str:
        """Upload, register and activate a converted layer.

        Args:
            country_iso: Country the version belongs to.
            payload: Converted layer and its integrity figures.

        Returns:
            The id of the version that is now active for ``country_iso``.

        Raises:
            PublishError: If any step fails. The active version of the
                country is unchanged in that case.
        """
        try:
            self.catalog.ensure_version(
                payload.version_id, country_iso, payload.title
            )
        except db_catalog.CatalogError as exc:
            raise errors.PublishError(f"version lookup failed: {exc}") from exc

        path = object_path(country_iso, payload.version_id, payload.layer_id)
        try:
            self.blob_store.put(
                self.output_bucket,
                path,
                payload.conversion.to_bytes(),
                content_type=blobs.GEOJSON_CONTENT_TYPE,
            )
        except (blobs.BlobStoreError, blobs.BlobNotFoundError) as exc:
            raise errors.PublishError(f"upload of {path} failed: {exc}") from exc
        logger.info("Uploaded %s/%s", self.output_bucket, path)

        layer = db_models.Layer(
            id=payload.layer_id,
            version_id=payload.version_id,
            country_iso=country_iso,
            layer_name=payload.layer_name,
            admin_level=payload.admin_level,
            format="geojson",
            crs=payload.conversion.crs,
            source_bucket=self.output_bucket,
            source_path=path,
            feature_count=payload.stats.feature_count,
            unique_pcodes=payload.stats.unique_pcodes,
            missing_names=payload.stats.missing_names,
        )
        try:
            self.catalog.add_layer(layer)
        except db_catalog.CatalogError as exc:
            raise errors.PublishError(f"layer registration failed: {exc}") from exc

        try:
            version = self.catalog.activate_version(country_iso, payload.version_id)
        except db_catalog.CatalogError as exc:
            self._unregister(layer.id)
            raise errors.PublishError(f"activation failed: {exc}") from exc

        logger.info(
            "Version %s is now active for %s (layer %s, %d features)",
            version.id,
            country_iso,
            layer.id,
            layer.feature_count,
        )
        return version.id

    def activate(self, country_iso: str, version_id: str) -> db_models.DatasetVersion:
        """Make an existing version the active one for its country.

        Raises:
            PublishError: If the version does not exist for the country.
        """
        try:
            version = self.catalog.activate_version(country_iso, version_id)
        except db_catalog.CatalogError as exc:
            raise errors.PublishError(f"activation failed: {exc}") from exc
        logger.info("Version %s is now active for %s", version.id, country_iso)
        return version

    def _unregister(self, layer_id: str) -> None:
        try:
            self.catalog.delete_layer(layer_id)
        except db_catalog.CatalogError:
            logger.exception("Could not remove layer %s after failed activation", layer_id)
