"""Batched persistence of converted features.

Features are decoded from the converted FeatureCollection, tagged with
the layer id reserved for the job and written in bounded batches, one
batch at a time. A failed batch aborts the load; rows already written for
the layer are deleted so no partial feature set can ever be linked to an
active version.

Feature attributes follow HDX/OCHA boundary conventions: the pcode comes
from ``adm{N}_pcode`` for the layer's admin level, falling back to any
property containing "pcode"; the name from ``adm{N}_en`` or
``adm{N}_name``, then ``name``, then any property containing "name".
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
import re
import uuid
from typing import TYPE_CHECKING, Any

from gis_ingest.core import errors
from gis_ingest.db import catalog as db_catalog
from gis_ingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

logger = logging.getLogger(__name__)

_LEVEL_RE = re.compile(r"(\d+)")


@dataclasses.dataclass(frozen=True)
class LayerStats:
    """Integrity figures stored on the layer row."""

    feature_count: int
    unique_pcodes: int
    missing_names: int


def admin_level_number(admin_level: str | None) -> int | None:
    """Extract N from labels like "ADM2", "adm_2" or "2"."""
    if not admin_level:
        return None
    match = _LEVEL_RE.search(admin_level)
    return int(match.group(1)) if match else None


def _first_value(
    properties: dict[str, Any],
    exact: Sequence[str],
    contains: str,
) -> str | None:
    lowered = {key.lower(): value for key, value in properties.items()}
    for key in exact:
        value = lowered.get(key)
        if value not in (None, ""):
            return str(value)
    for key, value in lowered.items():
        if contains in key and value not in (None, ""):
            return str(value)
    return None


def pick_pcode(properties: dict[str, Any], level: int | None) -> str | None:
    exact = [f"adm{level}_pcode"] if level is not None else []
    return _first_value(properties, [*exact, "pcode"], "pcod")


def pick_name(properties: dict[str, Any], level: int | None) -> str | None:
    exact = [f"adm{level}_en", f"adm{level}_name"] if level is not None else []
    return _first_value(properties, [*exact, "name"], "name")


def decode_features(
    feature_collection: db_models.GeoJSON,
    layer_id: str,
    admin_level: str | None = None,
) -> list[db_models.Feature]:
    """Turn GeoJSON features into Feature records for ``layer_id``.

    Raises:
        LoadError: If a feature has no geometry.
    """
    level = admin_level_number(admin_level)
    decoded: list[db_models.Feature] = []
    for index, raw in enumerate(feature_collection.get("features", [])):
        geometry = raw.get("geometry")
        if not geometry:
            raise errors.LoadError(f"feature {index} has no geometry")
        properties = dict(raw.get("properties") or {})
        decoded.append(
            db_models.Feature(
                id=str(uuid.uuid4()),
                layer_id=layer_id,
                pcode=pick_pcode(properties, level),
                name=pick_name(properties, level),
                geometry=geometry,
                properties=properties,
            )
        )
    return decoded


def summarize(features: Sequence[db_models.Feature]) -> LayerStats:
    return LayerStats(
        feature_count=len(features),
        unique_pcodes=len({f.pcode for f in features if f.pcode}),
        missing_names=sum(1 for f in features if not f.name),
    )


def _batched(
    items: Iterable[db_models.Feature],
    size: int,
) -> Iterator[list[db_models.Feature]]:
    iterator = iter(items)
    while batch := list(itertools.islice(iterator, size)):
        yield batch


class FeatureLoader:
    """Writes features for one layer in sequential bounded batches."""

    def __init__(
        self,
        catalog: db_catalog.CatalogRepositoryProtocol,
        batch_size: int = 500,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.catalog = catalog
        self.batch_size = batch_size

    def load(
        self,
        layer_id: str,
        features: Iterable[db_models.Feature],
        heartbeat: Callable[[], bool] | None = None,
    ) -> int:
        """Persist ``features`` under ``layer_id``.

        Args:
            layer_id: Layer the features belong to.
            features: Decoded features; consumed lazily batch by batch.
            heartbeat: Called after every batch to extend the job's claim;
                returning False means another worker now owns the layer.

        Returns:
            Number of features written.

        Raises:
            LoadError: If any batch fails. Rows written by earlier batches
                are deleted before the error propagates.
            LeaseLostError: If the claim was taken over. Rows are left to
                the new owner.
        """
        written = 0
        for number, batch in enumerate(_batched(features, self.batch_size), 1):
            if any(feature.layer_id != layer_id for feature in batch):
                self._abort(layer_id, heartbeat)
                raise errors.LoadError(
                    f"batch {number} contains features of another layer"
                )
            try:
                written += self.catalog.insert_features(batch)
            except db_catalog.CatalogError as exc:
                logger.error(
                    "Batch %d for layer %s failed after %d rows: %s",
                    number,
                    layer_id,
                    written,
                    exc,
                )
                self._abort(layer_id, heartbeat)
                raise errors.LoadError(f"batch {number} failed: {exc}") from exc
            logger.debug(
                "Layer %s: batch %d written (%d rows total)",
                layer_id,
                number,
                written,
            )
            if heartbeat is not None and not heartbeat():
                raise errors.LeaseLostError(
                    f"layer {layer_id} was claimed by another worker "
                    f"after batch {number}"
                )
        logger.info("Loaded %d features for layer %s", written, layer_id)
        return written

    def _abort(
        self,
        layer_id: str,
        heartbeat: Callable[[], bool] | None,
    ) -> None:
        if heartbeat is not None and not heartbeat():
            raise errors.LeaseLostError(
                f"layer {layer_id} was claimed by another worker; "
                "its rows are left in place"
            )
        self.discard(layer_id)

    def discard(self, layer_id: str) -> int:
        """Delete every feature row written for ``layer_id``.

        A failure here is logged rather than raised so it never masks the
        error that triggered the discard; the rows stay orphaned under a
        layer id that no version references.
        """
        try:
            deleted = self.catalog.delete_features(layer_id)
        except db_catalog.CatalogError:
            logger.exception(
                "Could not delete partial features of layer %s", layer_id
            )
            return 0
        if deleted:
            logger.info("Discarded %d partial features of layer %s", deleted, layer_id)
        return deleted
