"""Single orchestration core shared by the synchronous and queued paths.

A job runs through fetch, extract, convert, load and publish in order.
Each stage is timed; fetch through load must finish within the configured
wall-clock ceiling. Scratch space is released on every exit, and features
written for the job's layer are discarded whenever the run fails while
the worker still holds the job, so a failed job leaves no trace in the
catalog and a worker whose claim was taken over never touches the rows
of the new owner.

Example:
    Run a job inline:
        >>> pipe = Pipeline(settings, blob_store, catalog, converter)
        >>> result = pipe.run(job)
        >>> result.feature_count
        1610
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import TYPE_CHECKING, Any, TypeVar

from gis_ingest.core import errors
from gis_ingest.db import catalog as db_catalog
from gis_ingest.services import cleanup, fetcher, loader, publisher

if TYPE_CHECKING:
    from collections.abc import Callable

    from gis_ingest.core import config
    from gis_ingest.db import models as db_models
    from gis_ingest.services import converter as conv
    from gis_ingest.storage import blobs

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclasses.dataclass(frozen=True)
class PipelineResult:
    """Outcome of a successful run."""

    job_id: str
    country_iso: str
    version_id: str
    layer_id: str
    feature_count: int
    object_path: str


class Pipeline:
    """Runs one job from raw archive to active dataset version."""

    def __init__(
        self,
        settings: config.Settings,
        blob_store: blobs.BlobStoreProtocol,
        catalog: db_catalog.CatalogRepositoryProtocol,
        converter: conv.ConverterProtocol,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.converter = converter
        self.fetcher = fetcher.ArchiveFetcher(
            blob_store,
            settings.scratch_dir,
            max_retries=settings.retrieval_max_retries,
            backoff_factor=settings.retrieval_backoff_factor,
            sleep=sleep,
        )
        self.loader = loader.FeatureLoader(catalog, settings.batch_size)
        self.publisher = publisher.VersionPublisher(
            catalog, blob_store, settings.output_bucket
        )

    def run(
        self,
        job: db_models.Job,
        heartbeat: Callable[[], bool] | None = None,
    ) -> PipelineResult:
        """Process ``job`` end to end.

        Args:
            job: The job to run. Queued jobs are already claimed.
            heartbeat: Called between stages to extend the claim; returning
                False means another worker took the job over.

        Returns:
            Identifiers and counts of the published layer.

        Raises:
            PipelineError: The first stage failure. Features under the
                job's layer are discarded only while this worker still
                owns the job; otherwise LeaseLostError is raised and the
                rows are left to the new owner.
        """
        logger.info(
            "Job %s: %s/%s -> %s version %s",
            job.id,
            job.bucket,
            job.path,
            job.country_iso,
            job.version_id,
        )
        with cleanup.scratch_scope(self.settings.scratch_dir, job.id):
            try:
                return self._run_stages(job, heartbeat)
            except errors.LeaseLostError:
                raise
            except Exception as exc:
                if heartbeat is not None and not heartbeat():
                    raise errors.LeaseLostError(
                        f"job {job.id} failed after another worker claimed it; "
                        "its features are left to the new owner"
                    ) from exc
                self.loader.discard(job.layer_id)
                raise

    def _run_stages(
        self,
        job: db_models.Job,
        heartbeat: Callable[[], bool] | None,
    ) -> PipelineResult:
        raw = self._stage(job, "fetch", self.fetcher.fetch, job.bucket, job.path)
        scratch = self._stage(
            job, "extract", self.fetcher.extract, raw, job.id, job.filename
        )
        del raw
        self._check_lease(job, heartbeat)

        result = self._stage(
            job,
            "convert",
            self.converter.convert,
            scratch,
            self.settings.simplify_tolerance_pct,
            self.settings.output_precision,
        )
        self._check_lease(job, heartbeat)

        stats = self._stage(job, "load", self._load, job, result, heartbeat)
        self._check_lease(job, heartbeat)

        payload = publisher.VersionPayload(
            version_id=job.version_id,
            title=job.title or job.version_id,
            layer_id=job.layer_id,
            layer_name=job.filename,
            admin_level=job.admin_level,
            conversion=result,
            stats=stats,
        )
        version_id = self._stage(
            job,
            "publish",
            self.publisher.publish,
            job.country_iso,
            payload,
            enforce_timeout=False,
        )
        return PipelineResult(
            job_id=job.id,
            country_iso=job.country_iso,
            version_id=version_id,
            layer_id=job.layer_id,
            feature_count=stats.feature_count,
            object_path=publisher.object_path(
                job.country_iso, version_id, job.layer_id
            ),
        )

    def _load(
        self,
        job: db_models.Job,
        result: conv.ConversionResult,
        heartbeat: Callable[[], bool] | None,
    ) -> loader.LayerStats:
        features = loader.decode_features(
            result.feature_collection, job.layer_id, job.admin_level
        )
        # Rows left by an earlier claim of this job.
        self.loader.discard(job.layer_id)
        written = self.loader.load(job.layer_id, features, heartbeat)
        try:
            persisted = self.catalog.count_features(job.layer_id)
        except db_catalog.CatalogError as exc:
            raise errors.LoadError(f"could not count features: {exc}") from exc
        if not written == persisted == result.feature_count:
            raise errors.LoadError(
                f"feature count mismatch: converted {result.feature_count}, "
                f"written {written}, persisted {persisted}"
            )
        return loader.summarize(features)

    def _stage(
        self,
        job: db_models.Job,
        name: str,
        func: Callable[..., T],
        *args: Any,
        enforce_timeout: bool = True,
    ) -> T:
        started = time.monotonic()
        value = func(*args)
        elapsed = time.monotonic() - started
        limit = self.settings.stage_timeout_seconds
        logger.info("Job %s: %s finished in %.2fs", job.id, name, elapsed)
        if elapsed > limit:
            if enforce_timeout:
                raise errors.StageTimeoutError(name, elapsed, limit)
            logger.warning(
                "Job %s: %s took %.1fs (limit %.0fs)", job.id, name, elapsed, limit
            )
        return value

    def _check_lease(
        self,
        job: db_models.Job,
        heartbeat: Callable[[], bool] | None,
    ) -> None:
        if heartbeat is not None and not heartbeat():
            raise errors.LeaseLostError(f"job {job.id} was claimed by another worker")
