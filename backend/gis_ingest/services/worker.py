"""Queue worker: claims pending jobs and runs them through the pipeline.

Any number of worker processes may poll the same queue. Claims are
compare-and-set; a worker that loses the race simply polls again. Each
claim holds a lease that is renewed between pipeline stages, and a job
whose lease lapsed is picked up by the next poller unless it already used
up its attempts, in which case it is failed.

Example:
    Run a worker until SIGTERM:
        >>> worker = QueueWorker(settings, jobs, pipeline)
        >>> signal.signal(signal.SIGTERM, lambda *_: worker.stop())
        >>> worker.run_forever()
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from gis_ingest.core import errors
from gis_ingest.db import models as db_models
from gis_ingest.services import cleanup

if TYPE_CHECKING:
    from gis_ingest.core import config
    from gis_ingest.db import jobs as db_jobs
    from gis_ingest.services import pipeline as pipeline_mod

logger = logging.getLogger(__name__)


class QueueWorker:
    """Single-job-at-a-time poller with a cooperative stop signal."""

    def __init__(
        self,
        settings: config.Settings,
        jobs: db_jobs.JobRepositoryProtocol,
        pipeline: pipeline_mod.Pipeline,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.pipeline = pipeline
        self.worker_id = worker_id or settings.worker_id
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit once the in-flight job, if any, is done."""
        if not self._stop.is_set():
            logger.info("Worker %s stopping", self.worker_id)
        self._stop.set()

    def claim(self, candidate: db_models.Job) -> db_models.Job | None:
        """Try to claim ``candidate``.

        Returns:
            The claimed job, or None if another worker won the race or the
            candidate was failed for exhausting its attempts.
        """
        if (
            candidate.status is db_models.JobStatus.PROCESSING
            and candidate.attempts >= self.settings.max_attempts
        ):
            message = (
                f"lease: abandoned by {candidate.claimed_by} after "
                f"{candidate.attempts} attempt(s)"
            )
            if self.jobs.expire(candidate.id, message):
                logger.error("Job %s failed: %s", candidate.id, message)
            return None

        job = self.jobs.claim(
            candidate.id, self.worker_id, self.settings.lease_seconds
        )
        if job is None:
            logger.info("Job %s was claimed by another worker", candidate.id)
            return None
        if job.attempts > 1:
            logger.warning(
                "Reclaimed job %s after a lapsed lease (attempt %d)",
                job.id,
                job.attempts,
            )
        else:
            logger.info("Claimed job %s", job.id)
        return job

    def process(self, job: db_models.Job) -> None:
        """Run a claimed job and record its terminal status."""

        def heartbeat() -> bool:
            return self.jobs.renew_lease(
                job.id, self.worker_id, self.settings.lease_seconds
            )

        try:
            result = self.pipeline.run(job, heartbeat=heartbeat)
        except errors.LeaseLostError as exc:
            logger.warning("Job %s abandoned: %s", job.id, exc)
            return
        except errors.PipelineError as exc:
            cleanup.record_failure(self.jobs, job, self.worker_id, exc)
            return
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            cleanup.record_failure(self.jobs, job, self.worker_id, exc)
            return

        if cleanup.record_success(self.jobs, job, self.worker_id):
            logger.info(
                "Job %s published %d features as layer %s of %s",
                job.id,
                result.feature_count,
                result.layer_id,
                result.version_id,
            )

    def run_once(self) -> bool:
        """Poll the queue once.

        Returns:
            True if the queue had a candidate job, False if it was empty.
        """
        candidate = self.jobs.next_claimable()
        if candidate is None:
            return False
        job = self.claim(candidate)
        if job is not None:
            self.process(job)
        return True

    def run_forever(self) -> None:
        logger.info(
            "Worker %s polling every %.1fs",
            self.worker_id,
            self.settings.poll_interval_seconds,
        )
        while not self._stop.is_set():
            try:
                busy = self.run_once()
            except Exception:
                logger.exception("Queue poll failed")
                busy = False
            if not busy:
                self._stop.wait(self.settings.poll_interval_seconds)
        logger.info("Worker %s stopped", self.worker_id)
