"""Scratch-space release and terminal job bookkeeping.

Scratch directories are removed on every exit path of a job. Terminal
status writes are compare-and-set on the worker's claim: a worker whose
lease was taken over records nothing.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
from typing import TYPE_CHECKING

from gis_ingest.core import errors

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator

    from gis_ingest.db import jobs as db_jobs
    from gis_ingest.db import models as db_models

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def release_scratch(path: pathlib.Path) -> None:
    """Remove a job's scratch directory if it exists."""
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError:
        logger.warning("Could not remove scratch directory %s", path, exc_info=True)
    else:
        logger.debug("Removed scratch directory %s", path)


@contextlib.contextmanager
def scratch_scope(scratch_root: pathlib.Path, job_id: str) -> Iterator[pathlib.Path]:
    """Yield the job's scratch path and remove it on exit, success or not."""
    path = scratch_root / job_id
    try:
        yield path
    finally:
        release_scratch(path)


def failure_message(exc: BaseException) -> str:
    if isinstance(exc, errors.PipelineError):
        message = exc.describe()
    else:
        message = f"{type(exc).__name__}: {exc}"
    return message[:MAX_ERROR_LENGTH]


def record_failure(
    jobs: db_jobs.JobRepositoryProtocol,
    job: db_models.Job,
    worker_id: str,
    exc: BaseException,
) -> bool:
    """Mark ``job`` failed with a message derived from ``exc``.

    Returns:
        False when the worker no longer owns the job.
    """
    message = failure_message(exc)
    if not jobs.fail(job.id, worker_id, message):
        logger.warning(
            "Job %s is no longer held by %s; failure not recorded", job.id, worker_id
        )
        return False
    logger.error("Job %s failed: %s", job.id, message)
    return True


def record_success(
    jobs: db_jobs.JobRepositoryProtocol,
    job: db_models.Job,
    worker_id: str,
) -> bool:
    if not jobs.complete(job.id, worker_id):
        logger.warning(
            "Job %s is no longer held by %s; completion not recorded",
            job.id,
            worker_id,
        )
        return False
    logger.info("Job %s done", job.id)
    return True
