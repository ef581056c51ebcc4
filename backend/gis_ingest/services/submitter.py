"""Job submission in synchronous or queued mode.

Every request is validated first. A synchronous submission then runs the
pipeline inline on a transient job that is never stored; an asynchronous
submission inserts exactly one ``pending`` job row for a worker to claim.
"""

from __future__ import annotations

import logging
import pathlib
import re
import uuid
from typing import TYPE_CHECKING, Literal, cast

import pydantic

from gis_ingest.core import errors
from gis_ingest.db import models as db_models

if TYPE_CHECKING:
    from gis_ingest.db import jobs as db_jobs
    from gis_ingest.services import pipeline as pipeline_mod

logger = logging.getLogger(__name__)

FORMAT_BY_SUFFIX: dict[str, db_models.Format] = {
    ".zip": "shapefile",
    ".geojson": "geojson",
    ".json": "geojson",
    ".topojson": "topojson",
}
FORMATS = frozenset(FORMAT_BY_SUFFIX.values())
REQUIRED_FIELDS = ("bucket", "path", "country_iso", "version_id")

_COUNTRY_RE = re.compile(r"[A-Za-z]{3}")

Mode = Literal["sync", "async"]


class SubmitRequest(pydantic.BaseModel):
    """Conversion request body shared by the HTTP endpoints."""

    model_config = pydantic.ConfigDict(str_strip_whitespace=True)

    bucket: str | None = None
    path: str | None = None
    country_iso: str | None = None
    version_id: str | None = None
    admin_level: str | None = None
    title: str | None = None
    format: str | None = None


def detect_format(path: str) -> db_models.Format | None:
    return FORMAT_BY_SUFFIX.get(pathlib.PurePosixPath(path).suffix.lower())


def build_job(request: SubmitRequest) -> db_models.Job:
    """Validate ``request`` and turn it into a fresh pending job.

    Raises:
        ValidationError: If a required field is missing or a value is
            malformed.
    """
    missing = [name for name in REQUIRED_FIELDS if not getattr(request, name)]
    if missing:
        raise errors.ValidationError(f"Missing parameters: {', '.join(missing)}")

    path = cast(str, request.path)
    country = cast(str, request.country_iso)
    if not _COUNTRY_RE.fullmatch(country):
        raise errors.ValidationError(
            f"country_iso must be a 3-letter ISO code, got {country!r}"
        )
    parts = pathlib.PurePosixPath(path).parts
    if path.startswith("/") or ".." in parts:
        raise errors.ValidationError(f"Invalid object path {path!r}")

    fmt = (request.format or "").lower() or detect_format(path)
    if fmt not in FORMATS:
        raise errors.ValidationError(f"Unsupported file format for {path!r}")

    return db_models.Job(
        id=str(uuid.uuid4()),
        bucket=cast(str, request.bucket),
        path=path,
        country_iso=country.upper(),
        version_id=cast(str, request.version_id),
        layer_id=str(uuid.uuid4()),
        admin_level=request.admin_level or None,
        format=cast(db_models.Format, fmt),
        title=request.title or None,
    )


class JobSubmitter:
    """Entry point for conversion requests.

    Args:
        jobs: Queue store, required for asynchronous submissions.
        pipeline: Orchestration core, required for synchronous submissions.
    """

    def __init__(
        self,
        jobs: db_jobs.JobRepositoryProtocol | None = None,
        pipeline: pipeline_mod.Pipeline | None = None,
    ) -> None:
        self.jobs = jobs
        self.pipeline = pipeline

    def submit_sync(self, request: SubmitRequest) -> pipeline_mod.PipelineResult:
        if self.pipeline is None:
            raise RuntimeError("synchronous submission needs a pipeline")
        job = build_job(request)
        logger.info("Converting %s/%s inline as job %s", job.bucket, job.path, job.id)
        return self.pipeline.run(job)

    def submit_async(self, request: SubmitRequest) -> db_models.Job:
        if self.jobs is None:
            raise RuntimeError("asynchronous submission needs a job repository")
        job = self.jobs.add(build_job(request))
        logger.info("Queued job %s for %s/%s", job.id, job.bucket, job.path)
        return job

    def submit(
        self,
        request: SubmitRequest,
        mode: Mode = "async",
    ) -> pipeline_mod.PipelineResult | db_models.Job:
        """Dispatch to :meth:`submit_sync` or :meth:`submit_async`."""
        if mode == "sync":
            return self.submit_sync(request)
        return self.submit_async(request)
