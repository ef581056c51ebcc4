"""Queued submission and job inspection endpoints."""

from __future__ import annotations

from typing import Any

import fastapi
from fastapi import responses

from gis_ingest.api import deps, schemas
from gis_ingest.core import errors
from gis_ingest.db import jobs as db_jobs
from gis_ingest.db import models as db_models
from gis_ingest.services import submitter

router = fastapi.APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", status_code=202, response_model=None)
def submit_job(
    request: submitter.SubmitRequest,
    jobs: db_jobs.JobRepositoryProtocol = fastapi.Depends(deps.get_job_repo),  # noqa: B008
) -> dict[str, Any] | responses.JSONResponse:
    """Queue a conversion for the workers.

    Returns:
        ``{ok: true, job_id, status}`` with status 202, or 400 with
        ``{ok: false, error}`` for invalid input.
    """
    try:
        job = submitter.JobSubmitter(jobs=jobs).submit_async(request)
    except errors.ValidationError as exc:
        return responses.JSONResponse(
            status_code=400, content=schemas.error_body(str(exc))
        )
    return {"ok": True, "job_id": job.id, "status": job.status.value}


@router.get("")
def list_jobs(
    status: db_models.JobStatus | None = None,
    limit: int = fastapi.Query(default=100, ge=1, le=1000),  # noqa: B008
    jobs: db_jobs.JobRepositoryProtocol = fastapi.Depends(deps.get_job_repo),  # noqa: B008
) -> list[dict[str, Any]]:
    """List jobs, newest first, optionally filtered by status."""
    return [schemas.to_response(job) for job in jobs.list_jobs(status, limit)]


@router.get("/{job_id}")
def get_job(
    job_id: str,
    jobs: db_jobs.JobRepositoryProtocol = fastapi.Depends(deps.get_job_repo),  # noqa: B008
) -> dict[str, Any]:
    job = jobs.get(job_id)
    if job is None:
        raise fastapi.HTTPException(status_code=404, detail="Job not found")
    return schemas.to_response(job)
