"""Raw archive upload followed by submission.

The uploaded archive is stored in the raw bucket under
``<country>/<upload_id>/<filename>``. Archives up to ``sync_max_bytes``
are converted inline; larger ones are queued for a worker.

Example:
    Upload a zipped shapefile:
        >>> response = client.post(
        ...     "/api/uploads",
        ...     files={"file": ("phl_adm2.zip", open("phl_adm2.zip", "rb"))},
        ...     data={"country_iso": "PHL", "version_id": "v1",
        ...           "admin_level": "ADM2"},
        ... )
        >>> response.json()["mode"]
        'sync'
"""

from __future__ import annotations

import io
import logging
import pathlib
import re
import uuid
from typing import Any

import fastapi
from fastapi import responses

from gis_ingest.api import deps, schemas
from gis_ingest.core import config, errors
from gis_ingest.db import jobs as db_jobs
from gis_ingest.services import pipeline as pipeline_mod
from gis_ingest.services import submitter
from gis_ingest.storage import blobs

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/api/uploads", tags=["uploads"])

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_filename(filename: str | None) -> str:
    name = _UNSAFE_CHARS.sub("_", pathlib.PurePath(filename or "").name)
    return name.strip("._") or "upload"


def _read_upload(file: fastapi.UploadFile, max_size: int) -> bytes:
    """Read an uploaded file into memory with size validation.

    Raises:
        HTTPException: If the file exceeds the maximum size limit or is
            empty.
    """
    buffer = io.BytesIO()
    size = 0
    for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
        size += len(chunk)
        if size > max_size:
            raise fastapi.HTTPException(status_code=413, detail="Upload too large")
        buffer.write(chunk)
    if size == 0:
        raise fastapi.HTTPException(status_code=400, detail="Upload is empty")
    return buffer.getvalue()


@router.post("", response_model=None)
def upload_archive(
    file: fastapi.UploadFile,
    country_iso: str = fastapi.Form(...),  # noqa: B008
    version_id: str = fastapi.Form(...),  # noqa: B008
    admin_level: str | None = fastapi.Form(None),  # noqa: B008
    title: str | None = fastapi.Form(None),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    blob_store: blobs.BlobStoreProtocol = fastapi.Depends(deps.get_blob_store),  # noqa: B008
    jobs: db_jobs.JobRepositoryProtocol = fastapi.Depends(deps.get_job_repo),  # noqa: B008
    pipeline: pipeline_mod.Pipeline = fastapi.Depends(deps.get_pipeline),  # noqa: B008
) -> dict[str, Any] | responses.JSONResponse:
    """Store an archive in the raw bucket and submit it for conversion.

    Returns:
        ``{ok, mode, path, ...}``. Inline conversions add the published
        version, layer and feature count; queued ones add ``job_id`` and
        answer with status 202.
    """
    filename = _safe_filename(file.filename)
    path = f"{country_iso.strip().upper()}/{uuid.uuid4()}/{filename}"
    request = submitter.SubmitRequest(
        bucket=settings.raw_bucket,
        path=path,
        country_iso=country_iso,
        version_id=version_id,
        admin_level=admin_level,
        title=title,
    )
    try:
        submitter.build_job(request)
    except errors.ValidationError as exc:
        return responses.JSONResponse(
            status_code=400, content=schemas.error_body(str(exc))
        )

    data = _read_upload(file, settings.max_upload_size_bytes)
    try:
        blob_store.put(settings.raw_bucket, path, data)
    except blobs.BlobStoreError as exc:
        logger.error("Storing upload %s failed: %s", path, exc)
        return responses.JSONResponse(
            status_code=502, content=schemas.error_body(f"upload failed: {exc}")
        )
    logger.info("Stored upload %s/%s (%d bytes)", settings.raw_bucket, path, len(data))

    sub = submitter.JobSubmitter(jobs=jobs, pipeline=pipeline)
    if len(data) > settings.sync_max_bytes:
        job = sub.submit_async(request)
        return responses.JSONResponse(
            status_code=202,
            content={"ok": True, "mode": "async", "path": path, "job_id": job.id},
        )

    try:
        result = sub.submit_sync(request)
    except errors.PipelineError as exc:
        return responses.JSONResponse(
            status_code=500,
            content={**schemas.error_body(exc.describe()), "path": path},
        )
    except Exception as exc:
        logger.exception("Synchronous conversion of upload %s crashed", path)
        return responses.JSONResponse(
            status_code=500,
            content={
                **schemas.error_body(f"{type(exc).__name__}: {exc}"),
                "path": path,
            },
        )
    return {
        "ok": True,
        "mode": "sync",
        "path": path,
        "version_id": result.version_id,
        "layer_id": result.layer_id,
        "feature_count": result.feature_count,
    }
