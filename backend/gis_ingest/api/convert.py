"""Synchronous conversion endpoint.

``POST /convert`` validates the request, runs the whole pipeline inline
and answers once the converted layer is published.

Example:
    Convert a zipped shapefile already in the raw bucket:
        >>> response = client.post(
        ...     "/convert",
        ...     json={
        ...         "bucket": "gis_raw",
        ...         "path": "PHL/phl_adm2.zip",
        ...         "country_iso": "PHL",
        ...         "version_id": "v1",
        ...         "admin_level": "ADM2",
        ...     },
        ... )
        >>> response.json()
        >>> # Returns: {"ok": true, "message": "GIS conversion complete",
        >>> #           "version_id": "v1", "layer_id": "...",
        >>> #           "feature_count": 1610}
"""

from __future__ import annotations

import logging
from typing import TypedDict

import fastapi
from fastapi import responses

from gis_ingest.api import deps, schemas
from gis_ingest.core import errors
from gis_ingest.services import pipeline as pipeline_mod
from gis_ingest.services import submitter

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(tags=["convert"])


class ConvertResponse(TypedDict):
    ok: bool
    message: str
    version_id: str
    layer_id: str
    feature_count: int


@router.post("/convert", response_model=None)
def convert(
    request: submitter.SubmitRequest,
    pipeline: pipeline_mod.Pipeline = fastapi.Depends(deps.get_pipeline),  # noqa: B008
) -> ConvertResponse | responses.JSONResponse:
    """Convert a raw archive and publish it as the country's active version.

    Args:
        request: Location of the raw archive and its target version.
        pipeline: Orchestration core (injected via FastAPI Depends).

    Returns:
        The published version, layer and feature count; ``400`` with
        ``{ok: false, error}`` for invalid input and ``500`` for a failed
        pipeline stage or any unexpected error.
    """
    try:
        result = submitter.JobSubmitter(pipeline=pipeline).submit_sync(request)
    except errors.ValidationError as exc:
        return responses.JSONResponse(
            status_code=400, content=schemas.error_body(str(exc))
        )
    except errors.PipelineError as exc:
        logger.error("Synchronous conversion failed: %s", exc.describe())
        return responses.JSONResponse(
            status_code=500, content=schemas.error_body(exc.describe())
        )
    except Exception as exc:
        logger.exception("Synchronous conversion crashed")
        return responses.JSONResponse(
            status_code=500,
            content=schemas.error_body(f"{type(exc).__name__}: {exc}"),
        )

    return ConvertResponse(
        ok=True,
        message="GIS conversion complete",
        version_id=result.version_id,
        layer_id=result.layer_id,
        feature_count=result.feature_count,
    )
