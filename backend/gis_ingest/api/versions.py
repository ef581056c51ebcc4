"""Dataset version and layer endpoints.

Example:
    Find the active version of a country and its layers:
        >>> active = client.get("/api/countries/PHL/versions/active").json()
        >>> client.get(f"/api/versions/{active['id']}/layers").json()
        >>> # Returns: [{"id": "...", "layer_name": "phl_adm2.zip",
        >>> #            "admin_level": "ADM2", "feature_count": 1610, ...}]

    Create a new (empty) version and make it active:
        >>> client.post(
        ...     "/api/countries/PHL/versions",
        ...     json={"title": "Boundaries 2025", "activate": True},
        ... )
"""

from __future__ import annotations

import uuid
from typing import Any

import fastapi
import pydantic

from gis_ingest.api import deps, schemas
from gis_ingest.core import errors
from gis_ingest.db import catalog as db_catalog
from gis_ingest.services import publisher as publisher_mod

router = fastapi.APIRouter(prefix="/api", tags=["versions"])


class CreateVersionRequest(pydantic.BaseModel):
    title: str = pydantic.Field(min_length=1)
    activate: bool = True
    version_id: str | None = None


def _country(country_iso: str) -> str:
    if len(country_iso) != 3 or not country_iso.isalpha():
        raise fastapi.HTTPException(status_code=400, detail="Invalid country code")
    return country_iso.upper()


@router.get("/countries/{country_iso}/versions")
def list_versions(
    country_iso: str,
    catalog: db_catalog.CatalogRepositoryProtocol = fastapi.Depends(  # noqa: B008
        deps.get_catalog_repo
    ),
) -> list[dict[str, Any]]:
    """List a country's versions, newest first."""
    return [
        schemas.to_response(version)
        for version in catalog.list_versions(_country(country_iso))
    ]


@router.get("/countries/{country_iso}/versions/active")
def get_active_version(
    country_iso: str,
    catalog: db_catalog.CatalogRepositoryProtocol = fastapi.Depends(  # noqa: B008
        deps.get_catalog_repo
    ),
) -> dict[str, Any]:
    version = catalog.active_version(_country(country_iso))
    if version is None:
        raise fastapi.HTTPException(status_code=404, detail="No active version")
    return schemas.to_response(version)


@router.post("/countries/{country_iso}/versions", status_code=201)
def create_version(
    country_iso: str,
    request: CreateVersionRequest,
    catalog: db_catalog.CatalogRepositoryProtocol = fastapi.Depends(  # noqa: B008
        deps.get_catalog_repo
    ),
    publisher: publisher_mod.VersionPublisher = fastapi.Depends(  # noqa: B008
        deps.get_publisher
    ),
) -> dict[str, Any]:
    """Create a version and optionally make it the active one.

    Activation goes through the same per-country critical section as a
    pipeline publish, so the previous active version is demoted.

    Raises:
        HTTPException: 400 for an invalid country or a version id owned by
            another country, 500 if activation fails.
    """
    country = _country(country_iso)
    version_id = request.version_id or str(uuid.uuid4())
    try:
        version = catalog.ensure_version(version_id, country, request.title)
    except db_catalog.CatalogError as exc:
        raise fastapi.HTTPException(status_code=400, detail=str(exc)) from exc

    if request.activate:
        try:
            version = publisher.activate(country, version.id)
        except errors.PublishError as exc:
            raise fastapi.HTTPException(
                status_code=500, detail=exc.describe()
            ) from exc
    return schemas.to_response(version)


@router.get("/versions/{version_id}/layers")
def list_layers(
    version_id: str,
    catalog: db_catalog.CatalogRepositoryProtocol = fastapi.Depends(  # noqa: B008
        deps.get_catalog_repo
    ),
) -> list[dict[str, Any]]:
    if catalog.get_version(version_id) is None:
        raise fastapi.HTTPException(status_code=404, detail="Version not found")
    return [schemas.to_response(layer) for layer in catalog.list_layers(version_id)]
