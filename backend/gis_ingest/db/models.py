"""Data models for ingestion jobs and published GIS datasets.

This module defines the records shared by the queue store, the catalog
repositories and the pipeline: ingestion jobs and their status machine,
dataset versions (one active per country), converted layers and the
features loaded for them.

Example:
    Creating a pending job for a zipped shapefile:
        >>> from gis_ingest.db.models import Job
        >>> job = Job(
        ...     id="6c1d...",
        ...     bucket="gis_raw",
        ...     path="PHL/phl_adm2.zip",
        ...     country_iso="PHL",
        ...     version_id="v1",
        ...     layer_id="9f0e...",
        ...     admin_level="ADM2",
        ...     format="shapefile",
        ... )
        >>> job.status
        <JobStatus.PENDING: 'pending'>
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
from typing import Any, Literal

Format = Literal["shapefile", "geojson", "topojson"]
GeoJSON = dict[str, Any]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


class JobStatus(enum.StrEnum):
    """Lifecycle of an ingestion job.

    ``pending`` -> ``processing`` on claim, then ``done`` or ``failed``.
    A ``processing`` job whose lease lapsed is claimed again in place.
    Terminal states are never left.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)

    def can_transition(self, target: JobStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.DONE, JobStatus.FAILED}
    ),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclasses.dataclass
class Job:
    """One archive-to-layer conversion request.

    Attributes:
        id: Unique identifier (UUID string).
        bucket: Blob store bucket holding the raw archive.
        path: Object path of the raw archive inside ``bucket``.
        country_iso: ISO 3166-1 alpha-3 code, upper case.
        version_id: Dataset version the converted layer is published under.
        layer_id: Layer id reserved at submission; features are written
            under it before the layer row exists.
        admin_level: Administrative level label such as "ADM2", if known.
        format: Source format detected at submission.
        title: Title used when the target version has to be created.
        status: Current lifecycle state.
        created_at: Submission timestamp; claims are served oldest first.
        started_at: First claim timestamp.
        finished_at: Timestamp of reaching a terminal state.
        error_message: Failure description for ``failed`` jobs.
        claimed_by: Worker identity holding the current lease.
        lease_expires_at: Instant after which the claim may be taken over.
        attempts: Number of claims made so far.
    """

    id: str
    bucket: str
    path: str
    country_iso: str
    version_id: str
    layer_id: str
    admin_level: str | None = None
    format: Format = "shapefile"
    title: str | None = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    started_at: datetime.datetime | None = None
    finished_at: datetime.datetime | None = None
    error_message: str | None = None
    claimed_by: str | None = None
    lease_expires_at: datetime.datetime | None = None
    attempts: int = 0

    @property
    def filename(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def move_to(self, status: JobStatus) -> None:
        """Change status along the job state machine.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if not self.status.can_transition(status):
            raise ValueError(
                f"Job {self.id} cannot move from {self.status} to {status}"
            )
        self.status = status

    def payload(self) -> dict[str, Any]:
        """Return the queue payload stored alongside the job row."""
        return {
            "country_iso": self.country_iso,
            "bucket": self.bucket,
            "path": self.path,
            "format": self.format,
            "version_id": self.version_id,
            "admin_level": self.admin_level,
            "title": self.title,
        }


@dataclasses.dataclass
class DatasetVersion:
    """A country's GIS dataset version; at most one is active per country."""

    id: str
    country_iso: str
    title: str
    is_active: bool = False
    source: str | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)
    updated_at: datetime.datetime | None = None


@dataclasses.dataclass
class Layer:
    """A converted GeoJSON layer attached to a dataset version.

    Attributes:
        id: Layer id reserved by the job that produced it.
        version_id: Owning dataset version.
        country_iso: Country of the owning version.
        layer_name: Display name, defaults to the source file name.
        admin_level: Administrative level label, if known.
        format: Output format, always "geojson".
        crs: Coordinate reference system of the stored output.
        source_bucket: Bucket of the uploaded GeoJSON object.
        source_path: Path of the uploaded GeoJSON object.
        feature_count: Persisted feature rows for this layer.
        unique_pcodes: Distinct non-empty pcodes among the features.
        missing_names: Features without a name.
        created_at: Registration timestamp.
    """

    id: str
    version_id: str
    country_iso: str
    layer_name: str
    admin_level: str | None
    format: str
    crs: str
    source_bucket: str
    source_path: str
    feature_count: int
    unique_pcodes: int = 0
    missing_names: int = 0
    created_at: datetime.datetime = dataclasses.field(default_factory=utcnow)


@dataclasses.dataclass
class Feature:
    """A single geometry-plus-attributes record produced by conversion."""

    id: str
    layer_id: str
    pcode: str | None
    name: str | None
    geometry: GeoJSON
    properties: dict[str, Any] = dataclasses.field(default_factory=dict)
