"""Durable ingestion job queue.

Jobs are claimed with a compare-and-set on their status so that any number
of worker processes can poll the same table: the claim that updates zero
rows lost the race. Claims carry a lease; a ``processing`` job whose lease
lapsed (its worker crashed) becomes claimable again.
"""

from __future__ import annotations

import datetime
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2.extras

from gis_ingest.db import database
from gis_ingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable

    from gis_ingest.core import config


class JobRepositoryProtocol(Protocol):
    """Protocol interface for the ingestion job queue."""

    def add(self, job: db_models.Job) -> db_models.Job: ...

    def get(self, job_id: str) -> db_models.Job | None: ...

    def list_jobs(
        self,
        status: db_models.JobStatus | None = None,
        limit: int = 100,
    ) -> list[db_models.Job]: ...

    def next_claimable(self) -> db_models.Job | None: ...

    def claim(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
    ) -> db_models.Job | None: ...

    def renew_lease(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
    ) -> bool: ...

    def complete(self, job_id: str, worker_id: str) -> bool: ...

    def fail(self, job_id: str, worker_id: str, message: str) -> bool: ...

    def expire(self, job_id: str, message: str) -> bool: ...


class InMemoryJobRepository(JobRepositoryProtocol):
    """Thread-safe in-memory queue for tests and local development.

    Every operation runs under one lock, which gives the same
    compare-and-set semantics as the conditional UPDATEs of the
    PostgreSQL implementation.
    """

    def __init__(
        self,
        clock: Callable[[], datetime.datetime] = db_models.utcnow,
    ) -> None:
        self._store: dict[str, db_models.Job] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _claimable(self, job: db_models.Job, now: datetime.datetime) -> bool:
        if job.status.is_terminal:
            return False
        if job.status is db_models.JobStatus.PENDING:
            return True
        return (
            job.status is db_models.JobStatus.PROCESSING
            and job.lease_expires_at is not None
            and job.lease_expires_at < now
        )

    def _owned(self, job: db_models.Job | None, worker_id: str) -> bool:
        return (
            job is not None
            and job.status is db_models.JobStatus.PROCESSING
            and job.claimed_by == worker_id
        )

    def add(self, job: db_models.Job) -> db_models.Job:
        with self._lock:
            if job.id in self._store:
                raise ValueError(f"Job {job.id} already exists")
            self._store[job.id] = job
        return job

    def get(self, job_id: str) -> db_models.Job | None:
        with self._lock:
            return self._store.get(job_id)

    def list_jobs(
        self,
        status: db_models.JobStatus | None = None,
        limit: int = 100,
    ) -> list[db_models.Job]:
        with self._lock:
            jobs = [
                job
                for job in self._store.values()
                if status is None or job.status is status
            ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    def next_claimable(self) -> db_models.Job | None:
        now = self._clock()
        with self._lock:
            candidates = [
                job for job in self._store.values() if self._claimable(job, now)
            ]
        if not candidates:
            return None
        return min(candidates, key=lambda job: job.created_at)

    def claim(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
    ) -> db_models.Job | None:
        now = self._clock()
        with self._lock:
            job = self._store.get(job_id)
            if job is None or not self._claimable(job, now):
                return None
            job.move_to(db_models.JobStatus.PROCESSING)
            job.claimed_by = worker_id
            job.lease_expires_at = now + datetime.timedelta(
                seconds=lease_seconds
            )
            job.started_at = job.started_at or now
            job.attempts += 1
            return job

    def renew_lease(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
    ) -> bool:
        now = self._clock()
        with self._lock:
            job = self._store.get(job_id)
            if not self._owned(job, worker_id):
                return False
            cast(db_models.Job, job).lease_expires_at = now + (
                datetime.timedelta(seconds=lease_seconds)
            )
            return True

    def _finish(
        self,
        job: db_models.Job,
        status: db_models.JobStatus,
        message: str | None,
    ) -> None:
        job.move_to(status)
        job.finished_at = self._clock()
        job.lease_expires_at = None
        job.error_message = message

    def complete(self, job_id: str, worker_id: str) -> bool:
        with self._lock:
            job = self._store.get(job_id)
            if not self._owned(job, worker_id):
                return False
            self._finish(
                cast(db_models.Job, job), db_models.JobStatus.DONE, None
            )
            return True

    def fail(self, job_id: str, worker_id: str, message: str) -> bool:
        with self._lock:
            job = self._store.get(job_id)
            if not self._owned(job, worker_id):
                return False
            self._finish(
                cast(db_models.Job, job), db_models.JobStatus.FAILED, message
            )
            return True

    def expire(self, job_id: str, message: str) -> bool:
        now = self._clock()
        with self._lock:
            job = self._store.get(job_id)
            if (
                job is None
                or job.status is not db_models.JobStatus.PROCESSING
                or not self._claimable(job, now)
            ):
                return False
            self._finish(job, db_models.JobStatus.FAILED, message)
            return True


class PostgresJobRepository(JobRepositoryProtocol):
    """PostgreSQL-backed queue on the ``gis_processing_queue`` table."""

    CLAIMABLE = """
        (status = 'pending'
         OR (status = 'processing' AND lease_expires_at < now()))
    """

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        database.ensure_schema(settings)

    def add(self, job: db_models.Job) -> db_models.Job:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO gis_processing_queue (
                    id, layer_id, status, payload, created_at
                ) VALUES (
                    %(id)s, %(layer_id)s, %(status)s, %(payload)s,
                    %(created_at)s
                )
                """,
                self._to_row(job),
            )
        return job

    def get(self, job_id: str) -> db_models.Job | None:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM gis_processing_queue WHERE id = %s",
                (job_id,),
            )
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def list_jobs(
        self,
        status: db_models.JobStatus | None = None,
        limit: int = 100,
    ) -> list[db_models.Job]:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT * FROM gis_processing_queue
                WHERE %(status)s::text IS NULL OR status = %(status)s
                ORDER BY created_at DESC
                LIMIT %(limit)s
                """,
                {
                    "status": str(status) if status is not None else None,
                    "limit": limit,
                },
            )
            return [self._from_row(row) for row in cur.fetchall()]

    def next_claimable(self) -> db_models.Job | None:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM gis_processing_queue
                WHERE {self.CLAIMABLE}
                ORDER BY created_at
                LIMIT 1
                """
            )
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def claim(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
    ) -> db_models.Job | None:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE gis_processing_queue
                SET status = 'processing',
                    claimed_by = %(worker_id)s,
                    lease_expires_at =
                        now() + %(lease)s * interval '1 second',
                    started_at = COALESCE(started_at, now()),
                    attempts = attempts + 1
                WHERE id = %(id)s AND {self.CLAIMABLE}
                RETURNING *
                """,
                {"id": job_id, "worker_id": worker_id, "lease": lease_seconds},
            )
            row = cur.fetchone()
        return self._from_row(row) if row is not None else None

    def renew_lease(
        self,
        job_id: str,
        worker_id: str,
        lease_seconds: int,
    ) -> bool:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE gis_processing_queue
                SET lease_expires_at = now() + %(lease)s * interval '1 second'
                WHERE id = %(id)s
                  AND status = 'processing'
                  AND claimed_by = %(worker_id)s
                """,
                {"id": job_id, "worker_id": worker_id, "lease": lease_seconds},
            )
            return cur.rowcount == 1

    def _finish(
        self,
        job_id: str,
        worker_id: str,
        status: db_models.JobStatus,
        message: str | None,
    ) -> bool:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE gis_processing_queue
                SET status = %(status)s,
                    finished_at = now(),
                    lease_expires_at = NULL,
                    error_message = %(message)s
                WHERE id = %(id)s
                  AND status = 'processing'
                  AND claimed_by = %(worker_id)s
                """,
                {
                    "id": job_id,
                    "worker_id": worker_id,
                    "status": str(status),
                    "message": message,
                },
            )
            return cur.rowcount == 1

    def complete(self, job_id: str, worker_id: str) -> bool:
        return self._finish(job_id, worker_id, db_models.JobStatus.DONE, None)

    def fail(self, job_id: str, worker_id: str, message: str) -> bool:
        return self._finish(
            job_id, worker_id, db_models.JobStatus.FAILED, message
        )

    def expire(self, job_id: str, message: str) -> bool:
        with database.connect(self.settings) as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE gis_processing_queue
                SET status = 'failed',
                    finished_at = now(),
                    lease_expires_at = NULL,
                    error_message = %(message)s
                WHERE id = %(id)s
                  AND status = 'processing'
                  AND lease_expires_at < now()
                """,
                {"id": job_id, "message": message},
            )
            return cur.rowcount == 1

    @staticmethod
    def _to_row(job: db_models.Job) -> dict[str, object]:
        """Convert a Job to the parameters of an INSERT statement.

        Args:
            job: Job to convert.

        Returns:
            Dictionary suitable for parameterized SQL insertion.
        """
        return {
            "id": job.id,
            "layer_id": job.layer_id,
            "status": str(job.status),
            "payload": psycopg2.extras.Json(job.payload()),
            "created_at": job.created_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Job:
        """Convert a queue row (payload JSON included) to a Job.

        Args:
            row: Dictionary from database query result.

        Returns:
            Job with all fields populated.
        """
        payload = cast(dict[str, object], row.get("payload") or {})
        admin_level = payload.get("admin_level")
        title = payload.get("title")
        return db_models.Job(
            id=str(row["id"]),
            bucket=str(payload["bucket"]),
            path=str(payload["path"]),
            country_iso=str(payload["country_iso"]),
            version_id=str(payload["version_id"]),
            layer_id=str(row["layer_id"]),
            admin_level=str(admin_level) if admin_level is not None else None,
            format=cast(
                db_models.Format, str(payload.get("format") or "shapefile")
            ),
            title=str(title) if title is not None else None,
            status=db_models.JobStatus(str(row["status"])),
            created_at=cast(datetime.datetime, row["created_at"]),
            started_at=cast("datetime.datetime | None", row.get("started_at")),
            finished_at=cast(
                "datetime.datetime | None", row.get("finished_at")
            ),
            error_message=cast("str | None", row.get("error_message")),
            claimed_by=cast("str | None", row.get("claimed_by")),
            lease_expires_at=cast(
                "datetime.datetime | None", row.get("lease_expires_at")
            ),
            attempts=int(cast(int, row.get("attempts") or 0)),
        )


def get_job_repository(settings: config.Settings) -> JobRepositoryProtocol:
    """Factory function to create the job queue repository.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresJobRepository instance for production use.
    """
    return PostgresJobRepository(settings)
