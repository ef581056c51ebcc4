"""Tests for the in-memory job queue: claims, leases and terminal writes.

A controllable clock stands in for wall time so lease expiry can be
exercised without sleeping.
"""

from __future__ import annotations

import datetime
import threading

import pytest

from gis_ingest.db import jobs as db_jobs
from gis_ingest.db import models as db_models

JobStatus = db_models.JobStatus

START = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.UTC)


class Clock:
    def __init__(self) -> None:
        self.now = START

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


def _job(job_id: str, minutes: int = 0) -> db_models.Job:
    return db_models.Job(
        id=job_id,
        bucket="gis_raw",
        path=f"PHL/{job_id}.zip",
        country_iso="PHL",
        version_id="v1",
        layer_id=f"layer-{job_id}",
        created_at=START + datetime.timedelta(minutes=minutes),
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def repo(clock: Clock) -> db_jobs.InMemoryJobRepository:
    return db_jobs.InMemoryJobRepository(clock=clock)


def test_add_and_get(repo: db_jobs.InMemoryJobRepository) -> None:
    job = repo.add(_job("a"))
    assert repo.get("a") is job
    assert repo.get("missing") is None


def test_add_duplicate_rejected(repo: db_jobs.InMemoryJobRepository) -> None:
    repo.add(_job("a"))
    with pytest.raises(ValueError):
        repo.add(_job("a"))


def test_next_claimable_is_oldest_pending(
    repo: db_jobs.InMemoryJobRepository,
) -> None:
    repo.add(_job("newer", minutes=5))
    repo.add(_job("older", minutes=1))
    candidate = repo.next_claimable()
    assert candidate is not None
    assert candidate.id == "older"


def test_claim_sets_lease(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    job = repo.claim("a", "w1", lease_seconds=60)
    assert job is not None
    assert job.status is JobStatus.PROCESSING
    assert job.claimed_by == "w1"
    assert job.attempts == 1
    assert job.started_at == START
    assert job.lease_expires_at == START + datetime.timedelta(seconds=60)
    assert repo.next_claimable() is None


def test_second_claim_loses(repo: db_jobs.InMemoryJobRepository) -> None:
    repo.add(_job("a"))
    assert repo.claim("a", "w1", 60) is not None
    assert repo.claim("a", "w2", 60) is None
    assert repo.get("a").claimed_by == "w1"  # type: ignore[union-attr]


def test_concurrent_claims_have_one_winner(
    repo: db_jobs.InMemoryJobRepository,
) -> None:
    repo.add(_job("a"))
    barrier = threading.Barrier(8)
    winners: list[str] = []
    lock = threading.Lock()

    def attempt(worker_id: str) -> None:
        barrier.wait()
        if repo.claim("a", worker_id, 60) is not None:
            with lock:
                winners.append(worker_id)

    threads = [
        threading.Thread(target=attempt, args=(f"w{i}",)) for i in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(winners) == 1


def test_lapsed_lease_is_reclaimable(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    repo.claim("a", "w1", 60)
    clock.advance(61)
    candidate = repo.next_claimable()
    assert candidate is not None and candidate.id == "a"
    job = repo.claim("a", "w2", 60)
    assert job is not None
    assert job.claimed_by == "w2"
    assert job.attempts == 2
    assert job.started_at == START


def test_renew_lease_only_for_owner(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    repo.claim("a", "w1", 60)
    clock.advance(50)
    assert repo.renew_lease("a", "w1", 60)
    assert not repo.renew_lease("a", "w2", 60)
    clock.advance(50)
    assert repo.next_claimable() is None


def test_stale_owner_cannot_finish_after_takeover(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    repo.claim("a", "w1", 60)
    clock.advance(120)
    repo.claim("a", "w2", 60)
    assert not repo.renew_lease("a", "w1", 60)
    assert not repo.complete("a", "w1")
    assert not repo.fail("a", "w1", "late")
    assert repo.complete("a", "w2")
    assert repo.get("a").status is JobStatus.DONE  # type: ignore[union-attr]


def test_fail_records_message(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    repo.claim("a", "w1", 60)
    clock.advance(5)
    assert repo.fail("a", "w1", "convert: bad geometry")
    job = repo.get("a")
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_message == "convert: bad geometry"
    assert job.finished_at == START + datetime.timedelta(seconds=5)
    assert job.lease_expires_at is None


def test_terminal_jobs_are_never_reopened(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    repo.claim("a", "w1", 60)
    repo.complete("a", "w1")
    clock.advance(3600)
    assert repo.next_claimable() is None
    assert repo.claim("a", "w2", 60) is None
    assert not repo.fail("a", "w1", "again")
    assert not repo.expire("a", "expired")
    assert repo.get("a").status is JobStatus.DONE  # type: ignore[union-attr]


def test_terminal_job_with_stale_lease_is_not_claimable(
    repo: db_jobs.InMemoryJobRepository,
) -> None:
    job = _job("a")
    job.status = JobStatus.FAILED
    job.claimed_by = "w1"
    job.lease_expires_at = START - datetime.timedelta(minutes=5)
    repo.add(job)
    assert repo.next_claimable() is None
    assert repo.claim("a", "w2", 60) is None
    assert not repo.complete("a", "w1")
    assert repo.get("a").status is JobStatus.FAILED  # type: ignore[union-attr]


def test_expire_requires_lapsed_lease(
    repo: db_jobs.InMemoryJobRepository,
    clock: Clock,
) -> None:
    repo.add(_job("a"))
    assert not repo.expire("a", "not processing")
    repo.claim("a", "w1", 60)
    assert not repo.expire("a", "still leased")
    clock.advance(61)
    assert repo.expire("a", "lease: abandoned")
    job = repo.get("a")
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.error_message == "lease: abandoned"


def test_list_jobs_filters_by_status(
    repo: db_jobs.InMemoryJobRepository,
) -> None:
    repo.add(_job("a", minutes=1))
    repo.add(_job("b", minutes=2))
    repo.add(_job("c", minutes=3))
    repo.claim("b", "w1", 60)
    repo.fail("b", "w1", "load: batch 1 failed")
    assert [job.id for job in repo.list_jobs()] == ["c", "b", "a"]
    assert [job.id for job in repo.list_jobs(JobStatus.FAILED)] == ["b"]
    assert [job.id for job in repo.list_jobs(limit=1)] == ["c"]
