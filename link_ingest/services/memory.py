from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator

from link_ingest.services.store import (
    IngestionJob,
    IngestionStatus,
    Link,
    Profile,
    RepositoryConflictError,
    RepositoryNotFoundError,
    ScraperConfig,
    utcnow,
)


@dataclass(slots=True)
class _MemoryState:
    profiles: dict[str, Profile] = field(default_factory=dict)
    links: dict[str, Link] = field(default_factory=dict)
    jobs: dict[str, IngestionJob] = field(default_factory=dict)
    scraper_configs: dict[str, ScraperConfig] = field(default_factory=dict)


class InMemoryRepository:
    """Process-local store used when no database is configured and in tests.

    Transactions are serialized with an ``asyncio.Lock``; the state is
    snapshotted on entry and restored if the block raises.
    """

    def __init__(self) -> None:
        self._state = _MemoryState()
        self._lock = asyncio.Lock()

    def add_profile(self, profile: Profile) -> Profile:
        self._state.profiles[profile.id] = copy.deepcopy(profile)
        return profile

    def add_link(self, link: Link) -> Link:
        self._state.links[link.id] = copy.deepcopy(link)
        return link

    def add_job(self, job: IngestionJob) -> IngestionJob:
        self._state.jobs[job.id] = copy.deepcopy(job)
        return job

    def set_scraper_config(self, config: ScraperConfig) -> None:
        self._state.scraper_configs[config.network] = copy.deepcopy(config)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemorySession"]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemorySession(self._state)
            except BaseException:
                self._state = snapshot
                raise

    async def close(self) -> None:
        return None


class InMemorySession:
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    async def get_profile(self, profile_id: str) -> Profile | None:
        profile = self._state.profiles.get(profile_id)
        return copy.deepcopy(profile) if profile is not None else None

    async def set_profile_ingestion_status(
        self, profile_id: str, status: IngestionStatus, error: str | None = None
    ) -> None:
        profile = self._require_profile(profile_id)
        profile.ingestion_status = status
        profile.last_ingestion_error = error
        profile.updated_at = utcnow()

    async def update_profile_enrichment(
        self, profile_id: str, *, display_name: str | None = None, avatar_url: str | None = None
    ) -> None:
        profile = self._require_profile(profile_id)
        if display_name is not None:
            profile.display_name = display_name
        if avatar_url is not None:
            profile.avatar_url = avatar_url
        profile.updated_at = utcnow()

    async def list_links(self, profile_id: str, state: str | None = None) -> list[Link]:
        rows = [
            link
            for link in self._state.links.values()
            if link.profile_id == profile_id and (state is None or link.state == state)
        ]
        rows.sort(key=lambda link: (link.sort_order, link.created_at))
        return copy.deepcopy(rows)

    async def get_link(self, link_id: str) -> Link | None:
        link = self._state.links.get(link_id)
        return copy.deepcopy(link) if link is not None else None

    async def insert_link(self, link: Link) -> Link:
        if link.id in self._state.links:
            raise RepositoryConflictError("link already exists")
        self._check_identity_unique(link)
        self._state.links[link.id] = copy.deepcopy(link)
        return link

    async def update_link(self, link: Link) -> Link:
        if link.id not in self._state.links:
            raise RepositoryNotFoundError("link not found")
        self._check_identity_unique(link)
        link.updated_at = utcnow()
        self._state.links[link.id] = copy.deepcopy(link)
        return link

    async def insert_job(self, job: IngestionJob) -> IngestionJob:
        if job.id in self._state.jobs:
            raise RepositoryConflictError("job already exists")
        self._state.jobs[job.id] = copy.deepcopy(job)
        return job

    async def find_job_by_dedup_key(self, dedup_key: str, *, succeeded_since: datetime) -> IngestionJob | None:
        for job in self._state.jobs.values():
            if job.dedup_key != dedup_key:
                continue
            if job.status in {"pending", "processing"}:
                return copy.deepcopy(job)
            if job.status == "succeeded" and job.updated_at >= succeeded_since:
                return copy.deepcopy(job)
        return None

    async def get_job(self, job_id: str) -> IngestionJob | None:
        job = self._state.jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[IngestionJob]:
        rows = [job for job in self._state.jobs.values() if status is None or job.status == status]
        rows.sort(key=lambda job: job.created_at, reverse=True)
        return copy.deepcopy(rows[:limit])

    async def fail_exhausted_jobs(self, now: datetime) -> int:
        failed = 0
        for job in self._state.jobs.values():
            if job.status == "pending" and job.run_at <= now and job.attempts >= job.max_attempts:
                job.status = "failed"
                job.error = f"Exceeded max attempts ({job.max_attempts})"
                job.updated_at = now
                failed += 1
        return failed

    async def list_claim_candidates(self, now: datetime, limit: int) -> list[IngestionJob]:
        rows = [
            job
            for job in self._state.jobs.values()
            if job.status == "pending" and job.run_at <= now and job.attempts < job.max_attempts
        ]
        rows.sort(key=lambda job: (job.priority, job.run_at))
        return copy.deepcopy(rows[:limit])

    async def count_processing_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._state.jobs.values():
            if job.status == "processing":
                counts[job.job_type] = counts.get(job.job_type, 0) + 1
        return counts

    async def count_claimed_since_by_type(self, since: datetime) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._state.jobs.values():
            if job.claimed_at is not None and job.claimed_at >= since:
                counts[job.job_type] = counts.get(job.job_type, 0) + 1
        return counts

    async def claim_job(self, job_id: str, now: datetime) -> IngestionJob | None:
        job = self._state.jobs.get(job_id)
        if job is None or job.status != "pending" or job.run_at > now or job.attempts >= job.max_attempts:
            return None
        job.status = "processing"
        job.attempts += 1
        job.claimed_at = now
        job.updated_at = now
        return copy.deepcopy(job)

    async def reschedule_job(self, job_id: str, *, run_at: datetime, error: str) -> None:
        job = self._require_job(job_id)
        job.status = "pending"
        job.run_at = run_at
        job.next_run_at = run_at
        job.error = error
        job.updated_at = utcnow()

    async def mark_job_failed(self, job_id: str, error: str) -> None:
        job = self._require_job(job_id)
        job.status = "failed"
        job.error = error
        job.updated_at = utcnow()

    async def mark_job_succeeded(self, job_id: str, result: dict[str, Any]) -> None:
        job = self._require_job(job_id)
        job.status = "succeeded"
        job.error = None
        job.result = dict(result)
        job.updated_at = utcnow()

    async def reset_job(self, job_id: str, now: datetime) -> IngestionJob:
        job = self._require_job(job_id)
        job.status = "pending"
        job.attempts = 0
        job.error = None
        job.run_at = now
        job.next_run_at = None
        job.updated_at = now
        return copy.deepcopy(job)

    async def requeue_stuck_jobs(self, *, older_than: datetime, now: datetime, error: str) -> list[IngestionJob]:
        requeued: list[IngestionJob] = []
        for job in self._state.jobs.values():
            if job.status == "processing" and job.updated_at <= older_than:
                job.status = "pending"
                job.error = error
                job.run_at = now
                job.next_run_at = None
                job.updated_at = now
                requeued.append(copy.deepcopy(job))
        return requeued

    async def list_scraper_configs(self) -> dict[str, ScraperConfig]:
        return copy.deepcopy(self._state.scraper_configs)

    def _require_profile(self, profile_id: str) -> Profile:
        profile = self._state.profiles.get(profile_id)
        if profile is None:
            raise RepositoryNotFoundError("profile not found")
        return profile

    def _require_job(self, job_id: str) -> IngestionJob:
        job = self._state.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    def _check_identity_unique(self, link: Link) -> None:
        if link.canonical_identity is None:
            return
        for existing in self._state.links.values():
            if (
                existing.id != link.id
                and existing.profile_id == link.profile_id
                and existing.canonical_identity == link.canonical_identity
            ):
                raise RepositoryConflictError("link with this canonical identity already exists for profile")
