from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

IngestionStatus = Literal["idle", "pending", "processing", "failed"]
LinkState = Literal["active", "suggested", "rejected"]
SourceType = Literal["manual", "admin", "ingested"]
JobStatus = Literal["pending", "processing", "succeeded", "failed"]


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write violates a uniqueness or state transition rule."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Profile:
    id: str
    username_normalized: str
    display_name: str | None = None
    display_name_locked: bool = False
    avatar_url: str | None = None
    avatar_locked_by_user: bool = False
    allow_auto_promotion: bool = True
    ingestion_status: IngestionStatus = "idle"
    last_ingestion_error: str | None = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Evidence:
    sources: list[str] = field(default_factory=list)
    signals: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"sources": list(self.sources), "signals": list(self.signals)}

    @classmethod
    def from_dict(cls, value: Any) -> "Evidence":
        if not isinstance(value, dict):
            return cls()
        return cls(
            sources=[item for item in value.get("sources") or [] if isinstance(item, str)],
            signals=[item for item in value.get("signals") or [] if isinstance(item, str)],
        )


@dataclass(slots=True)
class Link:
    id: str
    profile_id: str
    platform: str
    url: str
    canonical_identity: str | None
    display_text: str | None = None
    sort_order: int = 0
    state: LinkState = "suggested"
    confidence: float = 0.0
    source_type: SourceType = "ingested"
    source_platform: str | None = None
    evidence: Evidence = field(default_factory=Evidence)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class IngestionJob:
    id: str
    job_type: str
    payload: dict[str, Any]
    dedup_key: str | None = None
    status: JobStatus = "pending"
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    run_at: datetime = field(default_factory=utcnow)
    next_run_at: datetime | None = None
    claimed_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def profile_id(self) -> str | None:
        value = self.payload.get("profile_id")
        return value if isinstance(value, str) and value else None


@dataclass(slots=True)
class ScraperConfig:
    network: str
    enabled: bool = True
    max_concurrent_jobs: int = 2
    max_jobs_per_minute: int = 30
    fetch_timeout_seconds: float | None = None


class StoreSession(Protocol):
    """Operations available inside one transaction of a link store."""

    async def get_profile(self, profile_id: str) -> Profile | None: ...

    async def set_profile_ingestion_status(
        self, profile_id: str, status: IngestionStatus, error: str | None = None
    ) -> None: ...

    async def update_profile_enrichment(
        self, profile_id: str, *, display_name: str | None = None, avatar_url: str | None = None
    ) -> None: ...

    async def list_links(self, profile_id: str, state: str | None = None) -> list[Link]: ...

    async def get_link(self, link_id: str) -> Link | None: ...

    async def insert_link(self, link: Link) -> Link: ...

    async def update_link(self, link: Link) -> Link: ...

    async def insert_job(self, job: IngestionJob) -> IngestionJob: ...

    async def find_job_by_dedup_key(
        self, dedup_key: str, *, succeeded_since: datetime
    ) -> IngestionJob | None: ...

    async def get_job(self, job_id: str) -> IngestionJob | None: ...

    async def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[IngestionJob]: ...

    async def fail_exhausted_jobs(self, now: datetime) -> int: ...

    async def list_claim_candidates(self, now: datetime, limit: int) -> list[IngestionJob]: ...

    async def count_processing_by_type(self) -> dict[str, int]: ...

    async def count_claimed_since_by_type(self, since: datetime) -> dict[str, int]: ...

    async def claim_job(self, job_id: str, now: datetime) -> IngestionJob | None: ...

    async def reschedule_job(self, job_id: str, *, run_at: datetime, error: str) -> None: ...

    async def mark_job_failed(self, job_id: str, error: str) -> None: ...

    async def mark_job_succeeded(self, job_id: str, result: dict[str, Any]) -> None: ...

    async def reset_job(self, job_id: str, now: datetime) -> IngestionJob: ...

    async def requeue_stuck_jobs(self, *, older_than: datetime, now: datetime, error: str) -> list[IngestionJob]: ...

    async def list_scraper_configs(self) -> dict[str, ScraperConfig]: ...


class Repository(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[StoreSession]: ...

    async def close(self) -> None: ...
