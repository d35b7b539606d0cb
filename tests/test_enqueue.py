from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from link_ingest.core.config import Settings
from link_ingest.ingestion.errors import InvalidJobPayloadError
from link_ingest.ingestion.strategies.base import ExtractedLink
from link_ingest.jobs.enqueue import (
    EnqueueResult,
    build_dedup_key,
    enqueue_follow_up_jobs,
    enqueue_ingestion_job,
    follow_up_depth_limit,
)
from link_ingest.services.memory import InMemoryRepository
from link_ingest.services.store import IngestionJob

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _settings(**overrides) -> Settings:
    return Settings(otel_enabled=False, **overrides)


def _enqueue(repository: InMemoryRepository, source_url: str, **kwargs) -> EnqueueResult:
    async def run() -> EnqueueResult:
        async with repository.transaction() as session:
            return await enqueue_ingestion_job(
                session,
                profile_id="profile-1",
                source_url=source_url,
                settings=kwargs.pop("settings", _settings()),
                now=kwargs.pop("now", NOW),
                **kwargs,
            )

    return asyncio.run(run())


def test_enqueue_creates_job_with_canonical_payload() -> None:
    repository = InMemoryRepository()
    result = _enqueue(repository, "https://www.linktree.com/@SomeArtist/?utm_source=ig")

    assert result.created is True
    assert result.dedup_key == "import_linktree:profile-1:linktree:linktr.ee/someartist"

    async def load() -> IngestionJob | None:
        async with repository.transaction() as session:
            return await session.get_job(result.job_id)

    job = asyncio.run(load())
    assert job is not None
    assert job.status == "pending"
    assert job.max_attempts == 3
    assert job.payload == {
        "profile_id": "profile-1",
        "source_url": "https://linktr.ee/someartist",
        "depth": 0,
        "dedup_key": result.dedup_key,
    }


def test_enqueue_deduplicates_equivalent_urls() -> None:
    repository = InMemoryRepository()
    first = _enqueue(repository, "https://linktr.ee/someartist")
    second = _enqueue(repository, "linktr.ee/SomeArtist/")

    assert second.created is False
    assert second.job_id == first.job_id


def test_enqueue_dedup_window_for_succeeded_jobs() -> None:
    repository = InMemoryRepository()
    dedup_key = build_dedup_key("import_stan", "profile-1", "stan:stan.store/creator")
    repository.add_job(
        IngestionJob(
            id="recent",
            job_type="import_stan",
            payload={"profile_id": "profile-1", "source_url": "https://stan.store/creator"},
            dedup_key=dedup_key,
            status="succeeded",
            updated_at=NOW - timedelta(hours=1),
        )
    )

    within = _enqueue(repository, "https://stan.store/creator")
    assert within.created is False
    assert within.job_id == "recent"

    later = _enqueue(repository, "https://stan.store/creator", now=NOW + timedelta(days=2))
    assert later.created is True


def test_enqueue_rejects_unsupported_urls() -> None:
    repository = InMemoryRepository()
    with pytest.raises(InvalidJobPayloadError):
        _enqueue(repository, "https://instagram.com/someone")
    with pytest.raises(InvalidJobPayloadError):
        _enqueue(repository, "https://linktr.ee/login")


def test_follow_up_depth_limit_uses_tighter_bound() -> None:
    assert follow_up_depth_limit("import_linktree", _settings(max_follow_up_depth=5)) == 3
    assert follow_up_depth_limit("import_linktree", _settings(max_follow_up_depth=1)) == 1


def test_follow_ups_stop_at_depth_limit() -> None:
    repository = InMemoryRepository()
    links = [
        ExtractedLink(url="https://beacons.ai/someone", source_platform="linktree"),
        ExtractedLink(url="https://instagram.com/someone", source_platform="linktree"),
    ]

    async def run(depth: int, settings: Settings) -> list[EnqueueResult]:
        async with repository.transaction() as session:
            return await enqueue_follow_up_jobs(
                session,
                parent_job_type="import_linktree",
                profile_id="profile-1",
                links=links,
                depth=depth,
                settings=settings,
                now=NOW,
            )

    assert asyncio.run(run(3, _settings())) == []
    assert asyncio.run(run(0, _settings(enable_follow_up_jobs=False))) == []
    created = asyncio.run(run(2, _settings()))
    assert [result.dedup_key for result in created] == ["import_beacons:profile-1:beacons:beacons.ai/someone"]
    assert asyncio.run(run(2, _settings())) == []
