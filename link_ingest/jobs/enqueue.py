from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import uuid4

from link_ingest.ingestion.errors import InvalidJobPayloadError
from link_ingest.ingestion.platforms import identity_for_url
from link_ingest.ingestion.strategies.base import ExtractedLink
from link_ingest.ingestion.strategies.registry import MAX_DEPTH_BY_JOB_TYPE, strategy_for_url
from link_ingest.services.store import IngestionJob, StoreSession, utcnow

logger = logging.getLogger(__name__)

FOLLOW_UP_PRIORITY = 1


@dataclass(slots=True)
class EnqueueResult:
    job_id: str
    dedup_key: str
    created: bool


def build_dedup_key(job_type: str, profile_id: str, identity: str) -> str:
    return f"{job_type}:{profile_id}:{identity}"


async def enqueue_ingestion_job(
    session: StoreSession,
    *,
    profile_id: str,
    source_url: str,
    settings: Any,
    depth: int = 0,
    priority: int = 0,
    now: datetime | None = None,
) -> EnqueueResult:
    """Queue an import job for a supported link-in-bio URL.

    Returns the existing job instead when one with the same dedup key is
    pending, processing, or succeeded within the dedup window.
    """
    strategy = strategy_for_url(source_url)
    if strategy is None:
        raise InvalidJobPayloadError(f"unsupported source url: {source_url}")
    canonical_url = strategy.validate_url(source_url)
    _, identity = identity_for_url(canonical_url or "")
    if canonical_url is None or identity is None:
        raise InvalidJobPayloadError(f"invalid source url: {source_url}")

    now = now or utcnow()
    dedup_key = build_dedup_key(strategy.job_type, profile_id, identity)
    existing = await session.find_job_by_dedup_key(
        dedup_key,
        succeeded_since=now - timedelta(seconds=settings.dedup_window_seconds),
    )
    if existing is not None:
        logger.info("enqueue deduplicated dedup_key=%s job_id=%s status=%s", dedup_key, existing.id, existing.status)
        return EnqueueResult(job_id=existing.id, dedup_key=dedup_key, created=False)

    job = IngestionJob(
        id=str(uuid4()),
        job_type=strategy.job_type,
        payload={
            "profile_id": profile_id,
            "source_url": canonical_url,
            "depth": depth,
            "dedup_key": dedup_key,
        },
        dedup_key=dedup_key,
        max_attempts=max(1, settings.job_max_attempts),
        priority=priority,
        run_at=now,
        created_at=now,
        updated_at=now,
    )
    await session.insert_job(job)
    logger.info("job enqueued job_id=%s job_type=%s depth=%s dedup_key=%s", job.id, job.job_type, depth, dedup_key)
    return EnqueueResult(job_id=job.id, dedup_key=dedup_key, created=True)


def follow_up_depth_limit(job_type: str, settings: Any) -> int:
    return min(MAX_DEPTH_BY_JOB_TYPE.get(job_type, settings.max_follow_up_depth), settings.max_follow_up_depth)


async def enqueue_follow_up_jobs(
    session: StoreSession,
    *,
    parent_job_type: str,
    profile_id: str,
    links: Iterable[ExtractedLink],
    depth: int,
    settings: Any,
    now: datetime | None = None,
) -> list[EnqueueResult]:
    """Queue imports for extracted links that are themselves link-in-bio pages."""
    if not settings.enable_follow_up_jobs or depth >= follow_up_depth_limit(parent_job_type, settings):
        return []

    created: list[EnqueueResult] = []
    for link in links:
        if strategy_for_url(link.url) is None:
            continue
        result = await enqueue_ingestion_job(
            session,
            profile_id=profile_id,
            source_url=link.url,
            settings=settings,
            depth=depth + 1,
            priority=FOLLOW_UP_PRIORITY,
            now=now,
        )
        if result.created:
            created.append(result)
    return created
