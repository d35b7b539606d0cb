from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Literal

import httpx
from pydantic import BaseModel, Field, ValidationError

from link_ingest.core.config import Settings, get_settings
from link_ingest.core.telemetry import ingestion_span
from link_ingest.ingestion.confidence import ConfidencePolicy
from link_ingest.ingestion.errors import InvalidJobPayloadError
from link_ingest.ingestion.merge import merge_extraction
from link_ingest.ingestion.strategies.base import FetchOptions, Sleep
from link_ingest.ingestion.strategies.registry import network_for_job_type, strategy_for_job_type
from link_ingest.jobs.enqueue import enqueue_follow_up_jobs
from link_ingest.jobs.scheduler import JobScheduler, determine_job_failure
from link_ingest.services.store import IngestionJob, Repository, ScraperConfig, utcnow

logger = logging.getLogger(__name__)


class JobPayload(BaseModel):
    profile_id: str = Field(min_length=1)
    source_url: str = Field(min_length=1)
    depth: int = Field(default=0, ge=0)
    dedup_key: str | None = None


@dataclass(slots=True)
class JobOutcome:
    job_id: str
    job_type: str
    status: Literal["succeeded", "pending", "failed"]
    source_url: str | None = None
    inserted: int = 0
    updated: int = 0
    extracted_links: int = 0
    follow_up_jobs: int = 0
    error: str | None = None

    def to_result(self) -> dict[str, Any]:
        return asdict(self)


class IngestionRunner:
    """Claims a batch of ingestion jobs and drives each through fetch, extract and merge.

    Fetching happens outside any store transaction. Each job then commits its
    merge, follow-up jobs, profile status and job status in one transaction,
    or runs the failure path in a separate one.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Settings | None = None,
        *,
        scheduler: JobScheduler | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.scheduler = scheduler or JobScheduler.from_settings(self.settings)
        self.policy = ConfidencePolicy.from_settings(self.settings)
        self._client = client
        self._sleep = sleep
        self._clock = clock

    async def run_once(self, limit: int | None = None) -> list[JobOutcome]:
        with ingestion_span("run_once") as span:
            now = self._clock()
            async with self.repository.transaction() as session:
                await self.scheduler.requeue_stuck_jobs(session, now)
                configs = await session.list_scraper_configs()
                jobs = await self.scheduler.claim_pending_jobs(
                    session,
                    now,
                    limit if limit is not None else self.settings.claim_batch_size,
                    configs,
                )
            span.set_attribute("jobs.claimed", len(jobs))
            if not jobs:
                return []

            semaphores: dict[str, asyncio.Semaphore] = {}
            for job in jobs:
                network = network_for_job_type(job.job_type)
                if network not in semaphores:
                    config = self.scheduler.config_for(network, configs)
                    semaphores[network] = asyncio.Semaphore(max(1, config.max_concurrent_jobs))

            async def run_bounded(job: IngestionJob) -> JobOutcome:
                network = network_for_job_type(job.job_type)
                async with semaphores[network]:
                    return await self.process_job(job, self.scheduler.config_for(network, configs))

            results = await asyncio.gather(*(run_bounded(job) for job in jobs), return_exceptions=True)
            outcomes: list[JobOutcome] = []
            for job, result in zip(jobs, results):
                if isinstance(result, BaseException):
                    # The job stays in processing until the stuck-job sweep requeues it.
                    logger.error(
                        "job outcome not recorded job_id=%s job_type=%s error=%s",
                        job.id,
                        job.job_type,
                        result,
                        exc_info=result,
                    )
                    span.record_exception(result)
                    continue
                outcomes.append(result)
            span.set_attribute("jobs.unrecorded", len(jobs) - len(outcomes))
            return outcomes

    async def process_job(self, job: IngestionJob, config: ScraperConfig | None = None) -> JobOutcome:
        with ingestion_span(
            "process_job",
            **{"job.id": job.id, "job.type": job.job_type, "job.attempt": job.attempts, "profile.id": job.profile_id},
        ) as span:
            try:
                outcome = await self._execute(job, config)
            except Exception as exc:
                span.record_exception(exc)
                outcome = await self._handle_failure(job, exc)
            span.set_attribute("job.status", outcome.status)
            return outcome

    async def _execute(self, job: IngestionJob, config: ScraperConfig | None) -> JobOutcome:
        payload = _parse_payload(job)
        strategy = strategy_for_job_type(job.job_type)
        if strategy is None:
            raise InvalidJobPayloadError(f"unsupported job type: {job.job_type}")

        async with self.repository.transaction() as session:
            profile = await session.get_profile(payload.profile_id)
            if profile is None:
                raise InvalidJobPayloadError(f"profile not found: {payload.profile_id}")
            await session.set_profile_ingestion_status(profile.id, "processing")

        options = FetchOptions.from_settings(
            self.settings,
            timeout_seconds=config.fetch_timeout_seconds if config is not None else None,
        )
        with ingestion_span("fetch", **{"source.url": payload.source_url, "source.platform": strategy.platform_id}):
            document = await strategy.fetch(payload.source_url, options, client=self._client, sleep=self._sleep)
        extraction = strategy.extract(document)

        async with self.repository.transaction() as session:
            profile = await session.get_profile(payload.profile_id)
            if profile is None:
                raise InvalidJobPayloadError(f"profile not found: {payload.profile_id}")
            with ingestion_span("merge", **{"profile.id": profile.id, "links.extracted": len(extraction.links)}):
                merged = await merge_extraction(
                    session,
                    profile,
                    extraction,
                    self.policy,
                    resurface_rejected=self.settings.resurface_rejected_links,
                )
            follow_ups = await enqueue_follow_up_jobs(
                session,
                parent_job_type=job.job_type,
                profile_id=profile.id,
                links=extraction.links,
                depth=payload.depth,
                settings=self.settings,
                now=self._clock(),
            )
            await session.set_profile_ingestion_status(profile.id, "idle")
            outcome = JobOutcome(
                job_id=job.id,
                job_type=job.job_type,
                status="succeeded",
                source_url=payload.source_url,
                inserted=merged.inserted,
                updated=merged.updated,
                extracted_links=len(extraction.links),
                follow_up_jobs=len(follow_ups),
            )
            await self.scheduler.succeed_job(session, job, outcome.to_result())

        logger.info(
            "job succeeded job_id=%s source_url=%s extracted=%s inserted=%s updated=%s follow_ups=%s",
            job.id,
            payload.source_url,
            outcome.extracted_links,
            outcome.inserted,
            outcome.updated,
            outcome.follow_up_jobs,
        )
        return outcome

    async def _handle_failure(self, job: IngestionJob, error: Exception) -> JobOutcome:
        failure = determine_job_failure(error)
        logger.warning(
            "job execution failed job_id=%s attempt=%s reason=%s error=%s",
            job.id,
            job.attempts,
            failure.reason,
            failure.message,
        )
        async with self.repository.transaction() as session:
            decision = await self.scheduler.fail_job(session, job, failure, now=self._clock())
            profile_id = job.profile_id
            if profile_id is not None and await session.get_profile(profile_id) is not None:
                await session.set_profile_ingestion_status(
                    profile_id,
                    "pending" if decision.status == "pending" else "failed",
                    failure.message,
                )

        source_url = job.payload.get("source_url")
        return JobOutcome(
            job_id=job.id,
            job_type=job.job_type,
            status=decision.status,
            source_url=source_url if isinstance(source_url, str) else None,
            error=failure.message,
        )


def _parse_payload(job: IngestionJob) -> JobPayload:
    try:
        return JobPayload.model_validate(job.payload)
    except ValidationError as exc:
        raise InvalidJobPayloadError(f"invalid payload for job {job.id}: {exc.error_count()} errors") from exc
