from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from link_ingest.ingestion.errors import ErrorKind, ExtractionError
from link_ingest.ingestion.strategies.registry import network_for_job_type
from link_ingest.services.store import (
    IngestionJob,
    RepositoryNotFoundError,
    ScraperConfig,
    StoreSession,
)

logger = logging.getLogger(__name__)

FailureReason = Literal["transient", "rate_limited", "fatal"]

STUCK_JOB_ERROR = "Processing timeout; requeued"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_seconds: float = 5.0
    max_seconds: float = 300.0
    jitter_seconds: float = 1.0
    rate_limit_base_seconds: float = 30.0
    rate_limit_max_seconds: float = 900.0
    rate_limit_jitter_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.job_max_attempts),
            base_seconds=max(0.0, settings.job_retry_base_seconds),
            max_seconds=max(0.0, settings.job_retry_max_seconds),
            jitter_seconds=max(0.0, settings.job_retry_jitter_seconds),
            rate_limit_base_seconds=max(0.0, settings.rate_limit_retry_base_seconds),
            rate_limit_max_seconds=max(0.0, settings.rate_limit_retry_max_seconds),
            rate_limit_jitter_seconds=max(0.0, settings.rate_limit_retry_jitter_seconds),
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(slots=True)
class JobFailure:
    message: str
    reason: FailureReason


@dataclass(slots=True)
class FailureDecision:
    status: Literal["pending", "failed"]
    delay_seconds: float | None = None
    run_at: datetime | None = None


def compute_backoff_seconds(
    attempt: int,
    reason: FailureReason = "transient",
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential delay for the retry that follows ``attempt`` failed attempts.

    ``min(base * 2 ** (attempt - 1), ceiling) + uniform(0, jitter)``; rate
    limited failures use their own, slower, base, ceiling and jitter.
    """
    if reason == "rate_limited":
        base, ceiling, jitter = policy.rate_limit_base_seconds, policy.rate_limit_max_seconds, policy.rate_limit_jitter_seconds
    else:
        base, ceiling, jitter = policy.base_seconds, policy.max_seconds, policy.jitter_seconds
    exponential = base * (2 ** max(0, attempt - 1))
    return min(exponential, ceiling) + rng() * jitter


def determine_job_failure(error: BaseException) -> JobFailure:
    message = str(error) or error.__class__.__name__
    if isinstance(error, ExtractionError):
        if error.is_rate_limited:
            return JobFailure(message=message, reason="rate_limited")
        if error.kind is ErrorKind.FATAL:
            return JobFailure(message=message, reason="fatal")
    return JobFailure(message=message, reason="transient")


class JobScheduler:
    def __init__(
        self,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        *,
        claim_candidate_multiplier: int = 3,
        stuck_after_seconds: float = 1200.0,
        default_max_concurrent_jobs: int = 2,
        default_max_jobs_per_minute: int = 30,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.retry_policy = retry_policy
        self.claim_candidate_multiplier = max(1, claim_candidate_multiplier)
        self.stuck_after_seconds = stuck_after_seconds
        self.default_max_concurrent_jobs = default_max_concurrent_jobs
        self.default_max_jobs_per_minute = default_max_jobs_per_minute
        self._rng = rng

    @classmethod
    def from_settings(cls, settings: Any, *, rng: Callable[[], float] = random.random) -> "JobScheduler":
        return cls(
            RetryPolicy.from_settings(settings),
            claim_candidate_multiplier=settings.claim_candidate_multiplier,
            stuck_after_seconds=settings.stuck_processing_after_seconds,
            default_max_concurrent_jobs=settings.default_max_concurrent_jobs,
            default_max_jobs_per_minute=settings.default_max_jobs_per_minute,
            rng=rng,
        )

    def config_for(self, network: str, configs: dict[str, ScraperConfig]) -> ScraperConfig:
        config = configs.get(network)
        if config is not None:
            return config
        return ScraperConfig(
            network=network,
            enabled=True,
            max_concurrent_jobs=self.default_max_concurrent_jobs,
            max_jobs_per_minute=self.default_max_jobs_per_minute,
        )

    async def claim_pending_jobs(
        self,
        session: StoreSession,
        now: datetime,
        limit: int,
        scraper_configs: dict[str, ScraperConfig] | None = None,
    ) -> list[IngestionJob]:
        """Move up to ``limit`` due jobs from pending to processing.

        Per-network ``enabled``, concurrency and per-minute limits are hard
        caps, and a batch holds at most one job per profile.
        """
        if limit <= 0:
            return []

        exhausted = await session.fail_exhausted_jobs(now)
        if exhausted:
            logger.warning("failed exhausted jobs count=%s", exhausted)

        configs = scraper_configs if scraper_configs is not None else await session.list_scraper_configs()
        in_flight = _by_network(await session.count_processing_by_type())
        started_last_minute = _by_network(await session.count_claimed_since_by_type(now - timedelta(minutes=1)))
        candidates = await session.list_claim_candidates(now, limit * self.claim_candidate_multiplier)

        claimed: list[IngestionJob] = []
        claimed_profiles: set[str] = set()
        for candidate in candidates:
            if len(claimed) >= limit:
                break
            network = network_for_job_type(candidate.job_type)
            config = self.config_for(network, configs)
            if not config.enabled:
                continue
            if in_flight.get(network, 0) >= config.max_concurrent_jobs:
                continue
            if started_last_minute.get(network, 0) >= config.max_jobs_per_minute:
                continue
            if candidate.profile_id is not None and candidate.profile_id in claimed_profiles:
                continue

            job = await session.claim_job(candidate.id, now)
            if job is None:
                continue
            in_flight[network] = in_flight.get(network, 0) + 1
            started_last_minute[network] = started_last_minute.get(network, 0) + 1
            if job.profile_id is not None:
                claimed_profiles.add(job.profile_id)
            claimed.append(job)

        if claimed:
            logger.info("claimed jobs count=%s candidates=%s", len(claimed), len(candidates))
        return claimed

    def backoff_seconds(self, attempt: int, reason: FailureReason = "transient") -> float:
        return compute_backoff_seconds(attempt, reason, self.retry_policy, rng=self._rng)

    async def fail_job(
        self,
        session: StoreSession,
        job: IngestionJob,
        failure: JobFailure,
        *,
        now: datetime,
    ) -> FailureDecision:
        if failure.reason != "fatal" and job.attempts < job.max_attempts:
            delay = self.backoff_seconds(job.attempts, failure.reason)
            run_at = now + timedelta(seconds=delay)
            await session.reschedule_job(job.id, run_at=run_at, error=failure.message)
            logger.info(
                "scheduling job retry job_id=%s attempt=%s max_attempts=%s reason=%s delay_seconds=%.2f",
                job.id,
                job.attempts,
                job.max_attempts,
                failure.reason,
                delay,
            )
            return FailureDecision(status="pending", delay_seconds=delay, run_at=run_at)

        await session.mark_job_failed(job.id, failure.message)
        logger.warning(
            "job failed permanently job_id=%s attempts=%s max_attempts=%s reason=%s error=%s",
            job.id,
            job.attempts,
            job.max_attempts,
            failure.reason,
            failure.message,
        )
        return FailureDecision(status="failed")

    async def succeed_job(self, session: StoreSession, job: IngestionJob, result: dict[str, Any]) -> None:
        await session.mark_job_succeeded(job.id, result)

    async def reset_job_for_retry(self, session: StoreSession, job_id: str, *, now: datetime) -> IngestionJob:
        job = await session.reset_job(job_id, now)
        logger.info("job reset for retry job_id=%s", job_id)
        return job

    async def requeue_stuck_jobs(self, session: StoreSession, now: datetime) -> list[IngestionJob]:
        older_than = now - timedelta(seconds=self.stuck_after_seconds)
        requeued = await session.requeue_stuck_jobs(older_than=older_than, now=now, error=STUCK_JOB_ERROR)
        for job in requeued:
            if job.profile_id is None:
                continue
            try:
                await session.set_profile_ingestion_status(job.profile_id, "pending", STUCK_JOB_ERROR)
            except RepositoryNotFoundError:
                logger.warning("stuck job references missing profile job_id=%s profile_id=%s", job.id, job.profile_id)
        if requeued:
            logger.info("requeued stuck jobs count=%s", len(requeued))
        return requeued


def _by_network(counts_by_type: dict[str, int]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for job_type, count in counts_by_type.items():
        network = network_for_job_type(job_type)
        totals[network] = totals.get(network, 0) + count
    return totals
