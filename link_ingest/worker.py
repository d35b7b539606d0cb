from __future__ import annotations

import asyncio
import logging
import random

from link_ingest.core.config import Settings, get_settings
from link_ingest.core.telemetry import configure_logging, ingestion_span, setup_telemetry, shutdown_telemetry
from link_ingest.jobs.processor import IngestionRunner, JobOutcome
from link_ingest.services.repository import get_repository

logger = logging.getLogger(__name__)


def next_error_delay(previous: float, settings: Settings) -> float:
    """Grow the idle delay after an unexpected poll error, capped at ``max_backoff_seconds``."""
    return min(previous * (2.0 + random.uniform(0.0, 0.5)), settings.max_backoff_seconds)


def _log_outcome(outcome: JobOutcome) -> None:
    level = logging.WARNING if outcome.status == "failed" else logging.INFO
    logger.log(
        level,
        "job finished job_id=%s job_type=%s status=%s inserted=%s updated=%s follow_ups=%s error=%s",
        outcome.job_id,
        outcome.job_type,
        outcome.status,
        outcome.inserted,
        outcome.updated,
        outcome.follow_up_jobs,
        outcome.error,
    )


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, role="worker")
    repository = get_repository()
    runner = IngestionRunner(repository, settings)
    logger.info(
        "ingestion worker started batch_size=%s poll_interval=%.1fs follow_ups=%s",
        settings.claim_batch_size,
        settings.poll_interval_seconds,
        settings.enable_follow_up_jobs,
    )

    delay = settings.poll_interval_seconds
    try:
        while True:
            try:
                with ingestion_span("poll_cycle") as span:
                    outcomes = await runner.run_once()
                    span.set_attribute("jobs.processed", len(outcomes))
            except Exception as exc:  # pragma: no cover - keeps the poll loop alive
                delay = next_error_delay(delay, settings)
                logger.exception("poll cycle failed: %s; retry in %.1fs", exc, delay)
                await asyncio.sleep(delay)
                continue

            delay = settings.poll_interval_seconds
            for outcome in outcomes:
                _log_outcome(outcome)
            if not outcomes:
                await asyncio.sleep(settings.poll_interval_seconds)
    finally:
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
