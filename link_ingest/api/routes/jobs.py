from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from link_ingest.core.config import get_settings
from link_ingest.ingestion.errors import InvalidJobPayloadError
from link_ingest.jobs.enqueue import enqueue_ingestion_job
from link_ingest.jobs.processor import IngestionRunner
from link_ingest.jobs.scheduler import JobScheduler
from link_ingest.schemas.jobs import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobOut,
    JobOutcomeOut,
    JobStatus,
    RunJobsRequest,
)
from link_ingest.services.repository import get_repository
from link_ingest.services.store import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    utcnow,
)

router = APIRouter()


def get_runner(repository=Depends(get_repository)) -> IngestionRunner:
    return IngestionRunner(repository, get_settings())


@router.post("", response_model=EnqueueJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(payload: EnqueueJobRequest, repository=Depends(get_repository)) -> EnqueueJobResponse:
    try:
        async with repository.transaction() as session:
            if await session.get_profile(payload.profile_id) is None:
                raise RepositoryNotFoundError("profile not found")
            result = await enqueue_ingestion_job(
                session,
                profile_id=payload.profile_id,
                source_url=payload.source_url,
                settings=get_settings(),
                priority=payload.priority,
            )
    except InvalidJobPayloadError as exc:
        raise HTTPException(status_code=422, detail=exc.message) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return EnqueueJobResponse(job_id=result.job_id, dedup_key=result.dedup_key, created=result.created)


@router.get("", response_model=list[JobOut])
async def list_jobs(
    repository=Depends(get_repository),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
) -> list[JobOut]:
    try:
        async with repository.transaction() as session:
            jobs = await session.list_jobs(status=job_status, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut(**asdict(job)) for job in jobs]


@router.post("/run", response_model=list[JobOutcomeOut])
async def run_jobs(payload: RunJobsRequest | None = None, runner: IngestionRunner = Depends(get_runner)) -> list[JobOutcomeOut]:
    try:
        outcomes = await runner.run_once(limit=payload.limit if payload is not None else None)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return [JobOutcomeOut(**outcome.to_result()) for outcome in outcomes]


@router.post("/{job_id}/reset", response_model=JobOut)
async def reset_job(job_id: str, repository=Depends(get_repository)) -> JobOut:
    scheduler = JobScheduler.from_settings(get_settings())
    try:
        async with repository.transaction() as session:
            job = await scheduler.reset_job_for_retry(session, job_id, now=utcnow())
            if job.profile_id is not None and await session.get_profile(job.profile_id) is not None:
                await session.set_profile_ingestion_status(job.profile_id, "pending")
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return JobOut(**asdict(job))
