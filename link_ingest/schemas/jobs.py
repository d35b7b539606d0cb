from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["pending", "processing", "succeeded", "failed"]


class JobOut(BaseModel):
    id: str
    job_type: str
    status: str
    payload: dict[str, Any] = Field(default_factory=dict)
    dedup_key: str | None = None
    attempts: int
    max_attempts: int
    priority: int
    run_at: datetime
    claimed_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class EnqueueJobRequest(BaseModel):
    profile_id: str = Field(min_length=1)
    source_url: str = Field(min_length=1)
    priority: int = 0


class EnqueueJobResponse(BaseModel):
    job_id: str
    dedup_key: str
    created: bool


class RunJobsRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=100)


class JobOutcomeOut(BaseModel):
    job_id: str
    job_type: str
    status: str
    source_url: str | None = None
    inserted: int = 0
    updated: int = 0
    extracted_links: int = 0
    follow_up_jobs: int = 0
    error: str | None = None
