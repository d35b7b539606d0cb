from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, AsyncIterator

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from link_ingest.core.config import get_settings
from link_ingest.services.memory import InMemoryRepository
from link_ingest.services.store import (
    Evidence,
    IngestionJob,
    IngestionStatus,
    Link,
    Profile,
    Repository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    ScraperConfig,
)

_PROFILE_COLUMNS = """
  id,
  username_normalized,
  display_name,
  display_name_locked,
  avatar_url,
  avatar_locked_by_user,
  allow_auto_promotion,
  ingestion_status,
  last_ingestion_error,
  updated_at
"""

_LINK_COLUMNS = """
  id,
  profile_id,
  platform,
  url,
  canonical_identity,
  display_text,
  sort_order,
  state,
  confidence::float8 as confidence,
  source_type,
  source_platform,
  evidence,
  created_at,
  updated_at
"""

_JOB_COLUMNS = """
  id,
  job_type,
  payload,
  dedup_key,
  status,
  attempts,
  max_attempts,
  priority,
  run_at,
  next_run_at,
  claimed_at,
  error,
  result,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgresSession"]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresSession(conn)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(str(exc)) from exc
        except (OSError, asyncpg.InterfaceError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


class PostgresSession:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def get_profile(self, profile_id: str) -> Profile | None:
        row = await self._conn.fetchrow(f"select {_PROFILE_COLUMNS} from profiles where id = $1", profile_id)
        return _profile_from_row(row) if row else None

    async def set_profile_ingestion_status(
        self, profile_id: str, status: IngestionStatus, error: str | None = None
    ) -> None:
        result = await self._conn.execute(
            """
            update profiles
            set ingestion_status = $2, last_ingestion_error = $3, updated_at = now()
            where id = $1
            """,
            profile_id,
            status,
            error,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError("profile not found")

    async def update_profile_enrichment(
        self, profile_id: str, *, display_name: str | None = None, avatar_url: str | None = None
    ) -> None:
        result = await self._conn.execute(
            """
            update profiles
            set
              display_name = coalesce($2, display_name),
              avatar_url = coalesce($3, avatar_url),
              updated_at = now()
            where id = $1
            """,
            profile_id,
            display_name,
            avatar_url,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError("profile not found")

    async def list_links(self, profile_id: str, state: str | None = None) -> list[Link]:
        rows = await self._conn.fetch(
            f"""
            select {_LINK_COLUMNS}
            from links
            where profile_id = $1 and ($2::text is null or state = $2)
            order by sort_order asc, created_at asc
            """,
            profile_id,
            state,
        )
        return [_link_from_row(row) for row in rows]

    async def get_link(self, link_id: str) -> Link | None:
        row = await self._conn.fetchrow(f"select {_LINK_COLUMNS} from links where id = $1", link_id)
        return _link_from_row(row) if row else None

    async def insert_link(self, link: Link) -> Link:
        try:
            await self._conn.execute(
                """
                insert into links (
                  id, profile_id, platform, url, canonical_identity, display_text, sort_order,
                  state, confidence, source_type, source_platform, evidence, created_at, updated_at
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9::float8, $10, $11, $12::jsonb, $13, $14)
                """,
                link.id,
                link.profile_id,
                link.platform,
                link.url,
                link.canonical_identity,
                link.display_text,
                link.sort_order,
                link.state,
                link.confidence,
                link.source_type,
                link.source_platform,
                json.dumps(link.evidence.to_dict()),
                link.created_at,
                link.updated_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("link with this canonical identity already exists for profile") from exc
        return link

    async def update_link(self, link: Link) -> Link:
        try:
            row = await self._conn.fetchrow(
                f"""
                update links
                set
                  platform = $2,
                  url = $3,
                  canonical_identity = $4,
                  display_text = $5,
                  sort_order = $6,
                  state = $7,
                  confidence = $8::float8,
                  evidence = $9::jsonb,
                  updated_at = now()
                where id = $1
                returning {_LINK_COLUMNS}
                """,
                link.id,
                link.platform,
                link.url,
                link.canonical_identity,
                link.display_text,
                link.sort_order,
                link.state,
                link.confidence,
                json.dumps(link.evidence.to_dict()),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("link with this canonical identity already exists for profile") from exc
        if not row:
            raise RepositoryNotFoundError("link not found")
        return _link_from_row(row)

    async def insert_job(self, job: IngestionJob) -> IngestionJob:
        await self._conn.execute(
            """
            insert into ingestion_jobs (
              id, job_type, payload, dedup_key, status, attempts, max_attempts, priority,
              run_at, next_run_at, created_at, updated_at
            )
            values ($1, $2, $3::jsonb, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            """,
            job.id,
            job.job_type,
            json.dumps(job.payload),
            job.dedup_key,
            job.status,
            job.attempts,
            job.max_attempts,
            job.priority,
            job.run_at,
            job.next_run_at,
            job.created_at,
            job.updated_at,
        )
        return job

    async def find_job_by_dedup_key(self, dedup_key: str, *, succeeded_since: datetime) -> IngestionJob | None:
        row = await self._conn.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from ingestion_jobs
            where dedup_key = $1
              and (
                status in ('pending', 'processing')
                or (status = 'succeeded' and updated_at >= $2)
              )
            order by created_at desc
            limit 1
            """,
            dedup_key,
            succeeded_since,
        )
        return _job_from_row(row) if row else None

    async def get_job(self, job_id: str) -> IngestionJob | None:
        row = await self._conn.fetchrow(f"select {_JOB_COLUMNS} from ingestion_jobs where id = $1", job_id)
        return _job_from_row(row) if row else None

    async def list_jobs(self, *, status: str | None = None, limit: int = 50) -> list[IngestionJob]:
        rows = await self._conn.fetch(
            f"""
            select {_JOB_COLUMNS}
            from ingestion_jobs
            where ($1::text is null or status = $1)
            order by created_at desc
            limit $2
            """,
            status,
            max(1, min(limit, 500)),
        )
        return [_job_from_row(row) for row in rows]

    async def fail_exhausted_jobs(self, now: datetime) -> int:
        rows = await self._conn.fetch(
            """
            update ingestion_jobs
            set
              status = 'failed',
              error = 'Exceeded max attempts (' || max_attempts || ')',
              updated_at = $1
            where status = 'pending' and run_at <= $1 and attempts >= max_attempts
            returning id
            """,
            now,
        )
        return len(rows)

    async def list_claim_candidates(self, now: datetime, limit: int) -> list[IngestionJob]:
        rows = await self._conn.fetch(
            f"""
            select {_JOB_COLUMNS}
            from ingestion_jobs
            where status = 'pending'
              and run_at <= $1
              and attempts < max_attempts
            order by priority asc, run_at asc
            limit $2
            for update skip locked
            """,
            now,
            limit,
        )
        return [_job_from_row(row) for row in rows]

    async def count_processing_by_type(self) -> dict[str, int]:
        rows = await self._conn.fetch(
            """
            select job_type, count(*)::int as total
            from ingestion_jobs
            where status = 'processing'
            group by job_type
            """
        )
        return {row["job_type"]: row["total"] for row in rows}

    async def count_claimed_since_by_type(self, since: datetime) -> dict[str, int]:
        rows = await self._conn.fetch(
            """
            select job_type, count(*)::int as total
            from ingestion_jobs
            where claimed_at >= $1
            group by job_type
            """,
            since,
        )
        return {row["job_type"]: row["total"] for row in rows}

    async def claim_job(self, job_id: str, now: datetime) -> IngestionJob | None:
        row = await self._conn.fetchrow(
            f"""
            update ingestion_jobs
            set
              status = 'processing',
              attempts = attempts + 1,
              claimed_at = $2,
              updated_at = $2
            where id = $1
              and status = 'pending'
              and run_at <= $2
              and attempts < max_attempts
            returning {_JOB_COLUMNS}
            """,
            job_id,
            now,
        )
        return _job_from_row(row) if row else None

    async def reschedule_job(self, job_id: str, *, run_at: datetime, error: str) -> None:
        await self._update_job_or_raise(
            """
            update ingestion_jobs
            set status = 'pending', run_at = $2, next_run_at = $2, error = $3, updated_at = now()
            where id = $1
            """,
            job_id,
            run_at,
            error,
        )

    async def mark_job_failed(self, job_id: str, error: str) -> None:
        await self._update_job_or_raise(
            """
            update ingestion_jobs
            set status = 'failed', error = $2, updated_at = now()
            where id = $1
            """,
            job_id,
            error,
        )

    async def mark_job_succeeded(self, job_id: str, result: dict[str, Any]) -> None:
        await self._update_job_or_raise(
            """
            update ingestion_jobs
            set status = 'succeeded', error = null, result = $2::jsonb, updated_at = now()
            where id = $1
            """,
            job_id,
            json.dumps(result),
        )

    async def reset_job(self, job_id: str, now: datetime) -> IngestionJob:
        row = await self._conn.fetchrow(
            f"""
            update ingestion_jobs
            set
              status = 'pending',
              attempts = 0,
              error = null,
              run_at = $2,
              next_run_at = null,
              updated_at = $2
            where id = $1
            returning {_JOB_COLUMNS}
            """,
            job_id,
            now,
        )
        if not row:
            raise RepositoryNotFoundError("job not found")
        return _job_from_row(row)

    async def requeue_stuck_jobs(self, *, older_than: datetime, now: datetime, error: str) -> list[IngestionJob]:
        rows = await self._conn.fetch(
            """
            with stuck as (
              select id
              from ingestion_jobs
              where status = 'processing' and updated_at <= $1
              limit 50
              for update skip locked
            )
            update ingestion_jobs j
            set status = 'pending', error = $3, run_at = $2, next_run_at = null, updated_at = $2
            from stuck s
            where j.id = s.id
            returning j.*
            """,
            older_than,
            now,
            error,
        )
        return [_job_from_row(row) for row in rows]

    async def list_scraper_configs(self) -> dict[str, ScraperConfig]:
        rows = await self._conn.fetch(
            """
            select network, enabled, max_concurrent_jobs, max_jobs_per_minute, fetch_timeout_seconds
            from scraper_configs
            """
        )
        return {
            row["network"]: ScraperConfig(
                network=row["network"],
                enabled=bool(row["enabled"]),
                max_concurrent_jobs=row["max_concurrent_jobs"],
                max_jobs_per_minute=row["max_jobs_per_minute"],
                fetch_timeout_seconds=row["fetch_timeout_seconds"],
            )
            for row in rows
        }

    async def _update_job_or_raise(self, query: str, *args: Any) -> None:
        result = await self._conn.execute(query, *args)
        if result.endswith(" 0"):
            raise RepositoryNotFoundError("job not found")


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    if isinstance(value, dict):
        return value
    return {}


def _profile_from_row(row: asyncpg.Record) -> Profile:
    return Profile(
        id=row["id"],
        username_normalized=row["username_normalized"],
        display_name=row["display_name"],
        display_name_locked=bool(row["display_name_locked"]),
        avatar_url=row["avatar_url"],
        avatar_locked_by_user=bool(row["avatar_locked_by_user"]),
        allow_auto_promotion=bool(row["allow_auto_promotion"]),
        ingestion_status=row["ingestion_status"],
        last_ingestion_error=row["last_ingestion_error"],
        updated_at=row["updated_at"],
    )


def _link_from_row(row: asyncpg.Record) -> Link:
    return Link(
        id=row["id"],
        profile_id=row["profile_id"],
        platform=row["platform"],
        url=row["url"],
        canonical_identity=row["canonical_identity"],
        display_text=row["display_text"],
        sort_order=row["sort_order"],
        state=row["state"],
        confidence=float(row["confidence"] or 0.0),
        source_type=row["source_type"],
        source_platform=row["source_platform"],
        evidence=Evidence.from_dict(_coerce_json_dict(row["evidence"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _job_from_row(row: asyncpg.Record) -> IngestionJob:
    result = row["result"]
    return IngestionJob(
        id=row["id"],
        job_type=row["job_type"],
        payload=_coerce_json_dict(row["payload"]),
        dedup_key=row["dedup_key"],
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        priority=row["priority"],
        run_at=row["run_at"],
        next_run_at=row["next_run_at"],
        claimed_at=row["claimed_at"],
        error=row["error"],
        result=_coerce_json_dict(result) if result is not None else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
