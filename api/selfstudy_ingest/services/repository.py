from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Callable, TypeVar

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from selfstudy_ingest.core.config import get_settings
from selfstudy_ingest.services.errors import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from selfstudy_ingest.services.records import ACTIVE_JOB_STATUSES, ImportJob, SubmissionRecord
from selfstudy_ingest.services.store import InMemoryImportRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PostgresImportRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(self, job: ImportJob) -> ImportJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    active_id = await conn.fetchval(
                        """
                        select id::text
                        from import_jobs
                        where submission_id = $1
                          and status = any($2::text[])
                        limit 1
                        for update
                        """,
                        job.submission_id,
                        sorted(ACTIVE_JOB_STATUSES),
                    )
                    if active_id:
                        raise RepositoryConflictError(
                            f"submission {job.submission_id} already has an active import {active_id}"
                        )
                    await conn.execute(
                        """
                        insert into import_jobs (id, submission_id, status, payload)
                        values ($1::uuid, $2, $3, $4::jsonb)
                        """,
                        job.id,
                        job.submission_id,
                        job.status,
                        json.dumps(job.to_dict()),
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"submission {job.submission_id} already has an active import") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return job

    async def get_job(self, job_id: str) -> ImportJob:
        pool = await self._get_pool()
        try:
            payload = await pool.fetchval("select payload from import_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError(f"import {job_id} not found") from exc
        if payload is None:
            raise RepositoryNotFoundError(f"import {job_id} not found")
        return ImportJob.from_dict(self._decode(payload))

    async def mutate_job(self, job_id: str, mutate: Callable[[ImportJob], T]) -> T:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    payload = await conn.fetchval(
                        """
                        select payload
                        from import_jobs
                        where id = $1::uuid
                        for update
                        """,
                        job_id,
                    )
                    if payload is None:
                        raise RepositoryNotFoundError(f"import {job_id} not found")
                    job = ImportJob.from_dict(self._decode(payload))
                    result = mutate(job)
                    await conn.execute(
                        """
                        update import_jobs
                        set status = $2, payload = $3::jsonb, updated_at = now()
                        where id = $1::uuid
                        """,
                        job_id,
                        job.status,
                        json.dumps(job.to_dict()),
                    )
                    return result
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError(f"import {job_id} not found") from exc

    async def delete_job(self, job_id: str) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    status = await conn.fetchval(
                        "select status from import_jobs where id = $1::uuid for update",
                        job_id,
                    )
                    if status is None:
                        raise RepositoryNotFoundError(f"import {job_id} not found")
                    if status not in ACTIVE_JOB_STATUSES:
                        raise RepositoryConflictError(f"import {job_id} is {status} and cannot be cancelled")
                    await conn.execute("delete from import_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError(f"import {job_id} not found") from exc

    async def save_submission(self, submission: SubmissionRecord) -> SubmissionRecord:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into submissions (id, payload)
            values ($1, $2::jsonb)
            on conflict (id) do update
            set payload = excluded.payload, updated_at = now()
            """,
            submission.id,
            json.dumps(submission.to_dict()),
        )
        return submission

    async def get_submission(self, submission_id: str) -> SubmissionRecord:
        pool = await self._get_pool()
        payload = await pool.fetchval("select payload from submissions where id = $1", submission_id)
        if payload is None:
            raise RepositoryNotFoundError(f"submission {submission_id} not found")
        return SubmissionRecord.from_dict(self._decode(payload))

    async def mutate_submission(self, submission_id: str, mutate: Callable[[SubmissionRecord], T]) -> T:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                payload = await conn.fetchval(
                    "select payload from submissions where id = $1 for update",
                    submission_id,
                )
                if payload is None:
                    raise RepositoryNotFoundError(f"submission {submission_id} not found")
                submission = SubmissionRecord.from_dict(self._decode(payload))
                result = mutate(submission)
                await conn.execute(
                    "update submissions set payload = $2::jsonb, updated_at = now() where id = $1",
                    submission_id,
                    json.dumps(submission.to_dict()),
                )
                return result

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SSI_DATABASE_URL is required")

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

    @staticmethod
    def _decode(payload: Any) -> dict[str, Any]:
        if isinstance(payload, str):
            return json.loads(payload)
        return dict(payload)


ImportRepository = InMemoryImportRepository | PostgresImportRepository


@lru_cache
def get_repository() -> ImportRepository:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("SSI_DATABASE_URL not set; using in-memory import repository")
        return InMemoryImportRepository()
    return PostgresImportRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
