from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from selfstudy_ingest.services.errors import RepositoryConflictError, RepositoryNotFoundError
from selfstudy_ingest.services.records import ACTIVE_JOB_STATUSES, ImportJob, SubmissionRecord

T = TypeVar("T")


class InMemoryImportRepository:
    """Process-local repository used when no database is configured.

    Records are kept in their serialized form so every read hands out a fresh
    copy, and a mutation that raises leaves the stored record untouched.
    Locks exist only for stored records and go away with them.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.submissions: dict[str, dict[str, Any]] = {}
        self._job_locks: dict[str, asyncio.Lock] = {}
        self._submission_locks: dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def create_job(self, job: ImportJob) -> ImportJob:
        async with self._create_lock:
            for payload in self.jobs.values():
                if payload["submission_id"] == job.submission_id and payload["status"] in ACTIVE_JOB_STATUSES:
                    raise RepositoryConflictError(
                        f"submission {job.submission_id} already has an active import {payload['id']}"
                    )
            self.jobs[job.id] = job.to_dict()
        return ImportJob.from_dict(self.jobs[job.id])

    async def get_job(self, job_id: str) -> ImportJob:
        payload = self.jobs.get(job_id)
        if payload is None:
            raise RepositoryNotFoundError(f"import {job_id} not found")
        return ImportJob.from_dict(payload)

    async def mutate_job(self, job_id: str, mutate: Callable[[ImportJob], T]) -> T:
        async with self._job_lock(job_id):
            job = await self.get_job(job_id)
            result = mutate(job)
            if job_id not in self.jobs:
                raise RepositoryNotFoundError(f"import {job_id} not found")
            self.jobs[job_id] = job.to_dict()
            return result

    async def delete_job(self, job_id: str) -> None:
        async with self._job_lock(job_id):
            payload = self.jobs.get(job_id)
            if payload is None:
                raise RepositoryNotFoundError(f"import {job_id} not found")
            if payload["status"] not in ACTIVE_JOB_STATUSES:
                raise RepositoryConflictError(f"import {job_id} is {payload['status']} and cannot be cancelled")
            del self.jobs[job_id]
        self._job_locks.pop(job_id, None)

    async def save_submission(self, submission: SubmissionRecord) -> SubmissionRecord:
        self.submissions[submission.id] = submission.to_dict()
        return SubmissionRecord.from_dict(self.submissions[submission.id])

    async def get_submission(self, submission_id: str) -> SubmissionRecord:
        payload = self.submissions.get(submission_id)
        if payload is None:
            raise RepositoryNotFoundError(f"submission {submission_id} not found")
        return SubmissionRecord.from_dict(payload)

    async def mutate_submission(self, submission_id: str, mutate: Callable[[SubmissionRecord], T]) -> T:
        if submission_id not in self.submissions:
            raise RepositoryNotFoundError(f"submission {submission_id} not found")
        async with self._submission_locks.setdefault(submission_id, asyncio.Lock()):
            submission = await self.get_submission(submission_id)
            result = mutate(submission)
            self.submissions[submission_id] = submission.to_dict()
            return result

    def _job_lock(self, job_id: str) -> asyncio.Lock:
        if job_id not in self.jobs:
            raise RepositoryNotFoundError(f"import {job_id} not found")
        return self._job_locks.setdefault(job_id, asyncio.Lock())
