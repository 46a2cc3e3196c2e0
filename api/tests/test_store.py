from __future__ import annotations

import asyncio

import pytest

from selfstudy_ingest.services.errors import RepositoryNotFoundError
from selfstudy_ingest.services.records import ImportJob
from selfstudy_ingest.services.store import InMemoryImportRepository


def _job(job_id: str = "import-1") -> ImportJob:
    return ImportJob(
        id=job_id,
        submission_id="submission-1",
        original_filename="narrative.docx",
        file_type="docx",
        uploaded_by="user-1",
    )


def test_mutations_on_missing_records_do_not_allocate_locks() -> None:
    repository = InMemoryImportRepository()

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.mutate_job("missing", lambda job: None))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.delete_job("missing"))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.mutate_submission("missing", lambda submission: None))

    assert repository._job_locks == {}
    assert repository._submission_locks == {}


def test_job_lock_is_released_with_the_job() -> None:
    repository = InMemoryImportRepository()

    async def run() -> None:
        await repository.create_job(_job())
        await repository.mutate_job("import-1", lambda job: job.mark_processing(taxonomy_name="CSHSE Standards"))
        assert set(repository._job_locks) == {"import-1"}
        await repository.delete_job("import-1")

    asyncio.run(run())

    assert repository._job_locks == {}
    assert repository.jobs == {}
