from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from selfstudy_ingest.core.telemetry import import_span
from selfstudy_ingest.services import reconciler
from selfstudy_ingest.services.errors import (
    IngestError,
    RepositoryNotFoundError,
    UnsupportedFormatError,
    ValidationError,
)
from selfstudy_ingest.services.gateway import ExternalMappingGateway
from selfstudy_ingest.services.mapper import LocalSectionMapper
from selfstudy_ingest.services.parser import DocumentParser, ParsedDocument, file_extension, table_as_section
from selfstudy_ingest.services.records import FILE_TYPES, ImportJob, utcnow

logger = logging.getLogger(__name__)

LOCAL_SWEEP_REASON = "No matching standard pattern found"


@dataclass(frozen=True, slots=True)
class ProgressPhase:
    phase: str
    message: str


def describe_progress(job: ImportJob) -> ProgressPhase:
    if job.status == "failed":
        return ProgressPhase("failed", job.error or "Import failed")
    if job.status == "completed":
        return ProgressPhase("completed", "Import completed")
    if job.status == "pending":
        return ProgressPhase("queued", "Waiting to start processing")
    if job.sent_at is None:
        return ProgressPhase("parsing", "Extracting document content")
    if job.received_chunks == 0:
        return ProgressPhase("awaiting_results", "Sent to external classifier; waiting for results")
    return ProgressPhase(
        "receiving_results",
        f"Received {job.received_chunks} of {job.total_chunks} sections from external classifier",
    )


def elapsed_seconds(job: ImportJob, now: datetime | None = None) -> float:
    started = job.processing_started_at or job.uploaded_at
    finished = job.processing_completed_at or now or utcnow()
    return round(max((finished - started).total_seconds(), 0.0), 3)


class ImportOrchestrator:
    def __init__(
        self,
        repository: Any,
        *,
        parser: DocumentParser | None = None,
        mapper: LocalSectionMapper | None = None,
        gateway: ExternalMappingGateway | None = None,
        local_threshold: float = 0.6,
        taxonomy_name: str | None = None,
    ) -> None:
        self.repository = repository
        self.parser = parser or DocumentParser()
        self.mapper = mapper or LocalSectionMapper(self.parser.matcher)
        self.gateway = gateway
        self.local_threshold = local_threshold
        self.taxonomy_name = taxonomy_name

    async def submit_upload(
        self,
        *,
        submission_id: str,
        filename: str,
        data: bytes,
        uploaded_by: str | None,
        max_bytes: int | None = None,
    ) -> ImportJob:
        submission_id = (submission_id or "").strip()
        if not submission_id:
            raise ValidationError("submission_id is required")
        if not filename:
            raise ValidationError("file is required")
        extension = file_extension(filename)
        if extension not in FILE_TYPES:
            raise UnsupportedFormatError("Invalid file type. Only PDF, DOCX, and PPTX files are allowed.")
        if not data:
            raise ValidationError("uploaded file is empty")
        if max_bytes is not None and len(data) > max_bytes:
            raise ValidationError(f"uploaded file exceeds the {max_bytes} byte limit")

        await self.repository.get_submission(submission_id)
        job = ImportJob(
            id=str(uuid4()),
            submission_id=submission_id,
            original_filename=filename,
            file_type=extension,
            uploaded_by=uploaded_by,
        )
        job = await self.repository.create_job(job)
        logger.info(
            "import created import_id=%s submission_id=%s filename=%s bytes=%s",
            job.id,
            submission_id,
            filename,
            len(data),
        )
        return job

    async def process(self, job_id: str, data: bytes, filename: str) -> None:
        """Run one import to completion, failure or external hand-off. Never raises."""
        try:
            with import_span("import.process", import_id=job_id, attributes={"import.filename": filename}):
                await self._process(job_id, data, filename)
        except RepositoryNotFoundError:
            logger.info("import cancelled during processing import_id=%s", job_id)
        except Exception as exc:
            logger.exception("import processing failed import_id=%s", job_id)
            await self._record_failure(job_id, exc)

    async def _process(self, job_id: str, data: bytes, filename: str) -> None:
        external = self.gateway is not None
        taxonomy_name = self.gateway.config.taxonomy_name if self.gateway is not None else self.taxonomy_name
        await self.repository.mutate_job(job_id, lambda job: job.mark_processing(taxonomy_name=taxonomy_name))

        parsed = await asyncio.to_thread(self.parser.parse, data, filename)
        await self.repository.mutate_job(job_id, lambda job: self._store_parsed(job, parsed))

        if external:
            await self.gateway.send_document(job_id, parsed.html_content)
            logger.info("import handed off to external classifier import_id=%s", job_id)
            return

        summary = await self.repository.mutate_job(job_id, self._map_locally)
        logger.info(
            "import completed import_id=%s mapped=%s unmapped=%s",
            job_id,
            summary["mapped"],
            summary["unmapped"],
        )

    def _store_parsed(self, job: ImportJob, parsed: ParsedDocument) -> None:
        job.raw_text = parsed.raw_text
        job.metadata = parsed.metadata
        job.sections = [*parsed.sections, *(table_as_section(table) for table in parsed.tables)]
        job.tables = parsed.tables

    def _map_locally(self, job: ImportJob) -> dict[str, int]:
        counts = {"mapped": 0, "unmapped": 0, "kept": 0}
        tables = {table.id: table for table in job.tables}
        for section in job.sections:
            table = tables.get(section.id)
            if table is not None:
                suggestion = self.mapper.map_table(table)
            else:
                suggestion = self.mapper.map_section(section)
            counts[reconciler.apply_suggestion(job, suggestion, self.local_threshold)] += 1
        counts["unmapped"] += reconciler.sweep_unaccounted(job, LOCAL_SWEEP_REASON)
        job.mark_completed()
        return counts

    async def _record_failure(self, job_id: str, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        if not isinstance(exc, IngestError):
            message = f"{type(exc).__name__}: {message}"

        def fail(job: ImportJob) -> None:
            if not job.is_terminal:
                job.mark_failed(message)

        try:
            await self.repository.mutate_job(job_id, fail)
        except RepositoryNotFoundError:
            logger.info("import cancelled before failure could be recorded import_id=%s", job_id)

    async def cancel(self, job_id: str) -> None:
        await self.repository.delete_job(job_id)
        logger.info("import cancelled import_id=%s", job_id)
