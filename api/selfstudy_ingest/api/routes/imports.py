from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile, status

from selfstudy_ingest.core.auth import Principal
from selfstudy_ingest.core.config import Settings, get_settings
from selfstudy_ingest.core.security import get_human_principal
from selfstudy_ingest.schemas.imports import (
    ApplyMappingsOut,
    ExtractedContentOut,
    ImportCancelledOut,
    ImportStatusOut,
    ImportSummaryOut,
    ManualMappingRequest,
    MappingOut,
    SectionPreviewOut,
    UnmappedOut,
    UnmappedPreviewOut,
    UnmappedReviewRequest,
    UploadAcceptedOut,
)
from selfstudy_ingest.services import reconciler
from selfstudy_ingest.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    ValidationError,
)
from selfstudy_ingest.services.gateway import ClassifierConfig, ExternalMappingGateway, get_classifier_config
from selfstudy_ingest.services.orchestrator import ImportOrchestrator, describe_progress, elapsed_seconds
from selfstudy_ingest.services.records import ExtractedSection, ImportJob
from selfstudy_ingest.services.repository import get_repository

router = APIRouter()

PREVIEW_CHARS = 500
RECENT_MAPPINGS = 5


def _require(principal: Principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _preview(section: ExtractedSection) -> str:
    return section.content[:PREVIEW_CHARS]


def _summary(job: ImportJob) -> ImportSummaryOut:
    extracted = None
    if job.status == "completed":
        extracted = ExtractedContentOut(
            page_count=job.metadata.page_count,
            title=job.metadata.title,
            author=job.metadata.author,
            created=job.metadata.created,
            section_count=len(job.sections),
            table_count=len(job.tables),
        )
    return ImportSummaryOut(
        id=job.id,
        submission_id=job.submission_id,
        original_filename=job.original_filename,
        file_type=job.file_type,
        status=job.status,
        uploaded_by=job.uploaded_by,
        uploaded_at=job.uploaded_at,
        processing_started_at=job.processing_started_at,
        processing_completed_at=job.processing_completed_at,
        error=job.error,
        taxonomy_name=job.taxonomy_name,
        mapped_count=len(job.mappings),
        unmapped_count=len(job.pending_unmapped()),
        extracted_content=extracted,
    )


def build_orchestrator(
    repository,
    settings: Settings,
    classifier_config: ClassifierConfig | None,
) -> ImportOrchestrator:
    gateway = ExternalMappingGateway(repository, classifier_config) if classifier_config is not None else None
    return ImportOrchestrator(
        repository,
        gateway=gateway,
        local_threshold=settings.local_acceptance_threshold,
        taxonomy_name=settings.default_taxonomy_name,
    )


@router.post("/upload", response_model=UploadAcceptedOut, status_code=status.HTTP_202_ACCEPTED)
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile | None = File(default=None),
    submission_id: str | None = Form(default=None),
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    classifier_config: ClassifierConfig | None = Depends(get_classifier_config),
) -> UploadAcceptedOut:
    _require(principal, {"imports:write"})
    if file is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="file is required")

    data = await file.read()
    filename = file.filename or ""
    orchestrator = build_orchestrator(repository, settings, classifier_config)
    try:
        job = await orchestrator.submit_upload(
            submission_id=submission_id or "",
            filename=filename,
            data=data,
            uploaded_by=principal.actor_id,
            max_bytes=settings.max_upload_bytes,
        )
    except (ValidationError, RepositoryError) as exc:
        raise _http_error(exc) from exc

    background_tasks.add_task(orchestrator.process, job.id, data, filename)
    return UploadAcceptedOut(import_id=job.id)


@router.get("/{import_id}", response_model=ImportSummaryOut)
async def get_import(
    import_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ImportSummaryOut:
    _require(principal, {"imports:read"})
    try:
        job = await repository.get_job(import_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return _summary(job)


@router.get("/{import_id}/status", response_model=ImportStatusOut)
async def get_import_status(
    import_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ImportStatusOut:
    _require(principal, {"imports:read"})
    try:
        job = await repository.get_job(import_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    progress = describe_progress(job)
    recent = sorted(job.mappings, key=lambda mapping: mapping.mapped_at, reverse=True)[:RECENT_MAPPINGS]
    return ImportStatusOut(
        id=job.id,
        status=job.status,
        phase=progress.phase,
        message=progress.message,
        elapsed_seconds=elapsed_seconds(job),
        sent_at=job.sent_at,
        total_chunks=job.total_chunks,
        received_chunks=job.received_chunks,
        error=job.error,
        recent_mappings=[MappingOut(**asdict(mapping)) for mapping in recent],
    )


@router.get("/{import_id}/sections", response_model=list[SectionPreviewOut])
async def list_sections(
    import_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[SectionPreviewOut]:
    _require(principal, {"imports:read"})
    try:
        job = await repository.get_job(import_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    previews: list[SectionPreviewOut] = []
    for section in job.sections:
        mapping = job.mapping_for(section.id)
        unmapped = job.unmapped_for(section.id)
        previews.append(
            SectionPreviewOut(
                id=section.id,
                heading=section.heading,
                section_type=section.section_type,
                page_number=section.page_number,
                origin=section.origin,
                confidence=section.confidence,
                suggested_standard=section.suggested_standard,
                preview=_preview(section),
                mapping=MappingOut(**asdict(mapping)) if mapping is not None else None,
                unmapped=UnmappedOut(**asdict(unmapped)) if unmapped is not None else None,
            )
        )
    return previews


@router.post("/{import_id}/map", response_model=MappingOut)
async def map_section(
    import_id: str,
    payload: ManualMappingRequest,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> MappingOut:
    _require(principal, {"imports:review"})
    try:
        mapping = await repository.mutate_job(
            import_id,
            lambda job: reconciler.map_manually(
                job,
                payload.extracted_section_id,
                payload.standard_code,
                payload.spec_code,
                payload.field_type,
                principal.actor_id,
            ),
        )
    except (ValidationError, RepositoryError) as exc:
        raise _http_error(exc) from exc
    return MappingOut(**asdict(mapping))


@router.get("/{import_id}/unmapped", response_model=list[UnmappedPreviewOut])
async def list_unmapped(
    import_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> list[UnmappedPreviewOut]:
    _require(principal, {"imports:read"})
    try:
        job = await repository.get_job(import_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    items: list[UnmappedPreviewOut] = []
    for item in job.pending_unmapped():
        section = job.get_section(item.extracted_section_id)
        items.append(
            UnmappedPreviewOut(
                **asdict(item),
                heading=section.heading if section is not None else None,
                section_type=section.section_type if section is not None else None,
                page_number=section.page_number if section is not None else None,
                preview=_preview(section) if section is not None else "",
            )
        )
    return items


@router.put("/{import_id}/unmapped/{section_id}", response_model=UnmappedOut)
async def review_unmapped_section(
    import_id: str,
    section_id: str,
    payload: UnmappedReviewRequest,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> UnmappedOut:
    _require(principal, {"imports:review"})
    try:
        item = await repository.mutate_job(
            import_id,
            lambda job: reconciler.review_unmapped(
                job,
                section_id,
                payload.action,
                principal.actor_id,
                standard_code=payload.standard_code,
                spec_code=payload.spec_code,
            ),
        )
    except (ValidationError, RepositoryError) as exc:
        raise _http_error(exc) from exc
    return UnmappedOut(**asdict(item))


@router.post("/{import_id}/apply", response_model=ApplyMappingsOut)
async def apply_mappings(
    import_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
) -> ApplyMappingsOut:
    _require(principal, {"imports:review"})
    try:
        job = await repository.get_job(import_id)
        if job.status != "completed":
            raise RepositoryConflictError(
                f"import {import_id} is {job.status}; mappings can only be applied once completed"
            )
        result = await repository.mutate_submission(
            job.submission_id,
            lambda submission: reconciler.apply_to_submission(job, submission),
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return ApplyMappingsOut(
        import_id=job.id,
        submission_id=job.submission_id,
        applied=result.applied,
        skipped=result.skipped,
        already_applied=result.already_applied,
    )


@router.delete("/{import_id}", response_model=ImportCancelledOut)
async def cancel_import(
    import_id: str,
    principal: Principal = Depends(get_human_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> ImportCancelledOut:
    _require(principal, {"imports:write"})
    orchestrator = build_orchestrator(repository, settings, None)
    try:
        await orchestrator.cancel(import_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc
    return ImportCancelledOut(import_id=import_id)
