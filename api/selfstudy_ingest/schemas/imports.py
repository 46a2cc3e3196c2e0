from datetime import datetime
from typing import Literal

from pydantic import Field

from selfstudy_ingest.schemas.callbacks import CamelModel

FieldType = Literal["narrative", "evidence", "matrix", "table"]
ReviewAction = Literal["assign", "discard"]


class UploadAcceptedOut(CamelModel):
    import_id: str
    status: str = "processing"
    message: str = "Document uploaded and processing started"


class ImportCancelledOut(CamelModel):
    import_id: str
    status: str = "cancelled"


class ExtractedContentOut(CamelModel):
    page_count: int
    title: str | None = None
    author: str | None = None
    created: datetime | None = None
    section_count: int
    table_count: int


class ImportSummaryOut(CamelModel):
    id: str
    submission_id: str
    original_filename: str
    file_type: str
    status: str
    uploaded_by: str | None = None
    uploaded_at: datetime
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    error: str | None = None
    taxonomy_name: str | None = None
    mapped_count: int = 0
    unmapped_count: int = 0
    extracted_content: ExtractedContentOut | None = None


class MappingOut(CamelModel):
    extracted_section_id: str
    standard_code: str
    spec_code: str
    field_type: str
    provenance: str
    mapped_at: datetime
    mapped_by: str | None = None
    confidence: float | None = None


class UnmappedOut(CamelModel):
    extracted_section_id: str
    reason: str
    review_action: str
    reviewer: str | None = None
    reviewed_at: datetime | None = None


class UnmappedPreviewOut(UnmappedOut):
    heading: str | None = None
    section_type: str | None = None
    page_number: int | None = None
    preview: str = ""


class ImportStatusOut(CamelModel):
    id: str
    status: str
    phase: str
    message: str
    elapsed_seconds: float
    sent_at: datetime | None = None
    total_chunks: int = 0
    received_chunks: int = 0
    error: str | None = None
    recent_mappings: list[MappingOut] = Field(default_factory=list)


class SectionPreviewOut(CamelModel):
    id: str
    heading: str | None = None
    section_type: str
    page_number: int
    origin: str
    confidence: float
    suggested_standard: str | None = None
    preview: str
    mapping: MappingOut | None = None
    unmapped: UnmappedOut | None = None


class ManualMappingRequest(CamelModel):
    extracted_section_id: str
    standard_code: str = Field(min_length=1)
    spec_code: str = Field(min_length=1)
    field_type: FieldType = "narrative"


class UnmappedReviewRequest(CamelModel):
    action: ReviewAction
    standard_code: str | None = None
    spec_code: str | None = None


class ApplyMappingsOut(CamelModel):
    import_id: str
    submission_id: str
    applied: int
    skipped: int
    already_applied: int
