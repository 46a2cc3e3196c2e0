from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

ACTIVE_JOB_STATUSES = frozenset({"pending", "processing"})
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed"})
FILE_TYPES = ("pdf", "docx", "pptx")
FIELD_TYPES = ("narrative", "evidence", "matrix", "table")
OPEN_REVIEW_ACTIONS = frozenset({"pending", "discarded"})

_DATETIME_FIELDS = {
    "uploaded_at",
    "processing_started_at",
    "processing_completed_at",
    "sent_at",
    "mapped_at",
    "reviewed_at",
    "created",
    "last_modified",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ExtractedSection:
    id: str
    page_number: int
    start_offset: int
    end_offset: int
    section_type: str
    content: str
    confidence: float = 0.0
    suggested_standard: str | None = None
    heading: str | None = None
    origin: str = "parse"
    external_key: str | None = None


@dataclass(slots=True)
class ExtractedTable:
    id: str
    page_number: int
    headers: list[str]
    rows: list[list[str]]
    table_type: str = "unknown"


@dataclass(slots=True)
class SectionMapping:
    extracted_section_id: str
    standard_code: str
    spec_code: str
    field_type: str
    provenance: str
    mapped_at: datetime
    mapped_by: str | None = None
    confidence: float | None = None


@dataclass(slots=True)
class UnmappedItem:
    extracted_section_id: str
    reason: str
    review_action: str = "pending"
    reviewer: str | None = None
    reviewed_at: datetime | None = None


@dataclass(slots=True)
class DocumentMetadata:
    page_count: int = 1
    title: str | None = None
    author: str | None = None
    created: datetime | None = None


@dataclass(slots=True)
class ImportJob:
    id: str
    submission_id: str
    original_filename: str
    file_type: str
    uploaded_by: str | None
    status: str = "pending"
    uploaded_at: datetime = field(default_factory=utcnow)
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    error: str | None = None
    taxonomy_name: str | None = None
    external_job_id: str | None = None
    callback_job_id: str | None = None
    sent_at: datetime | None = None
    total_chunks: int = 0
    received_chunks: int = 0
    received_indices: list[int] = field(default_factory=list)
    raw_text: str = ""
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    sections: list[ExtractedSection] = field(default_factory=list)
    tables: list[ExtractedTable] = field(default_factory=list)
    mappings: list[SectionMapping] = field(default_factory=list)
    unmapped: list[UnmappedItem] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def get_section(self, section_id: str) -> ExtractedSection | None:
        return next((section for section in self.sections if section.id == section_id), None)

    def mapping_for(self, section_id: str) -> SectionMapping | None:
        return next((mapping for mapping in self.mappings if mapping.extracted_section_id == section_id), None)

    def unmapped_for(self, section_id: str) -> UnmappedItem | None:
        return next((item for item in self.unmapped if item.extracted_section_id == section_id), None)

    def open_unmapped_for(self, section_id: str) -> UnmappedItem | None:
        item = self.unmapped_for(section_id)
        if item is not None and item.review_action in OPEN_REVIEW_ACTIONS:
            return item
        return None

    def pending_unmapped(self) -> list[UnmappedItem]:
        return [item for item in self.unmapped if item.review_action == "pending"]

    def mark_processing(self, *, taxonomy_name: str | None) -> None:
        _check_transition(self.status, "processing")
        self.status = "processing"
        self.processing_started_at = utcnow()
        self.taxonomy_name = taxonomy_name

    def mark_completed(self) -> None:
        _check_transition(self.status, "completed")
        self.status = "completed"
        self.processing_completed_at = utcnow()

    def mark_failed(self, error: str) -> None:
        _check_transition(self.status, "failed")
        self.status = "failed"
        self.error = error
        self.processing_completed_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ImportJob:
        data = _parse_datetimes(dict(payload))
        data["metadata"] = DocumentMetadata(**_parse_datetimes(data.get("metadata") or {}))
        data["sections"] = [ExtractedSection(**item) for item in data.get("sections") or []]
        data["tables"] = [ExtractedTable(**item) for item in data.get("tables") or []]
        data["mappings"] = [SectionMapping(**_parse_datetimes(item)) for item in data.get("mappings") or []]
        data["unmapped"] = [UnmappedItem(**_parse_datetimes(item)) for item in data.get("unmapped") or []]
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(slots=True)
class NarrativeSlot:
    content: str = ""
    last_modified: datetime | None = None
    is_complete: bool = False
    linked_documents: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SubmissionRecord:
    id: str
    narratives: dict[str, dict[str, NarrativeSlot]] = field(default_factory=dict)
    import_ids: list[str] = field(default_factory=list)
    applied_mapping_keys: list[str] = field(default_factory=list)

    def slot(self, standard_code: str, spec_code: str) -> NarrativeSlot:
        specs = self.narratives.setdefault(standard_code, {})
        return specs.setdefault(spec_code, NarrativeSlot())

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SubmissionRecord:
        narratives = {
            standard: {spec: NarrativeSlot(**_parse_datetimes(slot)) for spec, slot in specs.items()}
            for standard, specs in (payload.get("narratives") or {}).items()
        }
        return cls(
            id=payload["id"],
            narratives=narratives,
            import_ids=list(payload.get("import_ids") or []),
            applied_mapping_keys=list(payload.get("applied_mapping_keys") or []),
        )


_ALLOWED_TRANSITIONS = {
    "pending": {"processing", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


class InvalidTransitionError(ValueError):
    """Raised when a job status change would move backwards or leave a terminal state."""


def _check_transition(from_status: str, to_status: str) -> None:
    if to_status not in _ALLOWED_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError(f"invalid status transition: {from_status} -> {to_status}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def _parse_datetimes(payload: dict[str, Any]) -> dict[str, Any]:
    for key in _DATETIME_FIELDS.intersection(payload):
        value = payload[key]
        if isinstance(value, str):
            payload[key] = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return payload
