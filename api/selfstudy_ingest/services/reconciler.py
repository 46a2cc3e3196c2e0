"""Merging machine suggestions with human review.

All functions mutate an ``ImportJob`` (or ``SubmissionRecord``) in place and
are meant to run inside a repository ``mutate_*`` call, which makes each of
them one atomic read-modify-write.

A section always ends up in exactly one bucket: an active ``SectionMapping``
or an open ``UnmappedItem``. Putting a section into one bucket clears the
other one first.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from selfstudy_ingest.services.errors import RepositoryNotFoundError, ValidationError
from selfstudy_ingest.services.mapper import MappingSuggestion, low_confidence_reason
from selfstudy_ingest.services.records import (
    FIELD_TYPES,
    ImportJob,
    SectionMapping,
    SubmissionRecord,
    UnmappedItem,
    utcnow,
)

logger = logging.getLogger(__name__)

REVIEW_REQUEST_ACTIONS = ("assign", "discard")


@dataclass(slots=True)
class ApplyResult:
    applied: int = 0
    skipped: int = 0
    already_applied: int = 0


def apply_suggestion(job: ImportJob, suggestion: MappingSuggestion, threshold: float) -> str:
    """Route one suggestion to the mapped or unmapped bucket.

    Returns ``"mapped"``, ``"unmapped"`` or ``"kept"`` when a human decision
    already covers the section.
    """
    section_id = suggestion.section_id
    existing = job.mapping_for(section_id)
    if existing is not None and existing.provenance == "manual":
        return "kept"
    reviewed = job.unmapped_for(section_id)
    if reviewed is not None and reviewed.review_action != "pending":
        return "kept"

    if suggestion.has_match and suggestion.confidence >= threshold:
        _remove_unmapped(job, section_id)
        _replace_mapping(
            job,
            SectionMapping(
                extracted_section_id=section_id,
                standard_code=suggestion.standard_code,
                spec_code=suggestion.spec_code,
                field_type=suggestion.field_type,
                provenance="auto",
                mapped_at=utcnow(),
                confidence=suggestion.confidence,
            ),
        )
        return "mapped"

    reason = suggestion.reason
    if reason is None:
        reason = low_confidence_reason(suggestion.confidence)
    _remove_mapping(job, section_id)
    _replace_unmapped(job, UnmappedItem(extracted_section_id=section_id, reason=reason))
    return "unmapped"


def map_manually(
    job: ImportJob,
    section_id: str,
    standard_code: str,
    spec_code: str,
    field_type: str,
    actor: str | None,
) -> SectionMapping:
    if job.get_section(section_id) is None:
        raise RepositoryNotFoundError(f"section {section_id} not found in import {job.id}")
    standard_code = (standard_code or "").strip()
    spec_code = (spec_code or "").strip()
    if not standard_code or not spec_code:
        raise ValidationError("standardCode and specCode are required")
    if field_type not in FIELD_TYPES:
        raise ValidationError(f"fieldType must be one of: {', '.join(FIELD_TYPES)}")

    _remove_unmapped(job, section_id)
    mapping = SectionMapping(
        extracted_section_id=section_id,
        standard_code=standard_code,
        spec_code=spec_code,
        field_type=field_type,
        provenance="manual",
        mapped_at=utcnow(),
        mapped_by=actor,
    )
    _replace_mapping(job, mapping)
    return mapping


def review_unmapped(
    job: ImportJob,
    section_id: str,
    action: str,
    actor: str | None,
    standard_code: str | None = None,
    spec_code: str | None = None,
) -> UnmappedItem:
    if action not in REVIEW_REQUEST_ACTIONS:
        raise ValidationError("action must be one of: assign, discard")
    item = job.unmapped_for(section_id)
    if item is None:
        raise RepositoryNotFoundError(f"unmapped item for section {section_id} not found")

    if action == "assign":
        if not (standard_code or "").strip() or not (spec_code or "").strip():
            raise ValidationError("standardCode and specCode are required to assign a section")
        section = job.get_section(section_id)
        field_type = "narrative"
        if section is not None and section.section_type in {"matrix", "table"}:
            field_type = section.section_type
        _replace_mapping(
            job,
            SectionMapping(
                extracted_section_id=section_id,
                standard_code=standard_code.strip(),
                spec_code=spec_code.strip(),
                field_type=field_type,
                provenance="manual",
                mapped_at=utcnow(),
                mapped_by=actor,
            ),
        )
        item.review_action = "assigned"
    else:
        _remove_mapping(job, section_id)
        item.review_action = "discarded"
    item.reviewer = actor
    item.reviewed_at = utcnow()
    return item


def clear_automatic(job: ImportJob) -> None:
    """Drop machine output while keeping every human decision."""
    job.mappings = [mapping for mapping in job.mappings if mapping.provenance == "manual"]
    job.unmapped = [item for item in job.unmapped if item.review_action != "pending"]


def sweep_unaccounted(job: ImportJob, reason: str) -> int:
    swept = 0
    for section in job.sections:
        if job.mapping_for(section.id) is None and job.unmapped_for(section.id) is None:
            job.unmapped.append(UnmappedItem(extracted_section_id=section.id, reason=reason))
            swept += 1
    if swept:
        logger.info("sections swept to unmapped import_id=%s count=%s reason=%s", job.id, swept, reason)
    return swept


def applied_mapping_key(job_id: str, mapping: SectionMapping) -> str:
    return f"{job_id}:{mapping.extracted_section_id}:{mapping.standard_code}.{mapping.spec_code}"


def apply_to_submission(job: ImportJob, submission: SubmissionRecord) -> ApplyResult:
    result = ApplyResult()
    applied_keys = set(submission.applied_mapping_keys)
    for mapping in job.mappings:
        if mapping.field_type != "narrative":
            result.skipped += 1
            continue
        key = applied_mapping_key(job.id, mapping)
        if key in applied_keys:
            result.already_applied += 1
            continue
        section = job.get_section(mapping.extracted_section_id)
        if section is None:
            result.skipped += 1
            continue

        slot = submission.slot(mapping.standard_code, mapping.spec_code)
        slot.content = f"{slot.content}\n\n{section.content}" if slot.content else section.content
        slot.last_modified = utcnow()
        if job.id not in slot.linked_documents:
            slot.linked_documents.append(job.id)
        submission.applied_mapping_keys.append(key)
        applied_keys.add(key)
        result.applied += 1

    if job.id not in submission.import_ids:
        submission.import_ids.append(job.id)
    return result


def check_invariants(job: ImportJob) -> list[str]:
    """Return the ids of sections that break the one-bucket rule."""
    broken: list[str] = []
    for section in job.sections:
        mapped = job.mapping_for(section.id) is not None
        open_item = job.open_unmapped_for(section.id) is not None
        if mapped == open_item:
            broken.append(section.id)
    return broken


def _replace_mapping(job: ImportJob, mapping: SectionMapping) -> None:
    _remove_mapping(job, mapping.extracted_section_id)
    job.mappings.append(mapping)


def _remove_mapping(job: ImportJob, section_id: str) -> None:
    job.mappings = [mapping for mapping in job.mappings if mapping.extracted_section_id != section_id]


def _replace_unmapped(job: ImportJob, item: UnmappedItem) -> None:
    _remove_unmapped(job, item.extracted_section_id)
    job.unmapped.append(item)


def _remove_unmapped(job: ImportJob, section_id: str) -> None:
    job.unmapped = [item for item in job.unmapped if item.extracted_section_id != section_id]
