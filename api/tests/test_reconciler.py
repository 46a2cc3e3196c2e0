from __future__ import annotations

import pytest

from selfstudy_ingest.services import reconciler
from selfstudy_ingest.services.errors import RepositoryNotFoundError, ValidationError
from selfstudy_ingest.services.mapper import MappingSuggestion
from selfstudy_ingest.services.records import ExtractedSection, ImportJob, SubmissionRecord


def _job(*contents: str) -> ImportJob:
    job = ImportJob(
        id="import-1",
        submission_id="submission-1",
        original_filename="narrative.docx",
        file_type="docx",
        uploaded_by="user-1",
    )
    for index, content in enumerate(contents, start=1):
        job.sections.append(
            ExtractedSection(
                id=f"s{index}",
                page_number=1,
                start_offset=0,
                end_offset=len(content),
                section_type="narrative",
                content=content,
            )
        )
    return job


def _suggestion(section_id: str, confidence: float, standard: str | None = "4") -> MappingSuggestion:
    return MappingSuggestion(
        section_id=section_id,
        standard_code=standard,
        spec_code="a" if standard else None,
        confidence=confidence,
    )


def test_local_threshold_boundary() -> None:
    job = _job("first", "second")

    assert reconciler.apply_suggestion(job, _suggestion("s1", 0.6), 0.6) == "mapped"
    assert reconciler.apply_suggestion(job, _suggestion("s2", 0.59), 0.6) == "unmapped"

    assert job.mapping_for("s1").provenance == "auto"
    assert job.mapping_for("s1").confidence == pytest.approx(0.6)
    assert job.mapping_for("s2") is None
    assert job.unmapped_for("s2").reason == "Low confidence match (59%)"
    assert reconciler.check_invariants(job) == []


def test_suggestion_never_overwrites_manual_mapping() -> None:
    job = _job("first")
    reconciler.map_manually(job, "s1", "7", "b", "narrative", "reviewer-1")

    assert reconciler.apply_suggestion(job, _suggestion("s1", 0.9, standard="2"), 0.6) == "kept"
    assert reconciler.apply_suggestion(job, _suggestion("s1", 0.1), 0.6) == "kept"

    mapping = job.mapping_for("s1")
    assert (mapping.standard_code, mapping.spec_code, mapping.provenance) == ("7", "b", "manual")
    assert job.unmapped_for("s1") is None


def test_map_manually_clears_unmapped_and_validates_input() -> None:
    job = _job("first")
    reconciler.apply_suggestion(job, _suggestion("s1", 0.3), 0.6)
    assert job.unmapped_for("s1") is not None

    mapping = reconciler.map_manually(job, "s1", "6", "a", "evidence", "reviewer-1")

    assert mapping.mapped_by == "reviewer-1"
    assert job.unmapped_for("s1") is None
    assert len(job.mappings) == 1

    with pytest.raises(ValidationError):
        reconciler.map_manually(job, "s1", "6", "a", "spreadsheet", "reviewer-1")
    with pytest.raises(ValidationError):
        reconciler.map_manually(job, "s1", "", "a", "narrative", "reviewer-1")
    with pytest.raises(RepositoryNotFoundError):
        reconciler.map_manually(job, "missing", "6", "a", "narrative", "reviewer-1")


def test_review_assign_creates_manual_mapping_and_closes_item() -> None:
    job = _job("first")
    reconciler.apply_suggestion(job, _suggestion("s1", 0.0, standard=None), 0.6)

    item = reconciler.review_unmapped(job, "s1", "assign", "reviewer-1", standard_code="9", spec_code="c")

    assert item.review_action == "assigned"
    assert item.reviewer == "reviewer-1"
    assert item.reviewed_at is not None
    assert job.mapping_for("s1").provenance == "manual"
    assert job.pending_unmapped() == []
    assert job.open_unmapped_for("s1") is None
    assert reconciler.check_invariants(job) == []


def test_review_discard_and_errors() -> None:
    job = _job("first")
    reconciler.apply_suggestion(job, _suggestion("s1", 0.2), 0.6)

    with pytest.raises(ValidationError):
        reconciler.review_unmapped(job, "s1", "assign", "reviewer-1")
    with pytest.raises(ValidationError):
        reconciler.review_unmapped(job, "s1", "archive", "reviewer-1")
    with pytest.raises(RepositoryNotFoundError):
        reconciler.review_unmapped(job, "unknown", "discard", "reviewer-1")

    item = reconciler.review_unmapped(job, "s1", "discard", "reviewer-1")

    assert item.review_action == "discarded"
    assert job.mapping_for("s1") is None
    assert reconciler.check_invariants(job) == []


def test_clear_automatic_keeps_human_decisions() -> None:
    job = _job("first", "second", "third", "fourth")
    reconciler.apply_suggestion(job, _suggestion("s1", 0.9), 0.6)
    reconciler.apply_suggestion(job, _suggestion("s2", 0.1), 0.6)
    reconciler.map_manually(job, "s3", "2", "b", "narrative", "reviewer-1")
    reconciler.apply_suggestion(job, _suggestion("s4", 0.1), 0.6)
    reconciler.review_unmapped(job, "s4", "discard", "reviewer-1")

    reconciler.clear_automatic(job)

    assert [mapping.extracted_section_id for mapping in job.mappings] == ["s3"]
    assert [item.extracted_section_id for item in job.unmapped] == ["s4"]


def test_sweep_routes_only_unaccounted_sections() -> None:
    job = _job("first", "second", "third")
    reconciler.apply_suggestion(job, _suggestion("s1", 0.9), 0.6)
    reconciler.apply_suggestion(job, _suggestion("s2", 0.1), 0.6)

    swept = reconciler.sweep_unaccounted(job, "No matching standard pattern found")

    assert swept == 1
    assert job.unmapped_for("s3").reason == "No matching standard pattern found"
    assert reconciler.check_invariants(job) == []


def test_apply_to_submission_is_idempotent() -> None:
    job = _job("Our mission statement.", "Curriculum matrix table", "Faculty roster.")
    reconciler.apply_suggestion(job, _suggestion("s1", 0.9, standard="2"), 0.6)
    reconciler.map_manually(job, "s2", "11", "matrix", "matrix", "reviewer-1")
    reconciler.map_manually(job, "s3", "2", "a", "narrative", "reviewer-1")
    submission = SubmissionRecord(id="submission-1")
    submission.slot("2", "a").content = "Existing narrative."

    first = reconciler.apply_to_submission(job, submission)
    content_after_first = submission.narratives["2"]["a"].content
    second = reconciler.apply_to_submission(job, submission)

    assert (first.applied, first.skipped, first.already_applied) == (2, 1, 0)
    assert (second.applied, second.skipped, second.already_applied) == (0, 1, 2)
    assert content_after_first == "Existing narrative.\n\nOur mission statement.\n\nFaculty roster."
    assert submission.narratives["2"]["a"].content == content_after_first
    assert submission.narratives["2"]["a"].linked_documents == ["import-1"]
    assert submission.import_ids == ["import-1"]
    assert "11" not in submission.narratives


def test_remapped_section_applies_to_new_slot() -> None:
    job = _job("Program goals are measurable.")
    reconciler.map_manually(job, "s1", "2", "b", "narrative", "reviewer-1")
    submission = SubmissionRecord(id="submission-1")
    reconciler.apply_to_submission(job, submission)

    reconciler.map_manually(job, "s1", "4", "a", "narrative", "reviewer-1")
    result = reconciler.apply_to_submission(job, submission)

    assert result.applied == 1
    assert submission.narratives["4"]["a"].content == "Program goals are measurable."
    assert submission.narratives["2"]["b"].content == "Program goals are measurable."
