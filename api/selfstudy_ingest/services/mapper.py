from __future__ import annotations

import logging
from dataclasses import dataclass, field

from selfstudy_ingest.services.patterns import CURRICULUM_MATRIX_STANDARD, PatternMatcher
from selfstudy_ingest.services.records import ExtractedSection, ExtractedTable

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.95
MIN_SUGGESTION_SCORE = 0.2
MAX_ALTERNATIVES = 2
DEFAULT_SPEC_CODE = "a"

MATRIX_TABLE_CONFIDENCE = 0.9
SYLLABUS_TABLE_CONFIDENCE = 0.85

NO_PATTERN_REASON = "No pattern found"
TABLE_UNMAPPED_REASON = "Table could not be auto-mapped"

_FIELD_TYPE_BY_SECTION = {"matrix": "matrix", "table": "table"}


@dataclass(frozen=True, slots=True)
class AlternativeSuggestion:
    standard_code: str
    spec_code: str
    confidence: float


@dataclass(slots=True)
class MappingSuggestion:
    section_id: str
    standard_code: str | None
    spec_code: str | None
    confidence: float
    field_type: str = "narrative"
    matched_patterns: list[str] = field(default_factory=list)
    alternatives: list[AlternativeSuggestion] = field(default_factory=list)
    reason: str | None = None

    @property
    def has_match(self) -> bool:
        return self.standard_code is not None and self.spec_code is not None


@dataclass(slots=True)
class _Candidate:
    standard_code: str
    order: int
    score: float = 0.0
    spec_code: str | None = None
    explicit: bool = False
    patterns: list[str] = field(default_factory=list)


class LocalSectionMapper:
    """Scores sections against the standards taxonomy without leaving the process."""

    def __init__(self, matcher: PatternMatcher | None = None) -> None:
        self.matcher = matcher or PatternMatcher()

    def map_section(self, section: ExtractedSection) -> MappingSuggestion:
        candidates: dict[str, _Candidate] = {}

        def candidate(standard_code: str) -> _Candidate:
            if standard_code not in candidates:
                candidates[standard_code] = _Candidate(standard_code=standard_code, order=len(candidates))
            return candidates[standard_code]

        for reference in self.matcher.detect_references(section.content):
            item = candidate(reference.standard_code)
            item.score += reference.confidence
            item.patterns.append(reference.matched_text)
            if reference.is_explicit:
                item.explicit = True
                if reference.spec_code and item.spec_code is None:
                    item.spec_code = reference.spec_code

        for hit in self.matcher.keyword_hits(section.content):
            item = candidate(hit.standard_code)
            item.score += hit.score
            item.patterns.extend(hit.patterns)
            if hit.spec_code and item.spec_code is None:
                item.spec_code = hit.spec_code

        field_type = _FIELD_TYPE_BY_SECTION.get(section.section_type, "narrative")
        ranked = sorted(
            candidates.values(),
            key=lambda item: (-min(item.score, MAX_CONFIDENCE), not item.explicit, item.order),
        )
        if not ranked or ranked[0].score < MIN_SUGGESTION_SCORE:
            return MappingSuggestion(
                section_id=section.id,
                standard_code=None,
                spec_code=None,
                confidence=round(min(ranked[0].score, MAX_CONFIDENCE), 4) if ranked else 0.0,
                field_type=field_type,
                reason=NO_PATTERN_REASON,
            )

        best, runners_up = ranked[0], ranked[1:]
        alternatives = [
            AlternativeSuggestion(
                standard_code=item.standard_code,
                spec_code=item.spec_code or DEFAULT_SPEC_CODE,
                confidence=round(min(item.score, MAX_CONFIDENCE), 4),
            )
            for item in runners_up
            if item.score > MIN_SUGGESTION_SCORE
        ][:MAX_ALTERNATIVES]
        return MappingSuggestion(
            section_id=section.id,
            standard_code=best.standard_code,
            spec_code=best.spec_code or DEFAULT_SPEC_CODE,
            confidence=round(min(best.score, MAX_CONFIDENCE), 4),
            field_type=field_type,
            matched_patterns=best.patterns,
            alternatives=alternatives,
        )

    def map_table(self, table: ExtractedTable) -> MappingSuggestion:
        if table.table_type == "curriculum_matrix":
            return MappingSuggestion(
                section_id=table.id,
                standard_code=CURRICULUM_MATRIX_STANDARD,
                spec_code="matrix",
                confidence=MATRIX_TABLE_CONFIDENCE,
                field_type="matrix",
            )
        if table.table_type == "grading_scale":
            return MappingSuggestion(
                section_id=table.id,
                standard_code="syllabus",
                spec_code="grading",
                confidence=SYLLABUS_TABLE_CONFIDENCE,
                field_type="table",
            )
        if table.table_type == "schedule":
            return MappingSuggestion(
                section_id=table.id,
                standard_code="syllabus",
                spec_code="schedule",
                confidence=SYLLABUS_TABLE_CONFIDENCE,
                field_type="table",
            )
        return MappingSuggestion(
            section_id=table.id,
            standard_code=None,
            spec_code=None,
            confidence=0.0,
            field_type="table",
            reason=TABLE_UNMAPPED_REASON,
        )


def low_confidence_reason(confidence: float) -> str:
    return f"Low confidence match ({round(confidence * 100)}%)"
