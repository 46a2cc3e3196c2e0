"""Keyword and regex library for standards detection.

Two kinds of signal are recognised:

* explicit references such as ``Standard 6``, ``Standard 6b`` or ``6.b``;
* domain keyword clusters, both at the standard level (``faculty``,
  ``credentials``) and at the specification level (``terminal degree`` -> 6.a).

The same library also scores tables and whole sections for their content
type (curriculum matrix, syllabus, CV, evaluation form).
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

EXPLICIT_CONFIDENCE = 0.95
NUMERIC_CONFIDENCE = 0.8
CLUSTER_CONFIDENCE = 0.6
STANDARD_KEYWORD_WEIGHT = 0.3
SPEC_KEYWORD_WEIGHT = 0.2
CURRICULUM_MATRIX_STANDARD = "11"

_EXPLICIT_RE = re.compile(r"Standard\s*(\d{1,2})([a-z])?\b", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"\b(\d{1,2})\.([a-z])\b")

# (pattern, standard code) pairs for domain phrases that imply a standard.
_CLUSTER_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"curriculum\s*matrix", re.IGNORECASE), CURRICULUM_MATRIX_STANDARD),
    (re.compile(r"field\s*(?:experience|placement)", re.IGNORECASE), "21"),
    (re.compile(r"faculty\s*credentials?", re.IGNORECASE), "6"),
    (re.compile(r"program\s*evaluation", re.IGNORECASE), "4"),
    (re.compile(r"cultural\s*competenc", re.IGNORECASE), "8"),
    (re.compile(r"admission|retention|dismissal", re.IGNORECASE), "5"),
)

TABLE_TYPE_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "curriculum_matrix": (
        re.compile(r"course", re.IGNORECASE),
        re.compile(r"standard", re.IGNORECASE),
        re.compile(r"\b[ITKS]\b"),
        re.compile(r"\b[LMH]\b"),
        re.compile(r"CHS\s*\d+", re.IGNORECASE),
    ),
    "grading_scale": (
        re.compile(r"grade", re.IGNORECASE),
        re.compile(r"percentage", re.IGNORECASE),
        re.compile(r"QPA|GPA", re.IGNORECASE),
        re.compile(r"\b[A-F][+-]?(?:\s|$)"),
    ),
    "schedule": (
        re.compile(r"week", re.IGNORECASE),
        re.compile(r"date", re.IGNORECASE),
        re.compile(r"topic", re.IGNORECASE),
        re.compile(r"assignment", re.IGNORECASE),
        re.compile(r"reading", re.IGNORECASE),
    ),
    "course_list": (
        re.compile(r"course", re.IGNORECASE),
        re.compile(r"credit", re.IGNORECASE),
        re.compile(r"semester", re.IGNORECASE),
        re.compile(r"prerequisite", re.IGNORECASE),
    ),
}

CONTENT_TYPE_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "syllabus": (
        re.compile(r"course\s*(?:description|objectives|outcomes)", re.IGNORECASE),
        re.compile(r"grading\s*(?:scale|policy)", re.IGNORECASE),
        re.compile(r"required\s*(?:text|reading)", re.IGNORECASE),
        re.compile(r"class\s*schedule", re.IGNORECASE),
        re.compile(r"instructor\s*information", re.IGNORECASE),
    ),
    "cv": (
        re.compile(r"education", re.IGNORECASE),
        re.compile(r"professional\s*experience", re.IGNORECASE),
        re.compile(r"publications", re.IGNORECASE),
        re.compile(r"curriculum\s*vitae", re.IGNORECASE),
        re.compile(r"employment\s*history", re.IGNORECASE),
    ),
    "form": (
        re.compile(r"evaluation", re.IGNORECASE),
        re.compile(r"rating\s*scale", re.IGNORECASE),
        re.compile(r"meets\s*expectations", re.IGNORECASE),
        re.compile(r"below\s*expectations", re.IGNORECASE),
        re.compile(r"exceeds\s*expectations", re.IGNORECASE),
    ),
    "matrix": (
        re.compile(r"curriculum\s*matrix", re.IGNORECASE),
        re.compile(r"course\s*mapping", re.IGNORECASE),
        re.compile(r"[ITKS]\s*[,/]\s*[LMH]", re.IGNORECASE),
    ),
}

_MATRIX_CELL_RE = re.compile(r"^[ITKS]+(?:\s*[,/]?\s*[ITKS])*\s*[,/]?\s*[LMH]?$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class TaxonomyKeywords:
    keywords: tuple[str, ...]
    spec_keywords: dict[str, tuple[str, ...]] = field(default_factory=dict)


STANDARD_KEYWORDS: dict[str, TaxonomyKeywords] = {
    "1": TaxonomyKeywords(
        ("institutional", "accredit", "program objective", "regionally accredited", "degree granting"),
        {
            "a": ("regionally accredited", "accrediting body"),
            "b": ("degree-granting", "degree granting", "unit"),
            "c": ("primary objective", "human services"),
        },
    ),
    "2": TaxonomyKeywords(
        ("philosophical", "philosophy", "mission", "goals", "values"),
        {
            "a": ("philosophical statement", "philosophy"),
            "b": ("program goals", "measurable"),
            "c": ("program mission", "institution mission"),
        },
    ),
    "3": TaxonomyKeywords(
        ("community assessment", "community needs", "labor market", "employment", "demand"),
        {
            "a": ("assessment process", "community assessment"),
            "b": ("needs assessment", "community needs"),
            "c": ("labor market", "employment"),
        },
    ),
    "4": TaxonomyKeywords(
        ("program evaluation", "assessment", "outcomes", "continuous improvement"),
        {
            "a": ("evaluation plan", "program outcomes"),
            "b": ("curriculum review", "continuous improvement"),
            "c": ("stakeholder feedback", "advisory"),
        },
    ),
    "5": TaxonomyKeywords(
        ("admission", "retention", "dismissal", "policies", "procedures", "students"),
        {
            "a": ("admission criteria", "admission requirements"),
            "b": ("retention", "academic standing"),
            "c": ("dismissal", "termination"),
        },
    ),
    "6": TaxonomyKeywords(
        ("faculty", "credentials", "qualifications", "degree", "experience"),
        {
            "a": ("master", "doctorate", "terminal degree"),
            "b": ("professional experience", "field experience"),
            "c": ("teaching experience", "instruction"),
        },
    ),
    "7": TaxonomyKeywords(
        ("personnel", "responsibilities", "evaluation", "job description", "faculty roles"),
        {
            "a": ("job descriptions", "responsibilities"),
            "b": ("faculty evaluation", "performance review"),
            "c": ("professional development", "training"),
        },
    ),
    "8": TaxonomyKeywords(
        ("cultural competence", "diversity", "multicultural", "inclusion"),
        {
            "a": ("cultural competence", "curriculum"),
            "b": ("diversity training", "cultural awareness"),
            "c": ("diverse populations", "underrepresented"),
        },
    ),
    "9": TaxonomyKeywords(
        ("program support", "resources", "budget", "facilities", "library"),
        {
            "a": ("budget", "financial resources"),
            "b": ("facilities", "physical resources"),
            "c": ("library", "learning resources"),
            "d": ("technology", "computing"),
        },
    ),
    "10": TaxonomyKeywords(
        ("transfer", "credits", "prior learning", "articulation"),
        {
            "a": ("transfer credits", "articulation"),
            "b": ("prior learning", "credit for experience"),
        },
    ),
    "11": TaxonomyKeywords(
        ("history", "historical", "human services history", "evolution"),
        {
            "a": ("historical roots", "history of profession"),
            "b": ("legislative history", "policy history"),
        },
    ),
    "12": TaxonomyKeywords(
        ("human systems", "development", "family", "group dynamics", "organizational"),
        {
            "a": ("human development", "lifespan"),
            "b": ("family dynamics", "family systems"),
            "c": ("group dynamics", "small group"),
            "d": ("organizational", "community systems"),
        },
    ),
    "13": TaxonomyKeywords(
        ("delivery systems", "service delivery", "agencies", "organizations"),
        {
            "a": ("range of services", "service delivery"),
            "b": ("agency structure", "organization"),
            "c": ("funding sources", "resources"),
        },
    ),
    "14": TaxonomyKeywords(
        ("information literacy", "research", "data", "inquiry"),
        {
            "a": ("research methods", "inquiry"),
            "b": ("information literacy", "resources"),
            "c": ("data analysis", "interpretation"),
        },
    ),
    "15": TaxonomyKeywords(
        ("planning", "evaluation", "program planning", "needs assessment"),
        {
            "a": ("needs assessment", "client needs"),
            "b": ("treatment planning", "service planning"),
            "c": ("program evaluation", "outcome measurement"),
        },
    ),
    "16": TaxonomyKeywords(
        ("intervention", "strategies", "skills", "techniques", "counseling"),
        {
            "a": ("interviewing", "intake"),
            "b": ("counseling strategies", "helping skills"),
            "c": ("case management", "coordination"),
            "d": ("crisis intervention", "emergency"),
        },
    ),
    "17": TaxonomyKeywords(
        ("communication", "interpersonal", "listening", "verbal", "nonverbal"),
        {
            "a": ("verbal communication", "oral"),
            "b": ("written communication", "documentation"),
            "c": ("interpersonal skills", "relationships"),
        },
    ),
    "18": TaxonomyKeywords(
        ("administrative", "management", "supervision", "leadership"),
        {
            "a": ("supervision", "staff"),
            "b": ("budgeting", "financial management"),
            "c": ("program management", "administration"),
        },
    ),
    "19": TaxonomyKeywords(
        ("values", "attitudes", "ethics", "client-related"),
        {
            "a": ("ethical standards", "professional ethics"),
            "b": ("client dignity", "respect"),
            "c": ("confidentiality", "privacy"),
        },
    ),
    "20": TaxonomyKeywords(
        ("self-development", "self-awareness", "professional development", "growth"),
        {
            "a": ("self-awareness", "personal values"),
            "b": ("professional growth", "continuing education"),
            "c": ("supervision", "feedback"),
        },
    ),
    "21": TaxonomyKeywords(
        ("field experience", "practicum", "internship", "field placement"),
        {
            "a": ("field hours", "practicum hours"),
            "b": ("supervision", "field supervisor"),
            "c": ("learning objectives", "competencies"),
            "d": ("site selection", "placement sites"),
            "e": ("evaluation", "assessment"),
        },
    ),
}


@dataclass(frozen=True, slots=True)
class StandardReference:
    standard_code: str
    spec_code: str | None
    matched_text: str
    confidence: float
    kind: str

    @property
    def is_explicit(self) -> bool:
        return self.kind in {"explicit", "numeric"}


@dataclass(slots=True)
class KeywordHit:
    standard_code: str
    score: float
    spec_code: str | None
    patterns: list[str]


class PatternMatcher:
    def __init__(self, taxonomy: dict[str, TaxonomyKeywords] | None = None) -> None:
        self.taxonomy = taxonomy if taxonomy is not None else STANDARD_KEYWORDS

    def detect_references(self, text: str) -> list[StandardReference]:
        """Return every standard reference in ``text``, explicit ones first."""
        references: list[StandardReference] = []
        for match in _EXPLICIT_RE.finditer(text):
            references.append(
                StandardReference(
                    standard_code=str(int(match.group(1))),
                    spec_code=match.group(2).lower() if match.group(2) else None,
                    matched_text=match.group(0),
                    confidence=EXPLICIT_CONFIDENCE,
                    kind="explicit",
                )
            )
        for match in _NUMERIC_RE.finditer(text):
            references.append(
                StandardReference(
                    standard_code=str(int(match.group(1))),
                    spec_code=match.group(2).lower(),
                    matched_text=match.group(0),
                    confidence=NUMERIC_CONFIDENCE,
                    kind="numeric",
                )
            )
        for pattern, standard_code in _CLUSTER_PATTERNS:
            for match in pattern.finditer(text):
                references.append(
                    StandardReference(
                        standard_code=standard_code,
                        spec_code=None,
                        matched_text=match.group(0),
                        confidence=CLUSTER_CONFIDENCE,
                        kind="cluster",
                    )
                )
        return references

    def keyword_hits(self, text: str) -> list[KeywordHit]:
        content = text.lower()
        hits: list[KeywordHit] = []
        for standard_code, config in self.taxonomy.items():
            score = 0.0
            spec_code: str | None = None
            patterns: list[str] = []
            for keyword in config.keywords:
                if keyword in content:
                    score += STANDARD_KEYWORD_WEIGHT
                    patterns.append(keyword)
            for candidate_spec, keywords in config.spec_keywords.items():
                for keyword in keywords:
                    if keyword in content:
                        score += SPEC_KEYWORD_WEIGHT
                        patterns.append(f"{candidate_spec}: {keyword}")
                        spec_code = candidate_spec
            if score > 0:
                hits.append(KeywordHit(standard_code, round(score, 4), spec_code, patterns))
        return hits

    def detect_table_type(self, headers: Iterable[str], rows: Iterable[Iterable[str]]) -> str:
        cells = list(headers)
        for row in rows:
            cells.extend(row)
        all_text = " ".join(cells)
        for table_type, patterns in TABLE_TYPE_PATTERNS.items():
            if _count_hits(patterns, all_text) >= 2:
                return table_type
        return "unknown"

    def detect_content_type(self, text: str) -> str | None:
        for content_type, patterns in CONTENT_TYPE_PATTERNS.items():
            if _count_hits(patterns, text) >= 2:
                return content_type
        return None

    @staticmethod
    def is_matrix_cell(value: str) -> bool:
        return bool(_MATRIX_CELL_RE.match(value.strip()))


def _count_hits(patterns: Iterable[re.Pattern[str]], text: str) -> int:
    return sum(1 for pattern in patterns if pattern.search(text))
