"""Office document parsing.

Turns PDF, DOCX and PPTX bytes into raw text, heading-bounded sections,
tables and a heading-tagged HTML rendering. The HTML is only used to chunk
a document for the external classifier; sections and tables are the record
of truth.

Every format is first reduced to a stream of ``_Block`` items (a paragraph
of text, a table row or a page break). Everything after that point is
format independent.
"""
from __future__ import annotations

import html
import io
import logging
import math
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePath
from uuid import uuid4
from xml.etree import ElementTree as ET

from docx import Document as open_docx
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table as DocxTable
from docx.text.paragraph import Paragraph as DocxParagraph
from pypdf import PdfReader

from selfstudy_ingest.services.errors import DocumentParseError, UnsupportedFormatError
from selfstudy_ingest.services.patterns import PatternMatcher
from selfstudy_ingest.services.records import (
    FILE_TYPES,
    DocumentMetadata,
    ExtractedSection,
    ExtractedTable,
)

logger = logging.getLogger(__name__)

PAGE_BREAK = "\f"
CHARS_PER_PAGE = 3000

_DRAWING_NS = "{http://schemas.openxmlformats.org/drawingml/2006/main}"
_CORE_NS = {
    "dc": "http://purl.org/dc/elements/1.1/",
    "dcterms": "http://purl.org/dc/terms/",
}
_SLIDE_RE = re.compile(r"^ppt/slides/slide(\d+)\.xml$")

_PAGE_MARKER_RE = re.compile(r"^(?:page\s+(\d+)(?:\s+of\s+\d+)?|(\d{1,3}))$", re.IGNORECASE)
_HEADING_RE = re.compile(r"^(?:Standard\s*\d|Section\s+[IVX\d]+|Part\s+[IVX\d]+|Chapter\s*\d)", re.IGNORECASE)
_NUMBERED_HEADING_RE = re.compile(r"^\d+(?:\.\d+)*\s+[A-Z]")
_ROMAN_HEADING_RE = re.compile(r"^[IVX]+[.)]\s+[A-Z]")
_BULLET_RE = re.compile(r"^[•‣◦⁃∙\-\*]\s")
_ORDERED_ITEM_RE = re.compile(r"^\d+[.)]\s")

_H1_EXPLICIT_RE = re.compile(r"^(?:STANDARD|PART|CHAPTER|SECTION|Part|Chapter|Section)\s+[IVXLCDM\d]+")
_H1_CAPS_RE = re.compile(r"^[A-Z][A-Z\s\d:,\-]{10,}$")
_H2_STANDARD_RE = re.compile(r"^Standard\s+\d+", re.IGNORECASE)
_H2_NUMBERED_RE = re.compile(r"^\d+(?:\.\d+)?\s+[A-Z]")
_H3_LETTERED_RE = re.compile(r"^(?:[a-zA-Z][.)]\s+|\([a-zA-Z]\)\s+)")
_H3_SPEC_RE = re.compile(r"^Specification\s+[a-zA-Z]", re.IGNORECASE)
_H4_ROMAN_RE = re.compile(r"^[ivxIVX]+[.)]\s+")
_TITLE_LINE_RE = re.compile(r"^[A-Z][a-zA-Z\s]+:?\s*$")
_TITLE_KEYWORD_RE = re.compile(
    r"^(?:Introduction|Overview|Background|Purpose|Objective|Mission|Vision|Goal|Summary|Conclusion"
    r"|Recommendation|Discussion|Result|Method|Finding|Analysis|Assessment|Evaluation|Review)",
    re.IGNORECASE,
)

_SECTION_TYPE_BY_CONTENT = {
    "syllabus": "syllabus",
    "cv": "cv",
    "form": "form",
    "matrix": "matrix",
}


@dataclass(slots=True)
class ParsedDocument:
    metadata: DocumentMetadata
    sections: list[ExtractedSection]
    tables: list[ExtractedTable]
    raw_text: str
    html_content: str


@dataclass(frozen=True, slots=True)
class MatrixCell:
    types: tuple[str, ...]
    depth: str | None


@dataclass(slots=True)
class _Block:
    text: str = ""
    style_level: int | None = None
    cells: tuple[str, ...] | None = None
    page_break: bool = False


@dataclass(slots=True)
class _Extraction:
    blocks: list[_Block]
    metadata: DocumentMetadata
    styled_headings: bool = False


@dataclass(slots=True)
class _Line:
    text: str
    page_number: int
    offset: int
    style_level: int | None = None
    cells: tuple[str, ...] | None = None

    @property
    def end(self) -> int:
        return self.offset + len(self.text)

    @property
    def is_tabular(self) -> bool:
        return self.cells is not None or self.text.count("\t") >= 2

    def split_cells(self) -> list[str]:
        if self.cells is not None:
            return list(self.cells)
        return [cell.strip() for cell in self.text.split("\t")]


@dataclass(slots=True)
class _SectionDraft:
    page_number: int
    start_offset: int
    end_offset: int
    heading: str | None = None
    lines: list[str] = field(default_factory=list)


class DocumentParser:
    def __init__(self, matcher: PatternMatcher | None = None) -> None:
        self.matcher = matcher or PatternMatcher()

    def parse(self, data: bytes, filename: str) -> ParsedDocument:
        extension = file_extension(filename)
        if extension not in FILE_TYPES:
            raise UnsupportedFormatError(f"unsupported file type: {extension or 'none'}")
        if not data:
            raise DocumentParseError("document is empty")

        if extension == "pdf":
            extraction = _extract_pdf(data)
        elif extension == "docx":
            extraction = _extract_docx(data)
        else:
            extraction = _extract_pptx(data)

        raw_text, lines = _assemble_lines(extraction.blocks)
        tables = self.detect_tables(lines)
        sections = self.extract_sections(lines)
        html_content = render_html(lines, use_style_levels=extraction.styled_headings)

        metadata = extraction.metadata
        if extension == "docx":
            page_breaks = sum(1 for block in extraction.blocks if block.page_break)
            metadata.page_count = max(page_breaks + 1, math.ceil(len(raw_text) / CHARS_PER_PAGE), 1)
        metadata.page_count = max(1, metadata.page_count)

        logger.info(
            "document parsed filename=%s type=%s pages=%s sections=%s tables=%s",
            filename,
            extension,
            metadata.page_count,
            len(sections),
            len(tables),
        )
        return ParsedDocument(
            metadata=metadata,
            sections=sections,
            tables=tables,
            raw_text=raw_text,
            html_content=html_content,
        )

    def extract_sections(self, lines: list[_Line]) -> list[ExtractedSection]:
        drafts: list[_SectionDraft] = []
        current: _SectionDraft | None = None
        tabulated = {id(line) for run in _tabular_runs(lines) for line in run}
        for line in lines:
            text = line.text.strip()
            if not text or id(line) in tabulated:
                continue
            if classify_line(text, style_level=line.style_level) == "heading":
                current = _SectionDraft(
                    page_number=line.page_number,
                    start_offset=line.offset,
                    end_offset=line.end,
                    heading=text,
                    lines=[text],
                )
                drafts.append(current)
                continue
            if current is None:
                current = _SectionDraft(page_number=line.page_number, start_offset=line.offset, end_offset=line.end)
                drafts.append(current)
            current.lines.append(text)
            current.end_offset = line.end

        return [self._finish_section(draft) for draft in drafts if draft.lines]

    def detect_tables(self, lines: list[_Line]) -> list[ExtractedTable]:
        return [
            self._build_table([line.split_cells() for line in run], page_number=run[0].page_number)
            for run in _tabular_runs(lines)
        ]

    def _build_table(self, rows: list[list[str]], *, page_number: int) -> ExtractedTable:
        headers, data_rows = rows[0], rows[1:]
        return ExtractedTable(
            id=str(uuid4()),
            page_number=page_number,
            headers=headers,
            rows=data_rows,
            table_type=self.matcher.detect_table_type(headers, data_rows),
        )

    def _finish_section(self, draft: _SectionDraft) -> ExtractedSection:
        content = "\n".join(draft.lines)
        content_type = self.matcher.detect_content_type(content)
        references = self.matcher.detect_references(content)
        confidence = 0.0
        suggested: str | None = None
        if references:
            strongest = max(references, key=lambda reference: reference.confidence)
            confidence = strongest.confidence
            suggested = strongest.standard_code
            if strongest.spec_code:
                suggested = f"{strongest.standard_code}.{strongest.spec_code}"
        return ExtractedSection(
            id=str(uuid4()),
            page_number=draft.page_number,
            start_offset=draft.start_offset,
            end_offset=draft.end_offset,
            section_type=_SECTION_TYPE_BY_CONTENT.get(content_type or "", "narrative"),
            content=content,
            confidence=confidence,
            suggested_standard=suggested,
            heading=draft.heading,
        )


def file_extension(filename: str) -> str:
    return PurePath(filename or "").suffix.lower().lstrip(".")


def classify_line(text: str, *, style_level: int | None = None) -> str:
    """Classify one line as ``heading``, ``list``, ``table`` or ``paragraph``."""
    if text.count("\t") >= 2:
        return "table"
    if style_level is not None:
        return "heading"
    if _HEADING_RE.match(text):
        return "heading"
    if _BULLET_RE.match(text) or _ORDERED_ITEM_RE.match(text):
        return "list"
    if len(text) < 80 and (_NUMBERED_HEADING_RE.match(text) or _ROMAN_HEADING_RE.match(text)):
        return "heading"
    if _is_caps_heading(text):
        return "heading"
    return "paragraph"


def detect_heading_level(line: str) -> int:
    """Return the HTML heading level (1-4) for a line, or 0 when it is body text."""
    if _H1_EXPLICIT_RE.match(line):
        return 1
    if _H1_CAPS_RE.match(line) and len(line) < 100:
        return 1
    if _H2_STANDARD_RE.match(line):
        return 2
    if _H2_NUMBERED_RE.match(line) and len(line) < 80:
        return 2
    if _H3_LETTERED_RE.match(line) or _H3_SPEC_RE.match(line):
        return 3
    if _H4_ROMAN_RE.match(line):
        return 4
    if len(line) < 60 and _TITLE_LINE_RE.match(line) and _TITLE_KEYWORD_RE.match(line):
        return 2
    return 0


def render_html(lines: list[_Line], *, use_style_levels: bool = False) -> str:
    parts: list[str] = []
    paragraph: list[str] = []
    list_items: list[str] = []
    table_rows: list[list[str]] = []

    def flush_paragraph() -> None:
        if paragraph:
            parts.append(f"<p>{html.escape(' '.join(paragraph))}</p>")
            paragraph.clear()

    def flush_list() -> None:
        if list_items:
            parts.append("<ul>\n" + "\n".join(f"<li>{html.escape(item)}</li>" for item in list_items) + "\n</ul>")
            list_items.clear()

    def flush_table() -> None:
        if table_rows:
            rendered = "".join(
                "<tr>" + "".join(f"<td>{html.escape(cell)}</td>" for cell in row) + "</tr>" for row in table_rows
            )
            parts.append(f"<table>{rendered}</table>")
            table_rows.clear()

    def flush_all() -> None:
        flush_paragraph()
        flush_list()
        flush_table()

    for line in lines:
        text = line.text.strip()
        if not text:
            flush_all()
            continue
        if line.is_tabular:
            flush_paragraph()
            flush_list()
            table_rows.append(line.split_cells())
            continue
        flush_table()
        if use_style_levels:
            level = min(line.style_level, 4) if line.style_level else 0
        else:
            level = detect_heading_level(text)
        if level:
            flush_paragraph()
            flush_list()
            parts.append(f"<h{level}>{html.escape(text)}</h{level}>")
        elif _BULLET_RE.match(text) or _ORDERED_ITEM_RE.match(text):
            flush_paragraph()
            item = _BULLET_RE.sub("", text, count=1)
            list_items.append(_ORDERED_ITEM_RE.sub("", item, count=1))
        else:
            flush_list()
            paragraph.append(text)
    flush_all()
    return "\n".join(parts)


def table_as_section(table: ExtractedTable) -> ExtractedSection:
    """Represent a table as a section sharing the table id, for mapping purposes."""
    content = "\n".join("\t".join(row) for row in [table.headers, *table.rows])
    is_matrix = table.table_type == "curriculum_matrix"
    return ExtractedSection(
        id=table.id,
        page_number=table.page_number,
        start_offset=0,
        end_offset=len(content),
        section_type="matrix" if is_matrix else "table",
        content=content,
        confidence=0.7,
        suggested_standard="11.matrix" if is_matrix else None,
        origin="table",
    )


def is_curriculum_matrix(table: ExtractedTable, matcher: PatternMatcher | None = None) -> bool:
    matcher = matcher or PatternMatcher()
    if table.table_type == "curriculum_matrix":
        return True
    if any(re.search(r"CHS|course", header, re.IGNORECASE) for header in table.headers):
        return True
    return any(matcher.is_matrix_cell(cell) for row in table.rows for cell in row if cell.strip())


def parse_matrix_cell(value: str) -> MatrixCell:
    """Split a matrix cell such as ``"I,T/H"`` into coverage types and depth."""
    cleaned = re.sub(r"[^ITKSLMH ,/]", "", value.upper())
    types = tuple(kind for kind in ("I", "T", "K", "S") if kind in cleaned)
    depth = next((level for level in ("H", "M", "L") if level in cleaned), None)
    return MatrixCell(types=types, depth=depth)


def _is_caps_heading(text: str) -> bool:
    letters = [char for char in text if char.isalpha()]
    if len(letters) < 3 or len(text) > 80:
        return False
    return text.upper() == text and not text.endswith(".")


def _assemble_lines(blocks: list[_Block]) -> tuple[str, list[_Line]]:
    raw_parts: list[str] = []
    lines: list[_Line] = []
    page = 1
    offset = 0
    for block in blocks:
        if block.page_break:
            raw_parts.append(PAGE_BREAK)
            offset += len(PAGE_BREAK)
            page += 1
            continue
        raw_lines = block.text.split("\n")
        last = len(raw_lines) - 1
        for index, raw_line in enumerate(raw_lines):
            marker = None
            if block.cells is None:
                marker = _page_marker(raw_line, at_edge=last > 0 and index in (0, last))
            if marker is not None:
                page = marker
            else:
                lines.append(
                    _Line(
                        text=raw_line,
                        page_number=page,
                        offset=offset,
                        style_level=block.style_level,
                        cells=block.cells,
                    )
                )
            raw_parts.append(raw_line + "\n")
            offset += len(raw_line) + 1
    return "".join(raw_parts), lines


def _page_marker(text: str, *, at_edge: bool) -> int | None:
    """Page number announced by a marker line.

    ``Page N`` counts anywhere; a bare number only at the top or bottom of a
    multi-line page block, where running headers and footers sit.
    """
    marker = _PAGE_MARKER_RE.match(text.strip())
    if marker is None:
        return None
    if marker.group(1) is not None:
        return max(1, int(marker.group(1)))
    if not at_edge:
        return None
    return max(1, int(marker.group(2)))


def _tabular_runs(lines: list[_Line]) -> list[list[_Line]]:
    """Contiguous runs of two or more tabular lines; native rows and tab-delimited text never share a run."""
    runs: list[list[_Line]] = []
    run: list[_Line] = []
    for line in [*lines, None]:
        if line is not None and line.is_tabular:
            if not run or (run[-1].cells is None) == (line.cells is None):
                run.append(line)
                continue
        if len(run) >= 2:
            runs.append(run)
        run = [line] if line is not None and line.is_tabular else []
    return runs


def _extract_pdf(data: bytes) -> _Extraction:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted and not reader.decrypt(""):
            raise DocumentParseError("PDF is encrypted")
        pages = list(reader.pages)
    except DocumentParseError:
        raise
    except Exception as exc:
        raise DocumentParseError(f"unreadable PDF: {exc}") from exc

    blocks: list[_Block] = []
    for page_number, page in enumerate(pages, start=1):
        if page_number > 1:
            blocks.append(_Block(page_break=True))
        try:
            text = page.extract_text() or ""
        except Exception as exc:  # pragma: no cover - depends on document
            logger.warning("pdf page text extraction failed page=%s error=%s", page_number, exc)
            text = ""
        blocks.append(_Block(text=text))

    metadata = DocumentMetadata(page_count=max(1, len(pages)))
    info = reader.metadata
    if info is not None:
        metadata.title = _clean_text(info.title)
        metadata.author = _clean_text(info.author)
        try:
            metadata.created = info.creation_date
        except ValueError:
            metadata.created = None
    return _Extraction(blocks=blocks, metadata=metadata)


def _extract_docx(data: bytes) -> _Extraction:
    try:
        document = open_docx(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise DocumentParseError(f"unreadable DOCX: {exc}") from exc

    blocks: list[_Block] = []
    styled_headings = False
    for child in document.element.body.iterchildren():
        tag = child.tag.rsplit("}", 1)[-1]
        if tag == "p":
            paragraph = DocxParagraph(child, document)
            level = _docx_heading_level(paragraph)
            styled_headings = styled_headings or level is not None
            text = paragraph.text.strip()
            if text:
                blocks.append(_Block(text=text, style_level=level))
                # tab-delimited rows stay adjacent so they read as one table
                if text.count("\t") < 2:
                    blocks.append(_Block())
            if paragraph._p.xpath('.//w:br[@w:type="page"]'):
                blocks.append(_Block(page_break=True))
        elif tag == "tbl":
            rows = [
                [" ".join(cell.text.split()) for cell in row.cells]
                for row in DocxTable(child, document).rows
            ]
            rows = [row for row in rows if any(row)]
            if not rows:
                continue
            for row in rows:
                blocks.append(_Block(text="\t".join(row), cells=tuple(row)))
            blocks.append(_Block())

    properties = document.core_properties
    metadata = DocumentMetadata(
        title=_clean_text(properties.title),
        author=_clean_text(properties.author),
        created=properties.created,
    )
    return _Extraction(
        blocks=blocks,
        metadata=metadata,
        styled_headings=styled_headings,
    )


def _docx_heading_level(paragraph: DocxParagraph) -> int | None:
    style = paragraph.style
    name = (style.name if style is not None else "") or ""
    if name == "Title":
        return 1
    if name == "Subtitle":
        return 2
    match = re.match(r"^Heading\s+(\d)$", name)
    if match:
        return min(int(match.group(1)), 4)
    return None


def _extract_pptx(data: bytes) -> _Extraction:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            slide_paths = sorted(
                (name for name in archive.namelist() if _SLIDE_RE.match(name)),
                key=lambda name: int(_SLIDE_RE.match(name).group(1)),
            )
            slides = [archive.read(name) for name in slide_paths]
            core_xml = archive.read("docProps/core.xml") if "docProps/core.xml" in archive.namelist() else None
    except zipfile.BadZipFile as exc:
        raise DocumentParseError("unreadable PPTX: invalid ZIP container") from exc

    blocks: list[_Block] = []
    for index, payload in enumerate(slides, start=1):
        if index > 1:
            blocks.append(_Block(page_break=True))
        try:
            root = ET.fromstring(payload)
        except ET.ParseError as exc:
            raise DocumentParseError(f"unreadable PPTX slide {index}: {exc}") from exc
        for paragraph in root.iter(f"{_DRAWING_NS}p"):
            text = "".join(node.text or "" for node in paragraph.iter(f"{_DRAWING_NS}t")).strip()
            if text:
                blocks.append(_Block(text=text))
        blocks.append(_Block())

    metadata = DocumentMetadata(page_count=max(1, len(slides)))
    if core_xml:
        try:
            core = ET.fromstring(core_xml)
        except ET.ParseError:
            logger.warning("pptx core properties unreadable; skipping metadata")
        else:
            metadata.title = _clean_text(core.findtext("dc:title", namespaces=_CORE_NS))
            metadata.author = _clean_text(core.findtext("dc:creator", namespaces=_CORE_NS))
            metadata.created = _parse_iso_datetime(core.findtext("dcterms:created", namespaces=_CORE_NS))
    return _Extraction(blocks=blocks, metadata=metadata)


def _clean_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
