from __future__ import annotations

import io
import zipfile
from xml.sax.saxutils import escape

from docx import Document
from pypdf import PdfWriter

_SLIDE_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<p:sld xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main" '
    'xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main">'
    "<p:cSld><p:spTree><p:sp><p:txBody>{paragraphs}</p:txBody></p:sp></p:spTree></p:cSld></p:sld>"
)
_CORE_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<cp:coreProperties xmlns:cp="http://schemas.openxmlformats.org/package/2006/metadata/core-properties" '
    'xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:dcterms="http://purl.org/dc/terms/">'
    "<dc:title>{title}</dc:title><dc:creator>{author}</dc:creator>"
    "<dcterms:created>2024-02-01T10:00:00Z</dcterms:created>"
    "</cp:coreProperties>"
)


def docx_bytes(
    blocks: list[tuple[str, str]],
    *,
    tables: list[list[list[str]]] | None = None,
    title: str | None = None,
) -> bytes:
    """Build a DOCX from ``(kind, text)`` blocks: heading1, heading2, paragraph, page_break."""
    document = Document()
    if title:
        document.core_properties.title = title
    for kind, text in blocks:
        if kind == "heading1":
            document.add_heading(text, level=1)
        elif kind == "heading2":
            document.add_heading(text, level=2)
        elif kind == "page_break":
            document.add_page_break()
        else:
            document.add_paragraph(text)
    for rows in tables or []:
        table = document.add_table(rows=len(rows), cols=len(rows[0]))
        for row_index, row in enumerate(rows):
            for column_index, value in enumerate(row):
                table.cell(row_index, column_index).text = value
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def pptx_bytes(slides: list[list[str]], *, title: str = "Program Review", author: str = "Dana Smith") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for number, lines in enumerate(slides, start=1):
            paragraphs = "".join(f"<a:p><a:r><a:t>{escape(line)}</a:t></a:r></a:p>" for line in lines)
            archive.writestr(f"ppt/slides/slide{number}.xml", _SLIDE_TEMPLATE.format(paragraphs=paragraphs))
        archive.writestr("docProps/core.xml", _CORE_TEMPLATE.format(title=escape(title), author=escape(author)))
    return buffer.getvalue()


def pdf_bytes(pages: int = 1, *, title: str | None = None) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=612, height=792)
    if title:
        writer.add_metadata({"/Title": title})
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()
