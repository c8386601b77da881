import io
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from docx import Document as DocxDocument
from docx.table import Table as DocxTable
from pypdf import PdfReader

from kbsearch.models import DocumentFile


PDF_TYPE = "application/pdf"
DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_TYPES = {"text/plain", "text/markdown"}
GENERIC_TYPES = {"", "application/octet-stream"}
SUFFIX_TYPES = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".pdf": PDF_TYPE,
    ".docx": DOCX_TYPE,
}


@dataclass
class UploadedFile:
    name: str
    media_type: str
    data: bytes


def parse_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def parse_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    parts: list[str] = []
    for page in reader.pages:
        parts.append(page.extract_text() or "")
        parts.append("\n")
    return "".join(parts)


def _table_blocks(table: DocxTable) -> list[str]:
    blocks: list[str] = []
    for row in table.rows:
        seen: set[int] = set()
        for cell in row.cells:
            # Merged cells are repeated once per grid column they span.
            if id(cell._tc) in seen:
                continue
            seen.add(id(cell._tc))
            blocks.extend(para.text for para in cell.paragraphs)
    return blocks


def parse_docx(data: bytes) -> str:
    doc = DocxDocument(io.BytesIO(data))
    blocks: list[str] = []
    for item in doc.iter_inner_content():
        if isinstance(item, DocxTable):
            blocks.extend(_table_blocks(item))
        else:
            blocks.append(item.text)
    return "\n\n".join(blocks)


def resolve_media_type(name: str, media_type: str | None) -> str:
    declared = (media_type or "").strip().lower()
    if declared in GENERIC_TYPES:
        return SUFFIX_TYPES.get(Path(name).suffix.lower(), declared)
    return declared


def _select_parser(name: str, media_type: str) -> Callable[[bytes], str] | None:
    if media_type in TEXT_TYPES:
        return parse_text
    if media_type == PDF_TYPE:
        return parse_pdf
    if media_type == DOCX_TYPE or name.lower().endswith(".docx"):
        return parse_docx
    return None


def unsupported_type_message(media_type: str | None) -> str:
    return f'File type "{media_type or "unknown"}" is not supported. Please upload TXT, PDF, or DOCX files.'


def ingest_file(name: str, media_type: str | None, data: bytes) -> DocumentFile:
    """Convert one uploaded file into a document. Never raises for bad input."""
    resolved = resolve_media_type(name, media_type)
    parser = _select_parser(name, resolved)
    if parser is None:
        return DocumentFile(
            name=name,
            content=unsupported_type_message(media_type),
            source_type=resolved,
            readable=False,
        )
    try:
        content = parser(data)
    except Exception as exc:
        return DocumentFile(
            name=name,
            content=f"Could not read file content. Error: {exc}",
            source_type=resolved,
            readable=False,
        )
    return DocumentFile(name=name, content=content, source_type=resolved, readable=True)


def ingest_files(files: Iterable[UploadedFile]) -> list[DocumentFile]:
    return [ingest_file(f.name, f.media_type, f.data) for f in files]
