# documents.py
"""
Uploaded-file handling for the batch endpoints: base64 decoding into
BatchItems and plain-text extraction (txt, md, pdf, docx, pptx, xlsx).
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import io
from typing import Callable, Dict, List, Sequence

import docx
import openpyxl
import pdfplumber
import pptx

from errors import ProviderError, ValidationFailed
from logs import trace
from models import BatchItem, FileUpload

SUPPORTED_FORMATS = ("txt", "md", "pdf", "docx", "pptx", "xlsx")

PARSER_ID = "document-parser"


def extension_of(filename: str) -> str:
    name = (filename or "").lower()
    return name.rsplit(".", 1)[-1] if "." in name else ""


def decode_base64(value: str) -> bytes:
    """Strict base64 decoding that tolerates line-wrapped (MIME style) input."""
    return base64.b64decode("".join(value.split()), validate=True)


def decode_uploads(files: Sequence[FileUpload]) -> List[BatchItem]:
    if not files:
        raise ValidationFailed("files must be a non-empty array", ["files"])

    items: List[BatchItem] = []
    for i, f in enumerate(files):
        if not f.filename or not f.content_base64:
            raise ValidationFailed(f"files[{i}] missing filename or contentBase64", [f"files[{i}]"])
        try:
            content = decode_base64(f.content_base64)
        except (binascii.Error, ValueError):
            raise ValidationFailed(
                f"files[{i}] contentBase64 is not valid base64", [f"files[{i}]"]
            ) from None
        items.append(BatchItem(filename=f.filename, content=content))
    return items


def _pdf_text(content: bytes) -> str:
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        pages = [page.extract_text() or "" for page in pdf.pages]
    return "\n".join(pages)


def _docx_text(content: bytes) -> str:
    document = docx.Document(io.BytesIO(content))
    lines = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            lines.append(" ".join(cell.text for cell in row.cells))
    return "\n".join(lines)


def _pptx_text(content: bytes) -> str:
    deck = pptx.Presentation(io.BytesIO(content))
    lines = []
    for slide in deck.slides:
        for shape in slide.shapes:
            if shape.has_text_frame:
                lines.append(shape.text_frame.text)
        if slide.has_notes_slide and slide.notes_slide.notes_text_frame is not None:
            lines.append(slide.notes_slide.notes_text_frame.text)
    return "\n".join(lines)


def _xlsx_text(content: bytes) -> str:
    wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        lines = []
        for sheet in wb.worksheets:
            for row in sheet.iter_rows(values_only=True):
                row_text = " ".join(str(v) for v in row if v is not None)
                if row_text.strip():
                    lines.append(row_text)
    finally:
        wb.close()
    return "\n".join(lines)


# parsers run in a worker thread
_BINARY_PARSERS: Dict[str, Callable[[bytes], str]] = {
    "pdf": _pdf_text,
    "docx": _docx_text,
    "pptx": _pptx_text,
    "xlsx": _xlsx_text,
}


async def extract_text(item: BatchItem) -> str:
    ext = extension_of(item.filename)
    if ext not in SUPPORTED_FORMATS:
        raise ValidationFailed(
            f"Unsupported file format: {item.filename}. Supported: {', '.join(SUPPORTED_FORMATS)}",
            ["filename"],
        )

    try:
        parser = _BINARY_PARSERS.get(ext)
        if parser is not None:
            text = await asyncio.to_thread(parser, item.content)
        else:
            text = item.content.decode("utf-8", errors="replace")
    except Exception as e:
        raise ProviderError(PARSER_ID, f"Failed to convert {item.filename}: {e}") from e

    text = text.strip()
    if not text:
        raise ValidationFailed(f"No text extracted from: {item.filename}", ["files"])
    trace(f"[DOCS] {item.filename}: {len(text)} chars")
    return text
