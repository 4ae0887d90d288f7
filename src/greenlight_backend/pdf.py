"""
PDF validation and text extraction for uploaded manuscripts.

The functions here are pure over the uploaded bytes: they never touch the
filesystem or the database. Every failure is raised as a subclass of
``PdfValidationError`` whose message is safe to show to the uploader.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import fitz  # PyMuPDF

from .configuration import LimitSettings

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"
PAGE_SEPARATOR = "\n\n"


class PdfValidationError(ValueError):
    """Base class for uploads that cannot be accepted as a manuscript."""


class InvalidFormat(PdfValidationError):
    pass


class SizeExceeded(PdfValidationError):
    pass


class PageCountExceeded(PdfValidationError):
    pass


class EmptyContent(PdfValidationError):
    pass


class ExtractionFailed(PdfValidationError):
    pass


@dataclass(frozen=True)
class ExtractedDocument:
    text: str
    page_count: int


def _open(data: bytes) -> fitz.Document:
    if not data.startswith(PDF_MAGIC):
        raise InvalidFormat("Only PDF uploads are supported")
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise InvalidFormat(f"Invalid PDF: {exc}") from exc
    if doc.page_count == 0:
        doc.close()
        raise InvalidFormat("Invalid PDF: document has no pages")
    return doc


def _read_pages(doc: fitz.Document) -> str:
    return PAGE_SEPARATOR.join(page.get_text("text") for page in doc)


def validate(data: bytes, limits: LimitSettings) -> ExtractedDocument:
    """
    Check an upload against the configured limits and return its text.

    Args:
        data: Raw uploaded bytes
        limits: Size and page ceilings

    Returns:
        ExtractedDocument with the full text and the page count

    Raises:
        SizeExceeded: Upload is larger than ``limits.max_file_size_mb``
        InvalidFormat: Bytes are not a readable PDF
        PageCountExceeded: More pages than ``limits.max_pages``
        EmptyContent: No readable text on any page
    """
    if len(data) > limits.max_file_size_bytes:
        raise SizeExceeded(f"File size exceeds {limits.max_file_size_mb:g}MB limit")

    with _open(data) as doc:
        page_count = doc.page_count
        if page_count > limits.max_pages:
            raise PageCountExceeded(f"PDF has {page_count} pages, exceeding {limits.max_pages} page limit")
        try:
            text = _read_pages(doc)
        except Exception as exc:
            raise ExtractionFailed(f"Text extraction failed: {exc}") from exc

    if not text.strip():
        raise EmptyContent("PDF appears to be empty or contains no readable text")

    logger.info(
        "PDF validated: %.2fMB, %d pages, %d characters",
        len(data) / (1024 * 1024),
        page_count,
        len(text),
    )
    return ExtractedDocument(text=text, page_count=page_count)


def extract_text(data: bytes) -> str:
    """Extract plain text from a PDF without applying any limits."""
    try:
        with _open(data) as doc:
            text = _read_pages(doc)
    except Exception as exc:
        raise ExtractionFailed(f"Text extraction failed: {exc}") from exc

    if not text.strip():
        raise ExtractionFailed("No text could be extracted from PDF")
    return text
