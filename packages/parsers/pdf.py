from __future__ import annotations

from typing import List

import fitz  # PyMuPDF


class PdfExtractionError(Exception):
    """Raised when a PDF cannot be opened or read."""


def extract_pages_from_pdf_bytes(pdf_bytes: bytes) -> List[str]:
    """Extract plain text per page from PDF bytes using PyMuPDF.

    Returns a list of page texts in order.

    Raises:
        PdfExtractionError: for corrupt or password-protected documents.
    """
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise PdfExtractionError(f"PDF could not be opened: {exc}") from exc
    pages: List[str] = []
    try:
        if doc.needs_pass:
            raise PdfExtractionError("PDF is encrypted")
        if doc.page_count == 0:
            raise PdfExtractionError("PDF has no pages")
        for page in doc:
            text = page.get_text("text")
            pages.append(text)
    except PdfExtractionError:
        raise
    except Exception as exc:
        raise PdfExtractionError(f"PDF text extraction failed: {exc}") from exc
    finally:
        doc.close()
    return pages
