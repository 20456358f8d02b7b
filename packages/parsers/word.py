from __future__ import annotations

import io
from typing import List

from docx import Document


class WordExtractionError(Exception):
    """Raised when a .docx package cannot be parsed."""


def extract_paragraphs_from_docx_bytes(docx_bytes: bytes) -> List[str]:
    """Return non-empty paragraph texts, body paragraphs first, then table cells."""
    try:
        doc = Document(io.BytesIO(docx_bytes))
    except Exception as exc:
        raise WordExtractionError(f"Word document could not be opened: {exc}") from exc

    paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            for cell in row.cells:
                if cell.text.strip():
                    paragraphs.append(cell.text)
    return paragraphs
