from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from packages.parsers.images import ImageDecodeError, read_image_info, render_thumbnail
from packages.parsers.pdf import PdfExtractionError, extract_pages_from_pdf_bytes
from packages.parsers.text import (
    clean_extracted_text,
    decode_text,
    extract_educational_metadata,
    text_statistics,
)
from packages.parsers.word import WordExtractionError, extract_paragraphs_from_docx_bytes

logger = logging.getLogger(__name__)

DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
LEGACY_DOC_TYPE = "application/msword"

# (text, metadata, errors)
Extraction = Tuple[Optional[str], Dict[str, Any], List[str]]


@dataclass(frozen=True)
class ProcessingOptions:
    extract_text: bool = True
    generate_thumbnail: bool = True


@dataclass
class ProcessingResult:
    extracted_text: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    thumbnail_data: Optional[bytes] = None
    processing_errors: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.processing_errors


def classify(content_type: str) -> str:
    base = content_type.split(";", 1)[0].strip().lower()
    if base.startswith("image/"):
        return "image"
    if base == "application/pdf":
        return "pdf"
    if base in (DOCX_TYPE, LEGACY_DOC_TYPE):
        return "word"
    if base.startswith("text/"):
        return "text"
    return "unsupported"


def _finish_text(raw: str, metadata: Dict[str, Any]) -> str:
    text = clean_extracted_text(raw)
    metadata.update(text_statistics(text))
    metadata["hasText"] = bool(text)
    metadata.update(extract_educational_metadata(text))
    return text


def extract_pdf(data: bytes) -> Extraction:
    metadata: Dict[str, Any] = {}
    try:
        pages = extract_pages_from_pdf_bytes(data)
    except PdfExtractionError as exc:
        return "", metadata, [str(exc)]
    metadata["pageCount"] = len(pages)
    return _finish_text("\n".join(pages), metadata), metadata, []


def extract_word(data: bytes, content_type: str) -> Extraction:
    metadata: Dict[str, Any] = {}
    if content_type.split(";", 1)[0].strip().lower() == LEGACY_DOC_TYPE:
        metadata["legacyFormat"] = True
        return None, metadata, ["Legacy .doc format not supported, please use .docx"]
    try:
        paragraphs = extract_paragraphs_from_docx_bytes(data)
    except WordExtractionError as exc:
        return None, metadata, [str(exc)]
    metadata["paragraphCount"] = len(paragraphs)
    return _finish_text("\n".join(paragraphs), metadata), metadata, []


def extract_plain_text(data: bytes) -> Extraction:
    text, lossy = decode_text(data)
    metadata: Dict[str, Any] = {"encoding": "utf-8"}
    errors: List[str] = []
    if lossy:
        metadata["lossyDecoding"] = True
        errors.append("File is not valid UTF-8; undecodable bytes were replaced")
    return _finish_text(text, metadata), metadata, errors


def inspect_image(data: bytes) -> Extraction:
    try:
        info = read_image_info(data)
    except ImageDecodeError as exc:
        return None, {}, [str(exc)]
    return None, {"width": info.width, "height": info.height, "format": info.format, "mode": info.mode}, []


class FileProcessor:
    """Derives text, metadata and a thumbnail from uploaded bytes.

    Nothing raised by an extractor escapes ``process``: failures become
    entries in ``ProcessingResult.processing_errors``. The processor never
    writes to storage; thumbnail bytes are handed back to the caller, which
    owns every key it stores.
    """

    def __init__(self, timeout_seconds: float = 30.0, thumbnail_size: int = 200) -> None:
        self.timeout_seconds = timeout_seconds
        self.thumbnail_size = thumbnail_size

    async def process(
        self,
        data: bytes,
        content_type: str,
        *,
        filename: str,
        options: Optional[ProcessingOptions] = None,
    ) -> ProcessingResult:
        options = options or ProcessingOptions()
        kind = classify(content_type)
        try:
            result = await asyncio.wait_for(self._extract(kind, data, content_type, options), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "processing_timeout",
                extra={"upload_filename": filename, "content_type": content_type, "timeout_s": self.timeout_seconds},
            )
            return ProcessingResult(
                metadata={"fileKind": kind},
                processing_errors=[f"Processing timed out after {self.timeout_seconds:g}s"],
                timed_out=True,
            )
        except Exception as exc:
            logger.exception("processing_crashed", extra={"upload_filename": filename, "content_type": content_type})
            return ProcessingResult(metadata={"fileKind": kind}, processing_errors=[f"Processing failed: {exc}"])

        if result.processing_errors:
            logger.info(
                "processing_partial",
                extra={"upload_filename": filename, "kind": kind, "errors": result.processing_errors},
            )
        return result

    async def _extract(self, kind: str, data: bytes, content_type: str, options: ProcessingOptions) -> ProcessingResult:
        result = ProcessingResult(metadata={"fileKind": kind, "supported": kind != "unsupported"})

        if kind == "unsupported":
            result.metadata["note"] = f"No processing available for {content_type}"
            return result

        jobs = []
        if kind == "image":
            jobs.append(asyncio.to_thread(inspect_image, data))
        elif options.extract_text and kind == "pdf":
            jobs.append(asyncio.to_thread(extract_pdf, data))
        elif options.extract_text and kind == "word":
            jobs.append(asyncio.to_thread(extract_word, data, content_type))
        elif options.extract_text and kind == "text":
            jobs.append(asyncio.to_thread(extract_plain_text, data))
        want_thumbnail = kind == "image" and options.generate_thumbnail
        if want_thumbnail:
            jobs.append(asyncio.to_thread(render_thumbnail, data, self.thumbnail_size))

        outcomes = await asyncio.gather(*jobs, return_exceptions=True)

        if want_thumbnail:
            thumb = outcomes[-1]
            outcomes = outcomes[:-1]
            if isinstance(thumb, ImageDecodeError):
                result.processing_errors.append(str(thumb))
            elif isinstance(thumb, BaseException):
                result.processing_errors.append(f"Thumbnail generation failed: {thumb}")
            else:
                result.thumbnail_data = thumb

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                result.processing_errors.append(f"Text extraction failed: {outcome}")
                continue
            text, metadata, errors = outcome
            result.metadata.update(metadata)
            result.processing_errors.extend(errors)
            if text is not None:
                result.extracted_text = text
        return result
