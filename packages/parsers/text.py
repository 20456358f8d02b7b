from __future__ import annotations

import re
from typing import Dict, List, Tuple

MAX_EXTRACTED_CHARS = 50_000

_GRADE_PATTERNS = [
    re.compile(r"grade\s*(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)(?:st|nd|rd|th)\s*grade", re.IGNORECASE),
    re.compile(r"\b(kindergarten|k-?\d+)\b", re.IGNORECASE),
]
SUBJECTS = [
    "math", "mathematics", "science", "english", "history", "social studies",
    "reading", "writing", "art", "music", "physical education",
    "biology", "chemistry", "physics", "geography", "literature",
]
EDUCATIONAL_TERMS = [
    "lesson plan", "worksheet", "assessment", "rubric", "assignment",
    "homework", "quiz", "test", "project", "activity", "objective",
    "standard", "curriculum", "learning goal",
]


def decode_text(data: bytes) -> Tuple[str, bool]:
    """Decode UTF-8, falling back to replacement characters.

    Returns (text, lossy) where ``lossy`` is True if malformed bytes were replaced.
    """
    try:
        return data.decode("utf-8-sig"), False
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace"), True


def text_statistics(text: str) -> Dict[str, int]:
    stripped = text.strip()
    return {
        "characterCount": len(stripped),
        "lineCount": len(stripped.splitlines()) if stripped else 0,
        "wordCount": len(stripped.split()),
    }


def clean_extracted_text(text: str, limit: int = MAX_EXTRACTED_CHARS) -> str:
    """Collapse runs of blank lines and spaces, then cap the length."""
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n", text)
    return text.strip()[:limit]


def _contains_phrase(haystack: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", haystack) is not None


def extract_educational_metadata(text: str) -> Dict[str, List[str]]:
    """Grade levels, subjects and classroom terms mentioned in the text."""
    if not text:
        return {}
    metadata: Dict[str, List[str]] = {}

    grades: List[str] = []
    for pattern in _GRADE_PATTERNS:
        for match in pattern.finditer(text):
            value = match.group(0).strip()
            if value.lower() not in (g.lower() for g in grades):
                grades.append(value)
    if grades:
        metadata["detectedGrades"] = grades

    lowered = text.lower()
    subjects = [s for s in SUBJECTS if _contains_phrase(lowered, s)]
    if subjects:
        metadata["detectedSubjects"] = subjects
    terms = [t for t in EDUCATIONAL_TERMS if _contains_phrase(lowered, t)]
    if terms:
        metadata["educationalTerms"] = terms
    return metadata
