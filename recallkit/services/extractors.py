"""Format-specific text extraction: bytes on disk in, plain text out, or raise."""

from __future__ import annotations

import logging
from pathlib import Path

from recallkit.core.errors import ExtractionError

logger = logging.getLogger(__name__)

DOCUMENT_EXTENSIONS = frozenset({".pdf", ".docx", ".xlsx"})


def _partition_text(path: Path) -> str:
    try:
        from unstructured.partition.auto import partition
    except ImportError as e:
        raise ExtractionError(
            f"Cannot parse {path.suffix} files without the 'documents' extra "
            f"(pip install recallkit[documents])"
        ) from e

    try:
        elements = partition(filename=str(path))
    except Exception as e:
        raise ExtractionError(f"Failed to parse {path.name}: {e}") from e
    return "\n\n".join(el.text.strip() for el in elements if getattr(el, "text", None) and el.text.strip())


def extract_text(file_path: str) -> str:
    """Return the plain text of ``file_path``.

    PDF, DOCX and XLSX go through ``unstructured``; everything else is read
    as UTF-8 with undecodable bytes replaced.
    """
    path = Path(file_path)
    if path.suffix.lower() in DOCUMENT_EXTENSIONS:
        return _partition_text(path)
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        raise ExtractionError(f"Failed to read {path}: {e}") from e
