"""Stable file fingerprints used to skip re-ingesting unchanged files."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional, Union


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def compute_file_fingerprint(
    path: str,
    size: Optional[int] = None,
    modified: Union[str, float, datetime, None] = None,
) -> str:
    """Hash of path, size and modified time; any change yields a new value."""
    if isinstance(modified, datetime):
        mod = modified.isoformat()
    elif isinstance(modified, (int, float)):
        mod = datetime.fromtimestamp(modified).isoformat()
    else:
        mod = modified or ""
    size_part = "unknown" if size is None else str(size)
    return _md5(f"{path}|{size_part}|{mod}")


def file_memory_id(path: str) -> str:
    """Id of the ``entity.file`` memory for a path."""
    return f"file-{path_hash(path)}"


def path_hash(path: str) -> str:
    return _md5(path)
