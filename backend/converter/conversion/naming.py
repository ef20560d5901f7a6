"""Display names for converted files."""
import re
from pathlib import PurePosixPath, PureWindowsPath
from typing import Optional

from converter.config import OUTPUT_EXTENSION

_EXTENSION = re.compile(r"\.[^/.]+$")
_DISALLOWED = re.compile(r"[^A-Za-z0-9_\-]")
_ALLOWED = re.compile(r"[A-Za-z0-9_\-]")

FALLBACK_BASE_NAME = "image"


def original_base_name(upload_name: Optional[str]) -> str:
    """Base name of the uploaded file: directories and extension stripped."""
    name = PureWindowsPath(PurePosixPath(upload_name or "").name).name
    base = PurePosixPath(name).stem if name else ""
    return base or FALLBACK_BASE_NAME


def sanitize_base_name(desired: Optional[str]) -> str:
    """Strip one extension and replace anything outside [A-Za-z0-9_-] with "_".

    Returns "" when nothing usable is left.
    """
    if not desired:
        return ""
    stripped = _EXTENSION.sub("", desired)
    if not _ALLOWED.search(stripped):
        return ""
    return _DISALLOWED.sub("_", stripped)


def resolve_display_name(original_filename: Optional[str], desired: Optional[str], batch_size: int) -> str:
    """<base>.webp for one output. The desired name only counts for single-file batches."""
    base = sanitize_base_name(desired) if batch_size == 1 else ""
    if not base:
        base = original_base_name(original_filename)
    return f"{base}{OUTPUT_EXTENSION}"


def unique_display_name(name: str, taken: set[str]) -> str:
    """Suffix -2, -3, ... before the extension until the name is not in taken."""
    if name not in taken:
        return name
    stem = name[: -len(OUTPUT_EXTENSION)] if name.endswith(OUTPUT_EXTENSION) else name
    n = 2
    while f"{stem}-{n}{OUTPUT_EXTENSION}" in taken:
        n += 1
    return f"{stem}-{n}{OUTPUT_EXTENSION}"
