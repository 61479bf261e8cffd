"""Names and paths for uploaded and converted files."""

from __future__ import annotations

import itertools
import os
import time
from pathlib import Path, PurePosixPath
from typing import Optional

from .config import OUTPUT_EXT

__all__ = [
    "assign_upload_name",
    "base_name",
    "derive_output_name",
    "is_reserved",
    "release_output_path",
    "reserve_output_path",
    "safe_download_name",
    "resolve_download",
]

_UPLOAD_SEQ = itertools.count(1)
_RESERVED: set = set()


def _claim_key(path: Path) -> str:
    return os.path.realpath(path)


def base_name(name: str) -> str:
    """Return the last path component of *name*, treating ``\\`` as a separator too."""

    return PurePosixPath((name or "").replace("\\", "/")).name


def assign_upload_name(original_name: str) -> str:
    """Return a process-unique storage name keeping the original extension.

    Nanosecond arrival time plus a counter, so two uploads landing in the same
    clock tick still get different names.
    """

    ext = os.path.splitext(base_name(original_name))[1].lower()
    return f"{time.time_ns()}-{next(_UPLOAD_SEQ)}{ext}"


def derive_output_name(original_name: str, ext: str = OUTPUT_EXT) -> str:
    stem = os.path.splitext(base_name(original_name))[0] or "audio"
    return f"{stem}{ext}"


def reserve_output_path(directory: Path, name: str) -> Path:
    """Claim ``directory/name`` for a new conversion and return the path.

    When the name is already taken (an existing file or another in-flight
    conversion of a file with the same original name), ``stem-1.ext``,
    ``stem-2.ext`` and so on are tried. Claims are held in memory until
    :func:`release_output_path`; nothing is written to *directory*, so no
    file appears there before the conversion finishes.
    """

    stem, ext = os.path.splitext(name)
    candidate = directory / name
    sequence = 0
    while candidate.exists() or _claim_key(candidate) in _RESERVED:
        sequence += 1
        candidate = directory / f"{stem}-{sequence}{ext}"
    _RESERVED.add(_claim_key(candidate))
    return candidate


def release_output_path(path: Path) -> None:
    _RESERVED.discard(_claim_key(path))


def is_reserved(path: Path) -> bool:
    return _claim_key(path) in _RESERVED


def safe_download_name(name: str) -> Optional[str]:
    """Strip any directory part from a client-supplied name; ``None`` if nothing usable is left."""

    cleaned = base_name(name)
    if cleaned in ("", ".", ".."):
        return None
    return cleaned


def resolve_download(directory: Path, name: str) -> Optional[Path]:
    cleaned = safe_download_name(name)
    if cleaned is None:
        return None
    root = directory.resolve()
    target = (root / cleaned).resolve()
    if target.parent != root or is_reserved(target):
        return None
    return target
