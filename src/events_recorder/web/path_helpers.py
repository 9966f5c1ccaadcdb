"""
Path safety helpers for the web layer.

Centralizes the "path under storage root" and clip-id checks so route
handlers do not duplicate realpath/startswith or filename validation.
"""

import os

from events_recorder.constants import CLIP_ID_RE


def resolve_under_storage(storage_path: str, *path_parts: str) -> str | None:
    """
    Resolve a path under the storage root and return it if safe, else None.

    Returns None if the path would escape storage or equals the storage root.
    Does not require the resolved path to exist.
    """
    if not storage_path or not path_parts:
        return None
    base = os.path.realpath(storage_path)
    candidate = os.path.realpath(os.path.join(storage_path, *path_parts))
    if not candidate.startswith(base + os.sep):
        return None
    return candidate


def is_valid_clip_id(clip_id: str) -> bool:
    """True only for ids of the form {startMs}_{endMs}_{bitmap} (no separators, no dots)."""
    return isinstance(clip_id, str) and CLIP_ID_RE.match(clip_id) is not None
