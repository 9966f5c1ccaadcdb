"""File operations: per-camera folders, clip naming, size accounting, clip deletion."""

import os
import re
import shutil
import logging
from dataclasses import dataclass

from events_recorder.constants import (
    CLIP_EXTENSION,
    CLIP_FILENAME_RE,
    DETECTION_BITMAP_LENGTH,
    THUMBNAIL_EXTENSION,
    THUMBNAILS_DIR,
    TMP_DIR,
    VIDEOCLIPS_DIR,
)
from events_recorder.models import (
    DETECTION_CLASS_INDEX,
    DetectionClass,
    sort_by_priority,
)

logger = logging.getLogger('events-recorder')

_INDEX_TO_CLASS = {index: cls for cls, index in DETECTION_CLASS_INDEX.items()}


def encode_detection_bitmap(classes) -> str:
    """Fixed-width 0/1 string, one position per known class; motion is always set."""
    flags = ['0'] * DETECTION_BITMAP_LENGTH
    flags[DETECTION_CLASS_INDEX[DetectionClass.MOTION]] = '1'
    for cls in classes:
        flags[DETECTION_CLASS_INDEX[DetectionClass(cls)]] = '1'
    return ''.join(flags)


def decode_detection_bitmap(bitmap: str) -> list[DetectionClass]:
    """Inverse of encode_detection_bitmap; returns classes in priority order."""
    if len(bitmap) != DETECTION_BITMAP_LENGTH or set(bitmap) - {'0', '1'}:
        raise ValueError(f"Invalid detection bitmap: {bitmap!r}")
    classes = [_INDEX_TO_CLASS[i] for i, flag in enumerate(bitmap) if flag == '1' and i in _INDEX_TO_CLASS]
    return sort_by_priority(classes)


def encode_clip_name(start_ms: int, end_ms: int, classes) -> str:
    """Clip base name (no extension): {startMs}_{endMs}_{bitmap}."""
    start_ms, end_ms = int(start_ms), int(end_ms)
    if end_ms <= start_ms:
        raise ValueError(f"Clip end {end_ms} must be after start {start_ms}")
    return f"{start_ms}_{end_ms}_{encode_detection_bitmap(classes)}"


def decode_clip_name(filename: str) -> tuple[int, int, list[DetectionClass]]:
    """Parse '{start}_{end}_{bitmap}.mp4' (or the bare base name). Raises ValueError if malformed."""
    name = filename if filename.endswith(CLIP_EXTENSION) else f"{filename}{CLIP_EXTENSION}"
    match = CLIP_FILENAME_RE.match(name)
    if not match:
        raise ValueError(f"Not a clip filename: {filename!r}")
    start_ms, end_ms = int(match.group(1)), int(match.group(2))
    if end_ms <= start_ms:
        raise ValueError(f"Clip filename has end before start: {filename!r}")
    return start_ms, end_ms, decode_detection_bitmap(match.group(3))


def sanitize_camera_name(camera: str) -> str:
    """Sanitize camera name for filesystem use."""
    sanitized = camera.lower().replace(' ', '_')
    sanitized = re.sub(r'[^a-z0-9_-]', '', sanitized)
    return sanitized or "unknown"


@dataclass(frozen=True)
class StorageDirs:
    """Resolved folders of one camera, plus optional clip/thumbnail paths."""
    device_folder: str
    tmp_folder: str
    videoclips_folder: str
    thumbnails_folder: str
    video_clip_path: str | None = None
    thumbnail_path: str | None = None


class StorageLayout:
    """Resolves and creates the per-camera directory tree under the storage root."""

    def __init__(self, storage_path: str | None):
        self.storage_path = storage_path

    def sanitize_camera_name(self, camera: str) -> str:
        return sanitize_camera_name(camera)

    def get_storage_dirs(self, camera: str, clip_name: str | None = None) -> StorageDirs:
        """Return the camera's folders; with clip_name also the clip and thumbnail paths.

        Raises ValueError when the storage path is not configured or a name
        would escape the storage root.
        """
        if not self.storage_path:
            raise ValueError("Storage path not defined")

        base_dir = os.path.realpath(self.storage_path)
        device_folder = os.path.realpath(os.path.join(base_dir, self.sanitize_camera_name(camera)))
        if not device_folder.startswith(base_dir + os.sep):
            raise ValueError(f"Invalid camera path: {device_folder} is outside {base_dir}")

        videoclips_folder = os.path.join(device_folder, VIDEOCLIPS_DIR)
        thumbnails_folder = os.path.join(device_folder, THUMBNAILS_DIR)
        video_clip_path = thumbnail_path = None
        if clip_name:
            base = clip_name[:-len(CLIP_EXTENSION)] if clip_name.endswith(CLIP_EXTENSION) else clip_name
            if os.sep in base or base.startswith('.'):
                raise ValueError(f"Invalid clip name: {clip_name!r}")
            video_clip_path = os.path.join(videoclips_folder, f"{base}{CLIP_EXTENSION}")
            thumbnail_path = os.path.join(thumbnails_folder, f"{base}{THUMBNAIL_EXTENSION}")

        return StorageDirs(
            device_folder=device_folder,
            tmp_folder=os.path.join(device_folder, TMP_DIR),
            videoclips_folder=videoclips_folder,
            thumbnails_folder=thumbnails_folder,
            video_clip_path=video_clip_path,
            thumbnail_path=thumbnail_path,
        )

    def ensure_dirs(self, camera: str) -> StorageDirs:
        """Create the camera's tmp, videoclips and thumbnails folders if missing."""
        dirs = self.get_storage_dirs(camera)
        for folder in (dirs.tmp_folder, dirs.videoclips_folder, dirs.thumbnails_folder):
            os.makedirs(folder, exist_ok=True)
        return dirs

    def list_cameras(self) -> list[str]:
        """Camera folders present under the storage root."""
        if not self.storage_path or not os.path.isdir(self.storage_path):
            return []
        cameras = []
        with os.scandir(self.storage_path) as it:
            for entry in it:
                if entry.is_dir() and os.path.isdir(os.path.join(entry.path, VIDEOCLIPS_DIR)):
                    cameras.append(entry.name)
        return sorted(cameras)


def dir_total_bytes(path: str) -> int:
    """Return total size in bytes of all files under path. Returns 0 if path does not exist or is not a dir."""
    if not os.path.isdir(path):
        return 0
    total = 0
    try:
        for root, _dirs, files in os.walk(path):
            for f in files:
                try:
                    total += os.path.getsize(os.path.join(root, f))
                except OSError:
                    pass
    except OSError:
        pass
    return total


def remove_file(path: str) -> bool:
    """Delete one file; missing files count as removed. Returns False and logs on failure."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)
        return False


def delete_clip_files(dirs: StorageDirs) -> bool:
    """Delete a clip and its thumbnail. Returns True once the video is gone.

    The video goes first; when it cannot be removed the thumbnail is kept so
    the surviving clip still has its pair. A thumbnail that outlives its video
    is logged and swept by the next catalog scan.
    """
    if dirs.video_clip_path and not remove_file(dirs.video_clip_path):
        return False
    if dirs.thumbnail_path and not remove_file(dirs.thumbnail_path):
        logger.warning("Thumbnail %s left without its clip", dirs.thumbnail_path)
    return True


def clear_directory(path: str) -> int:
    """Remove every entry inside path (not path itself). Returns count removed."""
    removed = 0
    if not os.path.isdir(path):
        return 0
    with os.scandir(path) as it:
        entries = list(it)
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)
            removed += 1
        except OSError as e:
            logger.warning("Failed to clear %s: %s", entry.path, e)
    return removed
