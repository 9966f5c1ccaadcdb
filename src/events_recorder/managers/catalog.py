"""Clip catalog for one camera: filename-derived index, storage accounting, eviction.

Filenames are the only metadata store. A rescan rebuilds the catalog from
`videoclips/*.mp4` and swaps it in atomically; the assembler adds new clips
incrementally in between.
"""

import logging
import os
import threading
import time

from events_recorder.constants import BYTES_PER_GB, CLIP_EXTENSION, THUMBNAIL_EXTENSION
from events_recorder.managers.file import (
    StorageLayout,
    decode_clip_name,
    delete_clip_files,
    dir_total_bytes,
    remove_file,
)
from events_recorder.models import ClipRecord, RetentionBudget

logger = logging.getLogger('events-recorder')


def clip_record_from_file(layout: StorageLayout, camera: str, filename: str) -> ClipRecord:
    """Build a ClipRecord for an existing clip file. Raises ValueError if the name is malformed."""
    start_ms, end_ms, classes = decode_clip_name(filename)
    dirs = layout.get_storage_dirs(camera, filename)
    try:
        size = os.path.getsize(dirs.video_clip_path)
    except OSError:
        size = 0
    return ClipRecord(
        filename=os.path.basename(dirs.video_clip_path),
        video_path=dirs.video_clip_path,
        thumbnail_path=dirs.thumbnail_path,
        size_bytes=size,
        start_time=start_ms,
        end_time=end_ms,
        detection_classes=tuple(classes),
    )


class RetentionIndexer:
    """Keeps one camera's clip catalog and enforces its storage budget."""

    def __init__(
        self,
        layout: StorageLayout,
        camera: str,
        max_space_gb: float,
        cleanup_threshold_gb: float,
        clips_to_cleanup: int,
        log=None,
    ):
        self.layout = layout
        self.camera = camera
        self.max_bytes = int(max_space_gb * BYTES_PER_GB)
        self.cleanup_threshold_bytes = int(cleanup_threshold_gb * BYTES_PER_GB)
        self.clips_to_cleanup = clips_to_cleanup
        self._log = log or logger
        self._clips: dict[str, ClipRecord] = {}
        self._budget: RetentionBudget | None = None
        self._last_scan: float | None = None
        self._lock = threading.RLock()

    def scan(self) -> int:
        """Rebuild the catalog from the videoclips folder. Returns the clip count."""
        dirs = self.layout.get_storage_dirs(self.camera)
        clips: dict[str, ClipRecord] = {}
        if os.path.isdir(dirs.videoclips_folder):
            with os.scandir(dirs.videoclips_folder) as it:
                for entry in it:
                    # In-progress assemblies are dot-prefixed .part files.
                    if not entry.is_file() or entry.name.startswith('.') or not entry.name.endswith(CLIP_EXTENSION):
                        continue
                    try:
                        record = clip_record_from_file(self.layout, self.camera, entry.name)
                    except ValueError as e:
                        self._log.warning(f"Skipping clip with unexpected name {entry.name}: {e}")
                        continue
                    clips[record.clip_id] = record
        self._sweep_thumbnails(dirs)

        with self._lock:
            self._clips = clips
            self._last_scan = time.time()
        self._log.debug(f"Indexed {len(clips)} clips")
        return len(clips)

    def _sweep_thumbnails(self, dirs) -> int:
        """Remove thumbnails whose clip file is gone. Thumbnails are only written after their clip exists."""
        if not os.path.isdir(dirs.thumbnails_folder):
            return 0
        removed = 0
        with os.scandir(dirs.thumbnails_folder) as it:
            for entry in it:
                base, ext = os.path.splitext(entry.name)
                if not entry.is_file() or ext != THUMBNAIL_EXTENSION:
                    continue
                if os.path.exists(os.path.join(dirs.videoclips_folder, f"{base}{CLIP_EXTENSION}")):
                    continue
                if remove_file(entry.path):
                    removed += 1
        if removed:
            self._log.info(f"Removed {removed} thumbnails without a clip")
        return removed

    def add(self, record: ClipRecord) -> None:
        with self._lock:
            self._clips[record.clip_id] = record

    def remove(self, clip_ids) -> None:
        with self._lock:
            for clip_id in clip_ids:
                self._clips.pop(clip_id, None)

    def get(self, clip_id: str) -> ClipRecord | None:
        with self._lock:
            return self._clips.get(clip_id)

    def list_clips(self, start_ms: int | None = None, end_ms: int | None = None) -> list[ClipRecord]:
        """Clips overlapping [start_ms, end_ms], newest first. Open bounds when None."""
        with self._lock:
            clips = [c for c in self._clips.values() if c.overlaps(start_ms, end_ms)]
        clips.sort(key=lambda c: c.start_time, reverse=True)
        return clips

    def count(self) -> int:
        with self._lock:
            return len(self._clips)

    @property
    def budget(self) -> RetentionBudget | None:
        return self._budget

    def compute_budget(self) -> RetentionBudget:
        """Walk the camera folder (clips, thumbnails, scratch) and record its size."""
        dirs = self.layout.get_storage_dirs(self.camera)
        occupied = dir_total_bytes(dirs.device_folder)
        budget = RetentionBudget(max_bytes=self.max_bytes, occupied_bytes=occupied)
        self._budget = budget
        self._log.debug(
            f"Storage: {occupied / BYTES_PER_GB:.2f} GB used of {self.max_bytes / BYTES_PER_GB:.2f} GB"
        )
        return budget

    def enforce_budget(self) -> list[str]:
        """Evict the oldest batch of clips when free space is at or below the threshold.

        Returns the ids of the clips actually deleted.
        """
        budget = self.compute_budget()
        if budget.free_bytes > self.cleanup_threshold_bytes:
            return []

        if self._last_scan is None:
            self.scan()
        with self._lock:
            oldest = sorted(self._clips.values(), key=lambda c: c.start_time)[:self.clips_to_cleanup]

        self._log.info(
            f"Free space {budget.free_bytes / BYTES_PER_GB:.2f} GB at or below "
            f"{self.cleanup_threshold_bytes / BYTES_PER_GB:.2f} GB, removing {len(oldest)} oldest clips"
        )
        deleted = self.delete_clips([c.clip_id for c in oldest])
        self.compute_budget()
        return deleted

    def delete_clips(self, clip_ids) -> list[str]:
        """Delete clips and their thumbnails. Returns ids removed; failures are logged and skipped."""
        deleted = []
        for clip_id in clip_ids:
            try:
                dirs = self.layout.get_storage_dirs(self.camera, clip_id)
            except ValueError as e:
                self._log.warning(f"Refusing to delete {clip_id}: {e}")
                continue
            if delete_clip_files(dirs):
                deleted.append(clip_id)
            else:
                self._log.warning(f"Could not delete clip {clip_id}")
        self.remove(deleted)
        if deleted:
            self._log.debug(f"Deleted clips: {', '.join(deleted)}")
        return deleted

    def get_stats(self) -> dict:
        budget = self._budget
        return {
            "clips": self.count(),
            "max_bytes": self.max_bytes,
            "occupied_bytes": budget.occupied_bytes if budget else None,
            "free_bytes": budget.free_bytes if budget else None,
            "last_scan": self._last_scan,
        }
