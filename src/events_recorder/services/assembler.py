"""Clip assembly: select the segment window, concatenate losslessly, name, thumbnail."""

import logging
import os
import subprocess
import time
from collections.abc import Callable

from events_recorder.constants import (
    CLIP_EXTENSION,
    OUTPUT_WAIT_BACKOFF_SECONDS,
    OUTPUT_WAIT_RETRIES,
    SEGMENT_DURATION_SECONDS,
)
from events_recorder.managers.catalog import RetentionIndexer, clip_record_from_file
from events_recorder.managers.file import StorageLayout, encode_clip_name, remove_file
from events_recorder.models import ClipRecord, RecordingSession, Segment
from events_recorder.services.capture import SegmentCaptureManager
from events_recorder.services.process import ProcessSupervisor

logger = logging.getLogger('events-recorder')

CONCAT_LIST_FILENAME = "concat.txt"


class OutputNotReadyError(RuntimeError):
    """The encoder output did not appear within the bounded wait."""


def clip_window(segments: list[Segment], event_index: int, save_index: int | None,
                pre_event_seconds: int) -> list[Segment]:
    """Segments with index in [event_index - pre_event_seconds, save_index], ascending.

    save_index None means "up to the newest segment".
    """
    low = max(0, event_index - int(pre_event_seconds // SEGMENT_DURATION_SECONDS))
    selected = [
        s for s in segments
        if s.index >= low and (save_index is None or s.index <= save_index)
    ]
    selected.sort(key=lambda s: s.index)
    return selected


def wait_for_output(path: str, retries: int = OUTPUT_WAIT_RETRIES,
                    backoff: float = OUTPUT_WAIT_BACKOFF_SECONDS,
                    sleep: Callable[[float], None] = time.sleep) -> None:
    """Block until path exists and is non-empty, polling `retries` times."""
    for _ in range(retries):
        try:
            if os.path.getsize(path) > 0:
                return
        except OSError:
            pass
        sleep(backoff)
    raise OutputNotReadyError(f"Output not ready after {retries} checks: {path}")


def _concat_list_line(path: str) -> str:
    # concat demuxer quoting: close quote, escaped quote, reopen.
    escaped = path.replace("'", "'\\''")
    return f"file '{escaped}'\n"


class ClipAssembler:
    """Turns a finalized session into a clip file, thumbnail, and catalog entry."""

    def __init__(
        self,
        capture: SegmentCaptureManager,
        supervisor: ProcessSupervisor,
        indexer: RetentionIndexer,
        layout: StorageLayout,
        camera: str,
        pre_event_seconds: int = 15,
        thumbnail_offset_seconds: float | None = None,
        ffmpeg_path: str = "ffmpeg",
        ffmpeg_timeout: float = 120,
        sleep: Callable[[float], None] = time.sleep,
        log=None,
    ):
        self.capture = capture
        self.supervisor = supervisor
        self.indexer = indexer
        self.layout = layout
        self.camera = camera
        self.pre_event_seconds = pre_event_seconds
        self.thumbnail_offset_seconds = thumbnail_offset_seconds
        self.ffmpeg_path = ffmpeg_path
        self.ffmpeg_timeout = ffmpeg_timeout
        self._sleep = sleep
        self._log = log or logger
        self.clips_created = 0
        self.failures = 0

    def assemble(self, session: RecordingSession) -> ClipRecord | None:
        """Stop capture, build the clip from the buffered window, clear the scratch dir.

        Returns None (and logs) when no clip could be produced. The caller
        restarts capture and returns the session to idle either way.
        """
        session.save_segment_index = self.capture.stop_for_assembly()
        try:
            record = self._assemble(session)
        except (OutputNotReadyError, subprocess.TimeoutExpired, OSError, ValueError) as e:
            self._log.error(f"Clip assembly failed: {e}")
            record = None
        finally:
            self.capture.clear_scratch()

        if record is None:
            self.failures += 1
        else:
            self.clips_created += 1
        return record

    def _assemble(self, session: RecordingSession) -> ClipRecord | None:
        segments = clip_window(
            self.capture.list_segments(),
            session.event_segment_index,
            session.save_segment_index,
            self.pre_event_seconds,
        )
        if not segments:
            self._log.warning(
                f"No segments buffered for session (event segment {session.event_segment_index}, "
                f"save segment {session.save_segment_index}), no clip written"
            )
            return None

        first_index = segments[0].index
        lead_seconds = max(0, session.event_segment_index - first_index) * SEGMENT_DURATION_SECONDS
        duration_seconds = len(segments) * SEGMENT_DURATION_SECONDS
        start_ms = int((session.started_at - lead_seconds) * 1000)
        end_ms = start_ms + duration_seconds * 1000

        name = encode_clip_name(start_ms, end_ms, session.detection_classes)
        dirs = self.layout.get_storage_dirs(self.camera, name)
        self.layout.ensure_dirs(self.camera)

        list_path = os.path.join(dirs.tmp_folder, CONCAT_LIST_FILENAME)
        with open(list_path, 'w') as f:
            f.writelines(_concat_list_line(s.path) for s in segments)

        part_path = os.path.join(dirs.videoclips_folder, f".{name}{CLIP_EXTENSION}.part")
        cmd = [
            self.ffmpeg_path, "-hide_banner", "-loglevel", "error",
            "-f", "concat", "-safe", "0", "-i", list_path,
            "-c", "copy",
            "-movflags", "+faststart",
            "-f", "mp4", "-y", part_path,
        ]
        proc = self.supervisor.run("concat", cmd, self.ffmpeg_timeout)
        if proc.returncode != 0:
            remove_file(part_path)
            self._log.error(f"Concat of {len(segments)} segments failed (code {proc.returncode}), no clip written")
            return None

        try:
            wait_for_output(part_path, sleep=self._sleep)
        except OutputNotReadyError:
            remove_file(part_path)
            raise
        os.replace(part_path, dirs.video_clip_path)

        offset = self.thumbnail_offset_seconds
        if offset is None:
            offset = lead_seconds
        offset = min(max(0.0, float(offset)), max(0.0, duration_seconds - SEGMENT_DURATION_SECONDS))
        self.generate_thumbnail(dirs.video_clip_path, dirs.thumbnail_path, offset)

        record = clip_record_from_file(self.layout, self.camera, os.path.basename(dirs.video_clip_path))
        self.indexer.add(record)
        self._log.info(
            f"Clip saved: {record.filename} ({duration_seconds}s, "
            f"{', '.join(c.value for c in record.detection_classes)})"
        )
        return record

    def generate_thumbnail(self, video_path: str, thumbnail_path: str, offset: float = 0.0) -> bool:
        """Extract one JPEG frame at offset seconds. Returns True if the thumbnail exists afterwards."""
        os.makedirs(os.path.dirname(thumbnail_path), exist_ok=True)
        cmd = [
            self.ffmpeg_path, "-hide_banner", "-loglevel", "error",
            "-ss", f"{offset:.3f}", "-i", video_path,
            "-frames:v", "1", "-q:v", "2",
            "-y", thumbnail_path,
        ]
        try:
            proc = self.supervisor.run("thumbnail", cmd, self.ffmpeg_timeout)
        except FileNotFoundError:
            self._log.warning(f"Thumbnail generation failed: '{self.ffmpeg_path}' executable not found")
            return False
        except (subprocess.TimeoutExpired, OSError) as e:
            self._log.warning(f"Thumbnail generation failed: {e}")
            return False
        if proc.returncode == 0 and os.path.isfile(thumbnail_path):
            return True
        self._log.warning(f"Thumbnail generation produced no image for {os.path.basename(video_path)}")
        return False
