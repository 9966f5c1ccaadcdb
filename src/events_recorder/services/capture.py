"""Rolling segment buffer: one capture encoder per camera writing 1-second segments to tmp/."""

import logging
import os
import threading
import time
from collections.abc import Callable

from events_recorder.constants import (
    DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS,
    SEGMENT_FILENAME_RE,
    SEGMENT_FILENAME_TEMPLATE,
    SEGMENT_DURATION_SECONDS,
)
from events_recorder.managers.file import StorageLayout, clear_directory, remove_file
from events_recorder.models import Segment
from events_recorder.services.process import ProcessHandle, ProcessSupervisor

logger = logging.getLogger('events-recorder')

CAPTURE_PROCESS_NAME = "capture"

# ffmpeg -loglevel verbose: "[segment @ 0x...] Opening '/.../tmp/segment042.ts' for writing"
SEGMENT_OPEN_MARKER = r"Opening '(?P<path>[^']*?segment(?P<index>\d+)\.ts)' for writing"


def build_capture_command(ffmpeg_path: str, stream_url: str, output_template: str) -> list[str]:
    """Stream-copy the input into fixed one-second transport-stream segments."""
    cmd = [ffmpeg_path, "-hide_banner", "-nostats", "-loglevel", "verbose"]
    if stream_url.startswith("rtsp://") or stream_url.startswith("rtsps://"):
        cmd += ["-rtsp_transport", "tcp"]
    cmd += [
        "-i", stream_url,
        "-map", "0",
        "-c", "copy",
        "-f", "segment",
        "-segment_time", str(SEGMENT_DURATION_SECONDS),
        "-segment_format", "mpegts",
        "-reset_timestamps", "1",
        "-y", output_template,
    ]
    return cmd


class SegmentCaptureManager:
    """Keeps the capture encoder alive and the scratch buffer bounded."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        layout: StorageLayout,
        camera: str,
        stream_url: str,
        ffmpeg_path: str = "ffmpeg",
        max_clip_length_seconds: int = 60,
        capture_restart_hours: float = 2.0,
        stop_timeout: float = DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        log=None,
    ):
        self.supervisor = supervisor
        self.layout = layout
        self.camera = camera
        self.stream_url = stream_url
        self.ffmpeg_path = ffmpeg_path
        self.max_clip_length_seconds = max_clip_length_seconds
        self.capture_restart_seconds = capture_restart_hours * 3600
        self.stop_timeout = stop_timeout
        self._clock = clock
        self._log = log or logger

        self.current_segment_index: int | None = None
        self.capture_started_at: float | None = None
        self.force_closed = False
        self.restarts = 0
        # Bumped on every start; segment indices from an older generation are meaningless.
        self.generation = 0
        self._handle: ProcessHandle | None = None
        # Set from the supervisor's watcher thread; consumed by tick().
        self._crash_pending = False
        self._lock = threading.RLock()

        self.supervisor.add_marker(SEGMENT_OPEN_MARKER, self._on_segment_opened)

    @property
    def scratch_dir(self) -> str:
        return self.layout.get_storage_dirs(self.camera).tmp_folder

    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.is_alive()

    def tick(self, allow_restart: bool = True) -> None:
        """Health check: recover a crash, start if idle, restart after the configured window."""
        with self._lock:
            if self._crash_pending:
                self._log.warning("Capture crashed, restarting")
                self.restarts += 1
                self.start()
                return

            if not self.is_running():
                self.start()
                return

            started = self.capture_started_at
            if allow_restart and started is not None and self._clock() - started >= self.capture_restart_seconds:
                self._log.info(
                    f"Capture running for {(self._clock() - started) / 3600:.1f}h, restarting"
                )
                self._stop_handle()
                self.restarts += 1
                self.start()

    def start(self) -> ProcessHandle:
        """Start a fresh capture; indices restart at 0 so the scratch dir is cleared first.

        Any capture still running is stopped before its segments are removed,
        and a pending crash is consumed by the new start.
        """
        with self._lock:
            self._crash_pending = False
            self._stop_handle()
            dirs = self.layout.ensure_dirs(self.camera)
            self.clear_scratch()
            output_template = os.path.join(dirs.tmp_folder, SEGMENT_FILENAME_TEMPLATE)
            cmd = build_capture_command(self.ffmpeg_path, self.stream_url, output_template)
            self._reset_state()
            self._handle = self.supervisor.start(CAPTURE_PROCESS_NAME, cmd, on_exit=self._on_exit)
            self.capture_started_at = self._clock()
            self.generation += 1
            self._log.debug("Capture started")
            return self._handle

    def stop_for_assembly(self) -> int | None:
        """Stop the capture synchronously so the last segment is complete; returns its index."""
        with self._lock:
            self.force_closed = True
            self._stop_handle()
            return self.current_segment_index

    def stop(self) -> None:
        with self._lock:
            self.force_closed = True
            self._stop_handle()

    def list_segments(self) -> list[Segment]:
        """Segments currently in the scratch dir, ordered by index."""
        folder = self.scratch_dir
        segments = []
        if not os.path.isdir(folder):
            return segments
        with os.scandir(folder) as it:
            for entry in it:
                match = SEGMENT_FILENAME_RE.match(entry.name)
                if not match or not entry.is_file():
                    continue
                try:
                    created_at = entry.stat().st_mtime
                except OSError:
                    continue
                segments.append(Segment(index=int(match.group(1)), path=entry.path, created_at=created_at))
        segments.sort(key=lambda s: s.index)
        return segments

    def prune_segments(self, now: float | None = None) -> int:
        """Delete segments older than twice the max clip length, oldest first. Returns count removed."""
        now = self._clock() if now is None else now
        cutoff = now - self.max_clip_length_seconds * 2
        stale = sorted(
            (s for s in self.list_segments() if s.created_at < cutoff),
            key=lambda s: s.created_at,
        )
        removed = 0
        for segment in stale:
            if remove_file(segment.path):
                removed += 1
        if removed:
            self._log.debug(f"Pruned {removed} old segments")
        return removed

    def clear_scratch(self) -> int:
        return clear_directory(self.scratch_dir)

    def get_stats(self) -> dict:
        return {
            "running": self.is_running(),
            "pid": self._handle.pid if self._handle is not None else None,
            "current_segment_index": self.current_segment_index,
            "capture_started_at": self.capture_started_at,
            "restarts": self.restarts,
            "generation": self.generation,
        }

    def _reset_state(self) -> None:
        self.current_segment_index = None
        self.capture_started_at = None
        self.force_closed = False

    def _stop_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self.supervisor.stop(handle, self.stop_timeout)

    def _on_segment_opened(self, match) -> None:
        self.current_segment_index = int(match.group('index'))

    def _on_exit(self, handle: ProcessHandle, exit_code: int, abnormal: bool) -> None:
        # Runs on the watcher thread; must not take self._lock (stop() joins this thread).
        if handle is not self._handle:
            return
        self._handle = None
        if abnormal:
            self._crash_pending = True
