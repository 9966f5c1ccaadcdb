"""
Per-camera recorder: wires the supervisor, capture buffer, session state
machine, assembler and catalog of one camera and schedules their ticks.

Every tick entry point runs under the camera lock, so capture start/stop and
finalization are strictly serialized for a camera. Detection and motion
events go straight to the state machine (its own lock) and never queue
behind an assembly.
"""

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Any

from events_recorder.constants import (
    DEFAULT_CAPTURE_RESTART_HOURS,
    DEFAULT_CAPTURE_TICK_SECONDS,
    DEFAULT_CLEANUP_THRESHOLD_GB,
    DEFAULT_CLIPS_TO_CLEANUP,
    DEFAULT_EVICTION_INTERVAL_MINUTES,
    DEFAULT_INDEX_INTERVAL_MINUTES,
    DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS,
    DEFAULT_SEGMENT_RETENTION_TICK_SECONDS,
    DEFAULT_SESSION_TICK_SECONDS,
    PID_STORE_FILENAME,
)
from events_recorder.logging_utils import CameraLogger
from events_recorder.managers.catalog import RetentionIndexer
from events_recorder.managers.detection_filter import DetectionFilter, parse_detection
from events_recorder.managers.file import StorageLayout
from events_recorder.managers.state import EventTriggerStateMachine, TriggerResult
from events_recorder.models import ClipRecord, RetentionBudget
from events_recorder.services.assembler import ClipAssembler
from events_recorder.services.capture import SegmentCaptureManager
from events_recorder.services.process import ProcessSupervisor
from events_recorder.services.scheduler import CameraScheduler

logger = logging.getLogger('events-recorder')


class CameraRecorder:
    """One camera's recording pipeline."""

    def __init__(
        self,
        settings: dict[str, Any],
        config: dict[str, Any],
        layout: StorageLayout,
        on_budget: Callable[[str, RetentionBudget], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.config = config
        self.name = settings['name']
        self.layout = layout
        self._on_budget = on_budget
        self._clock = clock
        self._lock = threading.RLock()
        self._started = False
        self.log = CameraLogger(logger, self.name, lambda: bool(self.settings.get('debug')))

        dirs = layout.get_storage_dirs(self.name)
        self.supervisor = ProcessSupervisor(os.path.join(dirs.device_folder, PID_STORE_FILENAME), log=self.log)
        self.capture = SegmentCaptureManager(
            self.supervisor,
            layout,
            self.name,
            settings['stream_url'],
            ffmpeg_path=config.get('FFMPEG_PATH', 'ffmpeg'),
            max_clip_length_seconds=settings['max_clip_length_seconds'],
            capture_restart_hours=config.get('CAPTURE_RESTART_HOURS', DEFAULT_CAPTURE_RESTART_HOURS),
            stop_timeout=config.get('PROCESS_STOP_TIMEOUT', DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS),
            clock=clock,
            log=self.log,
        )
        self.detection_filter = DetectionFilter(settings)
        self.state = EventTriggerStateMachine(
            self.name,
            post_event_seconds=settings['post_event_seconds'],
            max_clip_length_seconds=settings['max_clip_length_seconds'],
            motion_mode=settings.get('motion_mode', 'extend'),
            clock=clock,
            log=self.log,
        )
        self.indexer = RetentionIndexer(
            layout,
            self.name,
            max_space_gb=settings['max_space_gb'],
            cleanup_threshold_gb=config.get('CLEANUP_THRESHOLD_GB', DEFAULT_CLEANUP_THRESHOLD_GB),
            clips_to_cleanup=config.get('CLIPS_TO_CLEANUP', DEFAULT_CLIPS_TO_CLEANUP),
            log=self.log,
        )
        self.assembler = ClipAssembler(
            self.capture,
            self.supervisor,
            self.indexer,
            layout,
            self.name,
            pre_event_seconds=settings['pre_event_seconds'],
            thumbnail_offset_seconds=settings.get('thumbnail_offset_seconds'),
            ffmpeg_path=config.get('FFMPEG_PATH', 'ffmpeg'),
            ffmpeg_timeout=config.get('FFMPEG_TIMEOUT', 120),
            log=self.log,
        )
        self.scheduler = CameraScheduler(self.name, log=self.log)

    def start(self) -> None:
        """Reap leftovers from a previous run, index existing clips, start capture and the tick loop."""
        with self._lock:
            if self._started:
                return
            self.layout.ensure_dirs(self.name)
            self.supervisor.reap_orphans()
            self.indexer.scan()
            self._report_budget(self.indexer.compute_budget())
            self.capture.start()
            self._started = True

        self.scheduler.every_seconds(
            self.config.get('CAPTURE_TICK_SECONDS', DEFAULT_CAPTURE_TICK_SECONDS), self.tick_capture, 'capture')
        self.scheduler.every_seconds(
            self.config.get('SEGMENT_RETENTION_TICK_SECONDS', DEFAULT_SEGMENT_RETENTION_TICK_SECONDS),
            self.prune_segments, 'segments')
        self.scheduler.every_seconds(DEFAULT_SESSION_TICK_SECONDS, self.check_session, 'session')
        self.scheduler.every_minutes(
            self.config.get('INDEX_INTERVAL_MINUTES', DEFAULT_INDEX_INTERVAL_MINUTES), self.rescan, 'index')
        self.scheduler.every_minutes(
            self.config.get('EVICTION_INTERVAL_MINUTES', DEFAULT_EVICTION_INTERVAL_MINUTES),
            self.enforce_retention, 'retention')
        self.scheduler.start()
        self.log.info(
            f"Recording started (pre {self.settings['pre_event_seconds']}s, "
            f"post {self.settings['post_event_seconds']}s, max {self.settings['max_clip_length_seconds']}s, "
            f"budget {self.settings['max_space_gb']} GB)"
        )

    def release(self) -> None:
        """Stop the tick loop, drop any in-flight session and stop every encoder synchronously."""
        self.scheduler.stop()
        with self._lock:
            self.state.reset()
            self.capture.stop()
            self.supervisor.stop_all(self.capture.stop_timeout)
            self._started = False
        self.log.info("Recording released")

    # Event entry points

    def on_detections(self, raw_detections: list, now: float | None = None) -> TriggerResult:
        """Validate, filter and apply one detection batch from the feed."""
        parsed = [d for d in (parse_detection(r) for r in raw_detections or []) if d is not None]
        qualifying = self.detection_filter.filter(parsed)
        if not qualifying:
            return TriggerResult.IGNORED
        return self.state.on_detections(qualifying, self.capture.current_segment_index, now)

    def on_motion(self, active: bool, now: float | None = None) -> TriggerResult:
        return self.state.on_motion(active, self.capture.current_segment_index, now)

    # Tick entry points

    def tick_capture(self) -> None:
        with self._lock:
            generation = self.capture.generation
            # A periodic restart would reset segment indices under an open session.
            self.capture.tick(allow_restart=self.state.session is None)
            if self.capture.generation != generation and self.state.session is not None:
                started_at = self.capture.capture_started_at
                self.state.rebase(0, started_at if started_at is not None else self._clock())

    def prune_segments(self) -> int:
        with self._lock:
            return self.capture.prune_segments()

    def check_session(self, now: float | None = None) -> ClipRecord | None:
        """Finalize the session if its deadline has passed."""
        with self._lock:
            session = self.state.due(now)
            if session is None:
                return None
            record = None
            try:
                record = self.assembler.assemble(session)
            finally:
                self.state.finish()
                self._restart_capture()
            if record is not None:
                self._report_budget(self.indexer.compute_budget())
            return record

    def rescan(self) -> int:
        with self._lock:
            return self.indexer.scan()

    def enforce_retention(self) -> list[str]:
        with self._lock:
            deleted = self.indexer.enforce_budget()
            if self.indexer.budget is not None:
                self._report_budget(self.indexer.budget)
            return deleted

    # Query surface

    def list_clips(self, start_ms: int | None = None, end_ms: int | None = None) -> list[ClipRecord]:
        return self.indexer.list_clips(start_ms, end_ms)

    def get_clip(self, clip_id: str) -> ClipRecord | None:
        return self.indexer.get(clip_id)

    def delete_clips(self, clip_ids: list[str]) -> list[str]:
        with self._lock:
            deleted = self.indexer.delete_clips(clip_ids)
            if deleted:
                self._report_budget(self.indexer.compute_budget())
            return deleted

    def ensure_thumbnail(self, record: ClipRecord) -> bool:
        """Generate a missing thumbnail for an existing clip."""
        if os.path.isfile(record.thumbnail_path):
            return True
        offset = self.settings.get('thumbnail_offset_seconds')
        if offset is None:
            offset = self.settings['pre_event_seconds']
        duration = record.duration_ms / 1000
        offset = min(max(0.0, float(offset)), max(0.0, duration - 1))
        return self.assembler.generate_thumbnail(record.video_path, record.thumbnail_path, offset)

    def get_stats(self) -> dict:
        return {
            "session": self.state.get_stats(),
            "capture": self.capture.get_stats(),
            "catalog": self.indexer.get_stats(),
            "clips_created": self.assembler.clips_created,
            "assembly_failures": self.assembler.failures,
        }

    def _restart_capture(self) -> None:
        try:
            self.capture.start()
        except OSError as e:
            # Next capture tick retries.
            self.log.error(f"Could not restart capture after assembly: {e}")

    def _report_budget(self, budget: RetentionBudget) -> None:
        if self._on_budget is not None:
            self._on_budget(self.name, budget)
