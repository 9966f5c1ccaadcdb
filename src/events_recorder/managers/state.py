"""Thread-safe recording-session state machine for one camera.

Idle -> Active on the first qualifying detection, Active -> Active (deadline
pushed out) on further detections, Active -> Finalizing once the deadline
passes, Finalizing -> Idle when the clip has been assembled. Extending is
Active inside the one-second extension debounce window.
"""

import logging
import threading
import time
from enum import Enum, auto
from typing import Callable

from events_recorder.constants import DEBOUNCE_SECONDS
from events_recorder.models import (
    Detection,
    DetectionClass,
    RecordingSession,
    SessionPhase,
)

logger = logging.getLogger('events-recorder')


class TriggerResult(Enum):
    """What an incoming detection or motion event did to the session."""
    IGNORED = auto()     # Nothing qualifying, or the mode does not allow it
    STARTED = auto()     # Idle -> Active
    EXTENDED = auto()    # Deadline pushed out
    DEBOUNCED = auto()   # Inside the debounce window; classes merged only
    CAPPED = auto()      # Extension would exceed the max clip length
    DROPPED = auto()     # Session is finalizing


class EventTriggerStateMachine:
    """Drives one camera's RecordingSession. At most one session exists at a time."""

    def __init__(
        self,
        camera: str,
        post_event_seconds: float,
        max_clip_length_seconds: float,
        motion_mode: str = 'extend',
        debounce_seconds: float = DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.time,
        log=None,
    ):
        self.camera = camera
        self.post_event_seconds = float(post_event_seconds)
        self.max_clip_length_seconds = float(max_clip_length_seconds)
        self.motion_mode = motion_mode
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._log = log or logger
        self._session: RecordingSession | None = None
        self._last_motion_at: float | None = None
        self._lock = threading.RLock()

    @property
    def session(self) -> RecordingSession | None:
        with self._lock:
            return self._session

    def get_phase(self, now: float | None = None) -> SessionPhase:
        with self._lock:
            self._refresh_phase(self._now(now))
            return self._session.phase if self._session else SessionPhase.IDLE

    def on_detections(self, detections: list[Detection], segment_index: int | None,
                      now: float | None = None) -> TriggerResult:
        """Apply an already-filtered detection batch."""
        if not detections:
            return TriggerResult.IGNORED
        classes = {d.class_name for d in detections}
        with self._lock:
            return self._trigger(classes, segment_index, self._now(now), allow_start=True)

    def on_motion(self, active: bool, segment_index: int | None,
                  now: float | None = None) -> TriggerResult:
        """Apply a motion sensor event; at most one accepted per debounce window."""
        if not active or self.motion_mode == 'off':
            return TriggerResult.IGNORED
        with self._lock:
            now = self._now(now)
            if self._last_motion_at is not None and now - self._last_motion_at < self.debounce_seconds:
                return TriggerResult.DEBOUNCED
            self._last_motion_at = now
            allow_start = self.motion_mode == 'trigger'
            if not allow_start and self._session is None:
                self._log.debug("Motion ignored: no active session (motion_mode=extend)")
                return TriggerResult.IGNORED
            return self._trigger({DetectionClass.MOTION}, segment_index, now, allow_start=allow_start)

    def due(self, now: float | None = None) -> RecordingSession | None:
        """If the deadline has passed, move to FINALIZING and return the session to assemble."""
        with self._lock:
            now = self._now(now)
            session = self._session
            if session is None or session.phase is SessionPhase.FINALIZING:
                return None
            if now < session.deadline:
                self._refresh_phase(now)
                return None
            session.phase = SessionPhase.FINALIZING
            self._log.info(
                f"Session deadline reached after {now - session.started_at:.1f}s, finalizing "
                f"(classes={sorted(c.value for c in session.detection_classes)})"
            )
            return session

    def rebase(self, segment_index: int, started_at: float) -> bool:
        """Point an open session at a restarted capture whose indices begin again at segment_index.

        Footage from before the restart is gone, so the clip starts at the new
        capture. Returns False when there is nothing to rebase.
        """
        with self._lock:
            session = self._session
            if session is None or session.phase is SessionPhase.FINALIZING:
                return False
            self._log.warning(
                f"Capture restarted during session, clip now starts at segment {segment_index} "
                f"({started_at - session.started_at:.1f}s of footage lost)"
            )
            session.event_segment_index = segment_index
            session.started_at = max(session.started_at, started_at)
            return True

    def finish(self) -> RecordingSession | None:
        """Finalizing -> Idle. Returns the destroyed session."""
        with self._lock:
            session, self._session = self._session, None
            if session is not None:
                self._log.debug("Session closed, back to idle")
            return session

    def reset(self) -> None:
        """Drop any session without assembling (shutdown/release)."""
        with self._lock:
            if self._session is not None:
                self._log.info("Discarding in-flight session on release")
            self._session = None
            self._last_motion_at = None

    def get_stats(self) -> dict:
        with self._lock:
            now = self._clock()
            self._refresh_phase(now)
            session = self._session
            if session is None:
                return {"phase": SessionPhase.IDLE.name}
            return {
                "phase": session.phase.name,
                "started_at": session.started_at,
                "deadline": session.deadline,
                "remaining_seconds": max(0.0, session.deadline - now),
                "event_segment_index": session.event_segment_index,
                "classes": sorted(c.value for c in session.detection_classes),
            }

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    def _refresh_phase(self, now: float) -> None:
        session = self._session
        if (
            session is not None
            and session.phase is SessionPhase.EXTENDING
            and session.last_extension_at is not None
            and now - session.last_extension_at >= self.debounce_seconds
        ):
            session.phase = SessionPhase.ACTIVE

    def _trigger(self, classes: set[DetectionClass], segment_index: int | None,
                 now: float, allow_start: bool) -> TriggerResult:
        session = self._session
        if session is None:
            if not allow_start:
                return TriggerResult.IGNORED
            if segment_index is None:
                # Capture has not reported a segment yet; every buffered segment is newer.
                segment_index = 0
            self._session = RecordingSession(
                camera=self.camera,
                started_at=now,
                event_segment_index=segment_index,
                deadline=now + self.post_event_seconds,
                last_extension_at=now,
                detection_classes=set(classes),
            )
            self._log.info(
                f"Session started at segment {segment_index} "
                f"(classes={sorted(c.value for c in classes)}, deadline in {self.post_event_seconds:.0f}s)"
            )
            return TriggerResult.STARTED

        if session.phase is SessionPhase.FINALIZING:
            self._log.debug("Event dropped: session is finalizing")
            return TriggerResult.DROPPED

        session.detection_classes |= classes
        self._refresh_phase(now)

        if session.last_extension_at is not None and now - session.last_extension_at < self.debounce_seconds:
            return TriggerResult.DEBOUNCED

        new_deadline = now + self.post_event_seconds
        if new_deadline - session.started_at > self.max_clip_length_seconds:
            self._log.debug(
                f"Extension ignored: session would exceed max length of {self.max_clip_length_seconds:.0f}s"
            )
            return TriggerResult.CAPPED

        if new_deadline > session.deadline:
            session.deadline = new_deadline
        session.last_extension_at = now
        session.phase = SessionPhase.EXTENDING
        self._log.debug(f"Session extended, deadline in {self.post_event_seconds:.0f}s")
        return TriggerResult.EXTENDED
