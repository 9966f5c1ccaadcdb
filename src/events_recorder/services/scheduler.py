"""Per-camera periodic jobs on a private schedule.Scheduler, driven by one daemon thread."""

import logging
import threading
from collections.abc import Callable

import schedule

logger = logging.getLogger('events-recorder')

# Run loop granularity; the session job runs every second.
_POLL_SECONDS = 0.2


class CameraScheduler:
    """Holds one camera's tagged jobs; clear() removes them all on release."""

    def __init__(self, camera: str, log=None):
        self.camera = camera
        self._log = log or logger
        self._scheduler = schedule.Scheduler()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def jobs(self) -> list[schedule.Job]:
        return list(self._scheduler.jobs)

    def every_seconds(self, seconds: float, job: Callable[[], None], tag: str) -> schedule.Job:
        return self._scheduler.every(seconds).seconds.do(self._guarded, job, tag).tag(tag, self.camera)

    def every_minutes(self, minutes: float, job: Callable[[], None], tag: str) -> schedule.Job:
        return self._scheduler.every(minutes).minutes.do(self._guarded, job, tag).tag(tag, self.camera)

    def run_pending(self) -> None:
        self._scheduler.run_pending()

    def run_all(self) -> None:
        """Run every job once now (used at startup so capture and indexing do not wait a full interval)."""
        self._scheduler.run_all()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"scheduler-{self.camera}")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the run loop and clear every job."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        self.clear()

    def clear(self) -> None:
        self._scheduler.clear()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._scheduler.run_pending()
            self._stop_event.wait(_POLL_SECONDS)

    def _guarded(self, job: Callable[[], None], tag: str) -> None:
        # A failing job must not kill the run loop or another camera.
        try:
            job()
        except Exception as e:
            self._log.exception(f"Scheduled {tag} job failed: {e}")
