"""Error buffer, per-camera logger, and logging setup."""

import logging
import time
import threading

from events_recorder.constants import ERROR_BUFFER_MAX_SIZE

logger = logging.getLogger('events-recorder')


class ErrorBuffer:
    """Thread-safe rotating buffer of recent ERROR/WARNING log records (max 10)."""

    def __init__(self, max_size: int = 10):
        self._entries: list[dict] = []
        self._max_size = max_size
        self._lock = threading.Lock()

    def append(self, timestamp: str, level: str, message: str) -> None:
        with self._lock:
            self._entries.append({
                "ts": timestamp,
                "level": level,
                "message": message[:500] if message else ""
            })
            if len(self._entries) > self._max_size:
                self._entries.pop(0)

    def get_all(self) -> list[dict]:
        with self._lock:
            return list(reversed(self._entries))


class ErrorBufferHandler(logging.Handler):
    """Logging handler that writes ERROR/WARNING to ErrorBuffer."""

    def __init__(self, buffer: ErrorBuffer):
        super().__init__(level=logging.WARNING)
        self._buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            ts = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(record.created))
            self._buffer.append(ts, record.levelname, record.getMessage())
        except Exception:
            self.handleError(record)


error_buffer = ErrorBuffer(max_size=ERROR_BUFFER_MAX_SIZE)


class CameraLogger(logging.LoggerAdapter):
    """Prefixes records with the camera name; DEBUG records only pass when the camera's debug flag is on.

    The flag is read through a callable so toggling it in config takes effect
    without rebuilding the adapter.
    """

    def __init__(self, base: logging.Logger, camera: str, debug_enabled=None):
        super().__init__(base, {"camera": camera})
        self._camera = camera
        self._debug_enabled = debug_enabled or (lambda: False)

    def process(self, msg, kwargs):
        return f"[{self._camera}] {msg}", kwargs

    def debug(self, msg, *args, **kwargs):
        if self._debug_enabled():
            # Emitted at INFO so it shows regardless of the global level.
            self.log(logging.INFO, msg, *args, **kwargs)
        else:
            self.log(logging.DEBUG, msg, *args, **kwargs)


def setup_logging(log_level: str):
    """Configure logging with the specified level."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Reconfigure the root logger
    logging.getLogger().setLevel(level)
    logger.setLevel(level)

    # Add error buffer handler for the stats endpoint (avoid duplicate if called twice)
    if not any(isinstance(h, ErrorBufferHandler) for h in logger.handlers):
        logger.addHandler(ErrorBufferHandler(error_buffer))

    # Suppress werkzeug per-request logging (clip players poll ranges constantly)
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    logger.info(f"Log level set to {log_level.upper()}")
