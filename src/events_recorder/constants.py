"""
Shared constants for storage layout, clip naming, timing, and HTTP streaming.

Centralizes directory names, the clip filename pattern, and the fixed timing
windows (debounce, tick intervals, stop timeout) so callers do not duplicate
definitions or magic numbers.
"""

import re

# Per-camera directories under {storage}/{camera}/.
VIDEOCLIPS_DIR: str = "videoclips"
THUMBNAILS_DIR: str = "thumbnails"
TMP_DIR: str = "tmp"

# PID store for the encoder subprocesses of one camera (reaped on next start).
PID_STORE_FILENAME: str = "pids.json"

# Scratch segments: {deviceRoot}/tmp/segment{3-digit-index}.ts, one second each.
SEGMENT_FILENAME_TEMPLATE: str = "segment%03d.ts"
SEGMENT_FILENAME_RE = re.compile(r"^segment(\d+)\.ts$")
SEGMENT_DURATION_SECONDS: int = 1

# Clip filename: {startMs}_{endMs}_{detectionBitmap}.mp4
CLIP_EXTENSION: str = ".mp4"
THUMBNAIL_EXTENSION: str = ".jpg"
DETECTION_BITMAP_LENGTH: int = 10
CLIP_FILENAME_RE = re.compile(r"^(\d+)_(\d+)_([01]{%d})\.mp4$" % DETECTION_BITMAP_LENGTH)
CLIP_ID_RE = re.compile(r"^(\d+)_(\d+)_([01]{%d})$" % DETECTION_BITMAP_LENGTH)

# Session timing: extensions and motion events are acted on at most once per window.
DEBOUNCE_SECONDS: float = 1.0

# Scheduler defaults (seconds unless noted).
DEFAULT_CAPTURE_TICK_SECONDS: int = 10
DEFAULT_SEGMENT_RETENTION_TICK_SECONDS: int = 10
DEFAULT_SESSION_TICK_SECONDS: int = 1
DEFAULT_CAPTURE_RESTART_HOURS: float = 2.0
DEFAULT_INDEX_INTERVAL_MINUTES: int = 60
DEFAULT_EVICTION_INTERVAL_MINUTES: int = 20

# Graceful stop window before an encoder is force-killed.
DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS: float = 5.0

# Output file wait after concat: bounded retries with fixed backoff.
OUTPUT_WAIT_RETRIES: int = 10
OUTPUT_WAIT_BACKOFF_SECONDS: float = 0.5

# Retention: evict when free space (GB) drops to this threshold, N clips per run.
DEFAULT_CLEANUP_THRESHOLD_GB: float = 10.0
DEFAULT_CLIPS_TO_CLEANUP: int = 10

BYTES_PER_GB: int = 1024 * 1024 * 1024

# Error buffer for the stats endpoint: max number of recent ERROR/WARNING entries.
ERROR_BUFFER_MAX_SIZE: int = 10
