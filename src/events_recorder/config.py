"""Configuration loading and validation."""

import os
import logging
import sys

import yaml
from voluptuous import Schema, Required, Optional, Any, All, Range, In, ALLOW_EXTRA, Invalid

from events_recorder.constants import (
    DEFAULT_CAPTURE_RESTART_HOURS,
    DEFAULT_CAPTURE_TICK_SECONDS,
    DEFAULT_CLEANUP_THRESHOLD_GB,
    DEFAULT_CLIPS_TO_CLEANUP,
    DEFAULT_EVICTION_INTERVAL_MINUTES,
    DEFAULT_INDEX_INTERVAL_MINUTES,
    DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS,
    DEFAULT_SEGMENT_RETENTION_TICK_SECONDS,
)
from events_recorder.managers.file import sanitize_camera_name
from events_recorder.models import DEFAULT_CLASSES, DetectionClass

logger = logging.getLogger('events-recorder')

_CLASS_NAMES = [c.value for c in DetectionClass if c is not DetectionClass.MOTION]
_Number = Any(int, float)

MOTION_MODES = ('trigger', 'extend', 'off')


# Configuration Schema
CONFIG_SCHEMA = Schema({
    # Cameras to record; each needs the stream URL the capture encoder reads.
    Required('cameras'): [{
        Required('name'): str,                               # Camera name; used as the storage folder and MQTT topic segment.
        Required('stream_url'): str,                         # Source stream (e.g. RTSP rebroadcast URL).
        Optional('classes'): [In(_CLASS_NAMES)],             # Detection classes that start/extend a session; omit = all.
        Optional('score_threshold'): All(_Number, Range(min=0, max=1)),  # Minimum detection score.
        Optional('class_thresholds'): {In(_CLASS_NAMES): All(_Number, Range(min=0, max=1))},  # Per-class score overrides.
        Optional('require_bounding_box'): bool,              # Drop detections without a box (camera-side pre-filtered).
        Optional('ignore_stationary'): bool,                 # Drop detections the detector marks as not moving.
        Optional('motion_mode'): In(MOTION_MODES),           # trigger = start/extend, extend = only prolong, off = ignore.
        Optional('pre_event_seconds'): All(int, Range(min=0)),           # Seconds kept before the event.
        Optional('post_event_seconds'): All(int, Range(min=1)),          # Seconds kept after the last detection.
        Optional('max_clip_length_seconds'): All(int, Range(min=1)),     # Sessions never grow past this.
        Optional('max_space_gb'): All(_Number, Range(min=0)),            # Storage budget for this camera.
        Optional('thumbnail_offset_seconds'): All(_Number, Range(min=0)),  # Thumbnail position; default = pre_event_seconds.
        Optional('debug'): bool,                              # Per-camera debug logging.
    }],
    # Network and storage; MQTT broker and storage path are required at runtime (config or env).
    Optional('network'): {
        Optional('mqtt_broker'): str,        # MQTT broker hostname or IP for detection events.
        Optional('mqtt_port'): int,          # MQTT broker port (default 1883).
        Optional('mqtt_user'): str,          # Optional MQTT username.
        Optional('mqtt_password'): str,      # Optional MQTT password.
        Optional('mqtt_topic_prefix'): str,  # Topics are {prefix}/{camera}/detections and {prefix}/{camera}/motion.
        Optional('flask_host'): str,         # Bind address for the clip API.
        Optional('flask_port'): int,         # Port for the clip API.
        Optional('storage_path'): str,       # Root path; one folder per camera.
    },
    # Application behavior: ticks, retention and encoder settings.
    Optional('settings'): {
        Optional('log_level'): Any('DEBUG', 'INFO', 'WARNING', 'ERROR'),
        Optional('ffmpeg_path'): str,                        # Encoder executable.
        Optional('ffmpeg_timeout_seconds'): int,             # Timeout for concat/thumbnail runs.
        Optional('capture_tick_seconds'): int,               # Capture health check interval.
        Optional('segment_retention_tick_seconds'): int,     # Segment pruning interval.
        Optional('capture_restart_hours'): _Number,          # Periodic capture restart window.
        Optional('index_interval_minutes'): int,             # Catalog rescan interval.
        Optional('eviction_interval_minutes'): int,          # Storage accounting / eviction interval.
        Optional('cleanup_threshold_gb'): _Number,           # Evict when free space <= this.
        Optional('clips_to_cleanup'): int,                   # Oldest clips deleted per eviction run.
        Optional('process_stop_timeout_seconds'): _Number,   # Grace period before SIGKILL.
    },
}, extra=ALLOW_EXTRA)


def _camera_settings(cam: dict) -> dict:
    """Fill per-camera defaults; the result is what CameraRecorder consumes."""
    classes = cam.get('classes')
    return {
        'name': cam['name'],
        'stream_url': cam['stream_url'],
        'classes': list(classes) if classes else [c.value for c in DEFAULT_CLASSES],
        'score_threshold': float(cam.get('score_threshold', 0.7)),
        'class_thresholds': {k: float(v) for k, v in (cam.get('class_thresholds') or {}).items()},
        'require_bounding_box': bool(cam.get('require_bounding_box', False)),
        'ignore_stationary': bool(cam.get('ignore_stationary', False)),
        'motion_mode': cam.get('motion_mode', 'extend'),
        'pre_event_seconds': int(cam.get('pre_event_seconds', 15)),
        'post_event_seconds': int(cam.get('post_event_seconds', 15)),
        'max_clip_length_seconds': int(cam.get('max_clip_length_seconds', 60)),
        'max_space_gb': float(cam.get('max_space_gb', 20)),
        'thumbnail_offset_seconds': cam.get('thumbnail_offset_seconds'),
        'debug': bool(cam.get('debug', False)),
    }


def load_config() -> dict:
    """Load configuration from config.yaml merged with environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. config.yaml
    3. Default values

    Note: MQTT_BROKER and STORAGE_PATH are REQUIRED and at least one camera
    must be configured.
    """
    config = {
        # Network settings - broker has NO DEFAULT (required from config)
        'MQTT_BROKER': None,
        'MQTT_PORT': 1883,
        'MQTT_USER': None,
        'MQTT_PASSWORD': None,
        'MQTT_TOPIC_PREFIX': 'events-recorder',
        'FLASK_HOST': '0.0.0.0',
        'FLASK_PORT': 5056,
        'STORAGE_PATH': '/app/storage',

        # Settings defaults
        'LOG_LEVEL': 'INFO',
        'FFMPEG_PATH': 'ffmpeg',
        'FFMPEG_TIMEOUT': 120,
        'CAPTURE_TICK_SECONDS': DEFAULT_CAPTURE_TICK_SECONDS,
        'SEGMENT_RETENTION_TICK_SECONDS': DEFAULT_SEGMENT_RETENTION_TICK_SECONDS,
        'CAPTURE_RESTART_HOURS': DEFAULT_CAPTURE_RESTART_HOURS,
        'INDEX_INTERVAL_MINUTES': DEFAULT_INDEX_INTERVAL_MINUTES,
        'EVICTION_INTERVAL_MINUTES': DEFAULT_EVICTION_INTERVAL_MINUTES,
        'CLEANUP_THRESHOLD_GB': DEFAULT_CLEANUP_THRESHOLD_GB,
        'CLIPS_TO_CLEANUP': DEFAULT_CLIPS_TO_CLEANUP,
        'PROCESS_STOP_TIMEOUT': DEFAULT_PROCESS_STOP_TIMEOUT_SECONDS,

        # Per-camera settings keyed by camera name
        'CAMERAS': {},
    }

    # Load from config.yaml if exists
    config_paths = ['/app/config.yaml', '/app/storage/config.yaml', './config.yaml', 'config.yaml']
    config_loaded = False

    for path in config_paths:
        if os.path.exists(path):
            try:
                logger.info(f"Loading config from {path}")
                with open(path, 'r') as f:
                    yaml_config = yaml.safe_load(f) or {}

                # Validate schema
                try:
                    yaml_config = CONFIG_SCHEMA(yaml_config)
                except Invalid as e:
                    logger.error(f"Invalid configuration in {path}: {e}")
                    sys.exit(1)

                apply_yaml_config(config, yaml_config)
                config_loaded = True
                break

            except Exception as e:
                logger.error(f"Error loading config from {path}: {e}")

    if not config_loaded:
        logger.info("No config.yaml found, using defaults")

    apply_env_overrides(config)
    validate_required(config)
    return config


def apply_yaml_config(config: dict, yaml_config: dict) -> dict:
    """Merge a validated YAML document into the flat config dict."""
    for cam in yaml_config.get('cameras') or []:
        config['CAMERAS'][cam['name']] = _camera_settings(cam)

    if 'settings' in yaml_config:
        settings = yaml_config['settings']
        config['LOG_LEVEL'] = settings.get('log_level', config['LOG_LEVEL'])
        config['FFMPEG_PATH'] = settings.get('ffmpeg_path', config['FFMPEG_PATH'])
        config['FFMPEG_TIMEOUT'] = settings.get('ffmpeg_timeout_seconds', config['FFMPEG_TIMEOUT'])
        config['CAPTURE_TICK_SECONDS'] = settings.get('capture_tick_seconds', config['CAPTURE_TICK_SECONDS'])
        config['SEGMENT_RETENTION_TICK_SECONDS'] = settings.get('segment_retention_tick_seconds', config['SEGMENT_RETENTION_TICK_SECONDS'])
        config['CAPTURE_RESTART_HOURS'] = float(settings.get('capture_restart_hours', config['CAPTURE_RESTART_HOURS']))
        config['INDEX_INTERVAL_MINUTES'] = settings.get('index_interval_minutes', config['INDEX_INTERVAL_MINUTES'])
        config['EVICTION_INTERVAL_MINUTES'] = settings.get('eviction_interval_minutes', config['EVICTION_INTERVAL_MINUTES'])
        config['CLEANUP_THRESHOLD_GB'] = float(settings.get('cleanup_threshold_gb', config['CLEANUP_THRESHOLD_GB']))
        config['CLIPS_TO_CLEANUP'] = settings.get('clips_to_cleanup', config['CLIPS_TO_CLEANUP'])
        config['PROCESS_STOP_TIMEOUT'] = float(settings.get('process_stop_timeout_seconds', config['PROCESS_STOP_TIMEOUT']))

    if 'network' in yaml_config:
        network = yaml_config['network']
        config['MQTT_BROKER'] = network.get('mqtt_broker', config['MQTT_BROKER'])
        config['MQTT_PORT'] = network.get('mqtt_port', config['MQTT_PORT'])
        config['MQTT_USER'] = network.get('mqtt_user', config['MQTT_USER'])
        config['MQTT_PASSWORD'] = network.get('mqtt_password', config['MQTT_PASSWORD'])
        config['MQTT_TOPIC_PREFIX'] = (network.get('mqtt_topic_prefix') or config['MQTT_TOPIC_PREFIX']).strip('/')
        config['FLASK_HOST'] = network.get('flask_host', config['FLASK_HOST'])
        config['FLASK_PORT'] = network.get('flask_port', config['FLASK_PORT'])
        config['STORAGE_PATH'] = network.get('storage_path', config['STORAGE_PATH'])

    return config


def apply_env_overrides(config: dict) -> dict:
    """Environment variables override everything (for secrets/deployment)."""
    config['MQTT_BROKER'] = os.getenv('MQTT_BROKER') or config['MQTT_BROKER']
    config['MQTT_PORT'] = int(os.getenv('MQTT_PORT', str(config['MQTT_PORT'])))
    config['MQTT_USER'] = os.getenv('MQTT_USER') or config['MQTT_USER']
    config['MQTT_PASSWORD'] = os.getenv('MQTT_PASSWORD') or config['MQTT_PASSWORD']
    config['MQTT_TOPIC_PREFIX'] = (os.getenv('MQTT_TOPIC_PREFIX') or config['MQTT_TOPIC_PREFIX']).strip('/')
    config['FLASK_HOST'] = os.getenv('FLASK_HOST') or config['FLASK_HOST']
    config['FLASK_PORT'] = int(os.getenv('FLASK_PORT', str(config['FLASK_PORT'])))
    config['STORAGE_PATH'] = os.getenv('STORAGE_PATH', config['STORAGE_PATH'])
    config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', config['LOG_LEVEL'])
    config['FFMPEG_PATH'] = os.getenv('FFMPEG_PATH') or config['FFMPEG_PATH']
    return config


def validate_required(config: dict) -> None:
    """Raise ValueError listing every missing required setting, or cameras that would share a folder."""
    missing = []
    if not config['MQTT_BROKER']:
        missing.append('MQTT_BROKER (network.mqtt_broker)')
    if not config['STORAGE_PATH']:
        missing.append('STORAGE_PATH (network.storage_path)')
    if not config['CAMERAS']:
        missing.append('cameras (at least one camera with a stream_url)')

    if missing:
        raise ValueError(
            f"Missing required configuration: {', '.join(missing)}. "
            f"Set these in config.yaml or as environment variables."
        )

    folders = {}
    for name in config['CAMERAS']:
        folders.setdefault(sanitize_camera_name(name), []).append(name)
    clashes = [names for names in folders.values() if len(names) > 1]
    if clashes:
        raise ValueError(
            "Camera names share a storage folder: "
            + "; ".join(", ".join(sorted(names)) for names in clashes)
        )
