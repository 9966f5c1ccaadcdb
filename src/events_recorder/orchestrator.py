"""
Events Recorder Orchestrator - Main coordinator.

Builds one CameraRecorder per configured camera and wires the MQTT detection
feed, the aggregate storage view, and the web server around them.
"""

import logging
import threading
import time
from urllib.parse import urlparse, urlunparse

import schedule

from events_recorder.managers.file import StorageLayout
from events_recorder.services.camera import CameraRecorder
from events_recorder.services.mqtt_client import MqttClientWrapper, feed_topics
from events_recorder.services.mqtt_handler import MqttMessageHandler
from events_recorder.services.storage_stats import StorageUsage

logger = logging.getLogger('events-recorder')


def _redact_url(url: str) -> str:
    """Hide credentials in stream URLs before logging them."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:***@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            parsed = parsed._replace(netloc=netloc)
        return urlunparse(parsed)
    except ValueError:
        return "(hidden)"


class EventsRecorderOrchestrator:
    """Main orchestrator coordinating cameras, MQTT, and the web server."""

    def __init__(self, config: dict):
        self.config = config
        self._shutdown = False
        self._start_time = time.time()

        self.layout = StorageLayout(config['STORAGE_PATH'])
        self.storage_usage = StorageUsage()

        self.cameras: dict[str, CameraRecorder] = {
            name: CameraRecorder(settings, config, self.layout, on_budget=self.storage_usage.update)
            for name, settings in config['CAMERAS'].items()
        }

        self.mqtt_handler = MqttMessageHandler(config['MQTT_TOPIC_PREFIX'], self.cameras)
        self.mqtt_wrapper = MqttClientWrapper(
            broker=config['MQTT_BROKER'],
            port=config['MQTT_PORT'],
            topics=feed_topics(config['MQTT_TOPIC_PREFIX']),
            on_message_callback=self._on_mqtt_message,
            username=config.get('MQTT_USER'),
            password=config.get('MQTT_PASSWORD'),
        )

        # Request counter for periodic logging
        self._request_count = 0
        self._request_count_lock = threading.Lock()
        self._scheduler = schedule.Scheduler()
        self._scheduler_thread = None

        # Flask app (lazy import to avoid circular deps)
        from events_recorder.web.server import create_app

        self.flask_app = create_app(self)

    def _on_mqtt_message(self, client, userdata, message):
        self.mqtt_handler.on_message(client, userdata, message)

    def get_camera(self, name: str) -> CameraRecorder | None:
        """Look up a camera by configured name or by its storage folder name."""
        recorder = self.cameras.get(name)
        if recorder is not None:
            return recorder
        for configured, rec in self.cameras.items():
            if self.layout.sanitize_camera_name(configured) == name:
                return rec
        return None

    def _run_scheduler(self):
        """Background thread for service-wide periodic tasks."""
        self._scheduler.every(5).minutes.do(self._log_request_stats)
        while not self._shutdown:
            self._scheduler.run_pending()
            time.sleep(1)

    def _log_request_stats(self):
        """Log API request count and recorder activity every 5 minutes."""
        with self._request_count_lock:
            count = self._request_count
            self._request_count = 0
        active = sum(1 for rec in self.cameras.values() if rec.state.session is not None)
        logger.info(
            f"API stats (5m): {count} requests, {active} active sessions, "
            f"MQTT {'connected' if self.mqtt_wrapper.mqtt_connected else 'disconnected'}"
        )

    def start_services(self):
        """Start cameras, MQTT and the scheduler. The web server is run by Gunicorn."""
        logger.info("=" * 60)
        logger.info("Starting Events Recorder")
        logger.info("=" * 60)
        logger.info(f"MQTT Broker: {self.config['MQTT_BROKER']}:{self.config['MQTT_PORT']}")
        logger.info(f"MQTT Topic Prefix: {self.config['MQTT_TOPIC_PREFIX']}")
        logger.info(f"Storage Path: {self.config['STORAGE_PATH']}")
        logger.info(f"FFmpeg: {self.config.get('FFMPEG_PATH', 'ffmpeg')} (timeout {self.config.get('FFMPEG_TIMEOUT', 120)}s)")
        logger.info(f"Log Level: {self.config.get('LOG_LEVEL', 'INFO')}")
        for name, settings in self.config['CAMERAS'].items():
            logger.info(
                f"  {name}: {_redact_url(settings['stream_url'])} "
                f"classes={settings['classes']} motion={settings['motion_mode']}"
            )
        logger.info("=" * 60)

        for name, recorder in self.cameras.items():
            try:
                recorder.start()
            except (OSError, ValueError) as e:
                logger.error(f"Failed to start recording for {name}: {e}")

        self.mqtt_wrapper.start()

        self._scheduler_thread = threading.Thread(target=self._run_scheduler, daemon=True)
        self._scheduler_thread.start()

    def stop(self):
        """Graceful shutdown: every camera's encoders are stopped before returning."""
        if self._shutdown:
            return
        logger.info("Shutting down orchestrator...")
        self._shutdown = True
        self._scheduler.clear()
        try:
            self.mqtt_wrapper.stop()
        except Exception as e:
            logger.warning(f"Error stopping MQTT client: {e}")
        for name, recorder in self.cameras.items():
            try:
                recorder.release()
            except Exception as e:
                logger.error(f"Error releasing {name}: {e}")
