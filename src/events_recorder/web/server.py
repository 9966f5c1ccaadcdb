"""Flask app for the Events Recorder clip API."""

import logging
import time
from datetime import timedelta

from flask import Flask, jsonify

from events_recorder.logging_utils import error_buffer
from events_recorder.web.routes import create_api_bp

logger = logging.getLogger('events-recorder')


def create_app(orchestrator):
    """Create Flask app with all endpoints. Routes close over orchestrator."""
    app = Flask(__name__)
    app.register_blueprint(create_api_bp(orchestrator), url_prefix='/api')

    @app.before_request
    def _count_request():
        with orchestrator._request_count_lock:
            orchestrator._request_count += 1

    @app.route('/status')
    def status():
        """Return orchestrator status for monitoring."""
        uptime_seconds = time.time() - orchestrator._start_time
        return jsonify({
            "online": True,
            "mqtt_connected": orchestrator.mqtt_wrapper.mqtt_connected,
            "uptime_seconds": uptime_seconds,
            "uptime": str(timedelta(seconds=int(uptime_seconds))),
            "started_at": time.strftime(
                "%Y-%m-%d %H:%M:%S", time.localtime(orchestrator._start_time)
            ),
            "cameras": {
                name: rec.state.get_stats()["phase"]
                for name, rec in orchestrator.cameras.items()
            },
            "recent_errors": error_buffer.get_all()[:5],
            "config": {
                "log_level": orchestrator.config.get("LOG_LEVEL", "INFO"),
                "ffmpeg_timeout": orchestrator.config.get("FFMPEG_TIMEOUT", 120),
                "mqtt_topic_prefix": orchestrator.config.get("MQTT_TOPIC_PREFIX"),
            },
        })

    return app
