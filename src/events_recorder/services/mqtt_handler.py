"""
MQTT message parsing and dispatch for the detection feed.

Topics are {prefix}/{camera}/detections and {prefix}/{camera}/motion. The
handler decodes the payload, resolves the camera, and hands the event to
that camera's recorder. Invalid payloads and unknown cameras are logged and
dropped.
"""

import json
import logging
from typing import Any

logger = logging.getLogger("events-recorder")

_MOTION_TRUE = {"true", "on", "1", "yes", "detected"}
_MOTION_FALSE = {"false", "off", "0", "no", "clear"}


def parse_motion_payload(payload: bytes) -> bool | None:
    """Accept true/false, ON/OFF, 1/0 or JSON {"motion": bool}. Returns None if unrecognised."""
    text = payload.decode("utf-8", errors="replace").strip()
    lowered = text.lower().strip('"')
    if lowered in _MOTION_TRUE:
        return True
    if lowered in _MOTION_FALSE:
        return False
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict):
        value = data.get("motion", data.get("state"))
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return parse_motion_payload(value.encode("utf-8"))
    return None


class MqttMessageHandler:
    """Routes detections and motion events to per-camera recorders."""

    def __init__(self, topic_prefix: str, cameras: dict[str, Any]) -> None:
        self._prefix_parts = [p for p in topic_prefix.strip("/").split("/") if p]
        self._cameras = cameras
        self.messages_received = 0
        self.messages_dropped = 0

    def split_topic(self, topic: str) -> tuple[str, str] | None:
        """Return (camera, kind) for a feed topic, or None when it is not one."""
        parts = topic.split("/")
        n = len(self._prefix_parts)
        if len(parts) != n + 2 or parts[:n] != self._prefix_parts:
            return None
        return parts[n], parts[n + 1]

    def on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        """Route incoming MQTT messages by topic. Called by MqttClientWrapper."""
        logger.debug("MQTT message received: %s (%s bytes)", msg.topic, len(msg.payload))
        self.messages_received += 1
        try:
            route = self.split_topic(msg.topic)
            if route is None:
                logger.debug("Ignoring message on unexpected topic %s", msg.topic)
                self.messages_dropped += 1
                return
            camera_name, kind = route
            recorder = self._cameras.get(camera_name)
            if recorder is None:
                logger.debug("Ignoring event for unconfigured camera '%s'", camera_name)
                self.messages_dropped += 1
                return

            if kind == "detections":
                self._handle_detections(recorder, json.loads(msg.payload.decode("utf-8")), msg.topic)
            elif kind == "motion":
                self._handle_motion(recorder, msg.payload, msg.topic)
            else:
                logger.debug("Ignoring unknown event kind '%s' on %s", kind, msg.topic)
                self.messages_dropped += 1
        except json.JSONDecodeError as e:
            self.messages_dropped += 1
            logger.error("Invalid JSON in %s: %s", msg.topic, e)
        except Exception as e:
            self.messages_dropped += 1
            logger.exception("Error processing message from %s: %s", msg.topic, e)

    def _handle_detections(self, recorder: Any, payload: Any, topic: str) -> None:
        if isinstance(payload, list):
            detections = payload
        elif isinstance(payload, dict):
            detections = payload.get("detections")
        else:
            detections = None
        if not isinstance(detections, list):
            logger.warning("Detection payload on %s has no detections list", topic)
            self.messages_dropped += 1
            return
        recorder.on_detections(detections)

    def _handle_motion(self, recorder: Any, payload: bytes, topic: str) -> None:
        active = parse_motion_payload(payload)
        if active is None:
            logger.warning("Unrecognised motion payload on %s: %r", topic, payload[:100])
            self.messages_dropped += 1
            return
        recorder.on_motion(active)
