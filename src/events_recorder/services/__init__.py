"""Service modules."""

from events_recorder.services.camera import CameraRecorder
from events_recorder.services.mqtt_client import MqttClientWrapper
from events_recorder.services.process import ProcessSupervisor

__all__ = [
    "CameraRecorder",
    "MqttClientWrapper",
    "ProcessSupervisor",
]
