"""Manager modules for file layout, detection filtering, session state, and the clip catalog."""

from events_recorder.managers.catalog import RetentionIndexer
from events_recorder.managers.detection_filter import DetectionFilter
from events_recorder.managers.file import StorageLayout
from events_recorder.managers.state import EventTriggerStateMachine

__all__ = [
    "StorageLayout",
    "DetectionFilter",
    "EventTriggerStateMachine",
    "RetentionIndexer",
]
