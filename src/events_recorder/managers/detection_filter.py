"""Per-camera detection filter: enabled classes, score thresholds, bounding box, movement."""

import logging
from typing import Any

from events_recorder.models import Detection, DetectionClass, parse_detection_class

logger = logging.getLogger('events-recorder')


def parse_detection(raw: Any) -> Detection | None:
    """Validate one raw detection dict from the feed. Returns None when it cannot be used.

    Accepts both the framework's camelCase keys (className, boundingBox) and
    snake_case. Score defaults to 1.0 when absent (e.g. camera-side detections).
    """
    if not isinstance(raw, dict):
        return None
    cls = parse_detection_class(raw.get('className') or raw.get('class_name') or raw.get('label'))
    if cls is None:
        return None
    try:
        score = float(raw.get('score', 1.0))
    except (TypeError, ValueError):
        return None
    box = raw.get('boundingBox', raw.get('bounding_box'))
    has_box = isinstance(box, (list, tuple)) and len(box) == 4
    movement = raw.get('movement')
    if isinstance(movement, dict) and 'moving' in movement:
        is_moving = bool(movement.get('moving'))
    else:
        is_moving = bool(raw.get('is_moving', True))
    return Detection(class_name=cls, score=score, has_bounding_box=has_box, is_moving=is_moving)


class DetectionFilter:
    """Decides which detections qualify to start or extend a session for one camera."""

    def __init__(self, camera_settings: dict[str, Any]):
        self.enabled_classes = {
            DetectionClass(c) for c in camera_settings.get('classes') or []
        }
        self.score_threshold = float(camera_settings.get('score_threshold', 0.7))
        self.class_thresholds = {
            DetectionClass(k): float(v)
            for k, v in (camera_settings.get('class_thresholds') or {}).items()
        }
        self.require_bounding_box = bool(camera_settings.get('require_bounding_box', False))
        self.ignore_stationary = bool(camera_settings.get('ignore_stationary', False))

    def threshold_for(self, cls: DetectionClass) -> float:
        return self.class_thresholds.get(cls, self.score_threshold)

    def accepts(self, detection: Detection) -> bool:
        # Motion travels on its own debounced path, never through the detection batch.
        if detection.class_name is DetectionClass.MOTION:
            return False
        if detection.class_name not in self.enabled_classes:
            return False
        if detection.score < self.threshold_for(detection.class_name):
            return False
        if self.require_bounding_box and not detection.has_bounding_box:
            return False
        if self.ignore_stationary and not detection.is_moving:
            return False
        return True

    def filter(self, detections: list[Detection]) -> list[Detection]:
        """Return the qualifying subset, preserving order."""
        return [d for d in detections if self.accepts(d)]
