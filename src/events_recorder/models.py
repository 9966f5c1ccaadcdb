"""Recording models: detections, segments, sessions, clips, and storage budgets."""

import time
from enum import Enum, auto
from dataclasses import dataclass, field


class DetectionClass(str, Enum):
    """Detection classes that can contribute to a clip."""
    MOTION = "motion"
    PERSON = "person"
    VEHICLE = "vehicle"
    ANIMAL = "animal"
    FACE = "face"
    PLATE = "plate"
    PACKAGE = "package"


# Stable bitmap positions in clip filenames; positions 7-9 are reserved.
DETECTION_CLASS_INDEX: dict[DetectionClass, int] = {
    DetectionClass.MOTION: 0,
    DetectionClass.PERSON: 1,
    DetectionClass.VEHICLE: 2,
    DetectionClass.ANIMAL: 3,
    DetectionClass.FACE: 4,
    DetectionClass.PLATE: 5,
    DetectionClass.PACKAGE: 6,
}

# Most specific first; used for the primary class and for ordered class lists.
DETECTION_PRIORITY: tuple[DetectionClass, ...] = (
    DetectionClass.FACE,
    DetectionClass.PLATE,
    DetectionClass.PACKAGE,
    DetectionClass.PERSON,
    DetectionClass.ANIMAL,
    DetectionClass.VEHICLE,
    DetectionClass.MOTION,
)

DEFAULT_CLASSES: tuple[DetectionClass, ...] = (
    DetectionClass.PERSON,
    DetectionClass.VEHICLE,
    DetectionClass.ANIMAL,
    DetectionClass.FACE,
    DetectionClass.PLATE,
    DetectionClass.PACKAGE,
)

# Raw detector labels folded into the known classes.
_LABEL_ALIASES: dict[str, DetectionClass] = {
    "car": DetectionClass.VEHICLE,
    "truck": DetectionClass.VEHICLE,
    "bus": DetectionClass.VEHICLE,
    "motorcycle": DetectionClass.VEHICLE,
    "bicycle": DetectionClass.VEHICLE,
    "boat": DetectionClass.VEHICLE,
    "dog": DetectionClass.ANIMAL,
    "cat": DetectionClass.ANIMAL,
    "bird": DetectionClass.ANIMAL,
    "horse": DetectionClass.ANIMAL,
    "sheep": DetectionClass.ANIMAL,
    "cow": DetectionClass.ANIMAL,
    "bear": DetectionClass.ANIMAL,
    "deer": DetectionClass.ANIMAL,
    "rabbit": DetectionClass.ANIMAL,
    "raccoon": DetectionClass.ANIMAL,
    "fox": DetectionClass.ANIMAL,
    "skunk": DetectionClass.ANIMAL,
    "squirrel": DetectionClass.ANIMAL,
    "license_plate": DetectionClass.PLATE,
}


def parse_detection_class(label: str | None) -> DetectionClass | None:
    """Map a raw label (e.g. "car", "Person") to a DetectionClass, or None if unknown."""
    if not label or not isinstance(label, str):
        return None
    normalized = label.strip().lower()
    try:
        return DetectionClass(normalized)
    except ValueError:
        return _LABEL_ALIASES.get(normalized)


def sort_by_priority(classes) -> list[DetectionClass]:
    """Return the unique classes ordered most specific first."""
    present = set(classes)
    return [c for c in DETECTION_PRIORITY if c in present]


def get_main_detection_class(classes) -> DetectionClass | None:
    """Primary class of a clip (face > plate > package > person > animal > vehicle > motion)."""
    ordered = sort_by_priority(classes)
    return ordered[0] if ordered else None


@dataclass(frozen=True, slots=True)
class Detection:
    """One validated detection from the feed."""
    class_name: DetectionClass
    score: float
    has_bounding_box: bool = False
    is_moving: bool = True


@dataclass(frozen=True, slots=True)
class Segment:
    """A one-second transport-stream segment in the scratch directory."""
    index: int
    path: str
    created_at: float


class SessionPhase(Enum):
    """Lifecycle phase of a camera's recording session."""
    IDLE = auto()        # No session
    ACTIVE = auto()      # Session running, deadline armed
    EXTENDING = auto()   # Active, inside the extension debounce window
    FINALIZING = auto()  # Deadline passed, clip being assembled


@dataclass(slots=True)
class RecordingSession:
    """The single in-flight recording of one camera."""
    camera: str
    started_at: float
    event_segment_index: int
    deadline: float
    save_segment_index: int | None = None
    last_extension_at: float | None = None
    detection_classes: set[DetectionClass] = field(default_factory=set)
    phase: SessionPhase = SessionPhase.ACTIVE


@dataclass(frozen=True, slots=True)
class ClipRecord:
    """A finished clip; everything but the paths and size is recovered from the filename."""
    filename: str
    video_path: str
    thumbnail_path: str
    size_bytes: int
    start_time: int  # epoch ms
    end_time: int  # epoch ms
    detection_classes: tuple[DetectionClass, ...] = ()

    @property
    def clip_id(self) -> str:
        return self.filename.rsplit(".", 1)[0]

    @property
    def duration_ms(self) -> int:
        return self.end_time - self.start_time

    @property
    def primary_class(self) -> DetectionClass | None:
        return get_main_detection_class(self.detection_classes)

    def overlaps(self, start_ms: int | None, end_ms: int | None) -> bool:
        if start_ms is not None and self.end_time < start_ms:
            return False
        if end_ms is not None and self.start_time > end_ms:
            return False
        return True


@dataclass(frozen=True, slots=True)
class RetentionBudget:
    """Storage accounting for one camera, recomputed on every scan."""
    max_bytes: int
    occupied_bytes: int
    computed_at: float = field(default_factory=time.time)

    @property
    def free_bytes(self) -> int:
        return self.max_bytes - self.occupied_bytes


class StopOutcome(Enum):
    """How a supervised subprocess ended after stop()."""
    EXITED = auto()
    KILLED = auto()
