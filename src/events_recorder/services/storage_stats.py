"""
Aggregate storage usage across cameras for the stats endpoint.

Each camera reports its own RetentionBudget after accounting; the latest
report per camera wins and totals are summed on read, so cameras never
mutate a shared running total.
"""

import logging
import threading
from typing import Any

from events_recorder.models import RetentionBudget

logger = logging.getLogger("events-recorder")


class StorageUsage:
    """Latest RetentionBudget per camera."""

    def __init__(self) -> None:
        self._by_camera: dict[str, RetentionBudget] = {}
        self._lock = threading.Lock()

    def update(self, camera: str, budget: RetentionBudget) -> None:
        """Replace the camera's entry unless an older report arrives late."""
        with self._lock:
            current = self._by_camera.get(camera)
            if current is not None and current.computed_at > budget.computed_at:
                logger.debug("Ignoring stale storage report for %s", camera)
                return
            self._by_camera[camera] = budget

    def remove(self, camera: str) -> None:
        with self._lock:
            self._by_camera.pop(camera, None)

    def get(self) -> dict[str, Any]:
        """Return {total: {...}, by_camera: {camera: {...}}} in bytes."""
        with self._lock:
            snapshot = dict(self._by_camera)
        by_camera = {
            camera: {
                "max_bytes": b.max_bytes,
                "occupied_bytes": b.occupied_bytes,
                "free_bytes": b.free_bytes,
                "computed_at": b.computed_at,
            }
            for camera, b in sorted(snapshot.items())
        }
        total_max = sum(b.max_bytes for b in snapshot.values())
        total_occupied = sum(b.occupied_bytes for b in snapshot.values())
        return {
            "total": {
                "max_bytes": total_max,
                "occupied_bytes": total_occupied,
                "free_bytes": total_max - total_occupied,
            },
            "by_camera": by_camera,
        }
