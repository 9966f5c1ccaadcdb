"""Tests for detection classes, priority order, and clip record helpers."""

import unittest

from events_recorder.models import (
    ClipRecord,
    DetectionClass,
    RetentionBudget,
    get_main_detection_class,
    parse_detection_class,
    sort_by_priority,
)


class TestDetectionClasses(unittest.TestCase):

    def test_parse_known_and_alias_labels(self):
        self.assertIs(parse_detection_class("person"), DetectionClass.PERSON)
        self.assertIs(parse_detection_class(" Person "), DetectionClass.PERSON)
        self.assertIs(parse_detection_class("car"), DetectionClass.VEHICLE)
        self.assertIs(parse_detection_class("dog"), DetectionClass.ANIMAL)
        self.assertIs(parse_detection_class("license_plate"), DetectionClass.PLATE)

    def test_parse_unknown_label(self):
        self.assertIsNone(parse_detection_class("toaster"))
        self.assertIsNone(parse_detection_class(""))
        self.assertIsNone(parse_detection_class(None))

    def test_primary_class_priority(self):
        self.assertIs(
            get_main_detection_class([DetectionClass.VEHICLE, DetectionClass.PERSON, DetectionClass.MOTION]),
            DetectionClass.PERSON,
        )
        self.assertIs(
            get_main_detection_class([DetectionClass.PERSON, DetectionClass.FACE]),
            DetectionClass.FACE,
        )
        self.assertIs(get_main_detection_class([DetectionClass.MOTION]), DetectionClass.MOTION)
        self.assertIsNone(get_main_detection_class([]))

    def test_sort_by_priority_dedupes(self):
        ordered = sort_by_priority([DetectionClass.MOTION, DetectionClass.ANIMAL,
                                    DetectionClass.PLATE, DetectionClass.ANIMAL])
        self.assertEqual(ordered, [DetectionClass.PLATE, DetectionClass.ANIMAL, DetectionClass.MOTION])


class TestClipRecord(unittest.TestCase):

    def _record(self, start, end):
        return ClipRecord(
            filename=f"{start}_{end}_1100000000.mp4",
            video_path="/v",
            thumbnail_path="/t",
            size_bytes=10,
            start_time=start,
            end_time=end,
            detection_classes=(DetectionClass.PERSON, DetectionClass.MOTION),
        )

    def test_derived_fields(self):
        rec = self._record(1000, 31000)
        self.assertEqual(rec.clip_id, "1000_31000_1100000000")
        self.assertEqual(rec.duration_ms, 30000)
        self.assertIs(rec.primary_class, DetectionClass.PERSON)

    def test_overlaps(self):
        rec = self._record(1000, 2000)
        self.assertTrue(rec.overlaps(None, None))
        self.assertTrue(rec.overlaps(1500, None))
        self.assertTrue(rec.overlaps(None, 1000))
        self.assertFalse(rec.overlaps(2001, None))
        self.assertFalse(rec.overlaps(None, 999))

    def test_budget_free_bytes(self):
        self.assertEqual(RetentionBudget(max_bytes=100, occupied_bytes=30).free_bytes, 70)


if __name__ == "__main__":
    unittest.main()
