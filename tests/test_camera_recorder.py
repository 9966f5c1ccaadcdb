"""Tests for CameraRecorder: detection filtering into the state machine, session
finalization, retention reporting, and start/release wiring."""

import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from events_recorder.config import _camera_settings
from events_recorder.managers.file import StorageLayout
from events_recorder.managers.state import TriggerResult
from events_recorder.models import ClipRecord, DetectionClass, Segment, SessionPhase
from events_recorder.services.assembler import clip_window
from events_recorder.services.camera import CameraRecorder

GB = 1024 ** 3


class CameraRecorderTestBase(unittest.TestCase):

    def setUp(self):
        self.storage = tempfile.mkdtemp()
        self.addCleanup(lambda: shutil.rmtree(self.storage, ignore_errors=True))
        self.layout = StorageLayout(self.storage)
        self.settings = _camera_settings({
            "name": "Front Door",
            "stream_url": "rtsp://cam/front",
            "classes": ["person"],
            "score_threshold": 0.7,
            "post_event_seconds": 15,
            "max_clip_length_seconds": 60,
            "max_space_gb": 20,
        })
        self.config = {"STORAGE_PATH": self.storage, "CLEANUP_THRESHOLD_GB": 10, "CLIPS_TO_CLEANUP": 10}
        self.on_budget = MagicMock()
        self.recorder = CameraRecorder(self.settings, self.config, self.layout, on_budget=self.on_budget)
        self.dirs = self.layout.ensure_dirs("Front Door")
        self.recorder.capture = MagicMock()
        self.recorder.capture.current_segment_index = 40
        self.recorder.capture.stop_timeout = 5.0
        self.recorder.assembler = MagicMock()


class TestDetectionsIntoSession(CameraRecorderTestBase):

    def test_qualifying_detection_starts_session(self):
        result = self.recorder.on_detections([{"className": "person", "score": 0.9}], now=1000.0)
        self.assertEqual(result, TriggerResult.STARTED)
        session = self.recorder.state.session
        self.assertEqual(session.event_segment_index, 40)
        self.assertEqual(session.deadline, 1015.0)

    def test_filtered_detections_ignored(self):
        raw = [
            {"className": "person", "score": 0.5},
            {"className": "vehicle", "score": 0.99},
            {"className": "unknown", "score": 0.99},
            "garbage",
        ]
        self.assertEqual(self.recorder.on_detections(raw, now=1000.0), TriggerResult.IGNORED)
        self.assertIsNone(self.recorder.state.session)

    def test_motion_only_extends(self):
        self.assertEqual(self.recorder.on_motion(True, now=1000.0), TriggerResult.IGNORED)
        self.recorder.on_detections([{"className": "person", "score": 0.9}], now=1000.0)
        self.assertEqual(self.recorder.on_motion(True, now=1005.0), TriggerResult.EXTENDED)
        self.assertEqual(self.recorder.state.session.deadline, 1020.0)

    def _vehicle_recorder(self):
        settings = dict(self.settings, classes=["person", "vehicle"])
        recorder = CameraRecorder(settings, self.config, self.layout, on_budget=self.on_budget)
        recorder.capture = self.recorder.capture
        return recorder

    def test_vehicle_below_threshold_does_not_start(self):
        recorder = self._vehicle_recorder()
        low = recorder.on_detections([{"className": "vehicle", "score": 0.65}], now=1000.0)
        self.assertEqual(low, TriggerResult.IGNORED)
        self.assertIsNone(recorder.state.session)

        high = recorder.on_detections([{"className": "vehicle", "score": 0.75}], now=1001.0)
        self.assertEqual(high, TriggerResult.STARTED)
        self.assertEqual(recorder.state.session.detection_classes, {DetectionClass.VEHICLE})

    def test_vehicle_below_threshold_does_not_extend_active_session(self):
        recorder = self._vehicle_recorder()
        recorder.on_detections([{"className": "person", "score": 0.9}], now=1000.0)
        self.assertIs(recorder.state.get_phase(1005.0), SessionPhase.ACTIVE)

        low = recorder.on_detections([{"className": "vehicle", "score": 0.65}], now=1005.0)
        self.assertEqual(low, TriggerResult.IGNORED)
        self.assertEqual(recorder.state.session.deadline, 1015.0)
        self.assertEqual(recorder.state.session.detection_classes, {DetectionClass.PERSON})

        high = recorder.on_detections([{"className": "vehicle", "score": 0.75}], now=1006.0)
        self.assertEqual(high, TriggerResult.EXTENDED)
        self.assertEqual(recorder.state.session.deadline, 1021.0)


class TestCheckSession(CameraRecorderTestBase):

    def _open_session(self):
        self.recorder.on_detections([{"className": "person", "score": 0.9}], now=1000.0)

    def test_not_due_does_nothing(self):
        self._open_session()
        self.assertIsNone(self.recorder.check_session(now=1014.0))
        self.recorder.assembler.assemble.assert_not_called()

    def test_due_session_assembled_then_idle_and_capture_restarted(self):
        self._open_session()
        record = ClipRecord("a.mp4", "/v/a.mp4", "/t/a.jpg", 10, 985000, 1036000)
        self.recorder.assembler.assemble.return_value = record

        self.assertIs(self.recorder.check_session(now=1015.0), record)
        session = self.recorder.assembler.assemble.call_args[0][0]
        self.assertEqual(session.phase, SessionPhase.FINALIZING)
        self.assertIsNone(self.recorder.state.session)
        self.recorder.capture.start.assert_called_once()
        self.on_budget.assert_called_once()

    def test_failed_assembly_still_returns_to_idle(self):
        self._open_session()
        self.recorder.assembler.assemble.return_value = None
        self.assertIsNone(self.recorder.check_session(now=1015.0))
        self.assertEqual(self.recorder.state.get_phase(1016.0), SessionPhase.IDLE)
        self.recorder.capture.start.assert_called_once()
        self.on_budget.assert_not_called()

    def test_unexpected_error_still_returns_to_idle(self):
        self._open_session()
        self.recorder.assembler.assemble.side_effect = RuntimeError("boom")
        with self.assertRaises(RuntimeError):
            self.recorder.check_session(now=1015.0)
        self.assertIsNone(self.recorder.state.session)
        self.recorder.capture.start.assert_called_once()

    def test_capture_restart_error_is_logged(self):
        self._open_session()
        self.recorder.assembler.assemble.return_value = None
        self.recorder.capture.start.side_effect = OSError("no ffmpeg")
        with self.assertLogs("events-recorder", level="ERROR"):
            self.recorder.check_session(now=1015.0)
        self.assertIsNone(self.recorder.state.session)

    def test_periodic_restart_deferred_while_session_open(self):
        self.recorder.tick_capture()
        self.recorder.capture.tick.assert_called_with(allow_restart=True)
        self._open_session()
        self.recorder.tick_capture()
        self.recorder.capture.tick.assert_called_with(allow_restart=False)

    def test_capture_restart_under_open_session_rebases_it(self):
        capture = self.recorder.capture
        capture.generation = 0

        def restart(allow_restart=True):
            capture.generation += 1
            capture.capture_started_at = 1003.0

        capture.tick.side_effect = restart
        self._open_session()
        with self.assertLogs("events-recorder", level="WARNING"):
            self.recorder.tick_capture()

        session = self.recorder.state.session
        self.assertEqual(session.event_segment_index, 0)
        self.assertEqual(session.started_at, 1003.0)
        segments = [Segment(index=i, path=f"/tmp/segment{i:03d}.ts", created_at=1003.0 + i) for i in range(6)]
        window = clip_window(segments, session.event_segment_index, save_index=5, pre_event_seconds=15)
        self.assertEqual([s.index for s in window], list(range(6)))

    def test_capture_tick_without_restart_keeps_session(self):
        self.recorder.capture.generation = 3
        self._open_session()
        self.recorder.tick_capture()
        self.assertEqual(self.recorder.state.session.event_segment_index, 40)
        self.assertEqual(self.recorder.state.session.started_at, 1000.0)


class TestRetention(CameraRecorderTestBase):

    def _write_clip(self, name):
        path = os.path.join(self.dirs.videoclips_folder, f"{name}.mp4")
        with open(path, "wb") as f:
            f.write(b"clip")
        return path

    @patch("events_recorder.managers.catalog.dir_total_bytes")
    def test_enforce_retention_reports_budget(self, mock_total):
        mock_total.return_value = 1 * GB
        self.assertEqual(self.recorder.enforce_retention(), [])
        camera, budget = self.on_budget.call_args[0]
        self.assertEqual(camera, "Front Door")
        self.assertEqual(budget.occupied_bytes, 1 * GB)
        self.assertEqual(budget.max_bytes, 20 * GB)

    @patch("events_recorder.managers.catalog.dir_total_bytes")
    def test_enforce_retention_evicts_oldest(self, mock_total):
        mock_total.return_value = 11 * GB
        older = "1700000000000_1700000030000_1100000000"
        newer = "1700000100000_1700000130000_1100000000"
        self._write_clip(older)
        self._write_clip(newer)
        self.recorder.rescan()
        self.recorder.indexer.clips_to_cleanup = 1

        self.assertEqual(self.recorder.enforce_retention(), [older])
        self.assertEqual([c.clip_id for c in self.recorder.list_clips()], [newer])

    def test_delete_clips_reports_budget(self):
        clip_id = "1700000000000_1700000030000_1100000000"
        self._write_clip(clip_id)
        self.recorder.rescan()
        self.assertEqual(self.recorder.delete_clips([clip_id]), [clip_id])
        self.assertIsNone(self.recorder.get_clip(clip_id))
        self.on_budget.assert_called_once()

    def test_ensure_thumbnail_clamps_offset_to_clip(self):
        clip_id = "1700000000000_1700000010000_1100000000"
        self._write_clip(clip_id)
        self.recorder.rescan()
        record = self.recorder.get_clip(clip_id)
        self.recorder.assembler.generate_thumbnail.return_value = True
        self.assertTrue(self.recorder.ensure_thumbnail(record))
        self.recorder.assembler.generate_thumbnail.assert_called_once_with(
            record.video_path, record.thumbnail_path, 9.0
        )


class TestStartRelease(CameraRecorderTestBase):

    def test_start_registers_jobs_and_release_clears_them(self):
        self.recorder.supervisor = MagicMock()
        self.recorder.start()
        try:
            tags = set()
            for job in self.recorder.scheduler.jobs:
                tags |= job.tags
            self.assertTrue({"capture", "segments", "session", "index", "retention"} <= tags)
            self.recorder.supervisor.reap_orphans.assert_called_once()
            self.recorder.capture.start.assert_called_once()
            self.on_budget.assert_called_once()
        finally:
            self.recorder.release()
        self.assertEqual(self.recorder.scheduler.jobs, [])
        self.recorder.capture.stop.assert_called_once()
        self.recorder.supervisor.stop_all.assert_called_once_with(5.0)

    def test_release_discards_open_session(self):
        self.recorder.supervisor = MagicMock()
        self.recorder.on_detections([{"className": "person", "score": 0.9}], now=1000.0)
        self.recorder.release()
        self.assertIsNone(self.recorder.state.session)
        self.recorder.assembler.assemble.assert_not_called()


if __name__ == "__main__":
    unittest.main()
