"""Tests for SegmentCaptureManager: command contract, crash recovery, periodic restart, pruning."""

import os
import re
import shutil
import signal
import sys
import tempfile
import time
import unittest
from unittest.mock import MagicMock, patch

from events_recorder.managers.file import StorageLayout
from events_recorder.services.capture import (
    SEGMENT_OPEN_MARKER,
    SegmentCaptureManager,
    build_capture_command,
)
from events_recorder.services.process import ProcessSupervisor

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


def _live_handle():
    handle = MagicMock()
    handle.is_alive.return_value = True
    return handle


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestBuildCaptureCommand(unittest.TestCase):

    def test_segment_muxer_contract(self):
        cmd = build_capture_command("ffmpeg", "rtsp://cam/stream", "/s/cam/tmp/segment%03d.ts")
        self.assertEqual(cmd[0], "ffmpeg")
        joined = " ".join(cmd)
        self.assertIn("-i rtsp://cam/stream", joined)
        self.assertIn("-c copy", joined)
        self.assertIn("-f segment", joined)
        self.assertIn("-segment_time 1", joined)
        self.assertIn("-reset_timestamps 1", joined)
        self.assertIn("-loglevel verbose", joined)
        self.assertIn("-rtsp_transport tcp", joined)
        self.assertEqual(cmd[-1], "/s/cam/tmp/segment%03d.ts")

    def test_non_rtsp_input_has_no_transport_flag(self):
        cmd = build_capture_command("ffmpeg", "http://cam/stream.m3u8", "/t/segment%03d.ts")
        self.assertNotIn("-rtsp_transport", cmd)


class TestSegmentCaptureManager(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(lambda: shutil.rmtree(self.tmp, ignore_errors=True))
        self.layout = StorageLayout(self.tmp)
        self.supervisor = MagicMock()
        self.supervisor.start.side_effect = lambda *a, **k: _live_handle()
        self.clock = FakeClock()
        self.capture = SegmentCaptureManager(
            self.supervisor, self.layout, "cam", "rtsp://cam/stream",
            max_clip_length_seconds=60, capture_restart_hours=2.0, clock=self.clock,
        )

    def _marker_callback(self):
        pattern, callback = self.supervisor.add_marker.call_args[0]
        return pattern, callback

    def test_tick_starts_capture_when_idle(self):
        self.capture.tick()
        self.assertEqual(self.supervisor.start.call_count, 1)
        name, cmd = self.supervisor.start.call_args[0]
        self.assertEqual(name, "capture")
        self.assertTrue(cmd[-1].endswith(os.path.join("cam", "tmp", "segment%03d.ts")))
        self.assertTrue(os.path.isdir(self.capture.scratch_dir))

    def test_running_capture_left_alone(self):
        self.capture.start()
        self.capture.tick()
        self.capture.tick()
        self.assertEqual(self.supervisor.start.call_count, 1)

    def test_crash_gives_exactly_one_restart(self):
        handle = self.capture.start()
        on_exit = self.supervisor.start.call_args[1]["on_exit"]
        handle.is_alive.return_value = False
        on_exit(handle, 1, True)

        self.capture.tick()
        self.capture.tick()
        self.capture.tick()

        self.assertEqual(self.supervisor.start.call_count, 2)
        self.assertEqual(self.capture.restarts, 1)

    def test_start_consumes_pending_crash(self):
        handle = self.capture.start()
        on_exit = self.supervisor.start.call_args[1]["on_exit"]
        handle.is_alive.return_value = False
        on_exit(handle, 1, True)

        self.capture.stop_for_assembly()
        self.capture.start()
        self.capture.tick()
        self.assertEqual(self.supervisor.start.call_count, 2)
        self.assertEqual(self.capture.restarts, 0)

        self.clock.now += 2 * 3600
        self.capture.tick()
        self.assertEqual(self.supervisor.start.call_count, 3)
        self.assertEqual(self.capture.restarts, 1)

    def test_start_stops_running_capture(self):
        first = self.capture.start()
        self.capture.start()
        self.supervisor.stop.assert_called_once_with(first, self.capture.stop_timeout)
        self.assertEqual(self.capture.generation, 2)

    def test_exit_of_replaced_handle_ignored(self):
        old = self.capture.start()
        on_exit = self.supervisor.start.call_args[1]["on_exit"]
        self.capture.stop_for_assembly()
        self.capture.start()
        on_exit(old, 1, True)
        self.capture.tick()
        self.assertEqual(self.supervisor.start.call_count, 2)

    def test_periodic_restart(self):
        self.capture.start()
        self.clock.now += 2 * 3600 - 1
        self.capture.tick()
        self.assertEqual(self.supervisor.start.call_count, 1)

        self.clock.now += 1
        self.capture.tick()
        self.assertEqual(self.supervisor.stop.call_count, 1)
        self.assertEqual(self.supervisor.start.call_count, 2)
        self.assertEqual(self.capture.capture_started_at, self.clock.now)

    def test_periodic_restart_deferred(self):
        self.capture.start()
        self.clock.now += 3 * 3600
        self.capture.tick(allow_restart=False)
        self.supervisor.stop.assert_not_called()

    def test_segment_marker_updates_index(self):
        pattern, callback = self._marker_callback()
        self.assertEqual(pattern, SEGMENT_OPEN_MARKER)
        line = "[segment @ 0x55d1] Opening '/s/cam/tmp/segment042.ts' for writing"
        callback(re.search(pattern, line))
        self.assertEqual(self.capture.current_segment_index, 42)

    def test_stop_for_assembly_returns_last_index(self):
        handle = self.capture.start()
        self.capture.current_segment_index = 65
        self.assertEqual(self.capture.stop_for_assembly(), 65)
        self.supervisor.stop.assert_called_once_with(handle, self.capture.stop_timeout)
        self.assertTrue(self.capture.force_closed)
        self.assertFalse(self.capture.is_running())

    def test_start_resets_state_and_scratch(self):
        self.capture.start()
        self.capture.current_segment_index = 9
        stale = os.path.join(self.capture.scratch_dir, "segment009.ts")
        with open(stale, "wb") as f:
            f.write(b"x")
        self.capture.stop_for_assembly()
        self.capture.start()
        self.assertIsNone(self.capture.current_segment_index)
        self.assertFalse(self.capture.force_closed)
        self.assertFalse(os.path.exists(stale))


@unittest.skipUnless(os.name == "posix", "POSIX signals required")
class TestCaptureWithRealProcess(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(lambda: shutil.rmtree(self.tmp, ignore_errors=True))
        self.supervisor = ProcessSupervisor(os.path.join(self.tmp, "pids.json"))
        self.addCleanup(lambda: self.supervisor.stop_all(timeout=1))
        self.clock = FakeClock()
        self.capture = SegmentCaptureManager(
            self.supervisor, StorageLayout(self.tmp), "cam", "rtsp://cam/stream",
            max_clip_length_seconds=60, capture_restart_hours=2.0, stop_timeout=1.0, clock=self.clock,
        )
        self.addCleanup(self.capture.stop)
        patcher = patch("events_recorder.services.capture.build_capture_command", return_value=SLEEPER)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _wait_for_crash(self):
        deadline = time.time() + 10
        while not self.capture._crash_pending and time.time() < deadline:
            time.sleep(0.05)
        self.assertTrue(self.capture._crash_pending)

    def test_crash_then_assembly_restart_keeps_capture(self):
        handle = self.capture.start()
        os.kill(handle.pid, signal.SIGKILL)
        self._wait_for_crash()

        self.capture.stop_for_assembly()
        restarted = self.capture.start()
        segment = os.path.join(self.capture.scratch_dir, "segment000.ts")
        with open(segment, "wb") as f:
            f.write(b"ts")

        self.capture.tick()
        self.assertTrue(os.path.exists(segment))
        self.assertTrue(self.capture.is_running())
        self.assertIsNotNone(self.capture.capture_started_at)
        self.assertEqual(self.capture.get_stats()["pid"], restarted.pid)

        self.clock.now += 3 * 3600
        self.capture.tick()
        self.assertTrue(self.capture.is_running())
        self.assertNotEqual(self.capture.get_stats()["pid"], restarted.pid)
        self.assertEqual(self.capture.restarts, 1)


class TestSegmentPruning(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(lambda: shutil.rmtree(self.tmp, ignore_errors=True))
        layout = StorageLayout(self.tmp)
        self.dirs = layout.ensure_dirs("cam")
        self.capture = SegmentCaptureManager(MagicMock(), layout, "cam", "rtsp://x", max_clip_length_seconds=60)
        self.now = time.time()

    def _segment(self, index, age_seconds):
        path = os.path.join(self.dirs.tmp_folder, f"segment{index:03d}.ts")
        with open(path, "wb") as f:
            f.write(b"ts")
        mtime = self.now - age_seconds
        os.utime(path, (mtime, mtime))
        return path

    def test_list_segments_sorted_by_index(self):
        self._segment(10, 1)
        self._segment(2, 5)
        self._segment(100, 0)
        with open(os.path.join(self.dirs.tmp_folder, "concat.txt"), "w") as f:
            f.write("")
        self.assertEqual([s.index for s in self.capture.list_segments()], [2, 10, 100])

    def test_prune_removes_only_old_segments(self):
        old = [self._segment(i, 200 - i) for i in range(3)]
        fresh = [self._segment(i, 10) for i in range(3, 6)]
        self.assertEqual(self.capture.prune_segments(now=self.now), 3)
        for path in old:
            self.assertFalse(os.path.exists(path))
        for path in fresh:
            self.assertTrue(os.path.exists(path))

    def test_prune_continues_after_failure(self):
        self._segment(0, 300)
        self._segment(1, 299)
        with patch("events_recorder.services.capture.remove_file", side_effect=[False, True]) as remove:
            removed = self.capture.prune_segments(now=self.now)
        self.assertEqual(removed, 1)
        self.assertEqual(remove.call_count, 2)
        first_path = remove.call_args_list[0][0][0]
        self.assertTrue(first_path.endswith("segment000.ts"))


if __name__ == "__main__":
    unittest.main()
