"""
Runner Pool — Signal Monitor Tests
"""

import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from support import CONFIG, FakeClock

from pool.errors import InvalidSignal
from pool.runtime import PoolRuntime
from pool.signals import SignalMonitor
from pool.store import InMemoryRecordStore
from pool.types import SignalStatus, WorkerSignal


class TestClassify(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.signals = SignalMonitor(InMemoryRecordStore(), sleep=self.clock.sleep,
                                     monotonic=self.clock.monotonic)

    def test_no_record_retries(self):
        self.assertEqual(self.signals.classify("i-1", "R", "UD_OK"), SignalStatus.RETRY)

    def test_other_run_retries(self):
        self.signals.emit("i-1", WorkerSignal.UD_OK, "OTHER")
        self.assertEqual(self.signals.classify("i-1", "R", "UD_OK"), SignalStatus.RETRY)

    def test_ok_signal_succeeds(self):
        self.signals.emit("i-1", WorkerSignal.UD_REG_OK, "R")
        self.assertEqual(self.signals.classify("i-1", "R", WorkerSignal.UD_REG_OK),
                         SignalStatus.SUCCESS)

    def test_failed_counterpart_fails(self):
        self.signals.emit("i-1", WorkerSignal.UD_REG_FAILED, "R")
        self.assertEqual(self.signals.classify("i-1", "R", "UD_REG_OK"), SignalStatus.FAILED)

    def test_unrelated_signal_retries(self):
        self.signals.emit("i-1", WorkerSignal.UD_FAILED, "R")
        self.assertEqual(self.signals.classify("i-1", "R", "UD_REG_OK"), SignalStatus.RETRY)

    def test_last_write_wins(self):
        self.signals.emit("i-1", WorkerSignal.UD_OK, "R")
        self.signals.emit("i-1", WorkerSignal.UD_REG_OK, "R")
        self.assertEqual(self.signals.classify("i-1", "R", "UD_OK"), SignalStatus.RETRY)

    def test_failed_signal_cannot_be_demanded(self):
        with self.assertRaises(InvalidSignal):
            self.signals.classify("i-1", "R", "UD_FAILED")

    def test_unknown_signal_rejected(self):
        with self.assertRaises(InvalidSignal):
            self.signals.classify("i-1", "R", "bogus")

    def test_invalid_signal_is_value_error(self):
        with self.assertRaises(ValueError):
            self.signals.poll_on_signal(["i-1"], "R", "bogus", 1, 1)

    def test_emit_rejects_unknown_state(self):
        with self.assertRaises(ValueError):
            self.signals.emit("i-1", "bogus", "R")


class TestAggregate(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.signals = SignalMonitor(InMemoryRecordStore(), sleep=self.clock.sleep,
                                     monotonic=self.clock.monotonic)

    def test_all_success(self):
        for i in ("a", "b", "c"):
            self.signals.emit(i, "UD_OK", "R")
        result = self.signals.poll_on_signal(["a", "b", "c"], "R", "UD_OK", 10, 1)
        self.assertTrue(result.state)
        self.assertEqual(self.clock.sleeps, [])

    def test_single_failure_flips_aggregate(self):
        self.signals.emit("a", "UD_OK", "R")
        self.signals.emit("b", "UD_FAILED", "R")
        result = self.signals.poll_on_signal(["a", "b", "c"], "R", "UD_OK", 10, 1)
        self.assertFalse(result.state)
        self.assertIn("b reported UD_FAILED", result.message)
        self.assertEqual(self.clock.sleeps, [])

    def test_pending_times_out(self):
        self.signals.emit("a", "UD_OK", "R")
        result = self.signals.poll_on_signal(["a", "b"], "R", "UD_OK", 3, 1)
        self.assertFalse(result.state)
        self.assertIn("Timed out", result.message)
        self.assertIn("'b'", result.message)
        self.assertEqual(self.clock.sleeps, [1, 1, 1])

    def test_signal_arrives_while_polling(self):
        original = self.signals.all_completed_on_signal
        calls = {"n": 0}

        def all_completed(ids, run_id, signal):
            calls["n"] += 1
            if calls["n"] == 3:
                self.signals.emit("a", "UD_REMOVE_REG_OK", "R")
            return original(ids, run_id, signal)

        self.signals.all_completed_on_signal = all_completed
        result = self.signals.poll_single("a", "R", "UD_REMOVE_REG_OK", 10, 2)
        self.assertTrue(result.state)
        self.assertEqual(calls["n"], 3)

    def test_empty_id_list_succeeds(self):
        self.assertTrue(self.signals.poll_on_signal([], "R", "UD_OK", 1, 1).state)


class TestStop(unittest.TestCase):
    """A set stop event turns a pending poll into a failed, aborted one."""

    def test_stopped_monitor_aborts_without_sleeping(self):
        clock = FakeClock()
        stop = threading.Event()
        signals = SignalMonitor(InMemoryRecordStore(), sleep=clock.sleep,
                                monotonic=clock.monotonic, stop_event=stop)
        stop.set()
        result = signals.poll_on_signal(["a"], "R", "UD_OK", 10, 1)
        self.assertFalse(result.state)
        self.assertIn("Aborted", result.message)
        self.assertEqual(clock.sleeps, [])

    def test_runtime_stop_aborts_its_polls(self):
        runtime = PoolRuntime.in_memory(CONFIG, clock=FakeClock())
        runtime.stop()
        self.assertTrue(runtime.stop_event.is_set())
        signal_result = runtime.signals.poll_on_signal(["a"], "R", "UD_OK", 600, 5)
        health_result = runtime.health.poll_all_healthy(["a"], timeout_seconds=600,
                                                        interval_seconds=5)
        self.assertIn("Aborted", signal_result.message)
        self.assertIn("Aborted", health_result.message)
        self.assertFalse(health_result.state)


if __name__ == "__main__":
    unittest.main()
