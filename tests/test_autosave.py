import threading
import unittest

from engines.autosave import AutosaveScheduler


class AutosaveSchedulerTests(unittest.TestCase):
    def test_rejects_non_positive_interval(self):
        with self.assertRaises(ValueError):
            AutosaveScheduler(lambda: None, 0)

    def test_ticks_until_stopped(self):
        ticks = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) >= 2:
                ticks.set()

        scheduler = AutosaveScheduler(callback, 0.01, name="test-autosave")
        scheduler.start()
        self.assertTrue(ticks.wait(2.0))
        scheduler.stop(timeout=1.0)
        self.assertFalse(scheduler.running)
        settled = len(calls)
        threading.Event().wait(0.05)
        self.assertEqual(len(calls), settled)

    def test_failing_tick_is_logged_and_loop_survives(self):
        done = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("storage down")
            done.set()

        scheduler = AutosaveScheduler(callback, 0.01)
        with self.assertLogs("engines.autosave", level="ERROR") as logs:
            scheduler.start()
            self.assertTrue(done.wait(2.0))
            scheduler.stop(timeout=1.0)
        self.assertIn("failed", logs.output[0])

    def test_stop_before_start_is_harmless(self):
        scheduler = AutosaveScheduler(lambda: None, 1.0)
        scheduler.stop()
        self.assertFalse(scheduler.running)


if __name__ == "__main__":
    unittest.main()
