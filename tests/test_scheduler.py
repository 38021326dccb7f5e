import threading
import unittest
from unittest import mock

from calflow.scheduler import CacheJanitor


class CacheJanitorTests(unittest.TestCase):
    def test_sweeps_periodically_until_stopped(self) -> None:
        swept = threading.Event()
        source_cache = mock.Mock()
        source_cache.sweep.side_effect = lambda: swept.set() or 0

        janitor = CacheJanitor(source_cache, interval_seconds=1)
        janitor.interval_seconds = 0.01
        janitor.start()
        try:
            self.assertTrue(swept.wait(timeout=2))
            self.assertTrue(janitor.is_running())
        finally:
            janitor.stop()
        self.assertFalse(janitor.is_running())

    def test_sweep_errors_do_not_stop_the_loop(self) -> None:
        calls = []
        second_call = threading.Event()

        def sweep() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            second_call.set()
            return 0

        source_cache = mock.Mock()
        source_cache.sweep.side_effect = sweep
        janitor = CacheJanitor(source_cache, interval_seconds=1)
        janitor.interval_seconds = 0.01
        with self.assertLogs("calflow.scheduler", level="ERROR"):
            janitor.start()
            try:
                self.assertTrue(second_call.wait(timeout=2))
            finally:
                janitor.stop()


if __name__ == "__main__":
    unittest.main()
