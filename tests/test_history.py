import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import mongomock
from pymongo.errors import PyMongoError

from calflow.history import HistoryRecorder, clamp_limit
from calflow.models import History, HistoryAction


def _entry(flow_id: str, minutes: int, action: HistoryAction = HistoryAction.EXECUTE) -> History:
    return History(
        flow_id=flow_id,
        address="192.0.2.1",
        timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes),
        success=True,
        debug=[f"run {minutes}"],
        action=action,
    )


class HistoryRecorderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.recorder = HistoryRecorder(mongomock.MongoClient().calflow.history)
        self.recorder.create_indexes()

    def test_recent_is_newest_first_and_filtered(self) -> None:
        for minutes in (1, 3, 2):
            self.assertTrue(self.recorder.record(_entry("f1", minutes)))
        self.recorder.record(_entry("f2", 10, HistoryAction.DELETE))

        entries = self.recorder.recent("f1")
        self.assertEqual([entry.debug for entry in entries], [["run 3"], ["run 2"], ["run 1"]])
        self.assertTrue(all(entry.flow_id == "f1" for entry in entries))
        self.assertEqual(entries[0].action, "execute")

    def test_recent_honours_limit(self) -> None:
        for minutes in range(5):
            self.recorder.record(_entry("f1", minutes))
        self.assertEqual(len(self.recorder.recent("f1", limit=2)), 2)
        self.assertEqual(len(self.recorder.recent("f1", limit=0)), 1)

    def test_record_failure_is_logged_not_raised(self) -> None:
        collection = mock.Mock()
        collection.insert_one.side_effect = PyMongoError("history store down")
        recorder = HistoryRecorder(collection)
        with self.assertLogs("calflow.history", level="WARNING") as logs:
            self.assertFalse(recorder.record(_entry("f1", 1)))
        self.assertIn("cannot save EXECUTE history", logs.output[0])


class ClampLimitTests(unittest.TestCase):
    def test_bounds(self) -> None:
        self.assertEqual(clamp_limit(None), 100)
        self.assertEqual(clamp_limit(0), 1)
        self.assertEqual(clamp_limit(-5), 1)
        self.assertEqual(clamp_limit(250), 250)
        self.assertEqual(clamp_limit(50000), 10000)


if __name__ == "__main__":
    unittest.main()
