import unittest
from datetime import timedelta
from unittest import mock

import mongomock
from pymongo.errors import PyMongoError

from calflow.errors import FlowIDConflict, NotFound, PersistenceFailed
from calflow.flow_store import FlowStore, prepare_flow
from calflow.models import DebugStep, Flow


def _flow(**overrides) -> Flow:
    data = {
        "flow-id": "f1",
        "name": "Team calendar",
        "source": "https://example.com/cal.ics",
        "cache-duration": 600,
        "steps": [{"type": "debug", "message": "hello"}],
    }
    data.update(overrides)
    return Flow.model_validate(data)


class PrepareFlowTests(unittest.TestCase):
    def test_short_cache_duration_is_floored(self) -> None:
        prepared = prepare_flow(_flow(**{"cache-duration": 30}), "alice")
        self.assertEqual(prepared.cache_duration, timedelta(minutes=2))

    def test_long_cache_duration_is_unchanged(self) -> None:
        prepared = prepare_flow(_flow(**{"cache-duration": 600}), "alice")
        self.assertEqual(prepared.cache_duration, timedelta(minutes=10))

    def test_owner_comes_from_caller_not_payload(self) -> None:
        prepared = prepare_flow(_flow(**{"user-id": "mallory"}), "alice")
        self.assertEqual(prepared.user_id, "alice")

    def test_missing_id_is_generated(self) -> None:
        prepared = prepare_flow(_flow(**{"flow-id": "  "}), "alice", id_factory=lambda: "generated-id")
        self.assertEqual(prepared.flow_id, "generated-id")

    def test_default_ids_are_unique(self) -> None:
        first = prepare_flow(_flow(**{"flow-id": ""}), "alice")
        second = prepare_flow(_flow(**{"flow-id": ""}), "alice")
        self.assertTrue(first.flow_id)
        self.assertNotEqual(first.flow_id, second.flow_id)


class FlowStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.collection = mongomock.MongoClient().calflow.flows
        self.store = FlowStore(self.collection)
        self.store.create_indexes()

    def test_upsert_creates_then_finds(self) -> None:
        result = self.store.upsert(prepare_flow(_flow(), "alice"))
        self.assertEqual((result.matched_count, result.modified_count, result.upserted_count), (0, 0, 1))
        self.assertTrue(result.created)

        stored = self.store.find_by_id("f1")
        self.assertEqual(stored.user_id, "alice")
        self.assertEqual(stored.cache_duration, timedelta(minutes=10))
        self.assertEqual(stored.steps, [DebugStep(message="hello")])

    def test_unchanged_upsert_is_idempotent(self) -> None:
        flow = prepare_flow(_flow(), "alice")
        self.store.upsert(flow)
        result = self.store.upsert(flow)
        self.assertEqual((result.matched_count, result.modified_count, result.upserted_count), (1, 0, 0))
        self.assertEqual(self.collection.count_documents({}), 1)

    def test_changed_upsert_modifies(self) -> None:
        self.store.upsert(prepare_flow(_flow(), "alice"))
        result = self.store.upsert(prepare_flow(_flow(name="Renamed"), "alice"))
        self.assertEqual((result.matched_count, result.modified_count, result.upserted_count), (1, 1, 0))
        self.assertEqual(self.store.find_by_id("f1").name, "Renamed")

    def test_other_owner_cannot_overwrite(self) -> None:
        self.store.upsert(prepare_flow(_flow(), "alice"))
        with self.assertRaises(FlowIDConflict):
            self.store.upsert(prepare_flow(_flow(name="Hijacked"), "mallory"))
        stored = self.store.find_by_id("f1")
        self.assertEqual(stored.user_id, "alice")
        self.assertEqual(stored.name, "Team calendar")
        self.assertEqual(self.collection.count_documents({}), 1)

    def test_upsert_requires_owner(self) -> None:
        with self.assertRaises(PersistenceFailed):
            self.store.upsert(_flow())

    def test_find_missing_flow(self) -> None:
        with self.assertRaises(NotFound):
            self.store.find_by_id("nope")

    def test_list_by_owner_returns_heads_for_owner_only(self) -> None:
        self.store.upsert(prepare_flow(_flow(**{"flow-id": "b"}), "alice"))
        self.store.upsert(prepare_flow(_flow(**{"flow-id": "a"}), "alice"))
        self.store.upsert(prepare_flow(_flow(**{"flow-id": "c"}), "bob"))

        heads = self.store.list_by_owner("alice")
        self.assertEqual([head.flow_id for head in heads], ["a", "b"])
        self.assertNotIn("steps", heads[0].model_dump(by_alias=True))

        flows = self.store.list_flows_by_owner("bob")
        self.assertEqual(len(flows), 1)
        self.assertEqual(flows[0].steps, [DebugStep(message="hello")])

    def test_delete_scoped_to_owner(self) -> None:
        self.store.upsert(prepare_flow(_flow(), "alice"))
        self.assertEqual(self.store.delete("f1", user_id="mallory"), 0)
        self.assertEqual(self.store.delete("f1", user_id="alice"), 1)
        with self.assertRaises(NotFound):
            self.store.find_by_id("f1")

    def test_storage_errors_become_persistence_failed(self) -> None:
        collection = mock.Mock()
        collection.find_one.side_effect = PyMongoError("connection reset")
        with self.assertRaises(PersistenceFailed) as ctx:
            FlowStore(collection).find_by_id("f1")
        self.assertIn("connection reset", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
