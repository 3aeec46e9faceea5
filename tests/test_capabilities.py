import json
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from llm_relay.capabilities import CapabilityStore
from llm_relay.models import ModelCapability


def _caps(*ids):
    return [ModelCapability(id=i, supports_reasoning=i.startswith("o")) for i in ids]


class TestCapabilityStore(unittest.TestCase):
    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.path = Path(self._tmp.name) / "capabilities.jsonl"
        self.store = CapabilityStore(self.path)

    def tearDown(self):
        self._tmp.cleanup()

    def test_unknown_model_gets_optimistic_default(self):
        cap = self.store.get("o4-mini")
        self.assertTrue(cap.supports_chat)
        self.assertTrue(cap.supports_reasoning)
        self.assertIsNone(cap.supports_temperature)
        self.assertTrue(cap.accepts_temperature)
        self.assertNotIn("o4-mini", self.store)

    def test_record_temperature_unsupported_creates_and_persists(self):
        result = self.store.record_temperature_unsupported("o4-mini")
        self.assertTrue(result.ok)
        self.assertIs(self.store.get("o4-mini").supports_temperature, False)

        reloaded = CapabilityStore(self.path)
        self.assertTrue(reloaded.load())
        self.assertIs(reloaded.get("o4-mini").supports_temperature, False)

    def test_merge_preserves_false_and_drops_absent_ids(self):
        self.store.merge_catalogue(_caps("gpt-4o", "o1"), fetched_at=1000)
        self.store.record_temperature_unsupported("o1")

        self.store.merge_catalogue(_caps("o1", "o3"), fetched_at=2000)

        self.assertIs(self.store.get("o1").supports_temperature, False)
        self.assertNotIn("gpt-4o", self.store)
        self.assertIsNone(self.store.get("o3").supports_temperature)
        catalogue = self.store.catalogue()
        self.assertEqual(catalogue.fetched_at, 2000)
        self.assertEqual(catalogue.ids, ["o1", "o3"])

    def test_catalogue_is_none_before_first_merge(self):
        self.store.record_temperature_unsupported("o1")
        self.assertIsNone(self.store.catalogue())

    def test_file_format(self):
        self.store.merge_catalogue(_caps("gpt-4o"), fetched_at=1234)
        lines = self.path.read_text(encoding="utf-8").splitlines()
        self.assertEqual(json.loads(lines[0]), {"fetchedAt": 1234})
        self.assertEqual(
            json.loads(lines[1]),
            {
                "id": "gpt-4o",
                "supportsChat": True,
                "supportsReasoning": False,
                "supportsTemperature": None,
                "listed": True,
            },
        )

    def test_load_round_trip_keeps_catalogue(self):
        self.store.merge_catalogue(_caps("gpt-4o", "o3"), fetched_at=5000)
        reloaded = CapabilityStore(self.path)
        reloaded.load()
        self.assertEqual(reloaded.catalogue().ids, ["gpt-4o", "o3"])
        self.assertEqual(reloaded.catalogue().fetched_at, 5000)

    def test_missing_file_loads_empty(self):
        self.assertFalse(self.store.load())
        self.assertEqual(len(self.store), 0)

    def test_corrupt_file_loads_empty(self):
        self.path.write_text('{"fetchedAt": 1}\nnot json\n', encoding="utf-8")
        with self.assertLogs("llm_relay.capabilities", level="ERROR"):
            self.assertFalse(self.store.load())
        self.assertEqual(len(self.store), 0)
        self.assertIsNone(self.store.catalogue())

    def test_write_failure_is_reported_not_raised(self):
        blocker = Path(self._tmp.name) / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = CapabilityStore(blocker / "capabilities.jsonl")

        with self.assertLogs("llm_relay.capabilities", level="WARNING"):
            result = store.record_temperature_unsupported("o1")

        self.assertFalse(result.ok)
        self.assertTrue(result.error)
        # the in-memory fact still applies for this process
        self.assertIs(store.get("o1").supports_temperature, False)

    def test_memory_only_store(self):
        store = CapabilityStore()
        self.assertTrue(store.record_temperature_unsupported("o1").ok)


if __name__ == "__main__":
    unittest.main()
