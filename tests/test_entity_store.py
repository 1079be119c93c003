import json
import tempfile
import threading
import unittest
from pathlib import Path

from color_rules import DEFAULT_COLOR, RuleOperator
from entity_store import STORAGE_KEY, EntityStore, InvalidGeometry

TRIANGLE = [(52.50, 13.40), (52.51, 13.42), (52.52, 13.40)]


class EntityStoreTests(unittest.TestCase):
    def test_seeded_defaults(self):
        store = EntityStore()
        self.assertEqual([ds.source_id for ds in store.data_sources()], ["open-meteo-temp"])
        self.assertEqual([r.rule_id for r in store.rules()], ["cold", "mild", "hot"])

    def test_instances_are_isolated(self):
        first = EntityStore()
        second = EntityStore()
        first.add_region(TRIANGLE)
        self.assertEqual(len(first.regions()), 1)
        self.assertEqual(second.regions(), [])

    def test_add_region_uses_data_source_color_and_sequential_name(self):
        store = EntityStore()
        ds = store.add_data_source("Rain", "precipitation", "#EF4444")
        store.add_region(TRIANGLE)
        region = store.add_region(TRIANGLE, data_source_id=ds.source_id)
        self.assertEqual(region.name, "Region 2")
        self.assertEqual(region.color, "#EF4444")
        self.assertIsNone(region.value)

    def test_region_for_missing_source_gets_default_color(self):
        store = EntityStore()
        region = store.add_region(TRIANGLE, data_source_id="deleted-source")
        self.assertEqual(region.color, DEFAULT_COLOR)

    def test_vertex_bounds_are_enforced(self):
        store = EntityStore()
        with self.assertRaises(InvalidGeometry):
            store.add_region(TRIANGLE[:2])
        with self.assertRaises(InvalidGeometry):
            store.add_region([(float(i), float(i)) for i in range(13)])
        self.assertEqual(store.regions(), [])

    def test_active_data_source_prefers_enabled(self):
        store = EntityStore()
        rain = store.add_data_source("Rain", "precipitation", "#EF4444")
        store.toggle_data_source("open-meteo-temp")
        self.assertEqual(store.active_data_source().source_id, rain.source_id)
        region = store.add_region(TRIANGLE)
        self.assertEqual(region.data_source_id, rain.source_id)

    def test_data_source_color_does_not_repaint_existing_regions(self):
        store = EntityStore()
        region = store.add_region(TRIANGLE)
        store.update_data_source_color("open-meteo-temp", "#22C55E")
        self.assertEqual(store.data_source("open-meteo-temp").color, "#22C55E")
        self.assertEqual(store.region(region.region_id).color, "#3B82F6")
        self.assertEqual(store.add_region(TRIANGLE).color, "#22C55E")
        with self.assertRaises(KeyError):
            store.toggle_data_source("missing")

    def test_returned_regions_are_copies(self):
        store = EntityStore()
        region = store.add_region(TRIANGLE)
        region.vertices.append((0.0, 0.0))
        region.color = "#000000"
        stored = store.region(region.region_id)
        self.assertEqual(len(stored.vertices), 3)
        self.assertNotEqual(stored.color, "#000000")

    def test_computed_writes_are_last_write_wins(self):
        store = EntityStore()
        region = store.add_region(TRIANGLE)
        self.assertTrue(store.update_region_value(region.region_id, 12.0))
        self.assertTrue(store.update_region_value(region.region_id, 8.0))
        self.assertEqual(store.region(region.region_id).value, 8.0)

    def test_generation_guard_discards_older_writes(self):
        store = EntityStore()
        region = store.add_region(TRIANGLE)
        self.assertTrue(store.update_region_value(region.region_id, 12.0, generation=5))
        self.assertFalse(store.update_region_value(region.region_id, 8.0, generation=4))
        self.assertTrue(store.update_region_color(region.region_id, "#10B981", generation=5))
        stored = store.region(region.region_id)
        self.assertEqual(stored.value, 12.0)
        self.assertEqual(stored.color, "#10B981")
        self.assertEqual(stored.generation, 5)

    def test_writes_to_deleted_region_are_dropped(self):
        store = EntityStore()
        region = store.add_region(TRIANGLE)
        store.delete_region(region.region_id)
        self.assertFalse(store.update_region_color(region.region_id, "#000000"))
        with self.assertRaises(KeyError):
            store.delete_region(region.region_id)

    def test_rule_crud(self):
        store = EntityStore()
        rule = store.add_color_rule("open-meteo-temp", ">", 30, "#EF4444")
        self.assertEqual(rule.label, "> 30")
        self.assertIs(rule.operator, RuleOperator.GT)
        updated = store.update_color_rule(rule.rule_id, operator="<=", threshold="31.5")
        self.assertIs(updated.operator, RuleOperator.LE)
        self.assertEqual(updated.threshold, 31.5)
        with self.assertRaises(ValueError):
            store.update_color_rule(rule.rule_id, priority=1)
        store.delete_color_rule(rule.rule_id)
        self.assertNotIn(rule.rule_id, [r.rule_id for r in store.rules()])
        with self.assertRaises(ValueError):
            store.add_color_rule("open-meteo-temp", "!=", 1, "#000000")

    def test_rules_for_filters_by_source(self):
        store = EntityStore()
        store.add_color_rule("other", ">", 1, "#000000")
        self.assertEqual(len(store.rules_for("open-meteo-temp")), 3)
        self.assertEqual(len(store.rules_for("other")), 1)

    def test_state_document_round_trip(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "state" / "dashboard.json"
            store = EntityStore(state_path=path)
            region = store.add_region(TRIANGLE, name="Mitte")
            store.add_color_rule("open-meteo-temp", "=", 20, "#A855F7", "Twenty")
            store.toggle_data_source("open-meteo-temp")

            document = json.loads(path.read_text(encoding="utf-8"))
            self.assertIn(STORAGE_KEY, document)

            restored = EntityStore(state_path=path)
            restored_region = restored.region(region.region_id)
            self.assertEqual(restored_region.name, "Mitte")
            self.assertEqual(restored_region.vertices, TRIANGLE)
            self.assertEqual(restored_region.created_at, region.created_at)
            self.assertFalse(restored.data_source("open-meteo-temp").enabled)
            self.assertEqual(len(restored.rules()), 4)

    def test_corrupt_state_file_keeps_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "dashboard.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertLogs("region_weather.entity_store", level="ERROR"):
                store = EntityStore(state_path=path)
            self.assertEqual(len(store.rules()), 3)

    def test_malformed_coordinates_fall_back_to_defaults(self):
        document = {
            STORAGE_KEY: {
                "regions": [{"id": "r", "name": "n", "coordinates": [[1.0]], "dataSource": "open-meteo-temp"}],
                "color_rules": [],
            }
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "dashboard.json"
            path.write_text(json.dumps(document), encoding="utf-8")
            with self.assertLogs("region_weather.entity_store", level="ERROR"):
                store = EntityStore(state_path=path)
            self.assertEqual(store.regions(), [])
            self.assertEqual([r.rule_id for r in store.rules()], ["cold", "mild", "hot"])

    def test_concurrent_mutations_persist_final_state(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "dashboard.json"
            store = EntityStore(state_path=path)
            errors = []

            def _worker():
                try:
                    for _ in range(10):
                        store.add_region(TRIANGLE)
                except Exception as exc:
                    errors.append(exc)

            with self.assertNoLogs("region_weather.entity_store", level="ERROR"):
                workers = [threading.Thread(target=_worker) for _ in range(8)]
                for worker in workers:
                    worker.start()
                for worker in workers:
                    worker.join(10)

            self.assertEqual(errors, [])
            expected = {r.region_id for r in store.regions()}
            self.assertEqual(len(expected), 80)
            restored = EntityStore(state_path=path)
            self.assertEqual({r.region_id for r in restored.regions()}, expected)
            self.assertEqual(list(Path(tmp).glob("*.tmp")), [])

    def test_document_without_storage_key_is_rejected(self):
        store = EntityStore()
        with self.assertRaises(ValueError):
            store.from_document({"other": {}})


if __name__ == "__main__":
    unittest.main()
