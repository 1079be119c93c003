import unittest
from unittest.mock import patch
from datetime import datetime, timezone

import numpy as np

try:
    import app as app_module
    from colorize import ColorizationEngine
    from dashboard import Dashboard
    from entity_store import EntityStore
    from timeline import TimeContext
    from weather_data import HourlySeries, value_at_hour
except ModuleNotFoundError:
    app_module = None

ANCHOR = datetime(2026, 10, 1, 12, tzinfo=timezone.utc)
TRIANGLE = [(52.50, 13.40), (52.51, 13.42), (52.52, 13.40)]


class _FakeCache:
    def __init__(self, value=27.0):
        self.value = value
        self.calls = 0

    def fetch(self, lat, lng, day_start, day_end):
        self.calls += 1
        return HourlySeries(
            latitude=lat,
            longitude=lng,
            field_name="temperature_2m",
            times=("t",),
            values=np.array([self.value], dtype=np.float64),
        )

    def get_value_at(self, series, instant):
        return value_at_hour(series, instant.hour)


def _fake_dashboard():
    store = EntityStore()
    cache = _FakeCache()
    engine = ColorizationEngine(store, cache, max_workers=1)
    return Dashboard(store=store, cache=cache, engine=engine, timeline=TimeContext(anchor=ANCHOR))


def _drain(dashboard):
    for future in list(dashboard.pending):
        future.result(timeout=5)


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def setUp(self):
        self.dashboard = _fake_dashboard()
        self.patcher = patch.object(app_module, "dashboard", self.dashboard)
        self.patcher.start()

    def tearDown(self):
        self.patcher.stop()
        self.dashboard.shutdown()

    def test_create_region_triggers_recompute(self):
        payload = app_module.create_region(app_module.RegionCreate(vertices=TRIANGLE))
        _drain(self.dashboard)
        state = app_module.state()
        self.assertEqual(payload["name"], "Region 1")
        self.assertEqual(len(state["regions"]), 1)
        self.assertEqual(state["regions"][0]["value"], 27.0)
        self.assertEqual(state["regions"][0]["color"], "#F59E0B")

    def test_create_region_with_two_vertices_returns_400(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.create_region(app_module.RegionCreate(vertices=TRIANGLE[:2]))
        self.assertEqual(ctx.exception.status_code, 400)

    def test_drawing_flow_auto_completes_near_first_point(self):
        app_module.drawing_start()
        for lat, lng in TRIANGLE:
            payload = app_module.drawing_point(lat=lat, lng=lng)
            self.assertIsNone(payload["region"])
        payload = app_module.drawing_point(lat=52.5004, lng=13.4003)
        self.assertIsNotNone(payload["region"])
        self.assertFalse(payload["active"])
        self.assertEqual(len(payload["region"]["coordinates"]), 3)

    def test_drawing_complete_with_too_few_points_returns_400(self):
        app_module.drawing_start()
        app_module.drawing_point(lat=1.0, lng=1.0)
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.drawing_complete()
        self.assertEqual(ctx.exception.status_code, 400)

    def test_point_outside_drawing_mode_returns_400(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.drawing_point(lat=1.0, lng=1.0)
        self.assertEqual(ctx.exception.status_code, 400)

    def test_unknown_region_returns_404(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.delete_region("region-missing")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_rule_endpoints(self):
        created = app_module.create_rule(
            app_module.ColorRuleCreate(data_source_id="open-meteo-temp", operator=">", threshold=26, color="#EF4444")
        )
        self.assertEqual(created["label"], "> 26")
        updated = app_module.update_rule(created["id"], app_module.ColorRuleUpdate(threshold=30))
        self.assertEqual(updated["threshold"], 30.0)
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.create_rule(
                app_module.ColorRuleCreate(data_source_id="open-meteo-temp", operator="!=", threshold=1, color="#000")
            )
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(app_module.delete_rule(created["id"]), {"ok": True})

    def test_rule_edits_recolor_existing_regions(self):
        app_module.create_region(app_module.RegionCreate(vertices=TRIANGLE))
        _drain(self.dashboard)
        self.assertEqual(app_module.state()["regions"][0]["color"], "#F59E0B")

        with patch.object(self.dashboard, "request_recompute", wraps=self.dashboard.request_recompute) as recompute:
            app_module.update_rule("hot", app_module.ColorRuleUpdate(threshold=30))
            _drain(self.dashboard)
            self.assertEqual(app_module.state()["regions"][0]["color"], "#10B981")

            created = app_module.create_rule(
                app_module.ColorRuleCreate(data_source_id="open-meteo-temp", operator=">", threshold=26, color="#EF4444")
            )
            _drain(self.dashboard)
            self.assertEqual(app_module.state()["regions"][0]["color"], "#EF4444")

            app_module.delete_rule(created["id"])
            _drain(self.dashboard)
            self.assertEqual(app_module.state()["regions"][0]["color"], "#10B981")

            app_module.toggle_data_source("open-meteo-temp")
            _drain(self.dashboard)
        self.assertEqual(recompute.call_count, 4)

    def test_timeline_scrub_and_interval(self):
        payload = app_module.timeline_scrub(time=datetime(2026, 10, 2, 5, tzinfo=timezone.utc))
        self.assertEqual(payload["selected_time"], "2026-10-02T05:00:00+00:00")
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.timeline_interval(start=ANCHOR, end=ANCHOR)
        self.assertEqual(ctx.exception.status_code, 400)
        app_module.timeline_mode(mode="range")
        payload = app_module.timeline_interval(start=ANCHOR, end=datetime(2026, 10, 3, tzinfo=timezone.utc))
        self.assertEqual(payload["mode"], "range")
        self.assertEqual(payload["end_time"], "2026-10-03T00:00:00+00:00")

    def test_recompute_wait_returns_report(self):
        self.dashboard.store.add_region(TRIANGLE)
        payload = app_module.recompute(wait=True)
        self.assertEqual(len(payload["computed"]), 1)
        self.assertEqual(payload["failed"], [])

    def test_toggle_data_source_skips_regions(self):
        self.dashboard.store.add_region(TRIANGLE)
        app_module.toggle_data_source("open-meteo-temp")
        payload = app_module.recompute(wait=True)
        self.assertEqual(len(payload["skipped"]), 1)

    def test_archive_value_for_region(self):
        region = self.dashboard.store.add_region(TRIANGLE)
        payload = app_module.archive_value(region_id=region.region_id)
        self.assertEqual(payload["day_start"], "2026-10-01")
        self.assertEqual(payload["day_end"], "2026-10-02")
        self.assertEqual(payload["value"], 27.0)
        self.assertFalse(payload["synthetic"])

    def test_health(self):
        self.assertEqual(app_module.health(), {"status": "ok"})


if __name__ == "__main__":
    unittest.main()
