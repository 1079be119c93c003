from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Dict, List

from colorize import ColorizationEngine
from entity_store import EntityStore, Region
from geometry import RegionDraft
from timeline import TimeContext
from weather_data import ValueCache

LOGGER = logging.getLogger("region_weather.dashboard")


class Dashboard:
    """Wires the store, archive cache, engine and timeline for one UI session.

    Every change that can alter a region's color (new region, rule edits,
    data source toggles, timeline moves) schedules a recompute sweep.
    """

    def __init__(
        self,
        store: EntityStore | None = None,
        cache: ValueCache | None = None,
        engine: ColorizationEngine | None = None,
        timeline: TimeContext | None = None,
    ) -> None:
        self.store = store if store is not None else EntityStore()
        self.cache = cache if cache is not None else ValueCache()
        self.engine = engine if engine is not None else ColorizationEngine(self.store, self.cache)
        self.timeline = timeline if timeline is not None else TimeContext()
        self.timeline.listener = self._on_time_change
        self.draft = RegionDraft()
        self.pending: List[Future] = []
        self._pending_guard = threading.Lock()

    def request_recompute(self) -> Future:
        future = self.engine.schedule_recompute(self.timeline)
        with self._pending_guard:
            self.pending = [f for f in self.pending if not f.done()]
            self.pending.append(future)
        return future

    def shutdown(self) -> None:
        self.timeline.shutdown()
        self.engine.shutdown(wait=False)

    # Drawing flow

    def start_drawing(self) -> None:
        self.draft.start()

    def cancel_drawing(self) -> None:
        self.draft.cancel()

    def add_point(self, lat: float, lng: float) -> Region | None:
        vertices = self.draft.add_point(lat, lng)
        if vertices is None:
            return None
        return self.add_region(vertices)

    def complete_region(self) -> Region:
        return self.add_region(self.draft.complete())

    def add_region(self, vertices, data_source_id: str | None = None, name: str | None = None) -> Region:
        region = self.store.add_region(vertices, data_source_id=data_source_id, name=name)
        self.request_recompute()
        return region

    # Data sources and rules

    def toggle_data_source(self, source_id: str):
        ds = self.store.toggle_data_source(source_id)
        self.request_recompute()
        return ds

    def add_color_rule(self, data_source_id: str, operator: str, threshold: float, color: str, label: str | None = None):
        rule = self.store.add_color_rule(data_source_id, operator, threshold, color, label)
        self.request_recompute()
        return rule

    def update_color_rule(self, rule_id: str, **updates):
        rule = self.store.update_color_rule(rule_id, **updates)
        self.request_recompute()
        return rule

    def delete_color_rule(self, rule_id: str) -> None:
        self.store.delete_color_rule(rule_id)
        self.request_recompute()

    def state(self) -> Dict[str, object]:
        return {
            "regions": self.store.regions(),
            "data_sources": self.store.data_sources(),
            "color_rules": self.store.rules(),
            "timeline": self.timeline.snapshot(),
            "drawing": {"active": self.draft.active, "points": self.draft.points},
        }

    def _on_time_change(self, timeline: TimeContext) -> None:
        LOGGER.debug("Time context moved to %s", timeline.selected_time.isoformat())
        self.request_recompute()
