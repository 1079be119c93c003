from __future__ import annotations

import itertools
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List

from color_rules import ColorRule, classify
from entity_store import EntityStore, Region
from geometry import centroid
from timeline import TimeContext
from weather_data import ValueCache, day_window

RECOMPUTE_WORKERS = int(os.getenv("RECOMPUTE_WORKERS", "4"))
COLORIZE_DISCARD_STALE_WRITES = os.getenv("COLORIZE_DISCARD_STALE_WRITES", "0").strip() == "1"
COLORIZE_INCLUDE_DISABLED = os.getenv("COLORIZE_INCLUDE_DISABLED", "0").strip() == "1"
LOGGER = logging.getLogger("region_weather.colorize")


@dataclass
class SweepReport:
    generation: int
    selected_time: datetime
    computed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ColorizationEngine:
    """Re-derives value and color of every region for one point in time.

    A sweep walks the regions one after another so the archive sees at most
    one request per sweep at a time. Sweeps started while another is still
    running are not cancelled; each writes its results as they arrive, so
    the last writer wins per region. With ``discard_stale_writes`` the store
    drops writes from sweeps older than the one that last touched a region.
    """

    def __init__(
        self,
        store: EntityStore,
        cache: ValueCache,
        discard_stale_writes: bool = COLORIZE_DISCARD_STALE_WRITES,
        include_disabled_sources: bool = COLORIZE_INCLUDE_DISABLED,
        max_workers: int = RECOMPUTE_WORKERS,
    ) -> None:
        self.store = store
        self.cache = cache
        self.discard_stale_writes = discard_stale_writes
        self.include_disabled_sources = include_disabled_sources
        self._generations = itertools.count(1)
        self._generation_guard = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="recompute")

    def next_generation(self) -> int:
        with self._generation_guard:
            return next(self._generations)

    def recompute(
        self,
        regions: Iterable[Region],
        rules: Iterable[ColorRule],
        time_context: TimeContext,
        generation: int | None = None,
        selected_time: datetime | None = None,
    ) -> SweepReport:
        if generation is None:
            generation = self.next_generation()
        # Later edits to the time context do not affect a sweep in progress.
        if selected_time is None:
            selected_time = time_context.selected_time
        rules = list(rules)
        report = SweepReport(generation=generation, selected_time=selected_time)
        write_generation = generation if self.discard_stale_writes else None

        for region in regions:
            source = self.store.data_source(region.data_source_id)
            if source is not None and not source.enabled and not self.include_disabled_sources:
                report.skipped.append(region.region_id)
                continue
            try:
                value, color = self._evaluate(region, rules, selected_time)
            except Exception:
                LOGGER.exception("Recompute failed for region id=%s generation=%d", region.region_id, generation)
                report.failed.append(region.region_id)
                continue
            self.store.update_region_color(region.region_id, color, generation=write_generation)
            self.store.update_region_value(region.region_id, value, generation=write_generation)
            report.computed.append(region.region_id)

        LOGGER.info(
            "Sweep generation=%d time=%s computed=%d skipped=%d failed=%d",
            generation,
            selected_time.isoformat(),
            len(report.computed),
            len(report.skipped),
            len(report.failed),
        )
        return report

    def recompute_all(self, time_context: TimeContext) -> SweepReport:
        return self.recompute(self.store.regions(), self.store.rules(), time_context)

    def schedule_recompute(self, time_context: TimeContext) -> Future:
        """Run :meth:`recompute_all` on a worker thread without waiting for it."""
        # Taking the generation here keeps it in trigger order.
        generation = self.next_generation()
        return self._executor.submit(
            self._run_scheduled,
            self.store.regions(),
            self.store.rules(),
            time_context,
            generation,
            time_context.selected_time,
        )

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _run_scheduled(
        self,
        regions: List[Region],
        rules: List[ColorRule],
        time_context: TimeContext,
        generation: int,
        selected_time: datetime,
    ) -> SweepReport:
        try:
            return self.recompute(regions, rules, time_context, generation=generation, selected_time=selected_time)
        except Exception:
            LOGGER.exception("Scheduled sweep generation=%d failed", generation)
            raise

    def _evaluate(self, region: Region, rules: List[ColorRule], selected_time: datetime) -> tuple[float, str]:
        lat, lng = centroid(region.vertices)
        day_start, day_end = day_window(selected_time)
        series = self.cache.fetch(lat, lng, day_start, day_end)
        value = self.cache.get_value_at(series, selected_time)
        color, rule = classify(value, rules, region.data_source_id)
        LOGGER.debug(
            "Region id=%s centroid=(%.5f, %.5f) value=%.2f rule=%s synthetic=%s",
            region.region_id,
            lat,
            lng,
            value,
            rule.rule_id if rule is not None else None,
            series.synthetic,
        )
        return value, color
