#!/usr/bin/env python3
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

from entity_store import DASHBOARD_STATE_PATH, EntityStore
from geometry import centroid
from weather_data import ValueCache, day_window


def _audit_point(cache: ValueCache, lat: float, lng: float, instant: datetime) -> dict:
    day_start, day_end = day_window(instant)
    before = cache.stats.network_calls
    series = cache.fetch(lat, lng, day_start, day_end)
    return {
        "lat": lat,
        "lon": lng,
        "window": [day_start, day_end],
        "hour": instant.hour,
        "points": len(series),
        "value": round(cache.get_value_at(series, instant), 2),
        "status": "fallback" if series.synthetic else "ok",
        "network": cache.stats.network_calls > before,
    }


def main() -> None:
    store = EntityStore(state_path=DASHBOARD_STATE_PATH or None)
    cache = ValueCache()
    # Archive data lags real time by a few days.
    instant = (datetime.now(timezone.utc) - timedelta(days=7)).replace(minute=0, second=0, microsecond=0)

    points = [centroid(r.vertices) for r in store.regions()]
    if not points:
        points = [(52.52, 13.41), (47.37, 8.54), (40.71, -74.01)]

    rows = []
    for lat, lng in points:
        rows.append(_audit_point(cache, lat, lng, instant))
        # Second call must be served from memory.
        rows.append(_audit_point(cache, lat, lng, instant))

    fallbacks = [r for r in rows if r["status"] == "fallback"]
    print(
        f"total={len(rows)} fallbacks={len(fallbacks)} cached={len(cache)} "
        f"network_calls={cache.stats.network_calls} hits={cache.stats.hits}"
    )
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
