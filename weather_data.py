from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Tuple

import numpy as np
import requests

ARCHIVE_BASE_URL = os.getenv("ARCHIVE_BASE_URL", "https://archive-api.open-meteo.com/v1/archive")
ARCHIVE_HOURLY_FIELD = os.getenv("ARCHIVE_HOURLY_FIELD", "temperature_2m").strip() or "temperature_2m"
ARCHIVE_TIMEOUT_SECONDS = float(os.getenv("ARCHIVE_TIMEOUT_SECONDS", "10"))
FALLBACK_MIN_VALUE = 5.0
FALLBACK_MAX_VALUE = 35.0
DEFAULT_SERIES_VALUE = 20.0
LOGGER = logging.getLogger("region_weather.weather_data")


class ArchiveIngestionError(RuntimeError):
    """Base class for archive ingestion failures."""


class ArchiveRequestError(ArchiveIngestionError):
    """Raised when the archive request fails at transport or HTTP level."""


class ArchiveDecodeError(ArchiveIngestionError):
    """Raised when an archive payload cannot be decoded."""


@dataclass(frozen=True)
class SeriesKey:
    """Cache identity of one fetched series.

    Coordinates compare exactly, so two centroids that differ in the last
    decimal never share an entry.
    """

    latitude: float
    longitude: float
    day_start: str
    day_end: str


@dataclass(frozen=True, eq=False)
class HourlySeries:
    latitude: float
    longitude: float
    field_name: str
    times: Tuple[str, ...]
    values: np.ndarray
    synthetic: bool = False

    def __len__(self) -> int:
        return int(self.values.size)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    failures: int = 0
    network_calls: int = 0


def day_window(instant: datetime) -> Tuple[str, str]:
    """UTC midnight of ``instant`` through the following midnight, as ISO dates."""
    day = _as_utc(instant).date()
    return day.isoformat(), (day + timedelta(days=1)).isoformat()


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class ValueCache:
    """Memoizing client for the hourly archive.

    Entries live for the lifetime of the instance and are never evicted, so
    memory grows with the number of distinct (centroid, day window) keys seen.
    Failed fetches are not cached; they yield a synthetic one-point series.
    """

    def __init__(
        self,
        field_name: str = ARCHIVE_HOURLY_FIELD,
        base_url: str = ARCHIVE_BASE_URL,
        timeout: float = ARCHIVE_TIMEOUT_SECONDS,
        rng: np.random.Generator | None = None,
    ) -> None:
        self.field_name = field_name
        self.base_url = base_url
        self.timeout = timeout
        self._rng = rng if rng is not None else np.random.default_rng()
        self._entries: Dict[SeriesKey, HourlySeries] = {}
        self._guard = threading.Lock()
        self.stats = CacheStats()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def __contains__(self, key: SeriesKey) -> bool:
        with self._guard:
            return key in self._entries

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def fetch(self, lat: float, lng: float, day_start: str | date, day_end: str | date) -> HourlySeries:
        key = SeriesKey(float(lat), float(lng), str(day_start), str(day_end))
        with self._guard:
            cached = self._entries.get(key)
            if cached is not None:
                self.stats.hits += 1
                return cached
            self.stats.misses += 1

        # The guard is not held across the request; concurrent misses for one
        # key may both reach the archive and the later store wins.
        try:
            series = self._request_series(key)
        except ArchiveIngestionError as exc:
            with self._guard:
                self.stats.failures += 1
            LOGGER.warning(
                "Archive fetch failed lat=%s lon=%s window=%s..%s: %s",
                key.latitude,
                key.longitude,
                key.day_start,
                key.day_end,
                exc,
            )
            return self._fallback_series(key)

        with self._guard:
            self._entries[key] = series
        LOGGER.debug("Cached archive series key=%s points=%d", key, len(series))
        return series

    def get_value_at(self, series: HourlySeries, instant: datetime) -> float:
        return value_at_hour(series, _as_utc(instant).hour)

    def _request_series(self, key: SeriesKey) -> HourlySeries:
        params = {
            "latitude": key.latitude,
            "longitude": key.longitude,
            "start_date": key.day_start,
            "end_date": key.day_end,
            "hourly": self.field_name,
        }
        with self._guard:
            self.stats.network_calls += 1
        try:
            response = requests.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ArchiveRequestError(f"{type(exc).__name__}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise ArchiveDecodeError(f"Archive response is not JSON: {exc}") from exc
        return parse_archive_payload(payload, self.field_name, key)

    def _fallback_series(self, key: SeriesKey) -> HourlySeries:
        value = float(self._rng.uniform(FALLBACK_MIN_VALUE, FALLBACK_MAX_VALUE))
        # uniform() may round up to the high bound for some float inputs.
        if value >= FALLBACK_MAX_VALUE:
            value = FALLBACK_MIN_VALUE
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return HourlySeries(
            latitude=key.latitude,
            longitude=key.longitude,
            field_name=self.field_name,
            times=(now,),
            values=np.array([value], dtype=np.float64),
            synthetic=True,
        )


def parse_archive_payload(payload: object, field_name: str, key: SeriesKey) -> HourlySeries:
    if not isinstance(payload, dict):
        raise ArchiveDecodeError(f"Unexpected archive payload type {type(payload).__name__}")
    hourly = payload.get("hourly")
    if not isinstance(hourly, dict):
        raise ArchiveDecodeError("Archive payload has no 'hourly' block")
    raw_values = hourly.get(field_name)
    if not isinstance(raw_values, list):
        raise ArchiveDecodeError(f"Archive payload has no hourly '{field_name}' array")
    raw_times = hourly.get("time") or []
    try:
        # Missing hours arrive as null and become NaN.
        values = np.array([np.nan if v is None else float(v) for v in raw_values], dtype=np.float64)
        lat = float(payload.get("latitude", key.latitude))
        lon = float(payload.get("longitude", key.longitude))
    except (TypeError, ValueError) as exc:
        raise ArchiveDecodeError(f"Non-numeric value in archive payload: {exc}") from exc
    return HourlySeries(
        latitude=lat,
        longitude=lon,
        field_name=field_name,
        times=tuple(str(t) for t in raw_times),
        values=values,
    )


def value_at_hour(series: HourlySeries, hour: int) -> float:
    """Value at index ``hour``, else the first value, else the default of 20."""
    values = series.values
    if 0 <= hour < values.size and np.isfinite(values[hour]):
        return float(values[hour])
    if values.size and np.isfinite(values[0]):
        return float(values[0])
    return DEFAULT_SERIES_VALUE
