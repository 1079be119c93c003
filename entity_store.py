from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Tuple

from color_rules import DEFAULT_COLOR, ColorRule, RuleOperator, parse_operator
from geometry import InvalidGeometry, LatLng, validate_vertex_count

STORAGE_KEY = "dashboard-storage"
DASHBOARD_STATE_PATH = os.getenv("DASHBOARD_STATE_PATH", "state/dashboard.json").strip()
DEFAULT_SOURCE_ID = "open-meteo-temp"
LOGGER = logging.getLogger("region_weather.entity_store")

__all__ = ["DataSource", "EntityStore", "InvalidGeometry", "Region", "STORAGE_KEY"]


@dataclass
class Region:
    region_id: str
    name: str
    vertices: List[LatLng]
    data_source_id: str
    color: str
    value: float | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    generation: int = 0


@dataclass
class DataSource:
    source_id: str
    name: str
    field: str
    color: str
    enabled: bool = True
    api_endpoint: str = "https://archive-api.open-meteo.com/v1/archive"


def _default_data_sources() -> List[DataSource]:
    return [
        DataSource(
            source_id=DEFAULT_SOURCE_ID,
            name="Temperature (°C)",
            field="temperature_2m",
            color="#3B82F6",
            enabled=True,
        )
    ]


def _default_color_rules() -> List[ColorRule]:
    return [
        ColorRule("cold", DEFAULT_SOURCE_ID, RuleOperator.LT, 10.0, "#3B82F6", "Cold"),
        ColorRule("mild", DEFAULT_SOURCE_ID, RuleOperator.GE, 10.0, "#10B981", "Mild"),
        ColorRule("hot", DEFAULT_SOURCE_ID, RuleOperator.GE, 25.0, "#F59E0B", "Hot"),
    ]


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class EntityStore:
    """Authoritative collection of regions, data sources and color rules.

    Every mutation goes through this object. Writes are plain last-write
    assignments under one lock; there are no transactions. When a state path
    is configured, structural changes are written back as one JSON document.
    Computed color/value updates are kept in memory only.
    """

    def __init__(self, state_path: str | Path | None = None, seed_defaults: bool = True) -> None:
        self._guard = threading.RLock()
        self._save_guard = threading.Lock()
        self._regions: Dict[str, Region] = {}
        self._data_sources: Dict[str, DataSource] = {}
        self._rules: Dict[str, ColorRule] = {}
        self._state_path = Path(state_path) if state_path else None
        if seed_defaults:
            for ds in _default_data_sources():
                self._data_sources[ds.source_id] = ds
            for rule in _default_color_rules():
                self._rules[rule.rule_id] = rule
        if self._state_path is not None and self._state_path.exists():
            try:
                self.load()
            except (OSError, ValueError):
                LOGGER.exception("Ignoring unreadable state file %s; starting from defaults", self._state_path)

    # Regions

    def add_region(
        self,
        vertices: List[LatLng],
        data_source_id: str | None = None,
        name: str | None = None,
    ) -> Region:
        vertices = [(float(lat), float(lng)) for lat, lng in vertices]
        validate_vertex_count(vertices)
        with self._guard:
            if data_source_id is None:
                active = self.active_data_source()
                data_source_id = active.source_id if active is not None else DEFAULT_SOURCE_ID
            source = self._data_sources.get(data_source_id)
            region = Region(
                region_id=_new_id("region"),
                name=name or f"Region {len(self._regions) + 1}",
                vertices=vertices,
                data_source_id=data_source_id,
                color=source.color if source is not None else DEFAULT_COLOR,
            )
            self._regions[region.region_id] = region
            snapshot = self._copy_region(region)
        LOGGER.info("Added region id=%s vertices=%d source=%s", region.region_id, len(vertices), data_source_id)
        self._autosave()
        return snapshot

    def delete_region(self, region_id: str) -> None:
        with self._guard:
            if self._regions.pop(region_id, None) is None:
                raise KeyError(f"Unknown region_id: {region_id}")
        LOGGER.info("Deleted region id=%s", region_id)
        self._autosave()

    def rename_region(self, region_id: str, name: str) -> Region:
        with self._guard:
            region = self._require_region(region_id)
            region.name = name
            snapshot = self._copy_region(region)
        self._autosave()
        return snapshot

    def update_region_color(self, region_id: str, color: str, generation: int | None = None) -> bool:
        return self._write_computed(region_id, "color", color, generation)

    def update_region_value(self, region_id: str, value: float, generation: int | None = None) -> bool:
        return self._write_computed(region_id, "value", float(value), generation)

    def region(self, region_id: str) -> Region:
        with self._guard:
            return self._copy_region(self._require_region(region_id))

    def regions(self) -> List[Region]:
        with self._guard:
            return [self._copy_region(r) for r in self._regions.values()]

    # Data sources

    def add_data_source(
        self,
        name: str,
        field: str,
        color: str,
        enabled: bool = True,
        api_endpoint: str | None = None,
    ) -> DataSource:
        ds = DataSource(source_id=_new_id("ds"), name=name, field=field, color=color, enabled=enabled)
        if api_endpoint:
            ds.api_endpoint = api_endpoint
        with self._guard:
            self._data_sources[ds.source_id] = ds
        LOGGER.info("Added data source id=%s field=%s", ds.source_id, field)
        self._autosave()
        return replace(ds)

    def toggle_data_source(self, source_id: str) -> DataSource:
        with self._guard:
            ds = self._require_source(source_id)
            ds.enabled = not ds.enabled
            snapshot = replace(ds)
        self._autosave()
        return snapshot

    def update_data_source_color(self, source_id: str, color: str) -> DataSource:
        with self._guard:
            ds = self._require_source(source_id)
            ds.color = color
            snapshot = replace(ds)
        self._autosave()
        return snapshot

    def data_source(self, source_id: str) -> DataSource | None:
        with self._guard:
            ds = self._data_sources.get(source_id)
            return replace(ds) if ds is not None else None

    def data_sources(self) -> List[DataSource]:
        with self._guard:
            return [replace(ds) for ds in self._data_sources.values()]

    def active_data_source(self) -> DataSource | None:
        """First enabled data source, else the first one, else None."""
        with self._guard:
            sources = list(self._data_sources.values())
            for ds in sources:
                if ds.enabled:
                    return replace(ds)
            return replace(sources[0]) if sources else None

    # Color rules

    def add_color_rule(
        self,
        data_source_id: str,
        operator: str | RuleOperator,
        threshold: float,
        color: str,
        label: str | None = None,
    ) -> ColorRule:
        op = parse_operator(operator.value if isinstance(operator, RuleOperator) else operator)
        rule = ColorRule(
            rule_id=_new_id("rule"),
            data_source_id=data_source_id,
            operator=op,
            threshold=float(threshold),
            color=color,
            label=label or f"{op.value} {_format_threshold(threshold)}",
        )
        with self._guard:
            self._rules[rule.rule_id] = rule
        LOGGER.info("Added color rule id=%s source=%s %s %s", rule.rule_id, data_source_id, op.value, threshold)
        self._autosave()
        return replace(rule)

    def delete_color_rule(self, rule_id: str) -> None:
        with self._guard:
            if self._rules.pop(rule_id, None) is None:
                raise KeyError(f"Unknown rule_id: {rule_id}")
        self._autosave()

    def update_color_rule(self, rule_id: str, **updates: object) -> ColorRule:
        allowed = {"data_source_id", "operator", "threshold", "color", "label"}
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Unknown color rule fields: {', '.join(sorted(unknown))}")
        if "operator" in updates and not isinstance(updates["operator"], RuleOperator):
            updates["operator"] = parse_operator(str(updates["operator"]))
        if "threshold" in updates:
            updates["threshold"] = float(updates["threshold"])
        with self._guard:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise KeyError(f"Unknown rule_id: {rule_id}")
            updated = replace(rule, **updates)
            self._rules[rule_id] = updated
        self._autosave()
        return replace(updated)

    def rules(self) -> List[ColorRule]:
        with self._guard:
            return [replace(r) for r in self._rules.values()]

    def rules_for(self, data_source_id: str) -> List[ColorRule]:
        return [r for r in self.rules() if r.data_source_id == data_source_id]

    # Persistence

    def to_document(self) -> Dict[str, object]:
        with self._guard:
            state = {
                "regions": [_region_to_json(r) for r in self._regions.values()],
                "data_sources": [_source_to_json(ds) for ds in self._data_sources.values()],
                "color_rules": [_rule_to_json(r) for r in self._rules.values()],
            }
        return {STORAGE_KEY: state}

    def from_document(self, document: Dict[str, object]) -> None:
        state = document.get(STORAGE_KEY)
        if not isinstance(state, dict):
            raise ValueError(f"State document has no '{STORAGE_KEY}' entry")
        try:
            regions = [_region_from_json(item) for item in state.get("regions", [])]
            sources = [_source_from_json(item) for item in state.get("data_sources", [])]
            rules = [_rule_from_json(item) for item in state.get("color_rules", [])]
        except (KeyError, TypeError, IndexError, AttributeError) as exc:
            raise ValueError(f"Malformed state document: {exc}") from exc
        with self._guard:
            self._regions = {r.region_id: r for r in regions}
            self._data_sources = {ds.source_id: ds for ds in sources}
            self._rules = {r.rule_id: r for r in rules}

    def save(self, path: str | Path | None = None) -> Path:
        target = Path(path) if path else self._state_path
        if target is None:
            raise ValueError("No state path configured")
        target.parent.mkdir(parents=True, exist_ok=True)
        # Snapshot and replace under one lock so the newest state is written last.
        with self._save_guard:
            payload = json.dumps(self.to_document(), indent=2)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=target.parent, prefix=target.name, suffix=".tmp", delete=False
            ) as handle:
                handle.write(payload)
            tmp = Path(handle.name)
            try:
                tmp.replace(target)
            except OSError:
                tmp.unlink(missing_ok=True)
                raise
        return target

    def load(self, path: str | Path | None = None) -> None:
        source = Path(path) if path else self._state_path
        if source is None:
            raise ValueError("No state path configured")
        document = json.loads(source.read_text(encoding="utf-8"))
        self.from_document(document)
        LOGGER.info(
            "Restored state from %s regions=%d sources=%d rules=%d",
            source,
            len(self._regions),
            len(self._data_sources),
            len(self._rules),
        )

    def _autosave(self) -> None:
        if self._state_path is None:
            return
        try:
            self.save()
        except OSError:
            LOGGER.exception("Failed to persist dashboard state to %s", self._state_path)

    # Internals

    def _write_computed(self, region_id: str, attr: str, value: object, generation: int | None) -> bool:
        with self._guard:
            region = self._regions.get(region_id)
            if region is None:
                LOGGER.debug("Dropping %s write for deleted region id=%s", attr, region_id)
                return False
            if generation is not None:
                if generation < region.generation:
                    LOGGER.debug(
                        "Discarding stale %s write region=%s generation=%d current=%d",
                        attr,
                        region_id,
                        generation,
                        region.generation,
                    )
                    return False
                region.generation = generation
            setattr(region, attr, value)
            return True

    def _require_region(self, region_id: str) -> Region:
        region = self._regions.get(region_id)
        if region is None:
            raise KeyError(f"Unknown region_id: {region_id}")
        return region

    def _require_source(self, source_id: str) -> DataSource:
        ds = self._data_sources.get(source_id)
        if ds is None:
            raise KeyError(f"Unknown source_id: {source_id}")
        return ds

    @staticmethod
    def _copy_region(region: Region) -> Region:
        return replace(region, vertices=list(region.vertices))


def _format_threshold(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


def _region_to_json(region: Region) -> Dict[str, object]:
    return {
        "id": region.region_id,
        "name": region.name,
        "coordinates": [[lat, lng] for lat, lng in region.vertices],
        "dataSource": region.data_source_id,
        "color": region.color,
        "value": region.value,
        "createdAt": region.created_at.isoformat(),
    }


def _region_from_json(item: Dict[str, object]) -> Region:
    coords: List[Tuple[float, float]] = []
    for pair in item["coordinates"]:
        if len(pair) != 2:
            raise ValueError(f"Coordinate pair must hold [lat, lng], got {pair!r}")
        coords.append((float(pair[0]), float(pair[1])))
    created_raw = item.get("createdAt")
    created_at = datetime.fromisoformat(str(created_raw)) if created_raw else datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    value = item.get("value")
    return Region(
        region_id=str(item["id"]),
        name=str(item["name"]),
        vertices=coords,
        data_source_id=str(item["dataSource"]),
        color=str(item.get("color") or DEFAULT_COLOR),
        value=float(value) if value is not None else None,
        created_at=created_at,
    )


def _source_to_json(ds: DataSource) -> Dict[str, object]:
    return {
        "id": ds.source_id,
        "name": ds.name,
        "apiEndpoint": ds.api_endpoint,
        "field": ds.field,
        "color": ds.color,
        "enabled": ds.enabled,
    }


def _source_from_json(item: Dict[str, object]) -> DataSource:
    ds = DataSource(
        source_id=str(item["id"]),
        name=str(item["name"]),
        field=str(item["field"]),
        color=str(item["color"]),
        enabled=bool(item.get("enabled", True)),
    )
    if item.get("apiEndpoint"):
        ds.api_endpoint = str(item["apiEndpoint"])
    return ds


def _rule_to_json(rule: ColorRule) -> Dict[str, object]:
    return {
        "id": rule.rule_id,
        "dataSourceId": rule.data_source_id,
        "operator": rule.operator.value,
        "value": rule.threshold,
        "color": rule.color,
        "label": rule.label,
    }


def _rule_from_json(item: Dict[str, object]) -> ColorRule:
    return ColorRule(
        rule_id=str(item["id"]),
        data_source_id=str(item["dataSourceId"]),
        operator=parse_operator(str(item["operator"])),
        threshold=float(item["value"]),
        color=str(item["color"]),
        label=item.get("label"),
    )
