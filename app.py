from __future__ import annotations

import logging
import os
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Tuple

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from color_rules import ColorRule
from dashboard import Dashboard
from entity_store import DASHBOARD_STATE_PATH, DataSource, EntityStore, Region
from geometry import InvalidGeometry, centroid
from weather_data import day_window


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("REGION_WEATHER_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("region_weather")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("REGION_WEATHER_LOG_FILE", "logs/region_weather.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Region Weather Explorer")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("REGION_WEATHER_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

dashboard = Dashboard(store=EntityStore(state_path=DASHBOARD_STATE_PATH or None))


class RegionCreate(BaseModel):
    vertices: List[Tuple[float, float]]
    data_source_id: str | None = None
    name: str | None = None


class DataSourceCreate(BaseModel):
    name: str
    field: str
    color: str
    enabled: bool = True
    api_endpoint: str | None = None


class ColorRuleCreate(BaseModel):
    data_source_id: str
    operator: str
    threshold: float
    color: str
    label: str | None = None


class ColorRuleUpdate(BaseModel):
    operator: str | None = None
    threshold: float | None = None
    color: str | None = None
    label: str | None = None


def _region_payload(region: Region) -> Dict[str, object]:
    return {
        "id": region.region_id,
        "name": region.name,
        "coordinates": [list(v) for v in region.vertices],
        "data_source_id": region.data_source_id,
        "color": region.color,
        "value": None if region.value is None else round(region.value, 2),
        "created_at": region.created_at.isoformat(),
    }


def _source_payload(ds: DataSource) -> Dict[str, object]:
    return {
        "id": ds.source_id,
        "name": ds.name,
        "field": ds.field,
        "color": ds.color,
        "enabled": ds.enabled,
        "api_endpoint": ds.api_endpoint,
    }


def _rule_payload(rule: ColorRule) -> Dict[str, object]:
    return {
        "id": rule.rule_id,
        "data_source_id": rule.data_source_id,
        "operator": rule.operator.value,
        "threshold": rule.threshold,
        "color": rule.color,
        "label": rule.label,
    }


def _timeline_payload() -> Dict[str, object]:
    snap = dashboard.timeline.snapshot()
    return {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in snap.items()}


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup")
    dashboard.request_recompute()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    dashboard.shutdown()


@app.get("/api/state")
def state() -> Dict[str, object]:
    snapshot = dashboard.state()
    return {
        "regions": [_region_payload(r) for r in snapshot["regions"]],
        "data_sources": [_source_payload(ds) for ds in snapshot["data_sources"]],
        "color_rules": [_rule_payload(r) for r in snapshot["color_rules"]],
        "timeline": _timeline_payload(),
        "drawing": snapshot["drawing"],
    }


@app.post("/api/regions")
def create_region(body: RegionCreate) -> Dict[str, object]:
    try:
        region = dashboard.add_region(body.vertices, data_source_id=body.data_source_id, name=body.name)
    except InvalidGeometry as exc:
        LOGGER.warning("Region rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _region_payload(region)


@app.delete("/api/regions/{region_id}")
def delete_region(region_id: str) -> Dict[str, object]:
    try:
        dashboard.store.delete_region(region_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown region_id: {region_id}") from exc
    return {"ok": True}


@app.patch("/api/regions/{region_id}")
def rename_region(region_id: str, name: str = Query(..., min_length=1)) -> Dict[str, object]:
    try:
        region = dashboard.store.rename_region(region_id, name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown region_id: {region_id}") from exc
    return _region_payload(region)


@app.post("/api/drawing/start")
def drawing_start() -> Dict[str, object]:
    dashboard.start_drawing()
    return {"active": True, "points": []}


@app.post("/api/drawing/cancel")
def drawing_cancel() -> Dict[str, object]:
    dashboard.cancel_drawing()
    return {"active": False, "points": []}


@app.post("/api/drawing/point")
def drawing_point(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
) -> Dict[str, object]:
    try:
        region = dashboard.add_point(lat, lng)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "active": dashboard.draft.active,
        "points": [list(p) for p in dashboard.draft.points],
        "region": _region_payload(region) if region is not None else None,
    }


@app.post("/api/drawing/complete")
def drawing_complete() -> Dict[str, object]:
    try:
        region = dashboard.complete_region()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _region_payload(region)


@app.get("/api/data-sources")
def list_data_sources() -> List[Dict[str, object]]:
    return [_source_payload(ds) for ds in dashboard.store.data_sources()]


@app.post("/api/data-sources")
def create_data_source(body: DataSourceCreate) -> Dict[str, object]:
    ds = dashboard.store.add_data_source(
        body.name, body.field, body.color, enabled=body.enabled, api_endpoint=body.api_endpoint
    )
    return _source_payload(ds)


@app.post("/api/data-sources/{source_id}/toggle")
def toggle_data_source(source_id: str) -> Dict[str, object]:
    try:
        ds = dashboard.toggle_data_source(source_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown source_id: {source_id}") from exc
    return _source_payload(ds)


@app.patch("/api/data-sources/{source_id}")
def update_data_source_color(source_id: str, color: str = Query(...)) -> Dict[str, object]:
    try:
        ds = dashboard.store.update_data_source_color(source_id, color)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown source_id: {source_id}") from exc
    return _source_payload(ds)


@app.get("/api/rules")
def list_rules(data_source_id: str | None = Query(None)) -> List[Dict[str, object]]:
    rules = dashboard.store.rules_for(data_source_id) if data_source_id else dashboard.store.rules()
    return [_rule_payload(r) for r in rules]


@app.post("/api/rules")
def create_rule(body: ColorRuleCreate) -> Dict[str, object]:
    try:
        rule = dashboard.add_color_rule(body.data_source_id, body.operator, body.threshold, body.color, body.label)
    except ValueError as exc:
        LOGGER.warning("Color rule rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _rule_payload(rule)


@app.patch("/api/rules/{rule_id}")
def update_rule(rule_id: str, body: ColorRuleUpdate) -> Dict[str, object]:
    updates = {k: v for k, v in body.model_dump().items() if v is not None}
    try:
        rule = dashboard.update_color_rule(rule_id, **updates)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown rule_id: {rule_id}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _rule_payload(rule)


@app.delete("/api/rules/{rule_id}")
def delete_rule(rule_id: str) -> Dict[str, object]:
    try:
        dashboard.delete_color_rule(rule_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown rule_id: {rule_id}") from exc
    return {"ok": True}


@app.post("/api/timeline/scrub")
def timeline_scrub(time: datetime = Query(...)) -> Dict[str, object]:
    dashboard.timeline.scrub(time)
    return _timeline_payload()


@app.post("/api/timeline/mode")
def timeline_mode(mode: str = Query(...)) -> Dict[str, object]:
    try:
        dashboard.timeline.set_mode(mode)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _timeline_payload()


@app.post("/api/timeline/interval")
def timeline_interval(start: datetime = Query(...), end: datetime = Query(...)) -> Dict[str, object]:
    try:
        dashboard.timeline.set_interval(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _timeline_payload()


@app.post("/api/timeline/play")
def timeline_play() -> Dict[str, object]:
    dashboard.timeline.play()
    return _timeline_payload()


@app.post("/api/timeline/pause")
def timeline_pause() -> Dict[str, object]:
    dashboard.timeline.pause()
    return _timeline_payload()


@app.post("/api/timeline/now")
def timeline_now() -> Dict[str, object]:
    dashboard.timeline.reset_to_now()
    return _timeline_payload()


@app.post("/api/recompute")
def recompute(wait: bool = Query(False)) -> Dict[str, object]:
    future = dashboard.request_recompute()
    if not wait:
        return {"ok": True, "queued": True}
    report = future.result()
    return {
        "ok": True,
        "queued": False,
        "generation": report.generation,
        "computed": report.computed,
        "skipped": report.skipped,
        "failed": report.failed,
    }


@app.get("/api/archive-value")
def archive_value(region_id: str = Query(...)) -> Dict[str, object]:
    try:
        region = dashboard.store.region(region_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown region_id: {region_id}") from exc
    selected = dashboard.timeline.selected_time
    lat, lng = centroid(region.vertices)
    day_start, day_end = day_window(selected)
    series = dashboard.cache.fetch(lat, lng, day_start, day_end)
    return {
        "region_id": region_id,
        "lat": lat,
        "lon": lng,
        "day_start": day_start,
        "day_end": day_end,
        "selected_time": selected.isoformat(),
        "value": round(dashboard.cache.get_value_at(series, selected), 2),
        "synthetic": series.synthetic,
        "points": len(series),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}
