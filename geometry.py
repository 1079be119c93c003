from __future__ import annotations

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np

MIN_REGION_VERTICES = 3
MAX_REGION_VERTICES = 12
CLOSE_TOLERANCE_DEG = 0.001
LOGGER = logging.getLogger("region_weather.geometry")

LatLng = Tuple[float, float]


class InvalidInput(ValueError):
    """Raised when a geometry helper receives an unusable vertex sequence."""


class InvalidGeometry(ValueError):
    """Raised when a region would have fewer than 3 or more than 12 vertices."""


def centroid(vertices: Sequence[LatLng]) -> LatLng:
    """Planar centroid: mean latitude and mean longitude, not geodesic."""
    if len(vertices) == 0:
        raise InvalidInput("centroid requires at least one vertex")
    coords = np.asarray(vertices, dtype=np.float64)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise InvalidInput(f"Expected (lat, lng) pairs, got shape {coords.shape}")
    lat, lng = coords.mean(axis=0)
    return float(lat), float(lng)


def planar_distance(a: LatLng, b: LatLng) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def validate_vertex_count(vertices: Sequence[LatLng]) -> None:
    count = len(vertices)
    if count < MIN_REGION_VERTICES or count > MAX_REGION_VERTICES:
        raise InvalidGeometry(
            f"Region needs {MIN_REGION_VERTICES}-{MAX_REGION_VERTICES} vertices, got {count}"
        )


class RegionDraft:
    """Vertices collected by the drawing surface until the shape is closed."""

    def __init__(self) -> None:
        self.active = False
        self._points: List[LatLng] = []

    @property
    def points(self) -> List[LatLng]:
        return list(self._points)

    def start(self) -> None:
        self._points = []
        self.active = True

    def cancel(self) -> None:
        self._points = []
        self.active = False

    def add_point(self, lat: float, lng: float) -> List[LatLng] | None:
        """Append a clicked point; return the finished vertices when the click closes the shape."""
        if not self.active:
            raise ValueError("Drawing mode is not active")
        point = (float(lat), float(lng))
        if len(self._points) >= MIN_REGION_VERTICES and planar_distance(point, self._points[0]) < CLOSE_TOLERANCE_DEG:
            LOGGER.debug("Draft closed near first vertex after %d points", len(self._points))
            return self.complete()
        if len(self._points) >= MAX_REGION_VERTICES:
            LOGGER.debug("Ignoring point %s: draft already has %d vertices", point, len(self._points))
            return None
        self._points.append(point)
        return None

    def complete(self) -> List[LatLng]:
        validate_vertex_count(self._points)
        vertices = list(self._points)
        self._points = []
        self.active = False
        return vertices
