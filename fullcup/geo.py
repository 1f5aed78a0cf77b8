"""Geospatial helpers: search grid and subdivision."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from . import config

GRID_MODES = ("test", "production")


@dataclass(frozen=True)
class GridPoint:
    id: str
    lat: float
    lng: float
    radius_m: int
    level: int = 0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def km_offset_to_deg(lat: float, km: float) -> Tuple[float, float]:
    """Return (lat_delta, lng_delta) in degrees for ``km`` at latitude ``lat``."""
    lat_delta = km * config.LAT_DEGREES_PER_KM
    lng_delta = km * config.LAT_DEGREES_PER_KM / math.cos(math.radians(lat))
    return lat_delta, lng_delta


def generate_grid(mode: str) -> List[GridPoint]:
    if mode == "test":
        return _test_grid()
    if mode == "production":
        return _production_grid()
    raise ValueError(f"Unknown grid mode: {mode!r} (expected one of {', '.join(GRID_MODES)})")


def _test_grid() -> List[GridPoint]:
    # Lattice centered on TEST_CENTER, spaced TEST_GRID_SPACING_KM apart.
    center_lat = float(config.TEST_CENTER["lat"])
    center_lng = float(config.TEST_CENTER["lng"])
    rows = int(config.TEST_GRID_ROWS)
    cols = int(config.TEST_GRID_COLS)
    lat_step, lng_step = km_offset_to_deg(center_lat, float(config.TEST_GRID_SPACING_KM))

    points: List[GridPoint] = []
    for r in range(rows):
        for c in range(cols):
            points.append(
                GridPoint(
                    id=f"primary-{r}-{c}",
                    lat=center_lat + (r - (rows - 1) / 2) * lat_step,
                    lng=center_lng + (c - (cols - 1) / 2) * lng_step,
                    radius_m=int(config.DEFAULT_PRIMARY_RADIUS_M),
                    level=0,
                )
            )
    return points


def _production_grid() -> List[GridPoint]:
    bounds = config.PRODUCTION_BOUNDARIES
    rows = int(config.PRODUCTION_GRID_ROWS)
    cols = int(config.PRODUCTION_GRID_COLS)
    if rows < 2 or cols < 2:
        raise ValueError("Production grid needs at least 2 rows and 2 columns")
    south, north = float(bounds["south"]), float(bounds["north"])
    west, east = float(bounds["west"]), float(bounds["east"])
    lat_step = (north - south) / (rows - 1)
    lng_step = (east - west) / (cols - 1)

    points: List[GridPoint] = []
    for r in range(rows):
        for c in range(cols):
            points.append(
                GridPoint(
                    id=f"prod-{r}-{c}",
                    lat=south + r * lat_step,
                    lng=west + c * lng_step,
                    radius_m=int(config.DEFAULT_PRIMARY_RADIUS_M),
                    level=0,
                )
            )
    return points


# Fixed child order. Signs are (lat, lng).
_QUADRANTS = (("NE", 1, 1), ("NW", 1, -1), ("SE", -1, 1), ("SW", -1, -1))


def subdivide_point(parent: GridPoint, offset_km: float, radius_m: int) -> List[GridPoint]:
    lat_delta, lng_delta = km_offset_to_deg(parent.lat, offset_km)
    return [
        GridPoint(
            id=f"{parent.id}-sub-{name}",
            lat=parent.lat + lat_sign * lat_delta,
            lng=parent.lng + lng_sign * lng_delta,
            radius_m=int(radius_m),
            level=parent.level + 1,
        )
        for name, lat_sign, lng_sign in _QUADRANTS
    ]


def child_geometry(
    parent: GridPoint,
    offset_factor: Optional[float] = None,
    radius_factor: Optional[float] = None,
) -> Tuple[float, int]:
    """Offset (km) and radius (m) for the children of ``parent``.

    The child radius is always strictly smaller than the parent's.
    """
    if offset_factor is None:
        offset_factor = config.SUBDIVISION_OFFSET_FACTOR
    if radius_factor is None:
        radius_factor = config.SUBDIVISION_RADIUS_FACTOR
    offset_km = parent.radius_m / 1000.0 * offset_factor
    radius_m = int(round(parent.radius_m * radius_factor))
    if radius_m >= parent.radius_m:
        radius_m = parent.radius_m - 1
    return offset_km, max(1, radius_m)
