"""Project configuration.

Loads user-defined discovery parameters from discovery_config.json when
available, falling back to the Houston defaults below. Keep API request shapes
and heuristic lists centralized here so components can snapshot them.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

PLACES_NEARBY_SEARCH_URL = "https://places.googleapis.com/v1/places:searchNearby"
PLACES_TEXT_SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"

# --- Field masks ---

PLACES_FIELD_MASK = (
    "places.id,places.displayName,places.formattedAddress,places.location,"
    "places.types,places.primaryType,places.businessStatus,places.rating,"
    "places.userRatingCount"
)
PLACES_TEXT_FIELD_MASK = PLACES_FIELD_MASK + ",nextPageToken"

# --- Places API request shape ---

SEARCH_MODE = "nearby"
SEARCH_KEYWORD = "coffee"
PLACES_INCLUDED_TYPES: List[str] = ["cafe"]
# searchNearby returns at most this many places and has no pagination.
PLACES_RESULT_CAP = 20
PLACES_TEXT_PAGE_SIZE = 20
PLACES_MAX_PAGES_PER_QUERY = 3

# --- Geography ---

# Equirectangular approximation, tuned for Houston's latitude.
LAT_DEGREES_PER_KM = 0.009

TEST_CENTER: Dict[str, float] = {"lat": 29.7604, "lng": -95.3698}
TEST_BOUNDARIES: Dict[str, float] = {
    "north": 29.78,
    "south": 29.74,
    "east": -95.35,
    "west": -95.39,
}
PRODUCTION_BOUNDARIES: Dict[str, float] = {
    "north": 30.05,
    "south": 29.45,
    "east": -94.95,
    "west": -95.85,
}
# Places outside this box are rejected by quality validation.
SERVICE_REGION: Dict[str, float] = {
    "north": 30.5,
    "south": 29.0,
    "east": -94.5,
    "west": -96.0,
}

TEST_GRID_COLS = 2
TEST_GRID_ROWS = 3
TEST_GRID_SPACING_KM = 2.0
PRODUCTION_GRID_COLS = 8
PRODUCTION_GRID_ROWS = 9

DEFAULT_PRIMARY_RADIUS_M = 1500
# Children sit half a parent radius away and cover their quadrant.
SUBDIVISION_OFFSET_FACTOR = 0.5
SUBDIVISION_RADIUS_FACTOR = 0.75

# Dedup identity for places without an explicit id.
DEDUP_COORD_PRECISION = 6

# --- Filters ---

BUSINESS_STATUS_OPERATIONAL = "OPERATIONAL"

EXCLUDED_CHAINS: List[str] = [
    # coffee chains
    "starbucks", "dunkin", "dunkin donuts", "dunkin'", "peet", "peets",
    "peet's coffee", "tim hortons", "caribou coffee", "caribou",
    "costa coffee", "costa",
    # fast food
    "mcdonald", "mcdonalds", "mccafe", "burger king", "subway", "taco bell",
    "kfc", "wendys", "wendy's", "arby's", "arbys", "jack in the box", "sonic",
    "whataburger", "in-n-out",
    # gas stations
    "7-eleven", "7 eleven", "circle k", "wawa", "sheetz", "speedway", "shell",
    "exxon", "bp", "chevron", "mobil", "valero", "marathon",
    # bakeries and donut shops
    "krispy kreme", "shipley", "kolache factory",
    # retail
    "cvs", "walgreens", "walmart", "target", "kroger", "heb", "whole foods",
]

COFFEE_KEYWORDS: List[str] = [
    "coffee", "cafe", "espresso", "roasters", "roastery", "coffeehouse",
    "coffee house", "cappuccino", "latte", "brew", "brewing", "barista",
    "beans", "grind", "drip", "pour over", "cold brew", "nitro", "macchiato",
    "americano", "cortado", "mocha", "frappe", "frappuccino",
]

EXCLUDE_KEYWORDS: List[str] = [
    "bagel", "donut", "doughnut", "bakery", "pizza", "burger", "taco",
    "sandwich", "deli", "restaurant", "grill", "bar", "pub", "hotel", "motel",
    "gas", "station", "convenience", "grocery", "market", "pharmacy", "bank",
    "credit union", "atm", "mall", "shopping center", "food court", "hospital",
    "clinic", "gym", "fitness",
]

COFFEE_TYPES: List[str] = ["cafe", "coffee_shop"]

EXCLUDED_TYPES: List[str] = [
    "restaurant", "fast_food_restaurant", "bakery", "gas_station",
    "convenience_store", "grocery_store", "pharmacy", "bank", "atm",
    "shopping_mall", "department_store", "hospital", "doctor", "gym", "hotel",
    "lodging",
]

# --- Budgets and pacing ---

MAX_API_CALLS_PER_RUN = 50
RATE_LIMIT_MS = 1000
MAX_SUBDIVISION_DEPTH = 4
UPSERT_BATCH_SIZE = 50

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 5
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0

# --- Cache, store and outputs ---

CACHE_DB_PATH = "cache.db"
SHOPS_DB_PATH = "shops.db"
OUTPUT_DIR = "out"
PROGRESS_BUFFER_SIZE = 200
PROGRESS_WRITE_INTERVAL_SECONDS = 2.0


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "Bounds":
        return cls(
            north=float(data["north"]),
            south=float(data["south"]),
            east=float(data["east"]),
            west=float(data["west"]),
        )

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east


def _lowered(values: List[str]) -> Tuple[str, ...]:
    return tuple(v.lower() for v in values if v)


@dataclass(frozen=True)
class FilterConfig:
    excluded_chains: Tuple[str, ...] = field(default_factory=lambda: _lowered(EXCLUDED_CHAINS))
    coffee_keywords: Tuple[str, ...] = field(default_factory=lambda: _lowered(COFFEE_KEYWORDS))
    exclude_keywords: Tuple[str, ...] = field(default_factory=lambda: _lowered(EXCLUDE_KEYWORDS))
    coffee_types: Tuple[str, ...] = field(default_factory=lambda: _lowered(COFFEE_TYPES))
    excluded_types: Tuple[str, ...] = field(default_factory=lambda: _lowered(EXCLUDED_TYPES))
    service_region: Bounds = field(default_factory=lambda: Bounds.from_dict(SERVICE_REGION))
    operational_status: str = BUSINESS_STATUS_OPERATIONAL


def load_discovery_config(path: Optional[str] = None) -> bool:
    """Load discovery configuration from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "discovery_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data: Dict[str, Any] = json.load(f)

    globals_ref = globals()

    center = data.get("test_center", {})
    if center.get("lat") is not None and center.get("lng") is not None:
        globals_ref["TEST_CENTER"] = {"lat": float(center["lat"]), "lng": float(center["lng"])}

    for key, name in (
        ("test_boundaries", "TEST_BOUNDARIES"),
        ("production_boundaries", "PRODUCTION_BOUNDARIES"),
        ("service_region", "SERVICE_REGION"),
    ):
        bounds = data.get(key)
        if bounds:
            globals_ref[name] = asdict(Bounds.from_dict(bounds))

    grid = data.get("grid", {})
    for key, name, cast in (
        ("test_cols", "TEST_GRID_COLS", int),
        ("test_rows", "TEST_GRID_ROWS", int),
        ("test_spacing_km", "TEST_GRID_SPACING_KM", float),
        ("production_cols", "PRODUCTION_GRID_COLS", int),
        ("production_rows", "PRODUCTION_GRID_ROWS", int),
        ("primary_radius_m", "DEFAULT_PRIMARY_RADIUS_M", int),
    ):
        if grid.get(key) is not None:
            globals_ref[name] = cast(grid[key])

    filters = data.get("filters", {})
    for key, name in (
        ("excluded_chains", "EXCLUDED_CHAINS"),
        ("coffee_keywords", "COFFEE_KEYWORDS"),
        ("exclude_keywords", "EXCLUDE_KEYWORDS"),
        ("coffee_types", "COFFEE_TYPES"),
        ("excluded_types", "EXCLUDED_TYPES"),
    ):
        values = filters.get(key)
        if values:
            globals_ref[name] = list(values)

    run_opts = data.get("run", {})
    for key, name in (
        ("max_api_calls", "MAX_API_CALLS_PER_RUN"),
        ("rate_limit_ms", "RATE_LIMIT_MS"),
        ("max_depth", "MAX_SUBDIVISION_DEPTH"),
    ):
        if run_opts.get(key) is not None:
            globals_ref[name] = int(run_opts[key])
    if run_opts.get("keyword"):
        globals_ref["SEARCH_KEYWORD"] = str(run_opts["keyword"])
    if run_opts.get("search_mode"):
        globals_ref["SEARCH_MODE"] = str(run_opts["search_mode"])

    return True
