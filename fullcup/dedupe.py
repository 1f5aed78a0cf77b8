"""Merge places observed from several grid points into one record each.

Tie-break when a place was seen from more than one grid point:

1. smallest search radius (when ``prefer_smaller_radius`` is set);
2. highest subdivision level;
3. first encountered (grid key order, then order within the grid).

Inputs are never mutated; deduped places are copies carrying a ``Provenance``.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from . import config
from .models import Provenance, RawPlace


@dataclass(frozen=True)
class GridPlaces:
    places: Sequence[RawPlace]
    radius: Optional[int] = None
    level: Optional[int] = None


@dataclass(frozen=True)
class DedupResult:
    place_id: str
    chosen_place: RawPlace
    preferred_source_grid_id: str
    all_source_grid_ids: Tuple[str, ...]
    preferred_radius: Optional[int]


@dataclass
class DedupOutput:
    deduped_places: List[RawPlace] = field(default_factory=list)
    mapping: Dict[str, DedupResult] = field(default_factory=dict)
    duplicates_by_grid: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class _Occurrence:
    grid_id: str
    place: RawPlace
    radius: Optional[int]
    level: Optional[int]
    index: int


def place_identity(place: RawPlace, precision: Optional[int] = None) -> str:
    """Explicit place id, else ``name|lat|lng`` with normalized name and rounded coords."""
    if place.place_id:
        return str(place.place_id)
    if precision is None:
        precision = config.DEDUP_COORD_PRECISION
    name = (place.name or "").strip().lower()
    lat = f"{place.lat:.{precision}f}" if place.lat is not None else "None"
    lng = f"{place.lng:.{precision}f}" if place.lng is not None else "None"
    return f"{name}|{lat}|{lng}"


def _as_grid_places(value: Union[GridPlaces, Sequence[RawPlace]]) -> GridPlaces:
    if isinstance(value, GridPlaces):
        return value
    return GridPlaces(places=list(value))


def _choose(occurrences: List[_Occurrence], prefer_smaller_radius: bool) -> _Occurrence:
    candidates = occurrences
    if prefer_smaller_radius:
        radii = [o.radius for o in candidates if o.radius is not None]
        if radii:
            smallest = min(radii)
            candidates = [o for o in candidates if o.radius == smallest]
    levels = [o.level for o in candidates if o.level is not None]
    if levels:
        deepest = max(levels)
        candidates = [o for o in candidates if o.level == deepest]
    return min(candidates, key=lambda o: o.index)


def dedupe_places(
    per_grid: Mapping[str, Union[GridPlaces, Sequence[RawPlace]]],
    prefer_smaller_radius: bool = True,
) -> DedupOutput:
    occurrences: Dict[str, List[_Occurrence]] = {}
    index = 0
    for grid_id, value in per_grid.items():
        grid = _as_grid_places(value)
        for place in grid.places:
            occurrences.setdefault(place_identity(place), []).append(
                _Occurrence(grid_id, place, grid.radius, grid.level, index)
            )
            index += 1

    output = DedupOutput(duplicates_by_grid={grid_id: 0 for grid_id in per_grid})
    for pid, occs in occurrences.items():
        source_grid_ids = tuple(dict.fromkeys(o.grid_id for o in occs))
        chosen = _choose(occs, prefer_smaller_radius)
        output.mapping[pid] = DedupResult(
            place_id=pid,
            chosen_place=chosen.place,
            preferred_source_grid_id=chosen.grid_id,
            all_source_grid_ids=source_grid_ids,
            preferred_radius=chosen.radius,
        )
        output.deduped_places.append(
            dataclasses.replace(
                chosen.place,
                provenance=Provenance(
                    preferred_grid_id=chosen.grid_id,
                    source_grid_ids=source_grid_ids,
                    preferred_radius=chosen.radius,
                ),
            )
        )
        if len(source_grid_ids) > 1:
            for grid_id in source_grid_ids:
                output.duplicates_by_grid[grid_id] += 1
    return output


def dedupe_within_task(places: Sequence[RawPlace]) -> List[RawPlace]:
    """Drop repeats of the same place inside one search response, keeping order."""
    seen: Dict[str, RawPlace] = {}
    for place in places:
        seen.setdefault(place_identity(place), place)
    return list(seen.values())
