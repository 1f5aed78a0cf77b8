"""Value types shared by the discovery engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .geo import GridPoint


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    SUBDIVIDED = "subdivided"
    FAILED = "failed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Provenance:
    preferred_grid_id: str
    source_grid_ids: Tuple[str, ...]
    preferred_radius: Optional[int] = None


@dataclass(frozen=True)
class RawPlace:
    """Normalized place as returned by a search port."""

    name: Optional[str]
    place_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    types: Tuple[str, ...] = ()
    primary_type: Optional[str] = None
    business_status: Optional[str] = None
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    formatted_address: Optional[str] = None
    provenance: Optional[Provenance] = None

    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "place_id": self.place_id,
            "name": self.name,
            "lat": self.lat,
            "lng": self.lng,
            "types": list(self.types),
            "primary_type": self.primary_type,
            "business_status": self.business_status,
            "rating": self.rating,
            "user_rating_count": self.user_rating_count,
            "formatted_address": self.formatted_address,
        }
        if self.provenance is not None:
            row["preferred_grid_id"] = self.provenance.preferred_grid_id
            row["source_grid_ids"] = list(self.provenance.source_grid_ids)
            row["preferred_radius"] = self.provenance.preferred_radius
        return row


@dataclass(frozen=True)
class FilteredPlace:
    """A place plus the per-stage outcome of the filter pipeline.

    ``checks`` maps stage name to pass/fail for every stage that was evaluated;
    stages after the first failure are absent.
    """

    place: RawPlace
    checks: Dict[str, bool] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return all(self.checks.values())

    @property
    def rejected_stage(self) -> Optional[str]:
        for stage, ok in self.checks.items():
            if not ok:
                return stage
        return None


@dataclass(frozen=True)
class FilterStats:
    original: int = 0
    after_chain_filter: int = 0
    after_keyword_filter: int = 0
    after_type_filter: int = 0
    after_quality_filter: int = 0
    final: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "original": self.original,
            "after_chain_filter": self.after_chain_filter,
            "after_keyword_filter": self.after_keyword_filter,
            "after_type_filter": self.after_type_filter,
            "after_quality_filter": self.after_quality_filter,
            "final": self.final,
        }


@dataclass(frozen=True)
class FilterResult:
    filtered: List[FilteredPlace]
    stats: FilterStats
    rejection_counts: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchTask:
    point: GridPoint
    parent_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.point.id


@dataclass(frozen=True)
class SearchResult:
    places: List[RawPlace] = field(default_factory=list)
    api_calls_used: int = 0
    possibly_truncated: bool = False
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "SearchResult":
        return cls(places=[], api_calls_used=0, possibly_truncated=False, error=error)


@dataclass(frozen=True)
class UpsertItem:
    place: FilteredPlace
    source_grid_id: str
    grid_radius: int
    search_level: int


@dataclass(frozen=True)
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AdaptiveSearchResult:
    task_id: str
    lat: float
    lng: float
    radius_m: int
    level: int
    parent_id: Optional[str]
    places: List[FilteredPlace]
    result_count: int
    api_calls_used: int
    subdivided: bool
    status: TaskStatus = TaskStatus.COMPLETED
    raw_count: int = 0
    filter_stats: Optional[FilterStats] = None
    rejection_counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "parent_id": self.parent_id or "",
            "lat": self.lat,
            "lng": self.lng,
            "radius_m": self.radius_m,
            "level": self.level,
            "status": self.status.value,
            "raw_count": self.raw_count,
            "result_count": self.result_count,
            "api_calls_used": self.api_calls_used,
            "subdivided": self.subdivided,
            "error": self.error or "",
        }


@dataclass(frozen=True)
class AdaptiveSearchSummary:
    total_areas_searched: int
    total_places: int
    api_calls: int
    subdivisions: int
    aborted: bool
    results: List[AdaptiveSearchResult]
    abort_reason: Optional[str] = None
    max_depth_hits: int = 0
    failed_tasks: int = 0
    persisted_inserted: int = 0
    persisted_updated: int = 0
    persist_errors: int = 0

    @property
    def status(self) -> RunStatus:
        return RunStatus.ABORTED if self.aborted else RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "total_areas_searched": self.total_areas_searched,
            "total_places": self.total_places,
            "api_calls": self.api_calls,
            "subdivisions": self.subdivisions,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "max_depth_hits": self.max_depth_hits,
            "failed_tasks": self.failed_tasks,
            "persisted_inserted": self.persisted_inserted,
            "persisted_updated": self.persisted_updated,
            "persist_errors": self.persist_errors,
        }
