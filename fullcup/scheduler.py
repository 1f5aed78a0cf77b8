"""Adaptive discovery scheduler.

Processes a FIFO queue of search points one at a time. A point whose search
looks truncated is replaced by four finer children appended to the back of the
queue, so the walk is breadth-first. The run stops early on an external abort
or once cumulative API calls exceed the budget; either way a partial summary
is returned and nothing is raised for per-task failures.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol, Sequence

from . import config
from .config import FilterConfig
from .dedupe import dedupe_within_task
from .filtering import FilterPipeline, passthrough
from .geo import GRID_MODES, GridPoint, child_geometry, generate_grid, subdivide_point
from .models import (
    AdaptiveSearchResult,
    AdaptiveSearchSummary,
    FilteredPlace,
    FilterStats,
    SearchResult,
    SearchTask,
    TaskStatus,
    UpsertItem,
    UpsertResult,
)
from .progress import (
    AbortEvent,
    CompleteEvent,
    ProgressBus,
    ProgressEvent,
    SearchCompleteEvent,
    SearchStartEvent,
    StartEvent,
    SubdivisionCreatedEvent,
)

logger = logging.getLogger(__name__)


class SearchPort(Protocol):
    def search(self, lat: float, lng: float, radius_m: int, keyword: str) -> SearchResult:
        ...


class UpsertPort(Protocol):
    def upsert_batch(
        self, items: Sequence[UpsertItem], batch_size: Optional[int] = None
    ) -> UpsertResult:
        ...


class AbortSignal:
    """Cancellation handle shared between a caller and a running scheduler."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def abort(self, reason: str = "aborted by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True as soon as the signal is set."""
        return self._event.wait(timeout=max(0.0, seconds))


@dataclass
class RunOptions:
    mode: str = "test"
    max_api_calls: int = field(default_factory=lambda: config.MAX_API_CALLS_PER_RUN)
    rate_limit_ms: int = field(default_factory=lambda: config.RATE_LIMIT_MS)
    max_depth: int = field(default_factory=lambda: config.MAX_SUBDIVISION_DEPTH)
    abort_signal: Optional[AbortSignal] = None
    enable_filtering: bool = True
    keyword: str = field(default_factory=lambda: config.SEARCH_KEYWORD)
    result_cap: Optional[int] = None
    subdivision_offset_factor: float = field(
        default_factory=lambda: config.SUBDIVISION_OFFSET_FACTOR
    )
    subdivision_radius_factor: float = field(
        default_factory=lambda: config.SUBDIVISION_RADIUS_FACTOR
    )
    upsert_batch_size: int = field(default_factory=lambda: config.UPSERT_BATCH_SIZE)
    filter_config: Optional[FilterConfig] = None

    def __post_init__(self) -> None:
        if self.mode not in GRID_MODES:
            raise ValueError(f"mode must be one of: {', '.join(GRID_MODES)}")
        if self.max_api_calls < 0:
            raise ValueError("max_api_calls must be >= 0")
        if self.rate_limit_ms < 0:
            raise ValueError("rate_limit_ms must be >= 0")
        if self.max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        if self.result_cap is not None and self.result_cap <= 0:
            raise ValueError("result_cap must be positive")
        if not 0.0 < self.subdivision_radius_factor < 1.0:
            raise ValueError("subdivision_radius_factor must be between 0 and 1")
        if self.subdivision_offset_factor <= 0.0:
            raise ValueError("subdivision_offset_factor must be positive")
        if self.upsert_batch_size <= 0:
            raise ValueError("upsert_batch_size must be positive")


class DiscoveryScheduler:
    def __init__(
        self,
        options: RunOptions,
        search_port: SearchPort,
        upsert_port: Optional[UpsertPort] = None,
        progress: Optional[ProgressBus] = None,
        points: Optional[Sequence[GridPoint]] = None,
        filter_pipeline: Optional[FilterPipeline] = None,
    ) -> None:
        self.options = options
        self.search_port = search_port
        self.upsert_port = upsert_port
        self.progress = progress
        self.filter_pipeline = filter_pipeline or FilterPipeline(options.filter_config)
        self.abort_signal = options.abort_signal or AbortSignal()
        if options.result_cap is not None:
            self.result_cap = int(options.result_cap)
        else:
            self.result_cap = int(getattr(search_port, "result_cap", config.PLACES_RESULT_CAP))

        seed = list(points) if points is not None else generate_grid(options.mode)
        self._queue: Deque[SearchTask] = deque(SearchTask(point=p) for p in seed)
        self.task_states: Dict[str, TaskStatus] = {t.id: TaskStatus.QUEUED for t in self._queue}
        self._results: List[AdaptiveSearchResult] = []
        self._api_calls = 0
        self._subdivisions = 0
        self._total_places = 0
        self._max_depth_hits = 0
        self._failed = 0
        self._inserted = 0
        self._updated = 0
        self._persist_errors = 0
        self._aborted = False
        self._abort_reason: Optional[str] = None

    @property
    def api_calls(self) -> int:
        return self._api_calls

    def run(self) -> AdaptiveSearchSummary:
        opts = self.options
        logger.info(
            "Adaptive sync starting: %s primary points (mode=%s, max_api_calls=%s, max_depth=%s)",
            len(self._queue),
            opts.mode,
            opts.max_api_calls,
            opts.max_depth,
        )
        self._emit(StartEvent(mode=opts.mode, total_estimated_searches=len(self._queue)))

        while self._queue:
            if self._should_stop():
                break
            task = self._queue.popleft()
            if self._results and opts.rate_limit_ms > 0:
                if self.abort_signal.wait(opts.rate_limit_ms / 1000.0):
                    self._stop_for_abort()
                    break
                if self._should_stop():
                    break
            self._process(task)
            if self._should_stop():
                break

        summary = AdaptiveSearchSummary(
            total_areas_searched=len(self._results),
            total_places=self._total_places,
            api_calls=self._api_calls,
            subdivisions=self._subdivisions,
            aborted=self._aborted,
            results=list(self._results),
            abort_reason=self._abort_reason,
            max_depth_hits=self._max_depth_hits,
            failed_tasks=self._failed,
            persisted_inserted=self._inserted,
            persisted_updated=self._updated,
            persist_errors=self._persist_errors,
        )
        if not summary.aborted:
            self._emit(
                CompleteEvent(
                    total_areas_searched=summary.total_areas_searched,
                    total_places=summary.total_places,
                    api_calls=summary.api_calls,
                    subdivisions=summary.subdivisions,
                    aborted=False,
                )
            )
        logger.info(
            "Adaptive sync complete: %s areas searched, %s places found, %s API calls used%s",
            summary.total_areas_searched,
            summary.total_places,
            summary.api_calls,
            " (aborted)" if summary.aborted else "",
        )
        return summary

    def _should_stop(self) -> bool:
        if self.abort_signal.aborted:
            self._stop_for_abort()
            return True
        if self._api_calls > self.options.max_api_calls:
            reason = (
                f"exceeded max_api_calls (used {self._api_calls} of limit "
                f"{self.options.max_api_calls})"
            )
            logger.error("Adaptive sync aborted: %s", reason)
            self._mark_aborted(reason)
            return True
        return False

    def _stop_for_abort(self) -> None:
        reason = self.abort_signal.reason or "abort signal triggered"
        logger.info("Adaptive sync aborted: %s", reason)
        self._mark_aborted(reason)

    def _mark_aborted(self, reason: str) -> None:
        self._aborted = True
        self._abort_reason = reason
        self._emit(AbortEvent(reason=reason))

    def _process(self, task: SearchTask) -> None:
        point = task.point
        opts = self.options
        self.task_states[point.id] = TaskStatus.RUNNING
        self._emit(
            SearchStartEvent(
                id=point.id, level=point.level, lat=point.lat, lng=point.lng, radius=point.radius_m
            )
        )

        search = self._search(point)
        calls = max(0, int(search.api_calls_used))
        self._api_calls += calls

        raw = list(search.places)
        unique = dedupe_within_task(raw)
        stats: Optional[FilterStats] = None
        rejections: Dict[str, int] = {}
        if opts.enable_filtering:
            filtered = self.filter_pipeline.apply(unique)
            kept = filtered.filtered
            stats = filtered.stats
            rejections = filtered.rejection_counts
        else:
            kept = passthrough(unique)

        self._persist(point, kept)

        truncated = (
            search.possibly_truncated
            or len(unique) >= self.result_cap
            or len(raw) >= self.result_cap
        )
        children: List[GridPoint] = []
        if truncated and point.level < opts.max_depth:
            offset_km, radius_m = child_geometry(
                point, opts.subdivision_offset_factor, opts.subdivision_radius_factor
            )
            children = subdivide_point(point, offset_km, radius_m)
            for child in children:
                self._queue.append(SearchTask(point=child, parent_id=point.id))
                self.task_states[child.id] = TaskStatus.QUEUED
            self._subdivisions += len(children)
            logger.info(
                "Created %s subdivisions for %s at level %s", len(children), point.id, point.level + 1
            )
        elif truncated:
            self._max_depth_hits += 1
            logger.info("Max subdivision depth reached for %s", point.id)

        if search.error is not None:
            status = TaskStatus.FAILED
            self._failed += 1
        elif children:
            status = TaskStatus.SUBDIVIDED
        else:
            status = TaskStatus.COMPLETED
        self.task_states[point.id] = status

        self._results.append(
            AdaptiveSearchResult(
                task_id=point.id,
                lat=point.lat,
                lng=point.lng,
                radius_m=point.radius_m,
                level=point.level,
                parent_id=task.parent_id,
                places=list(kept),
                result_count=len(kept),
                api_calls_used=calls,
                subdivided=bool(children),
                status=status,
                raw_count=len(raw),
                filter_stats=stats,
                rejection_counts=dict(rejections),
                error=search.error,
            )
        )
        self._total_places += len(kept)
        logger.info(
            "Processed %s (level %s): %s places, apiCalls=%s%s",
            point.id,
            point.level,
            len(kept),
            calls,
            ", subdivided" if children else "",
        )

        self._emit(
            SearchCompleteEvent(
                id=point.id,
                level=point.level,
                result_count=len(kept),
                api_calls=calls,
                subdivided=bool(children),
            )
        )
        if children:
            self._emit(
                SubdivisionCreatedEvent(
                    parent_id=point.id, children=tuple(child.id for child in children)
                )
            )

    def _search(self, point: GridPoint) -> SearchResult:
        try:
            return self.search_port.search(
                point.lat, point.lng, point.radius_m, self.options.keyword
            )
        except Exception as exc:
            logger.exception("Search failed for %s", point.id)
            return SearchResult.failed(str(exc))

    def _persist(self, point: GridPoint, places: List[FilteredPlace]) -> None:
        if self.upsert_port is None or not places:
            return
        items = [
            UpsertItem(
                place=place,
                source_grid_id=point.id,
                grid_radius=point.radius_m,
                search_level=point.level,
            )
            for place in places
        ]
        try:
            result = self.upsert_port.upsert_batch(
                items, batch_size=self.options.upsert_batch_size
            )
        except Exception as exc:
            logger.exception("Persisting places for %s failed", point.id)
            result = UpsertResult(errors=[str(exc)])
        self._inserted += result.inserted
        self._updated += result.updated
        if result.errors:
            self._persist_errors += len(result.errors)
            logger.warning(
                "Persist errors for %s: %s", point.id, "; ".join(str(e) for e in result.errors)
            )

    def _emit(self, event: ProgressEvent) -> None:
        if self.progress is not None:
            self.progress.emit(event)


def run_discovery(
    options: Optional[RunOptions],
    search_port: SearchPort,
    upsert_port: Optional[UpsertPort] = None,
    progress: Optional[ProgressBus] = None,
    points: Optional[Sequence[GridPoint]] = None,
    filter_pipeline: Optional[FilterPipeline] = None,
) -> AdaptiveSearchSummary:
    scheduler = DiscoveryScheduler(
        options or RunOptions(),
        search_port,
        upsert_port=upsert_port,
        progress=progress,
        points=points,
        filter_pipeline=filter_pipeline,
    )
    return scheduler.run()
