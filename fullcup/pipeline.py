"""Pipeline orchestration: discovery, run-wide dedup, persistence and outputs."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config
from .cache import Cache, utc_now_iso
from .dedupe import DedupOutput, GridPlaces, dedupe_places
from .geo import GridPoint
from .http import HttpClient, RequestMetrics
from .models import AdaptiveSearchResult, AdaptiveSearchSummary
from .places_client import PlacesClient
from .progress import ProgressBus
from .reporting import (
    ProgressFileWriter,
    ensure_dir,
    render_summary,
    write_json_object,
    write_results_json,
    write_shops_csv,
    write_summary,
    write_tasks_csv,
)
from .scheduler import AbortSignal, RunOptions, SearchPort, run_discovery
from .store import ShopStore

logger = logging.getLogger(__name__)

# One discovery run per process at a time.
_RUN_LOCK = threading.Lock()


class RunInProgressError(RuntimeError):
    pass


@dataclass
class PipelineResult:
    summary: AdaptiveSearchSummary
    dedup: DedupOutput
    shops: List[Dict[str, Any]]
    report: Dict[str, Any]
    sync_run_id: Optional[int] = None


def run(
    api_key: Optional[str],
    mode: str = "test",
    max_api_calls: Optional[int] = None,
    rate_limit_ms: Optional[int] = None,
    max_depth: Optional[int] = None,
    enable_filtering: bool = True,
    search_mode: Optional[str] = None,
    keyword: Optional[str] = None,
    cache_db_path: str = config.CACHE_DB_PATH,
    shops_db_path: str = config.SHOPS_DB_PATH,
    no_cache: bool = False,
    refresh_places: bool = False,
    output_dir: str = config.OUTPUT_DIR,
    write_outputs: bool = True,
    persist: bool = True,
    mark_stale: bool = False,
    places_client: Optional[SearchPort] = None,
    store: Optional[ShopStore] = None,
    progress: Optional[ProgressBus] = None,
    abort_signal: Optional[AbortSignal] = None,
    metrics: Optional[RequestMetrics] = None,
    points: Optional[Sequence[GridPoint]] = None,
) -> PipelineResult:
    if not _RUN_LOCK.acquire(blocking=False):
        raise RunInProgressError("A discovery run is already in progress")
    try:
        return _run_locked(
            api_key=api_key,
            mode=mode,
            max_api_calls=max_api_calls,
            rate_limit_ms=rate_limit_ms,
            max_depth=max_depth,
            enable_filtering=enable_filtering,
            search_mode=search_mode,
            keyword=keyword,
            cache_db_path=cache_db_path,
            shops_db_path=shops_db_path,
            no_cache=no_cache,
            refresh_places=refresh_places,
            output_dir=output_dir,
            write_outputs=write_outputs,
            persist=persist,
            mark_stale=mark_stale,
            places_client=places_client,
            store=store,
            progress=progress,
            abort_signal=abort_signal,
            metrics=metrics,
            points=points,
        )
    finally:
        _RUN_LOCK.release()


def build_run_options(
    mode: str,
    max_api_calls: Optional[int],
    rate_limit_ms: Optional[int],
    max_depth: Optional[int],
    enable_filtering: bool,
    keyword: Optional[str],
    abort_signal: Optional[AbortSignal],
) -> RunOptions:
    overrides: Dict[str, Any] = {}
    if max_api_calls is not None:
        overrides["max_api_calls"] = int(max_api_calls)
    if rate_limit_ms is not None:
        overrides["rate_limit_ms"] = int(rate_limit_ms)
    if max_depth is not None:
        overrides["max_depth"] = int(max_depth)
    if keyword:
        overrides["keyword"] = keyword
    return RunOptions(
        mode=mode,
        enable_filtering=enable_filtering,
        abort_signal=abort_signal,
        **overrides,
    )


def _run_locked(
    api_key: Optional[str],
    mode: str,
    max_api_calls: Optional[int],
    rate_limit_ms: Optional[int],
    max_depth: Optional[int],
    enable_filtering: bool,
    search_mode: Optional[str],
    keyword: Optional[str],
    cache_db_path: str,
    shops_db_path: str,
    no_cache: bool,
    refresh_places: bool,
    output_dir: str,
    write_outputs: bool,
    persist: bool,
    mark_stale: bool,
    places_client: Optional[SearchPort],
    store: Optional[ShopStore],
    progress: Optional[ProgressBus],
    abort_signal: Optional[AbortSignal],
    metrics: Optional[RequestMetrics],
    points: Optional[Sequence[GridPoint]],
) -> PipelineResult:
    options = build_run_options(
        mode, max_api_calls, rate_limit_ms, max_depth, enable_filtering, keyword, abort_signal
    )
    if metrics is None:
        metrics = RequestMetrics()
    if progress is None:
        progress = ProgressBus()

    cleanups: List[Callable[[], None]] = []
    try:
        if places_client is None:
            if not api_key:
                raise ValueError("API key is required when using the real Places client")
            http_client = HttpClient(
                api_key,
                timeout=config.HTTP_TIMEOUT_SECONDS,
                retry_max=config.HTTP_RETRY_MAX,
                backoff_base=config.HTTP_BACKOFF_BASE,
                backoff_max=config.HTTP_BACKOFF_MAX,
            )
            cache = Cache(cache_db_path)
            cleanups.append(cache.close)
            places_client = PlacesClient(
                http_client,
                cache,
                no_cache=no_cache,
                refresh_places=refresh_places,
                search_mode=search_mode,
                metrics=metrics,
            )

        if persist and store is None:
            store = ShopStore(shops_db_path)
            cleanups.append(store.close)

        if write_outputs:
            ensure_dir(output_dir)
            writer = ProgressFileWriter(
                f"{output_dir}/progress.json",
                progress,
                write_interval_seconds=config.PROGRESS_WRITE_INTERVAL_SECONDS,
                logger=logger,
            )
            cleanups.append(writer.attach())

        started_at = utc_now_iso()
        logger.info("Stage 1: adaptive discovery (%s)", mode)
        summary = run_discovery(
            options,
            places_client,
            upsert_port=store if persist else None,
            progress=progress,
            points=points,
        )

        logger.info("Stage 2: run-wide dedup")
        dedup = dedupe_places(per_grid_places(summary.results))
        shops = [place.to_dict() for place in dedup.deduped_places]

        stale_marked: Optional[int] = None
        sync_run_id: Optional[int] = None
        if persist and store is not None:
            if mark_stale and not summary.aborted:
                stale_marked = store.mark_not_seen_since(started_at)
                logger.info("Marked %s shops as temporarily closed", stale_marked)
            sync_run_id = store.record_sync_run(
                mode=mode,
                started_at=started_at,
                finished_at=utc_now_iso(),
                areas_searched=summary.total_areas_searched,
                places_found=len(shops),
                api_calls=summary.api_calls,
                status="aborted" if summary.aborted else "success",
                error=summary.abort_reason,
            )

        report = build_report(summary, dedup, metrics, mode, stale_marked)
        if write_outputs:
            logger.info("Stage 3: outputs")
            write_shops_csv(f"{output_dir}/shops.csv", shops)
            write_results_json(f"{output_dir}/shops.json", shops)
            write_tasks_csv(f"{output_dir}/tasks.csv", summary.results)
            write_json_object(f"{output_dir}/summary.json", report)
            write_summary(f"{output_dir}/summary.txt", render_summary(report))

        return PipelineResult(
            summary=summary,
            dedup=dedup,
            shops=shops,
            report=report,
            sync_run_id=sync_run_id,
        )
    finally:
        for cleanup in reversed(cleanups):
            cleanup()


def per_grid_places(results: Sequence[AdaptiveSearchResult]) -> Dict[str, GridPlaces]:
    return {
        r.task_id: GridPlaces(
            places=[fp.place for fp in r.places],
            radius=r.radius_m,
            level=r.level,
        )
        for r in results
    }


def build_report(
    summary: AdaptiveSearchSummary,
    dedup: DedupOutput,
    metrics: RequestMetrics,
    mode: str,
    stale_marked: Optional[int] = None,
) -> Dict[str, Any]:
    rejection_counts: Dict[str, int] = {}
    for result in summary.results:
        for reason, count in result.rejection_counts.items():
            rejection_counts[reason] = rejection_counts.get(reason, 0) + count

    report = summary.to_dict()
    report.update(
        {
            "mode": mode,
            "unique_shops": len(dedup.deduped_places),
            "requests": metrics.to_dict(),
            "rejection_counts": rejection_counts,
            "duplicates_by_grid": dict(dedup.duplicates_by_grid),
            "stale_marked": stale_marked,
        }
    )
    return report
