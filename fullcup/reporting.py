"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TextIO

from .cache import utc_now_iso
from .models import AdaptiveSearchResult
from .progress import AbortEvent, CompleteEvent, ProgressBus, ProgressEvent, SearchCompleteEvent

SHOP_FIELDNAMES = [
    "place_id",
    "name",
    "formatted_address",
    "lat",
    "lng",
    "rating",
    "user_rating_count",
    "business_status",
    "primary_type",
    "types",
    "preferred_grid_id",
    "preferred_radius",
    "source_grid_ids",
]

TASK_FIELDNAMES = [
    "task_id",
    "parent_id",
    "lat",
    "lng",
    "radius_m",
    "level",
    "status",
    "raw_count",
    "result_count",
    "api_calls_used",
    "subdivided",
    "error",
]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def write_results_json(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(list(rows), f, ensure_ascii=False, indent=2)


def write_shops_csv(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=SHOP_FIELDNAMES, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            out = dict(row)
            out["types"] = json.dumps(out.get("types", []), ensure_ascii=False)
            out["source_grid_ids"] = json.dumps(out.get("source_grid_ids", []), ensure_ascii=False)
            writer.writerow(out)


def write_tasks_csv(path: str, results: Iterable[AdaptiveSearchResult]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=TASK_FIELDNAMES)
        writer.writeheader()
        for result in results:
            writer.writerow(result.to_row())


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines))


def render_summary(summary: Dict[str, Any]) -> List[str]:
    lines = []
    lines.append(f"Mode: {summary.get('mode', '')}")
    lines.append(f"Status: {summary.get('status', '')}")
    if summary.get("abort_reason"):
        lines.append(f"Abort reason: {summary['abort_reason']}")
    lines.append(f"Areas searched: {summary.get('total_areas_searched', 0)}")
    lines.append(f"Subdivisions: {summary.get('subdivisions', 0)}")
    lines.append(f"Max depth hits: {summary.get('max_depth_hits', 0)}")
    lines.append(f"Failed tasks: {summary.get('failed_tasks', 0)}")
    lines.append(f"Places kept (per task): {summary.get('total_places', 0)}")
    lines.append(f"Unique shops: {summary.get('unique_shops', 0)}")
    lines.append(f"API calls: {summary.get('api_calls', 0)}")
    requests_stats = summary.get("requests")
    if requests_stats:
        lines.append(
            "Request stats: network={network_calls}, cache_hits={cache_hits}, "
            "dedup_skips={dedup_skips}, failures={failures}".format(**requests_stats)
        )
    if "persisted_inserted" in summary:
        lines.append(
            "Persisted: inserted={inserted}, updated={updated}, errors={errors}".format(
                inserted=summary.get("persisted_inserted", 0),
                updated=summary.get("persisted_updated", 0),
                errors=summary.get("persist_errors", 0),
            )
        )
    if summary.get("stale_marked") is not None:
        lines.append(f"Marked stale: {summary['stale_marked']}")
    lines.append("Rejections:")
    for reason, count in sorted(summary.get("rejection_counts", {}).items()):
        lines.append(f"  - {reason}: {count}")
    duplicates = {k: v for k, v in summary.get("duplicates_by_grid", {}).items() if v}
    lines.append("Duplicates by grid:")
    for grid_id, count in sorted(duplicates.items()):
        lines.append(f"  - {grid_id}: {count}")
    return lines


class ProgressFileWriter:
    """ProgressBus subscriber that mirrors the bus snapshot into progress.json.

    Writes are throttled to ``write_interval_seconds``; ``complete`` and
    ``abort`` events always write.
    """

    def __init__(
        self,
        output_path: str,
        bus: ProgressBus,
        write_interval_seconds: float = 2.0,
        log_every: int = 10,
        recent_events: int = 20,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.output_path = output_path
        self.bus = bus
        self.write_interval_seconds = float(write_interval_seconds)
        self.log_every = max(0, int(log_every))
        self.recent_events = max(0, int(recent_events))
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._last_write: Optional[float] = None
        self._completed_searches = 0
        self.writes = 0

    def attach(self) -> Callable[[], None]:
        return self.bus.subscribe(self)

    def __call__(self, event: ProgressEvent) -> None:
        if isinstance(event, SearchCompleteEvent):
            self._completed_searches += 1
            if self.log_every and self._completed_searches % self.log_every == 0:
                summary = self.bus.get_snapshot().latest_summary
                self.logger.info(
                    "Progress: areas=%s places=%s api_calls=%s subdivisions=%s",
                    summary.total_areas_searched,
                    summary.total_places,
                    summary.api_calls,
                    summary.subdivisions,
                )
        force = isinstance(event, (CompleteEvent, AbortEvent))
        self._write_if_due(event, force=force)

    def _write_if_due(self, event: ProgressEvent, force: bool = False) -> None:
        now = self._clock()
        if (
            not force
            and self._last_write is not None
            and (now - self._last_write) < self.write_interval_seconds
        ):
            return
        snapshot = self.bus.get_snapshot()
        recent = snapshot.recent_events[-self.recent_events:] if self.recent_events else []
        payload = {
            "timestamp": utc_now_iso(),
            "last_event": event.to_dict(),
            "summary": snapshot.latest_summary.to_dict(),
            "recent_events": [ev.to_dict() for ev in recent],
        }
        write_json_object(self.output_path, payload)
        self._last_write = now
        self.writes += 1
