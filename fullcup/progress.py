"""In-process progress events for discovery runs.

The scheduler emits events to a ``ProgressBus``; observers subscribe to it.
A late subscriber is replayed the buffered recent events first, so it can
rebuild the run state without having watched from the start.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartEvent:
    mode: str
    total_estimated_searches: int
    type: str = field(default="start", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SearchStartEvent:
    id: str
    level: int
    lat: float
    lng: float
    radius: int
    type: str = field(default="search-start", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SearchCompleteEvent:
    id: str
    level: int
    result_count: int
    api_calls: int
    subdivided: bool = False
    type: str = field(default="search-complete", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SubdivisionCreatedEvent:
    parent_id: str
    children: Tuple[str, ...]
    type: str = field(default="subdivision-created", init=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["children"] = list(self.children)
        return data


@dataclass(frozen=True)
class AbortEvent:
    reason: str
    type: str = field(default="abort", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CompleteEvent:
    total_areas_searched: int
    total_places: int
    api_calls: int
    subdivisions: int
    aborted: bool = False
    type: str = field(default="complete", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressEvent = Union[
    StartEvent,
    SearchStartEvent,
    SearchCompleteEvent,
    SubdivisionCreatedEvent,
    AbortEvent,
    CompleteEvent,
]
Subscriber = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class ProgressSummary:
    total_areas_searched: int = 0
    total_places: int = 0
    api_calls: int = 0
    subdivisions: int = 0
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProgressSnapshot:
    recent_events: List[ProgressEvent]
    latest_summary: ProgressSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recent_events": [ev.to_dict() for ev in self.recent_events],
            "latest_summary": self.latest_summary.to_dict(),
        }


class ProgressBus:
    def __init__(self, buffer_size: Optional[int] = None) -> None:
        size = int(buffer_size if buffer_size is not None else config.PROGRESS_BUFFER_SIZE)
        if size <= 0:
            raise ValueError("buffer_size must be positive")
        self._lock = threading.RLock()
        self._buffer: Deque[ProgressEvent] = deque(maxlen=size)
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_token = 0
        self._reset_aggregates()

    def _reset_aggregates(self) -> None:
        self._areas = 0
        self._places = 0
        self._api_calls = 0
        self._subdivisions = 0
        self._aborted = False
        # Set by complete/abort; wins over the running counters.
        self._latest: Optional[ProgressSummary] = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
            replay = list(self._buffer)

        for event in replay:
            self._notify(callback, event)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            self._update_aggregates(event)
            self._buffer.append(event)
            subscribers = list(self._subscribers.values())

        for callback in subscribers:
            self._notify(callback, event)

    def get_snapshot(self) -> ProgressSnapshot:
        with self._lock:
            events = list(self._buffer)
            if self._latest is not None:
                summary = self._latest
            else:
                summary = self._current_summary()
        return ProgressSnapshot(recent_events=events, latest_summary=summary)

    def reset(self) -> None:
        with self._lock:
            self._buffer.clear()
            self._reset_aggregates()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _current_summary(self, aborted: Optional[bool] = None) -> ProgressSummary:
        return ProgressSummary(
            total_areas_searched=self._areas,
            total_places=self._places,
            api_calls=self._api_calls,
            subdivisions=self._subdivisions,
            aborted=self._aborted if aborted is None else aborted,
        )

    def _update_aggregates(self, event: ProgressEvent) -> None:
        if isinstance(event, SearchCompleteEvent):
            self._areas += 1
            self._places += event.result_count
            self._api_calls += event.api_calls
        elif isinstance(event, SubdivisionCreatedEvent):
            self._subdivisions += len(event.children)
        elif isinstance(event, AbortEvent):
            self._aborted = True
            self._latest = self._current_summary(aborted=True)
        elif isinstance(event, CompleteEvent):
            self._areas = event.total_areas_searched
            self._places = event.total_places
            self._api_calls = event.api_calls
            self._subdivisions = event.subdivisions
            self._aborted = event.aborted
            self._latest = self._current_summary()
        elif isinstance(event, StartEvent):
            self._aborted = False
            self._latest = None

    @staticmethod
    def _notify(callback: Subscriber, event: ProgressEvent) -> None:
        try:
            callback(event)
        except Exception:
            logger.exception("Progress subscriber failed on %s event", event.type)
