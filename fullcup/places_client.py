"""Places API client with caching and response parsing.

``PlacesClient.search`` is the search port used by the scheduler. It never
raises for transport problems; failures come back as ``SearchResult.failed``.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from . import config
from .cache import Cache, make_request_cache_key
from .http import HttpClient, RequestMetrics
from .models import RawPlace, SearchResult

logger = logging.getLogger(__name__)

SEARCH_MODES = ("nearby", "text")


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        cache: Cache,
        no_cache: bool = False,
        refresh_places: bool = False,
        search_mode: Optional[str] = None,
        max_pages: Optional[int] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        search_mode = search_mode or config.SEARCH_MODE
        if search_mode not in SEARCH_MODES:
            raise ValueError(f"search_mode must be one of: {', '.join(SEARCH_MODES)}")
        self.http = http_client
        self.cache = cache
        self.no_cache = no_cache
        self.refresh_places = refresh_places
        self.search_mode = search_mode
        self.max_pages = max(1, int(max_pages or config.PLACES_MAX_PAGES_PER_QUERY))
        self.metrics = metrics
        self._seen_cache_keys: set[str] = set()
        self._memory_cache: Dict[str, Dict[str, Any]] = {}

    @property
    def result_cap(self) -> int:
        if self.search_mode == "text":
            return int(config.PLACES_TEXT_PAGE_SIZE) * self.max_pages
        return int(config.PLACES_RESULT_CAP)

    def search(self, lat: float, lng: float, radius_m: int, keyword: str) -> SearchResult:
        try:
            if self.search_mode == "text":
                return self.search_text_all(keyword, lat, lng, radius_m)
            return self.search_nearby(lat, lng, radius_m)
        except (requests.RequestException, ValueError) as exc:
            if self.metrics is not None:
                self.metrics.inc_failure()
            logger.warning("Places search failed at (%.5f, %.5f): %s", lat, lng, exc)
            return SearchResult.failed(str(exc))

    def search_nearby(self, lat: float, lng: float, radius_m: int) -> SearchResult:
        body = build_nearby_search_body(lat, lng, radius_m)
        response, calls = self._post(config.PLACES_NEARBY_SEARCH_URL, body, config.PLACES_FIELD_MASK)
        raw = response.get("places") or []
        return SearchResult(
            places=parse_places_response(response),
            api_calls_used=calls,
            possibly_truncated=len(raw) >= self.result_cap,
        )

    def search_text_all(
        self,
        keyword: str,
        lat: float,
        lng: float,
        radius_m: int,
    ) -> SearchResult:
        places: List[RawPlace] = []
        calls = 0
        page_token: Optional[str] = None
        for _ in range(self.max_pages):
            body = build_text_search_body(keyword, lat, lng, radius_m, page_token)
            response, used = self._post(
                config.PLACES_TEXT_SEARCH_URL, body, config.PLACES_TEXT_FIELD_MASK
            )
            calls += used
            places.extend(parse_places_response(response))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        # A token left after the last allowed page means more results exist.
        return SearchResult(
            places=places,
            api_calls_used=calls,
            possibly_truncated=bool(page_token),
        )

    def _post(self, url: str, body: Dict[str, Any], field_mask: str) -> Tuple[Dict[str, Any], int]:
        """Return (response, network calls used) for one request."""
        key = make_request_cache_key(url, field_mask, body)
        if key in self._seen_cache_keys:
            if self.metrics is not None:
                self.metrics.inc_dedup_skip()
            cached = self._memory_cache.get(key)
            if cached is not None and not self.no_cache:
                return cached, 0
            return {}, 0
        if not self.no_cache and not self.refresh_places:
            cached = self.cache.get_search_cache(key)
            if cached is not None:
                if self.metrics is not None:
                    self.metrics.inc_cache_hit()
                self._seen_cache_keys.add(key)
                self._memory_cache[key] = cached
                return cached, 0

        self._seen_cache_keys.add(key)
        if self.metrics is not None:
            self.metrics.inc_network()
        response = self.http.post_json(url, body, field_mask)
        if not self.no_cache:
            self.cache.set_search_cache(key, response, url=url)
            self._memory_cache[key] = response
        return response, 1


def _circle(lat: float, lng: float, radius_m: int) -> Dict[str, Any]:
    return {
        "circle": {
            "center": {"latitude": lat, "longitude": lng},
            "radius": float(radius_m),
        }
    }


def build_nearby_search_body(lat: float, lng: float, radius_m: int) -> Dict[str, Any]:
    return {
        "includedTypes": list(config.PLACES_INCLUDED_TYPES),
        "maxResultCount": int(config.PLACES_RESULT_CAP),
        "locationRestriction": _circle(lat, lng, radius_m),
    }


def build_text_search_body(
    keyword: str,
    lat: float,
    lng: float,
    radius_m: int,
    page_token: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "textQuery": keyword,
        "pageSize": int(config.PLACES_TEXT_PAGE_SIZE),
        "locationBias": _circle(lat, lng, radius_m),
    }
    if page_token:
        body["pageToken"] = page_token
    return body


# Adapter/mapper for Places response fields

def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_places_response(response: Dict[str, Any]) -> List[RawPlace]:
    places = response.get("places") or []
    parsed: List[RawPlace] = []
    for p in places:
        place_id = p.get("id") or p.get("placeId") or p.get("place_id")
        display = p.get("displayName")
        if isinstance(display, dict):
            name = display.get("text") or display.get("value")
        else:
            name = display or p.get("name")
        # "places/<id>" is a resource name, not a display name.
        if isinstance(name, str) and name.startswith("places/"):
            name = None
        if not place_id and not name:
            continue
        location = p.get("location") or p.get("latLng") or {}
        lat = _to_float(_first_present(location, "latitude", "lat"))
        lng = _to_float(_first_present(location, "longitude", "lng", "lon"))
        user_rating_count = _first_present(p, "userRatingCount", "user_ratings_total")
        parsed.append(
            RawPlace(
                place_id=place_id,
                name=name,
                lat=lat,
                lng=lng,
                types=tuple(p.get("types") or ()),
                primary_type=p.get("primaryType"),
                business_status=p.get("businessStatus") or p.get("business_status"),
                rating=_to_float(p.get("rating")),
                user_rating_count=int(user_rating_count) if user_rating_count is not None else None,
                formatted_address=p.get("formattedAddress") or p.get("formatted_address"),
            )
        )
    return parsed
